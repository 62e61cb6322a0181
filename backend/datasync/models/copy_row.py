from __future__ import annotations

import base64
import json
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict

# Column name -> value, in source column order. Values are None, bool, int,
# float, str, Decimal, date, datetime, time or bytes.
Row = Dict[str, Any]


def _tag_value(value: Any) -> dict[str, Any]:
    if value is None:
        return {"type": "null", "value": None}
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return {"type": "bool", "value": value}
    if isinstance(value, int):
        return {"type": "int", "value": value}
    if isinstance(value, float):
        return {"type": "float", "value": value}
    if isinstance(value, Decimal):
        return {"type": "decimal", "value": str(value)}
    if isinstance(value, datetime):
        return {"type": "timestamp", "value": value.isoformat()}
    if isinstance(value, date):
        return {"type": "date", "value": value.isoformat()}
    if isinstance(value, time):
        return {"type": "time", "value": value.isoformat()}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"type": "binary", "value": base64.b64encode(bytes(value)).decode("ascii")}
    return {"type": "text", "value": str(value)}


def _untag_value(tagged: dict[str, Any]) -> Any:
    kind = tagged.get("type")
    raw = tagged.get("value")
    if kind == "null" or raw is None:
        return None
    if kind == "decimal":
        return Decimal(raw)
    if kind == "timestamp":
        return datetime.fromisoformat(raw)
    if kind == "date":
        return date.fromisoformat(raw)
    if kind == "time":
        return time.fromisoformat(raw)
    if kind == "binary":
        return base64.b64decode(raw)
    return raw


def row_to_payload(row: Row) -> str:
    """Serialize a row for the dead-letter store, keeping column order and value types."""
    return json.dumps({column: _tag_value(value) for column, value in row.items()}, ensure_ascii=False)


def payload_to_row(payload: str) -> Row:
    parsed = json.loads(payload)
    if not isinstance(parsed, dict):
        raise ValueError("Dead-letter payload is not a JSON object")
    return {
        column: _untag_value(tagged) if isinstance(tagged, dict) else tagged
        for column, tagged in parsed.items()
    }
