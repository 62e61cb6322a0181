from __future__ import annotations

from enum import Enum

from datasync.services.gateway import (
    PermanentGatewayError,
    SchemaGatewayError,
    TransientGatewayError,
)


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    FATAL = "fatal"


_TRANSIENT_SIGNATURES = (
    "ssl syscall",
    "server closed the connection",
    "connection already closed",
    "terminating connection",
    "timeout expired",
    "timed out",
    "canceling statement due to statement timeout",
    "could not connect",
    "connection refused",
    "connection reset by peer",
    "broken pipe",
    "eof detected",
    "deadlock",
    "transaction was aborted",
    "could not serialize access",
    "database is locked",
    "unable to open database",
    "interrupted",
)

_PERMANENT_SIGNATURES = (
    "constraint",
    "duplicate key",
    "unique",
    "foreign key",
    "not null",
    "violates",
    "invalid input syntax",
    "invalid input value",
    "value too long",
    "out of range",
    "conversion failed",
    "datatype mismatch",
    "malformed",
)


def is_transient_message(message: str) -> bool:
    msg = message.lower()
    return any(signature in msg for signature in _TRANSIENT_SIGNATURES)


def is_permanent_message(message: str) -> bool:
    msg = message.lower()
    return any(signature in msg for signature in _PERMANENT_SIGNATURES)


def classify_error(exc: BaseException) -> ErrorKind:
    """Decide how the copy loop reacts to a failed page.

    Typed gateway categories win; message signatures are the fallback for
    errors a gateway could not translate. Anything unrecognised counts as
    transient so the job fails resumably instead of dead-lettering rows
    that may be fine.
    """
    if isinstance(exc, TransientGatewayError):
        return ErrorKind.TRANSIENT
    if isinstance(exc, PermanentGatewayError):
        return ErrorKind.PERMANENT
    if isinstance(exc, SchemaGatewayError):
        return ErrorKind.FATAL
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT

    message = str(exc)
    if is_transient_message(message):
        return ErrorKind.TRANSIENT
    if is_permanent_message(message):
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT
