from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from datasync.config import DatabaseCredential


@dataclass(frozen=True)
class ConnectionDescriptor:
    server: str
    database: str
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    @property
    def integrated_auth(self) -> bool:
        return self.username is None

    def __repr__(self) -> str:
        auth = "integrated" if self.integrated_auth else f"user={self.username}, password=***"
        port = f":{self.port}" if self.port else ""
        return f"ConnectionDescriptor({self.server}{port}/{self.database}, {auth})"

    __str__ = __repr__


def _split_server(server: str) -> tuple[str, Optional[int]]:
    """Accept ``host``, ``host:port`` and SQL Server style ``host,port``."""
    host = server.strip()
    for sep in (",", ":"):
        if sep in host:
            candidate, _, port = host.rpartition(sep)
            if port.isdigit() and candidate:
                return candidate, int(port)
    return host, None


class ConnectionResolver:
    """Turn a (server, database) pair into a connection descriptor.

    Credentials are injected once; resolving never touches the network and
    never fails. A pair without an explicit credential falls back to
    integrated authentication.
    """

    def __init__(self, credentials: Iterable[DatabaseCredential] = ()):
        self._credentials = tuple(credentials)

    def resolve(self, server_address: str, database_name: str) -> ConnectionDescriptor:
        host, port = _split_server(server_address)
        credential = next(
            (
                c for c in self._credentials
                if c.server_ip == server_address and c.db_name == database_name
            ),
            None,
        )
        if credential is None:
            return ConnectionDescriptor(server=host, database=database_name, port=port)

        return ConnectionDescriptor(
            server=host,
            database=database_name,
            port=port,
            username=credential.user_id,
            password=credential.password,
        )
