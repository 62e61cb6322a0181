from datasync.config import DatabaseCredential
from datasync.services.connection_resolver import ConnectionResolver


def _resolver() -> ConnectionResolver:
    return ConnectionResolver(
        [
            DatabaseCredential(serverIp="10.0.0.5", dbName="sales", userId="copier", password="s3cret"),
            DatabaseCredential(server_ip="10.0.0.6:5433", db_name="archive", user_id="archiver", password="hunter2"),
        ]
    )


def test_exact_match_uses_stored_credential():
    conn = _resolver().resolve("10.0.0.5", "sales")
    assert conn.server == "10.0.0.5"
    assert conn.username == "copier"
    assert conn.password == "s3cret"
    assert not conn.integrated_auth


def test_unmatched_pair_falls_back_to_integrated_auth():
    conn = _resolver().resolve("10.0.0.5", "hr")
    assert conn.integrated_auth
    assert conn.username is None and conn.password is None


def test_port_is_split_from_the_server_address():
    conn = _resolver().resolve("10.0.0.6:5433", "archive")
    assert conn.server == "10.0.0.6"
    assert conn.port == 5433
    assert conn.username == "archiver"

    conn = _resolver().resolve("sqlhost,1433", "other")
    assert (conn.server, conn.port) == ("sqlhost", 1433)


def test_password_never_appears_in_repr():
    conn = _resolver().resolve("10.0.0.5", "sales")
    assert "s3cret" not in repr(conn)
    assert "s3cret" not in str(conn)
    assert "password=***" in repr(conn)
