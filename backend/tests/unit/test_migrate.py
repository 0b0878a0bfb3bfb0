from pathlib import Path

import pytest

from huddle.infra import migrate


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        if self._conn.fail_on and self._conn.fail_on in sql:
            raise RuntimeError("syntax error")
        self._conn.pending.append((sql, params))

    def fetchall(self):
        return [(version,) for version in sorted(self._conn.applied)]


class FakeConnection:
    """Mimics psycopg2's ``with conn:`` commit/rollback semantics."""

    def __init__(self, applied=(), fail_on=None) -> None:
        self.applied = set(applied)
        self.fail_on = fail_on
        self.pending: list = []
        self.committed: list = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.committed.extend(self.pending)
        self.pending = []
        return False

    def cursor(self):
        return FakeCursor(self)


def _write(directory: Path, name: str, sql: str) -> Path:
    path = directory / name
    path.write_text(sql)
    return path


def test_pending_migrations_sorted_and_filtered(tmp_path):
    paths = [
        _write(tmp_path, "0002_indexes.sql", "SELECT 2"),
        _write(tmp_path, "0001_call_rooms.sql", "SELECT 1"),
        _write(tmp_path, "0003_more.sql", "SELECT 3"),
    ]
    pending = migrate.pending_migrations(paths, {"0002"})
    assert [path.name for path in pending] == ["0001_call_rooms.sql", "0003_more.sql"]


def test_apply_pending_records_versions(tmp_path):
    _write(tmp_path, "0001_call_rooms.sql", "CREATE TABLE a ()")
    _write(tmp_path, "0002_indexes.sql", "CREATE INDEX b ON a ()")
    conn = FakeConnection(applied={"0001"})

    assert migrate.apply_pending(conn, tmp_path) == ["0002"]
    statements = [sql for sql, _ in conn.committed]
    assert "CREATE INDEX b ON a ()" in statements
    assert "CREATE TABLE a ()" not in statements
    assert (f"INSERT INTO {migrate.LEDGER_TABLE} (version) VALUES (%s)", ("0002",)) in conn.committed


def test_failed_migration_is_not_recorded(tmp_path):
    _write(tmp_path, "0001_call_rooms.sql", "CREATE TABLE a ()")
    _write(tmp_path, "0002_broken.sql", "CREATE BROKEN")
    conn = FakeConnection(fail_on="CREATE BROKEN")

    with pytest.raises(RuntimeError):
        migrate.apply_pending(conn, tmp_path)
    ledger = [params for sql, params in conn.committed if sql.startswith("INSERT INTO")]
    assert ledger == [("0001",)]


def test_shipped_migrations_are_discoverable():
    names = [path.name for path in migrate.pending_migrations(migrate.MIGRATIONS_DIR.glob("*.sql"), set())]
    assert names[0] == "0001_call_rooms.sql"
