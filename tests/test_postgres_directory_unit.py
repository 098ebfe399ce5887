"""Unit tests for the Postgres principal directory against a scripted pool."""

from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from sessionvault.storage.errors import ConstraintViolation
from sessionvault.storage.models import Role
from sessionvault.storage.postgres import PostgresPrincipalDirectory


class FakeCursor:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        if self.pool.raise_on_next is not None:
            exc, self.pool.raise_on_next = self.pool.raise_on_next, None
            raise exc
        row = self.pool.rows.pop(0) if self.pool.rows else None
        return FakeCursor(row)


class ScriptedPool:
    """Pool whose connections return queued rows in order."""

    def __init__(self):
        self.statements = []
        self.rows = []
        self.raise_on_next = None
        self.closed = False

    @contextmanager
    def connection(self):
        yield FakeConnection(self)

    def close(self):
        self.closed = True


@pytest.fixture
def pool():
    return ScriptedPool()


@pytest.fixture
def directory(pool):
    directory = PostgresPrincipalDirectory("postgresql://unused", pool=pool)
    pool.statements.clear()
    return directory


def test_schema_is_created_on_startup(pool):
    PostgresPrincipalDirectory("postgresql://unused", pool=pool)
    created = [sql for sql, _ in pool.statements if sql.startswith("CREATE TABLE IF NOT EXISTS")]
    assert len(created) == 4


def test_find_by_email_maps_row(directory, pool):
    created_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    pool.rows.append(
        {
            "id": "p-1",
            "email": "alice@example.com",
            "username": "alice",
            "active": True,
            "created_at": created_at,
            "roles": ["USER"],
        }
    )

    principal = directory.find_by_email("alice@example.com")

    assert principal.id == "p-1"
    assert principal.roles == ["USER"]
    assert principal.subject == "alice"
    sql, params = pool.statements[0]
    assert "WHERE p.email = %s" in sql
    assert params == ("alice@example.com",)


def test_find_missing_returns_none(directory):
    assert directory.find_by_id("missing") is None


def test_unique_violation_becomes_constraint_violation(directory, pool):
    pool.raise_on_next = errors.UniqueViolation("duplicate key")
    with pytest.raises(ConstraintViolation):
        directory.add_principal("alice@example.com", "alice")


def test_password_record_round_trip(directory, pool):
    directory.save_password("p-1", "hash", "argon2id")
    assert "ON CONFLICT (principal_id) DO UPDATE" in pool.statements[0][0]

    pool.rows.append({"password_hash": "hash", "password_algo": "argon2id"})
    assert directory.get_password_record("p-1") == ("hash", "argon2id")


def test_set_active_missing_principal(directory):
    assert directory.set_active("missing", False) is None


def test_save_role_is_idempotent_upsert(directory, pool):
    role = Role.new("ADMIN")
    pool.rows.append({"id": role.id})
    assert directory.save_role(role) is role
    assert "ON CONFLICT (name) DO NOTHING" in pool.statements[0][0]


def test_save_role_conflict_returns_stored_role(directory, pool):
    created_at = datetime(2025, 6, 1, tzinfo=timezone.utc)
    pool.rows.extend([None, {"id": "r-stored", "name": "ADMIN", "created_at": created_at}])

    saved = directory.save_role(Role.new("ADMIN"))

    assert saved == Role(id="r-stored", name="ADMIN", created_at=created_at)
    assert pool.statements[1][0].startswith("SELECT id, name, created_at FROM role")


def test_save_role_conflict_without_stored_row_raises(directory, pool):
    with pytest.raises(ConstraintViolation):
        directory.save_role(Role.new("ADMIN"))


def test_close_closes_pool(directory, pool):
    directory.close()
    assert pool.closed
