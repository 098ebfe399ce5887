from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionvault.logging import get_logger
from sessionvault.storage.errors import ConstraintViolation
from sessionvault.storage.models import Principal, Role


_PRINCIPAL_SELECT = """
    SELECT p.id, p.email, p.username, p.active, p.created_at,
           COALESCE(array_agg(pr.role_name) FILTER (WHERE pr.role_name IS NOT NULL), '{}') AS roles
    FROM principal p
    LEFT JOIN principal_role pr ON pr.principal_id = p.id
"""


class PostgresPrincipalDirectory:
    """Read-mostly principal directory backed by Postgres."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the directory tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS principal (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    username TEXT UNIQUE,
                    active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS role (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS principal_role (
                    principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
                    role_name TEXT NOT NULL,
                    PRIMARY KEY (principal_id, role_name)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS principal_credential (
                    principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
                    password_hash TEXT NOT NULL,
                    password_algo TEXT NOT NULL,
                    last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    @staticmethod
    def _principal_from_row(row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            active=bool(row.get("active", True)),
            roles=list(row.get("roles") or []),
            created_at=row["created_at"],
        )

    def _find_one(self, where: str, value: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                f"{_PRINCIPAL_SELECT} WHERE {where} = %s GROUP BY p.id",
                (value,),
            ).fetchone()
        if not row:
            return None
        return self._principal_from_row(row)

    def add_principal(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        roles: Optional[Iterable[str]] = None,
        active: bool = True,
        principal_id: Optional[str] = None,
    ) -> Principal:
        pid = principal_id or str(uuid.uuid4())
        role_names = list(roles or [])
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO principal (id, email, username, active) VALUES (%s, %s, %s, %s)",
                    (pid, email, username, active),
                )
                for name in role_names:
                    conn.execute(
                        "INSERT INTO principal_role (principal_id, role_name) VALUES (%s, %s)",
                        (pid, name),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "principal already exists", {"fields": ["email", "username"]}
            )
        return Principal(
            id=pid, email=email, username=username, active=active, roles=role_names
        )

    def find_by_id(self, principal_id: str) -> Optional[Principal]:
        return self._find_one("p.id", principal_id)

    def find_by_email(self, email: str) -> Optional[Principal]:
        return self._find_one("p.email", email)

    def find_by_username(self, username: str) -> Optional[Principal]:
        return self._find_one("p.username", username)

    def exists_by_email(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM principal WHERE email = %s", (email,)
            ).fetchone()
        return row is not None

    def exists_by_username(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM principal WHERE username = %s", (username,)
            ).fetchone()
        return row is not None

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal_credential (principal_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (principal_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (principal_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal not found for credential", {"principal_id": principal_id}
            )

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM principal_credential WHERE principal_id = %s",
                (principal_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def set_active(self, principal_id: str, active: bool) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET active = %s WHERE id = %s RETURNING id",
                (active, principal_id),
            ).fetchone()
        if not row:
            return None
        return self.find_by_id(principal_id)

    def find_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, created_at FROM role WHERE name = %s", (name,)
            ).fetchone()
        if not row:
            return None
        return Role(id=str(row["id"]), name=row["name"], created_at=row["created_at"])

    def save_role(self, role: Role) -> Role:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO role (id, name, created_at) VALUES (%s, %s, %s)
                ON CONFLICT (name) DO NOTHING
                RETURNING id
                """,
                (role.id, role.name, role.created_at),
            ).fetchone()
        if row:
            return role
        existing = self.find_role_by_name(role.name)
        if existing is None:
            raise ConstraintViolation("role insert conflicted", {"name": role.name})
        self.logger.info("role_already_present", role=role.name, role_id=existing.id)
        return existing

    def close(self) -> None:
        self.pool.close()
