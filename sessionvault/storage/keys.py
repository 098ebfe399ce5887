from __future__ import annotations

from typing import Tuple

from sessionvault.storage.models import SessionRecord


class SessionKeys:
    """Spells the four index key namespaces of a session."""

    SESSION_PREFIX = "session"
    JWT_ID_PREFIX = "jwtId"
    REFRESH_PREFIX = "refreshToken"
    TOKEN_VALUE_PREFIX = "tokenValue"

    @classmethod
    def canonical(cls, principal_id: str, jwt_id: str) -> str:
        return f"{cls.SESSION_PREFIX}:{principal_id}:{jwt_id}"

    @classmethod
    def jwt_id(cls, jwt_id: str) -> str:
        return f"{cls.JWT_ID_PREFIX}:{jwt_id}"

    @classmethod
    def refresh(cls, refresh_token: str) -> str:
        return f"{cls.REFRESH_PREFIX}:{refresh_token}"

    @classmethod
    def token_value(cls, token: str) -> str:
        return f"{cls.TOKEN_VALUE_PREFIX}:{token}"

    @classmethod
    def principal_pattern(cls, principal_id: str) -> str:
        """Glob pattern matching every canonical key of one principal."""
        return f"{cls.SESSION_PREFIX}:{principal_id}:*"

    @classmethod
    def for_record(cls, record: SessionRecord) -> Tuple[str, str, str, str]:
        """Return (canonical, jwt_id, refresh, token_value) keys for ``record``."""
        return (
            cls.canonical(record.principal_id, record.jwt_id),
            cls.jwt_id(record.jwt_id),
            cls.refresh(record.refresh_token),
            cls.token_value(record.token),
        )
