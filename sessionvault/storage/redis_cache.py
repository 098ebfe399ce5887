from __future__ import annotations

from typing import Optional, Set

from redis import Redis


def _clamp_ttl(ttl_seconds: float) -> int:
    # Redis rejects zero or negative expirations
    return max(1, int(ttl_seconds))


class RedisSessionStore:
    """Synchronous Redis wrapper holding session records and their index keys."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def put(self, key: str, value: str, ttl_seconds: float) -> None:
        self.client.set(key, value, ex=_clamp_ttl(ttl_seconds))

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def scan(self, pattern: str) -> Set[str]:
        """Enumerate keys matching a glob pattern with incremental SCAN."""
        return {key for key in self.client.scan_iter(match=pattern, count=100)}

    def close(self) -> None:
        self.client.close()


__all__ = ["RedisSessionStore"]
