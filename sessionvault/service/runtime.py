from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionvault.config import get_settings, reset_settings_cache
from sessionvault.logging import get_logger
from sessionvault.service.credentials import Argon2SecretVerifier, CredentialAuthenticator
from sessionvault.service.principals import PrincipalCache, PrincipalService
from sessionvault.service.sessions import SessionManager
from sessionvault.service.tokens import TokenIssuer
from sessionvault.storage.memory import MemoryPrincipalDirectory, MemorySessionStore
from sessionvault.storage.postgres import PostgresPrincipalDirectory
from sessionvault.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.directory = (
                MemoryPrincipalDirectory()
                if self.settings.use_memory_store
                else PostgresPrincipalDirectory(self.settings.database_url)
            )
            logger.info(
                "runtime_directory_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_directory_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.session_store = self._build_session_store()
        self.issuer = TokenIssuer(self.settings)
        self.sessions = SessionManager(self.session_store, self.issuer, self.settings)
        self.verifier = Argon2SecretVerifier(self.directory)
        self.principal_cache = PrincipalCache(
            ttl_seconds=self.settings.principal_cache_ttl_seconds,
            max_entries=self.settings.principal_cache_max_entries,
        )
        self.principals = PrincipalService(
            self.directory,
            self.principal_cache,
            self.sessions,
            self.issuer,
            self.verifier,
        )
        self.authenticator = CredentialAuthenticator(
            self.principals, self.verifier, self.issuer
        )

    def _build_session_store(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            store = None
            try:
                store = RedisSessionStore(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                )
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc
                if store is not None:
                    store.close()

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for session state; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions live in "
                "process memory and are lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemorySessionStore()

    def close(self) -> None:
        self.session_store.close()
        if isinstance(self.directory, PostgresPrincipalDirectory):
            self.directory.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
