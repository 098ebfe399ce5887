import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Test environment must be in place before any sessionvault import reads it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Nothing listens on port 1, so the runtime falls back to the in-memory session store
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:1/0")
os.environ.setdefault("REDIS_SOCKET_TIMEOUT", "0.2")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionvault.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Controls wall-clock time and the store's monotonic clock together."""

    def __init__(self) -> None:
        self.wall = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.mono = 1_000.0

    def now(self) -> datetime:
        return self.wall

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.wall += timedelta(seconds=seconds)
        self.mono += seconds

    def advance_wall(self, seconds: float) -> None:
        """Move wall time only, leaving store TTLs untouched."""
        self.wall += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()
