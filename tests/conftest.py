import pytest

from perfcache.config import reset_settings

START_MS = 1_700_000_000_000


class FakeClock:
    """Deterministic epoch-millisecond clock for cache and monitor tests."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Make every test read settings from its own environment."""
    reset_settings()
    yield
    reset_settings()
