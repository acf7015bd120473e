"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any chatrelay import so the
cached settings pick them up.
"""

import os
import tempfile

import pytest

os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("CHANNEL_TOKEN", "test-channel-token")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("PARTITION_DIR", tempfile.mkdtemp(prefix="chatrelay-test-"))
os.environ["AZURE_AI_INFERENCE_ENDPOINT"] = ""
os.environ["AZURE_AI_INFERENCE_API_KEY"] = ""

# Clear settings cache before any app imports to ensure test env vars are used
from chatrelay.config import get_settings
get_settings.cache_clear()

from chatrelay.engine import ReconciliationEngine
from chatrelay.storage import PartitionRegistry


class FakeClock:
    """Controllable wall clock in unix seconds."""

    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(tmp_path, clock):
    reg = PartitionRegistry(str(tmp_path / "partitions"), clock=clock)
    yield reg
    reg.dispose()


@pytest.fixture
def engine(registry, clock):
    """Engine over a fresh partition with a 2-knock / 3-second dead-letter policy."""
    return ReconciliationEngine(
        registry.get("oUser1", "gh_service"),
        dead_knock_threshold=2,
        dead_timeout_seconds=3,
        clock=clock,
    )
