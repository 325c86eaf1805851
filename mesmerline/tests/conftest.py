"""pytest configuration file."""

import pytest, logging

from mesmerline.features.registry import FeatureRegistry
from mesmerline.logging_utils import LogMode, set_log_mode
from mesmerline.session.sinks import RecordingSink


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (may take several seconds)"
    )
    config.addinivalue_line(
        "markers", "qt: marks tests that need PyQt6"
    )


@pytest.fixture(autouse=True)
def _isolated_user_dir(tmp_path, monkeypatch):
    """Keep sessions and logs out of the real per-user folder."""
    monkeypatch.setenv("MESMERLINE_DATA_DIR", str(tmp_path / "userdata"))
    for name in ("MESMERLINE_TICK_MS", "MESMERLINE_MINUTE_SECONDS", "MESMERLINE_SLOW_SINK_MS"):
        monkeypatch.delenv(name, raising=False)
    yield
    set_log_mode(LogMode.NORMAL)


@pytest.fixture(autouse=True, scope="session")
def _quiet_asyncio():
    logging.getLogger("asyncio").setLevel(logging.ERROR)
    yield


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return FeatureRegistry.builtin()


@pytest.fixture
def sink():
    return RecordingSink()
