"""
Pytest configuration and shared fixtures for the digit monitor tests.
"""

import sys
from concurrent.futures import Future
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from analytics import PatternEngine
from storage import DuckDBStorage
from utils import AlertLog, Settings, SettingsHolder, Tick


class FakeGateway:
    """Records submitted payloads; the returned future is already resolved."""

    def __init__(self, error=None, offline=False):
        self.sent = []
        self.error = error
        self.offline = offline

    def submit(self, *payloads):
        if self.offline:
            raise ConnectionError("Not connected to Deriv")
        self.sent.append(payloads)
        future = Future()
        if self.error is not None:
            future.set_exception(self.error)
        else:
            future.set_result(None)
        return future


def make_tick(symbol, digit, epoch=0):
    """Quote whose two-decimal rendering ends in `digit`."""
    return Tick(symbol=symbol, quote=float(f"1234.5{digit}"), epoch=epoch, receipt_time=0.0)


def feed(engine, symbol, digits):
    """Push digits through the engine; returns (tick_index, trigger) pairs."""
    fired = []
    for i, digit in enumerate(digits):
        for trigger in engine.process_tick(make_tick(symbol, digit, epoch=i)):
            fired.append((i, trigger))
    return fired


@pytest.fixture
def settings():
    return SettingsHolder(Settings(min_cluster_size=2, alert_threshold=3))


@pytest.fixture
def alerts():
    return AlertLog()


@pytest.fixture
def engine(settings, alerts):
    """Engine subscribed to R_10 with a 0.01 pip size."""
    engine = PatternEngine(settings, alerts=alerts)
    engine.subscribe(["R_10"])
    engine.set_pip("R_10", 0.01)
    return engine


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def storage():
    db = DuckDBStorage(":memory:")
    yield db
    db.close()
