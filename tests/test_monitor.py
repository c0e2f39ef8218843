"""
Integration tests for the monitor pipeline (feed callbacks -> engine -> trades).
"""

import pytest

from monitor import MonitorPipeline
from utils import Settings, SettingsHolder
from conftest import FakeGateway, make_tick


PATTERN = [7, 7, 5, 7, 7, 9, 7, 3]


def make_pipeline(gateway=None, records=None, **overrides):
    options = {"auto_trade_enabled": True, "min_cluster_size": 2, "symbols": ("R_10",)}
    options.update(overrides)
    sink = records.append if records is not None else None
    return MonitorPipeline(
        SettingsHolder(Settings(**options)),
        gateway=gateway,
        record_sink=sink,
        has_token=True,
    )


def connect(pipeline, symbols=("R_10",)):
    pipeline.on_connection(True)
    pipeline.on_active_symbols([{"symbol": s, "pip": 0.01} for s in symbols])
    pipeline.on_authorize({"loginid": "VRTC42", "currency": "USD", "is_virtual": 1, "balance": 100.0})


def play(pipeline, digits, symbol="R_10"):
    for i, digit in enumerate(digits):
        pipeline.on_tick(make_tick(symbol, digit, epoch=i))


class TestFeedCallbacks:
    """Tests for connection and account callbacks."""

    def test_ready_alert(self):
        pipeline = make_pipeline()
        assert pipeline.alerts.recent()[0].message.startswith("System ready")

    def test_authorize_populates_session(self):
        pipeline = make_pipeline()
        connect(pipeline)
        assert pipeline.session.connected is True
        assert pipeline.session.has_account is True
        assert pipeline.session.is_virtual is True
        assert pipeline.session.starting_balance == 100.0

    def test_disconnect_clears_account(self):
        pipeline = make_pipeline()
        connect(pipeline)
        pipeline.on_connection(False)
        assert pipeline.session.has_account is False
        assert pipeline.alerts.recent()[0].message == "WebSocket connection closed"

    def test_reconnect_resets_history(self):
        pipeline = make_pipeline()
        connect(pipeline)
        play(pipeline, [7, 7, 5])
        pipeline.on_connection(True)
        assert len(pipeline.registry.get("R_10").history) == 0

    def test_pattern_alert_reaches_pipeline_log(self):
        """Threshold alerts land in the log the snapshot serves."""
        pipeline = make_pipeline(alert_threshold=2)
        connect(pipeline)
        play(pipeline, [7, 7, 5, 7, 7])
        assert pipeline.engine.alerts is pipeline.alerts
        patterns = [a for a in pipeline.snapshot()["alerts"] if a["kind"] == "pattern"]
        assert len(patterns) == 1
        assert patterns[0]["digit"] == 7
        assert patterns[0]["message"] == "Digit 7 reached 2 clusters on Volatility 10"

    def test_engine_shares_statistics_and_registry(self):
        pipeline = make_pipeline()
        assert pipeline.engine.statistics is pipeline.statistics
        assert pipeline.engine.registry is pipeline.registry

    def test_missing_pip_size_alert(self):
        pipeline = make_pipeline(symbols=("R_10", "R_25"))
        pipeline.on_active_symbols([{"symbol": "R_10", "pip": 0.01}])
        assert "R_25" in pipeline.alerts.recent()[0].message
        assert pipeline.engine.precision("R_10") == 2

    def test_balance_and_pnl(self):
        pipeline = make_pipeline()
        connect(pipeline)
        pipeline.on_balance({"balance": 110.0, "currency": "USD"})
        pnl = pipeline.pnl()
        assert pnl["net"] == pytest.approx(10.0)
        assert pnl["pct"] == pytest.approx(10.0)

    def test_order_rejection_alert(self):
        pipeline = make_pipeline()
        pipeline.on_api_error("buy", {"message": "Insufficient balance"}, {"parameters": {"symbol": "R_10"}})
        alert = pipeline.alerts.recent()[0]
        assert alert.level == "error"
        assert alert.message == "Order rejected on Volatility 10: Insufficient balance"
        assert pipeline.session.last_error == "Insufficient balance"


class TestAutoTrading:
    """Tests for the trigger to trade path."""

    def test_paper_trade_on_trigger(self):
        records = []
        pipeline = make_pipeline(gateway=FakeGateway(), records=records)
        connect(pipeline)
        play(pipeline, PATTERN)
        assert len(records) == 1
        assert records[0].is_paper_trade is True
        assert records[0].target_digit == 7
        assert pipeline.statistics.trades == 1

    def test_live_trade_on_trigger(self):
        gateway = FakeGateway()
        records = []
        pipeline = make_pipeline(gateway=gateway, records=records, paper_trading_enabled=False)
        connect(pipeline)
        play(pipeline, PATTERN)
        assert len(gateway.sent) == 1
        assert records[0].is_paper_trade is False

    def test_no_trade_without_account(self):
        records = []
        pipeline = make_pipeline(gateway=FakeGateway(), records=records)
        pipeline.on_connection(True)
        pipeline.on_active_symbols([{"symbol": "R_10", "pip": 0.01}])
        play(pipeline, PATTERN)
        assert records == []
        assert pipeline.statistics.triggers == 1

    def test_settings_update_disables_trading(self):
        records = []
        pipeline = make_pipeline(gateway=FakeGateway(), records=records)
        connect(pipeline)
        pipeline.update_settings({"auto_trade_enabled": False})
        play(pipeline, PATTERN)
        assert records == []


class TestOperatorActions:
    """Tests for manual trades, resets and snapshots."""

    def test_manual_paper_trade(self):
        records = []
        pipeline = make_pipeline(records=records)
        connect(pipeline)
        assert pipeline.manual_trade("R_10", 4) is True
        assert records[0].target_digit == 4
        assert records[0].is_paper_trade is True

    def test_manual_paper_trade_needs_account(self):
        records = []
        pipeline = make_pipeline(records=records)
        pipeline.on_connection(True)
        assert pipeline.manual_trade("R_10", 4) is False
        assert records == []
        assert pipeline.alerts.recent()[0].message.startswith("Cannot execute trade")

    def test_manual_live_trade_needs_account(self):
        pipeline = make_pipeline(gateway=FakeGateway(), paper_trading_enabled=False)
        assert pipeline.manual_trade("R_10", 4) is False
        assert pipeline.alerts.recent()[0].level == "error"

    @pytest.mark.parametrize("symbol,digit", [("R_99", 4), ("R_10", 10)])
    def test_manual_trade_rejects_bad_request(self, symbol, digit):
        pipeline = make_pipeline()
        assert pipeline.manual_trade(symbol, digit) is False

    def test_reset_statistics(self):
        pipeline = make_pipeline(gateway=FakeGateway())
        connect(pipeline)
        play(pipeline, PATTERN)
        pipeline.reset_statistics()
        assert pipeline.statistics.triggers == 0

    def test_snapshot(self):
        pipeline = make_pipeline()
        connect(pipeline)
        play(pipeline, [7, 7, 5])
        snap = pipeline.snapshot()
        assert snap["symbols"]["R_10"]["digits"] == [7, 7, 5]
        assert snap["session"]["has_token"] is True
        assert snap["session"]["loginid"] == "VRTC42"
        assert snap["settings"]["symbols"] == ["R_10"]
        assert len(snap["alerts"]) <= 20
