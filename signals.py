"""
Signal gating between the pattern engine and the trade executor.

Responsibilities:
- Log every trigger as a human-readable alert
- Decide whether a trigger becomes a TradeIntent
- Hand intents to the executor without waiting for confirmation

This module must never:
- Touch tracker state
- Build order payloads or talk to the network
"""

import logging
from typing import Callable, List, Optional

from analytics import ClusterStatistics
from utils import AlertLog, SettingsHolder, TradeIntent, Trigger, display_name


logger = logging.getLogger("signals")


class SignalDispatcher:
    """
    Gates (all must hold): auto-trade enabled, cluster count at or above
    the configured minimum, feed connected, trading account present.
    A closed gate is a normal outcome and only produces an info alert.
    """

    def __init__(
        self,
        settings: SettingsHolder,
        executor,
        alerts: AlertLog,
        is_connected: Callable[[], bool],
        has_account: Callable[[], bool],
        statistics: Optional[ClusterStatistics] = None,
    ):
        self.settings = settings
        self.executor = executor
        self.alerts = alerts
        self.is_connected = is_connected
        self.has_account = has_account
        self.statistics = statistics

    def closed_gates(self, trigger: Trigger) -> List[str]:
        settings = self.settings.get()
        closed = []
        if not settings.auto_trade_enabled:
            closed.append("auto-trade disabled")
        if trigger.cluster_count < settings.min_cluster_size:
            closed.append(f"{trigger.cluster_count} < {settings.min_cluster_size} clusters")
        if not self.is_connected():
            closed.append("not connected")
        if not self.has_account():
            closed.append("no trading account")
        return closed

    def dispatch(self, trigger: Trigger) -> Optional[TradeIntent]:
        name = display_name(trigger.symbol)
        closed = self.closed_gates(trigger)

        if closed:
            self.alerts.add(
                f"Signal: single {trigger.digit} on {name} after "
                f"{trigger.cluster_count} clusters (no trade: {', '.join(closed)})",
                level="info",
                kind="signal",
                symbol=trigger.symbol,
                digit=trigger.digit,
                cluster_count=trigger.cluster_count,
            )
            logger.info(f"[SIGNAL] {trigger.symbol} digit {trigger.digit} gated: {', '.join(closed)}")
            return None

        self.alerts.add(
            f"Signal: single {trigger.digit} on {name} after "
            f"{trigger.cluster_count} clusters, placing DIGITDIFF",
            level="warning",
            kind="signal",
            symbol=trigger.symbol,
            digit=trigger.digit,
            cluster_count=trigger.cluster_count,
        )

        intent = TradeIntent(
            symbol=trigger.symbol,
            target_digit=trigger.digit,
            cluster_count=trigger.cluster_count,
            timestamp=trigger.timestamp,
        )
        if self.statistics is not None:
            self.statistics.record_trade()
        self.executor.execute(intent)
        return intent
