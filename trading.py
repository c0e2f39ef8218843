"""
Trade execution for "digit differs" contracts.

Responsibilities:
- Build proposal and buy requests from a TradeIntent and current settings
- Simulate trades in paper mode
- Hand live orders to the gateway without waiting for confirmation
- Report outcomes through the alert log and emit trade records

This module must never:
- Retry an order
- Read or write tracker state
"""

import time
import logging
from concurrent.futures import Future
from typing import Callable, Dict, Optional

from utils import (
    DIGIT_DIFFERS,
    AlertLog,
    FeedSession,
    Settings,
    SettingsHolder,
    TradeIntent,
    TradeRecord,
    display_name,
)


logger = logging.getLogger("trading")


def contract_parameters(symbol: str, digit: int, settings: Settings, currency: str) -> Dict:
    return {
        "amount": settings.trade_amount,
        "basis": "stake",
        "contract_type": DIGIT_DIFFERS,
        "currency": currency,
        "duration": settings.trade_duration,
        "duration_unit": "t",
        "symbol": symbol,
        "barrier": str(digit),
    }


def build_proposal_request(intent: TradeIntent, settings: Settings, currency: str) -> Dict:
    request = {"proposal": 1}
    request.update(contract_parameters(intent.symbol, intent.target_digit, settings, currency))
    return request


def build_buy_request(intent: TradeIntent, settings: Settings, currency: str) -> Dict:
    return {
        "buy": 1,
        "price": settings.trade_amount,
        "parameters": contract_parameters(intent.symbol, intent.target_digit, settings, currency),
    }


class TradeExecutor:
    """
    Fire-and-forget order placement.

    `gateway.submit(*payloads)` must send the payloads in order and return
    a Future without blocking; it raises ConnectionError when offline.
    `record_sink` receives every TradeRecord (live and paper).
    """

    def __init__(
        self,
        settings: SettingsHolder,
        gateway,
        alerts: AlertLog,
        session: Optional[FeedSession] = None,
        record_sink: Optional[Callable[[TradeRecord], None]] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.alerts = alerts
        self.session = session if session is not None else FeedSession()
        self.record_sink = record_sink

    def _make_record(self, intent: TradeIntent, settings: Settings, paper: bool) -> TradeRecord:
        return TradeRecord(
            symbol=intent.symbol,
            contract_type=DIGIT_DIFFERS,
            amount=settings.trade_amount,
            duration=settings.trade_duration,
            target_digit=intent.target_digit,
            is_paper_trade=paper,
            timestamp=int(time.time() * 1000),
        )

    def _emit(self, record: TradeRecord):
        if self.record_sink is None:
            return
        try:
            self.record_sink(record)
        except Exception as e:
            logger.error(f"[TRADE] Failed to store trade record: {e}")
            self.alerts.add(f"Trade record not stored: {e}", level="error", kind="trade", symbol=record.symbol)

    def _describe(self, intent: TradeIntent) -> str:
        if intent.source == "manual":
            return f"DIGITDIFF from {intent.target_digit} on {display_name(intent.symbol)} (manual)"
        return (
            f"DIGITDIFF from {intent.target_digit} on {display_name(intent.symbol)} "
            f"after {intent.cluster_count} clusters"
        )

    def execute(self, intent: TradeIntent) -> Optional[TradeRecord]:
        settings = self.settings.get()

        if settings.paper_trading_enabled:
            record = self._make_record(intent, settings, paper=True)
            self._emit(record)
            self.alerts.add(
                f"PAPER TRADE: {self._describe(intent)} | stake {settings.trade_amount:.2f}",
                level="success",
                kind="trade",
                symbol=intent.symbol,
                digit=intent.target_digit,
                cluster_count=intent.cluster_count,
            )
            logger.info(f"[TRADE] Paper {intent.symbol} DIGITDIFF barrier={intent.target_digit}")
            return record

        currency = self.session.currency or "USD"
        proposal = build_proposal_request(intent, settings, currency)
        buy = build_buy_request(intent, settings, currency)

        try:
            future = self.gateway.submit(proposal, buy)
        except ConnectionError as e:
            self._report_failure(intent, e)
            return None

        future.add_done_callback(lambda f: self._on_sent(intent, f))

        record = self._make_record(intent, settings, paper=False)
        self._emit(record)
        self.alerts.add(
            f"AUTO-TRADE: {self._describe(intent)} | stake {settings.trade_amount:.2f} {currency}",
            level="success",
            kind="trade",
            symbol=intent.symbol,
            digit=intent.target_digit,
            cluster_count=intent.cluster_count,
        )
        logger.info(f"[TRADE] Submitted {intent.symbol} DIGITDIFF barrier={intent.target_digit}")
        return record

    def _on_sent(self, intent: TradeIntent, future: Future):
        if future.cancelled():
            self._report_failure(intent, "send cancelled")
            return
        error = future.exception()
        if error is not None:
            self._report_failure(intent, error)

    def _report_failure(self, intent: TradeIntent, error):
        logger.error(f"[TRADE] ❌ {intent.symbol} DIGITDIFF barrier={intent.target_digit} failed: {error}")
        self.alerts.add(
            f"Auto-trade failed for {display_name(intent.symbol)}: {error}",
            level="error",
            kind="trade",
            symbol=intent.symbol,
            digit=intent.target_digit,
            cluster_count=intent.cluster_count,
        )
