"""
Monitor pipeline: feed messages -> pattern engine -> signals -> trades.

Owns all runtime state of one monitoring session (settings reference,
engine, dispatcher, executor, account session, alerts) and exposes a
JSON-serialisable snapshot for the dashboard.
"""

import time
import logging
import threading
from typing import Callable, Dict, List, Optional

from analytics import ClusterStatistics, PatternEngine, SymbolRegistry
from ingest import FeedHandler
from signals import SignalDispatcher
from trading import TradeExecutor
from utils import AlertLog, FeedSession, SettingsHolder, Tick, TradeIntent, TradeRecord, display_name


logger = logging.getLogger("monitor")


class MonitorPipeline(FeedHandler):
    """
    Feed handler wiring the engine to the dispatcher and executor.

    `gateway` is anything with `submit(*payloads) -> Future` (normally the
    IngestionManager). It may be attached after construction.
    """

    def __init__(
        self,
        settings: SettingsHolder,
        gateway=None,
        record_sink: Optional[Callable[[TradeRecord], None]] = None,
        has_token: bool = False,
    ):
        self.settings = settings
        self.has_token = has_token
        self.alerts = AlertLog()
        self.statistics = ClusterStatistics()
        self.session = FeedSession()
        self._session_lock = threading.Lock()

        current = settings.get()
        self.registry = SymbolRegistry(current.history_window_size)
        self.engine = PatternEngine(
            settings,
            registry=self.registry,
            statistics=self.statistics,
            alerts=self.alerts,
        )
        self.engine.subscribe(current.symbols)

        self.executor = TradeExecutor(
            settings,
            gateway=gateway,
            alerts=self.alerts,
            session=self.session,
            record_sink=record_sink,
        )
        self.dispatcher = SignalDispatcher(
            settings,
            executor=self.executor,
            alerts=self.alerts,
            is_connected=lambda: self.session.connected,
            has_account=lambda: self.session.has_account,
            statistics=self.statistics,
        )
        self.alerts.add("System ready - waiting for patterns", level="info")

    def attach_gateway(self, gateway):
        self.executor.gateway = gateway

    # ---------------- feed callbacks ----------------

    def on_connection(self, connected: bool):
        with self._session_lock:
            was_connected = self.session.connected
            self.session.connected = connected
            if not connected:
                self.session.clear_account()
        if connected:
            # History is not resumed across reconnects
            self.engine.reset()
            self.alerts.add("Connected to Deriv WebSocket", level="success")
        elif was_connected:
            self.alerts.add("WebSocket connection closed", level="warning")

    def on_active_symbols(self, symbols: List[Dict]):
        wanted = set(self.registry.symbols())
        registered = 0
        for item in symbols:
            symbol = item.get("symbol")
            if symbol not in wanted or item.get("pip") is None:
                continue
            try:
                self.engine.set_pip(symbol, item["pip"])
                registered += 1
            except ValueError as e:
                logger.warning(f"[MONITOR] Bad pip size for {symbol}: {e}")
        missing = wanted - {s for s in wanted if self.engine.precision(s) is not None}
        logger.info(f"[MONITOR] Pip sizes registered for {registered} symbols")
        if missing:
            self.alerts.add(
                f"No pip size for {', '.join(sorted(missing))}; their ticks will be ignored",
                level="warning",
            )

    def on_tick(self, tick: Tick):
        for trigger in self.engine.process_tick(tick):
            self.dispatcher.dispatch(trigger)

    def on_authorize(self, account: Dict):
        with self._session_lock:
            self.session.authorized = True
            self.session.loginid = account.get("loginid")
            self.session.currency = account.get("currency") or "USD"
            self.session.is_virtual = bool(account.get("is_virtual"))
            balance = account.get("balance")
            if balance is not None:
                self.session.balance = float(balance)
                if self.session.starting_balance is None:
                    self.session.starting_balance = float(balance)
        kind = "demo" if self.session.is_virtual else "real"
        self.alerts.add(f"Successfully authorized ({self.session.loginid}, {kind})", level="success")

    def on_balance(self, balance: Dict):
        if balance.get("balance") is None:
            return
        with self._session_lock:
            self.session.balance = float(balance["balance"])
            if self.session.starting_balance is None:
                self.session.starting_balance = self.session.balance
            if balance.get("currency"):
                self.session.currency = balance["currency"]

    def on_proposal(self, proposal: Dict):
        logger.debug(f"[MONITOR] Proposal {proposal.get('id')} ask={proposal.get('ask_price')}")

    def on_buy(self, buy: Dict):
        self.alerts.add(
            f"Contract {buy.get('contract_id')} bought for {buy.get('buy_price')} "
            f"({buy.get('longcode') or 'DIGITDIFF'})",
            level="success",
            kind="trade",
        )

    def on_api_error(self, msg_type: Optional[str], error: Dict, echo: Dict):
        message = error.get("message") or error.get("code") or "unknown error"
        with self._session_lock:
            self.session.last_error = message

        if msg_type == "authorize":
            self.alerts.add(f"Authorization error: {message}", level="error")
        elif msg_type in ("buy", "proposal"):
            params = echo.get("parameters") or echo
            symbol = params.get("symbol")
            where = f" on {display_name(symbol)}" if symbol else ""
            self.alerts.add(f"Order rejected{where}: {message}", level="error", kind="trade", symbol=symbol)
        else:
            self.alerts.add(f"API Error: {message}", level="error")

    # ---------------- operator actions ----------------

    def manual_trade(self, symbol: str, digit: int) -> bool:
        """Hand-picked DIGITDIFF; skips the auto-trade gate but needs a connected account, paper or live."""
        if symbol not in self.registry or not isinstance(digit, int) or not 0 <= digit <= 9:
            self.alerts.add(f"Invalid manual trade request: {symbol} / {digit}", level="error", kind="trade")
            return False
        with self._session_lock:
            ready = self.session.connected and self.session.has_account
        if not ready:
            self.alerts.add(
                "Cannot execute trade: not connected or no account selected",
                level="error",
                kind="trade",
                symbol=symbol,
            )
            return False
        intent = TradeIntent(
            symbol=symbol,
            target_digit=digit,
            cluster_count=0,
            timestamp=time.time(),
            source="manual",
        )
        return self.executor.execute(intent) is not None

    def update_settings(self, changes: Dict):
        new = self.settings.update(**changes)
        self.alerts.add(
            f"Settings updated (auto-trade {'on' if new.auto_trade_enabled else 'off'}, "
            f"paper {'on' if new.paper_trading_enabled else 'off'}, min clusters {new.min_cluster_size})",
            level="info",
        )
        return new

    def reset_statistics(self):
        self.statistics.reset()
        self.alerts.add("Statistics reset", level="info")

    # ---------------- observability ----------------

    def pnl(self) -> Dict:
        with self._session_lock:
            start, current = self.session.starting_balance, self.session.balance
        if start is None or current is None:
            return {"starting_balance": start, "current_balance": current, "net": None, "pct": None}
        net = current - start
        pct = (net / start * 100.0) if start else 0.0
        return {"starting_balance": start, "current_balance": current, "net": net, "pct": pct}

    def snapshot(self) -> Dict:
        snap = self.engine.snapshot()
        with self._session_lock:
            session = self.session.to_dict()
        session["has_token"] = self.has_token
        snap.update({
            "timestamp": time.time(),
            "session": session,
            "pnl": self.pnl(),
            "alerts": [a.to_dict() for a in self.alerts.recent(20)],
            "settings": self.settings.get().to_dict(),
        })
        return snap
