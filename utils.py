"""
Shared data models and system state definitions.

This module defines immutable data contracts used across
ingestion, pattern detection, trading, and storage layers,
plus the small thread-safe containers they share.
"""

from dataclasses import dataclass, asdict, fields
from typing import Deque, Dict, List, Optional, Tuple
from collections import deque
import logging
import threading
import time


alert_logger = logging.getLogger("alerts")

DIGIT_DIFFERS = "DIGITDIFF"

DEFAULT_SYMBOLS = ["R_10", "R_25", "R_50", "R_75", "R_100"]

SYMBOL_NAMES = {
    "R_10": "Volatility 10",
    "R_25": "Volatility 25",
    "R_50": "Volatility 50",
    "R_75": "Volatility 75",
    "R_100": "Volatility 100",
    "1HZ10V": "Volatility 10 (1s)",
    "1HZ25V": "Volatility 25 (1s)",
    "1HZ50V": "Volatility 50 (1s)",
    "1HZ75V": "Volatility 75 (1s)",
    "1HZ100V": "Volatility 100 (1s)",
    "RDBEAR": "Bear Market",
    "RDBULL": "Bull Market",
    "JD10": "Jump 10",
    "JD25": "Jump 25",
    "JD75": "Jump 75",
    "JD100": "Jump 100",
}

DEFAULT_WINDOW_SIZE = 50
MIN_WINDOW_SIZE = 3


def display_name(symbol: str) -> str:
    """Human-readable index name used by alerts and the dashboard."""
    return SYMBOL_NAMES.get(symbol, symbol.replace("_", " "))


@dataclass(frozen=True)
class Tick:
    symbol: str
    quote: float
    epoch: int           # exchange timestamp (s)
    receipt_time: float  # local timestamp (s)


@dataclass(frozen=True)
class Trigger:
    """Isolated occurrence of a digit after enough clusters."""
    symbol: str
    digit: int
    cluster_count: int
    position: int        # index of the isolated digit in the current window
    sequence: int        # absolute tick number of the isolated digit
    timestamp: float


@dataclass(frozen=True)
class TradeIntent:
    symbol: str
    target_digit: int
    cluster_count: int
    timestamp: float
    source: str = "auto"


@dataclass(frozen=True)
class AlertEvent:
    message: str
    level: str           # info | warning | success | error
    kind: str            # signal | trade | pattern | system
    timestamp: float
    symbol: Optional[str] = None
    digit: Optional[int] = None
    cluster_count: Optional[int] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class TradeRecord:
    symbol: str
    contract_type: str
    amount: float
    duration: int
    target_digit: int
    is_paper_trade: bool
    timestamp: int       # epoch ms

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class Settings:
    alert_threshold: int = 5
    min_cluster_size: int = 5
    trade_amount: float = 1.0
    trade_duration: int = 1
    auto_trade_enabled: bool = False
    paper_trading_enabled: bool = True
    history_window_size: int = DEFAULT_WINDOW_SIZE
    app_id: str = "1089"
    symbols: Tuple[str, ...] = tuple(DEFAULT_SYMBOLS)
    sound_enabled: bool = True

    def __post_init__(self):
        if not isinstance(self.alert_threshold, int) or self.alert_threshold < 1:
            raise ValueError("alert_threshold must be an integer >= 1")
        if not isinstance(self.min_cluster_size, int) or self.min_cluster_size < 2:
            raise ValueError("min_cluster_size must be an integer >= 2")
        if not self.trade_amount > 0:
            raise ValueError("trade_amount must be > 0")
        if not isinstance(self.trade_duration, int) or self.trade_duration < 1:
            raise ValueError("trade_duration must be an integer >= 1 (ticks)")
        if not isinstance(self.history_window_size, int) or self.history_window_size < MIN_WINDOW_SIZE:
            raise ValueError(f"history_window_size must be an integer >= {MIN_WINDOW_SIZE}")
        if not str(self.app_id).isdigit():
            raise ValueError("app_id must be numeric")

    @classmethod
    def from_dict(cls, data: Optional[Dict], base: Optional["Settings"] = None) -> "Settings":
        """
        Merge a partial mapping over `base` (or the defaults).

        Unknown keys are ignored. Raises ValueError on invalid values.
        """
        merged = asdict(base or cls())
        known = {f.name for f in fields(cls)}
        for key, value in (data or {}).items():
            if key in known:
                merged[key] = value

        try:
            merged["alert_threshold"] = int(merged["alert_threshold"])
            merged["min_cluster_size"] = int(merged["min_cluster_size"])
            merged["trade_amount"] = float(merged["trade_amount"])
            merged["trade_duration"] = int(merged["trade_duration"])
            merged["history_window_size"] = int(merged["history_window_size"])
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid settings value: {e}") from e

        merged["auto_trade_enabled"] = bool(merged["auto_trade_enabled"])
        merged["paper_trading_enabled"] = bool(merged["paper_trading_enabled"])
        merged["sound_enabled"] = bool(merged["sound_enabled"])
        merged["app_id"] = str(merged["app_id"]).strip()

        symbols = merged["symbols"]
        if isinstance(symbols, str):
            symbols = symbols.split(",")
        merged["symbols"] = tuple(
            dict.fromkeys(s.strip().upper() for s in symbols if s and s.strip())
        )
        return cls(**merged)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["symbols"] = list(self.symbols)
        return data


class SettingsHolder:
    """
    Shared read-mostly settings reference.

    Settings are immutable; an update swaps the whole object so readers
    on the tick path always see one consistent version.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or Settings()
        self._lock = threading.Lock()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def set(self, settings: Settings):
        with self._lock:
            self._settings = settings

    def update(self, **changes) -> Settings:
        with self._lock:
            self._settings = Settings.from_dict(changes, base=self._settings)
            return self._settings


@dataclass
class FeedSession:
    """Connection and account state reported by the trading API."""
    connected: bool = False
    authorized: bool = False
    loginid: Optional[str] = None
    currency: str = "USD"
    is_virtual: Optional[bool] = None
    balance: Optional[float] = None
    starting_balance: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def has_account(self) -> bool:
        return self.authorized and self.loginid is not None

    def clear_account(self):
        self.authorized = False
        self.loginid = None
        self.is_virtual = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["has_account"] = self.has_account
        return data


class DigitHistory:
    """
    Bounded ring buffer of trailing digits for one symbol.

    Positions are relative to the current window. `window_start` is the
    absolute tick number held at position 0, so absolute sequence numbers
    can be translated into window positions after eviction.
    """

    def __init__(self, capacity: int = DEFAULT_WINDOW_SIZE):
        if not isinstance(capacity, int) or capacity < MIN_WINDOW_SIZE:
            raise ValueError(f"DigitHistory capacity must be an integer >= {MIN_WINDOW_SIZE}")
        self.capacity = capacity
        self._digits: Deque[int] = deque(maxlen=capacity)
        self._total = 0

    def append(self, digit: int):
        if not isinstance(digit, int) or not 0 <= digit <= 9:
            raise ValueError(f"Digit must be an integer 0-9, got {digit!r}")
        self._digits.append(digit)
        self._total += 1

    def snapshot(self) -> Tuple[int, ...]:
        return tuple(self._digits)

    @property
    def total(self) -> int:
        """Number of digits ever appended."""
        return self._total

    @property
    def window_start(self) -> int:
        return self._total - len(self._digits)

    @property
    def last_sequence(self) -> int:
        return self._total - 1

    def position_of(self, sequence: int) -> int:
        """Window position of an absolute tick number, -1 if outside the window."""
        pos = sequence - self.window_start
        if sequence < 0 or pos < 0 or pos >= len(self._digits):
            return -1
        return pos

    def clear(self):
        self._digits.clear()
        self._total = 0

    def __len__(self) -> int:
        return len(self._digits)

    def __getitem__(self, index: int) -> int:
        return self._digits[index]


class AlertLog:
    """
    Thread-safe bounded log of human-readable alerts.

    Newest alerts are returned first. Every alert is mirrored to the
    `alerts` logger.
    """

    LEVELS = {
        "info": logging.INFO,
        "success": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }

    def __init__(self, maxlen: int = 50):
        self._alerts: Deque[AlertEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def add(
        self,
        message: str,
        level: str = "info",
        kind: str = "system",
        symbol: Optional[str] = None,
        digit: Optional[int] = None,
        cluster_count: Optional[int] = None,
    ) -> AlertEvent:
        event = AlertEvent(
            message=message,
            level=level,
            kind=kind,
            timestamp=time.time(),
            symbol=symbol,
            digit=digit,
            cluster_count=cluster_count,
        )
        with self._lock:
            self._alerts.append(event)
        alert_logger.log(self.LEVELS.get(level, logging.INFO), f"[{kind.upper()}] {message}")
        return event

    def recent(self, limit: Optional[int] = None) -> List[AlertEvent]:
        with self._lock:
            items = list(reversed(self._alerts))
        return items[:limit] if limit else items

    def clear(self):
        with self._lock:
            self._alerts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)
