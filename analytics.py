"""
Real-time digit-pattern detection engine.

Responsibilities:
- Extract the trailing decimal digit of every tick
- Maintain a bounded digit history per symbol
- Track same-digit clusters for each of the ten digits per symbol
- Emit a trigger when an isolated digit follows enough clusters
- Record pattern statistics for the dashboard

This module must never:
- Connect to WebSockets
- Place or persist trades
- Talk to Streamlit
"""

import math
import time
import logging
import threading
from collections import Counter, deque
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from utils import (
    AlertLog,
    DigitHistory,
    Settings,
    SettingsHolder,
    Tick,
    Trigger,
    display_name,
)


logger = logging.getLogger("analytics")


class MalformedTick(ValueError):
    """Quote cannot be turned into a trailing digit."""


# ============================================================
# PURE HELPER FUNCTIONS (no I/O, no side effects)
# ============================================================

# Pattern endings are bucketed by the cluster count reached; 6 means "6 or more"
STAT_BUCKETS = (2, 3, 4, 5, 6)


def precision_from_pip(pip) -> int:
    """
    Number of decimals implied by a pip size (0.001 -> 3, 0.01 -> 2, 1 -> 0).
    """
    try:
        value = Decimal(str(pip))
    except InvalidOperation as e:
        raise ValueError(f"Invalid pip size: {pip!r}") from e
    if not value.is_finite() or value <= 0:
        raise ValueError(f"Invalid pip size: {pip!r}")
    exponent = value.normalize().as_tuple().exponent
    return max(0, -exponent)


def extract_digit(quote, precision: int) -> int:
    """
    Last digit of `quote` when formatted to `precision` decimals.

    Raises MalformedTick for a non-numeric or non-finite quote, or an
    invalid precision.
    """
    if isinstance(precision, bool) or not isinstance(precision, int) or precision < 0:
        raise MalformedTick(f"Invalid precision: {precision!r}")
    try:
        value = float(quote)
    except (TypeError, ValueError) as e:
        raise MalformedTick(f"Unparseable quote: {quote!r}") from e
    if not math.isfinite(value):
        raise MalformedTick(f"Non-finite quote: {quote!r}")

    text = f"{abs(value):.{precision}f}"
    return int(text[-1])


def find_clusters(digits: Sequence[int], digit: int) -> List[Tuple[int, int]]:
    """
    Full rescan: (start, end) of every maximal run of `digit` with length >= 2.
    """
    clusters = []
    i = 0
    n = len(digits)
    while i < n:
        if digits[i] != digit:
            i += 1
            continue
        end = i
        while end + 1 < n and digits[end + 1] == digit:
            end += 1
        if end - i + 1 >= 2:
            clusters.append((i, end))
        i = end + 1
    return clusters


def cluster_sizes(digits: Sequence[int]) -> List[int]:
    """
    Size of the cluster each position belongs to (0 when not in a cluster).
    """
    if len(digits) == 0:
        return []
    arr = np.asarray(digits, dtype=np.int64)
    boundaries = np.flatnonzero(np.diff(arr)) + 1
    starts = np.concatenate(([0], boundaries))
    ends = np.concatenate((boundaries, [len(arr)]))
    lengths = ends - starts
    sizes = np.where(lengths >= 2, lengths, 0)
    return [int(s) for s in np.repeat(sizes, lengths)]


def digit_frequencies(digits: Sequence[int]) -> Dict[str, List[float]]:
    """Occurrence count and share (%) of each digit 0-9 in the window."""
    if len(digits) == 0:
        return {"counts": [0] * 10, "percent": [0.0] * 10}
    counts = np.bincount(np.asarray(digits, dtype=np.int64), minlength=10)
    percent = counts / counts.sum() * 100.0
    return {
        "counts": [int(c) for c in counts],
        "percent": [round(float(p), 2) for p in percent],
    }


# ============================================================
# CLUSTER TRACKER (one per symbol x digit)
# ============================================================

class TrackerState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    WAITING = "waiting"


class ClusterTracker:
    """
    Counts clusters of one digit inside a symbol's history window and
    detects the isolated occurrence that follows enough of them.

    Runs of the digit are tracked incrementally as absolute tick ranges
    and clipped to the window, so the count always equals a full rescan
    of the current window.

    Isolation is confirmed one tick late: the digit before the last one
    is isolated when its predecessor differs and the tick that followed
    it differs too. The trigger is emitted on that following tick.

    `waiting_for_trigger` stays set until the cluster count changes.
    """

    def __init__(self, symbol: str, digit: int):
        if isinstance(digit, bool) or not isinstance(digit, int) or not 0 <= digit <= 9:
            raise ValueError(f"Tracked digit must be 0-9, got {digit!r}")
        self.symbol = symbol
        self.digit = digit

        self.current_cluster_count = 0
        self.last_cluster_end = -1      # absolute tick number
        self.active = False
        self.waiting_for_trigger = False
        self.min_cluster_size: Optional[int] = None

        self._runs: Deque[List[int]] = deque()   # [start, end] absolute, oldest first
        self._window_start = 0
        self._clusters_in_window = 0
        self._latest_cluster_end = -1

    # ---------------- window bookkeeping ----------------

    def _clipped_length(self, run: List[int]) -> int:
        return run[1] - max(run[0], self._window_start) + 1

    def _evict(self, window_start: int):
        while self._window_start < window_start:
            if self._runs and self._runs[0][0] <= self._window_start:
                before = self._clipped_length(self._runs[0])
                if before == 2:
                    self._clusters_in_window -= 1
                elif before == 1:
                    self._runs.popleft()
            self._window_start += 1

        if self._clusters_in_window == 0:
            self._latest_cluster_end = -1

    def _extend(self, sequence: int):
        if self._runs and self._runs[-1][1] == sequence - 1:
            run = self._runs[-1]
            run[1] = sequence
        else:
            run = [sequence, sequence]
            self._runs.append(run)

        length = self._clipped_length(run)
        if length == 2:
            self._clusters_in_window += 1
        if length >= 2:
            self._latest_cluster_end = sequence

    # ---------------- state machine ----------------

    def reset(self):
        self.current_cluster_count = 0
        self.last_cluster_end = -1
        self.active = False
        self.waiting_for_trigger = False

    def clear(self):
        """Forget the window as well as the pattern state."""
        self.reset()
        self._runs.clear()
        self._window_start = 0
        self._clusters_in_window = 0
        self._latest_cluster_end = -1

    def update(self, history: DigitHistory, min_cluster_size: int) -> Optional[Trigger]:
        """
        Advance by the digit just appended to `history`.

        Returns a Trigger when an isolated occurrence is confirmed.
        """
        if len(history) == 0:
            return None
        self.min_cluster_size = min_cluster_size

        self._evict(history.window_start)
        if history[-1] == self.digit:
            self._extend(history.last_sequence)

        fresh = self._clusters_in_window
        if fresh > self.current_cluster_count:
            self.current_cluster_count = fresh
            self.last_cluster_end = self._latest_cluster_end
            self.active = True
            self.waiting_for_trigger = False
        elif fresh < self.current_cluster_count:
            self.reset()
        elif fresh:
            self.last_cluster_end = self._latest_cluster_end

        return self._check_trigger(history, min_cluster_size)

    def _check_trigger(self, history: DigitHistory, min_cluster_size: int) -> Optional[Trigger]:
        if not self.active or self.waiting_for_trigger:
            return None
        if self.current_cluster_count < min_cluster_size:
            return None

        n = len(history)
        if n < 2 or history[-2] != self.digit or history[-1] == self.digit:
            return None
        if n >= 3 and history[-3] == self.digit:
            return None

        candidate = history.last_sequence - 1
        if candidate <= self.last_cluster_end:
            return None

        self.waiting_for_trigger = True
        return Trigger(
            symbol=self.symbol,
            digit=self.digit,
            cluster_count=self.current_cluster_count,
            position=n - 2,
            sequence=candidate,
            timestamp=time.time(),
        )

    @property
    def state(self) -> TrackerState:
        if not self.active:
            return TrackerState.IDLE
        if self.min_cluster_size is not None and self.current_cluster_count >= self.min_cluster_size:
            return TrackerState.WAITING
        return TrackerState.ACCUMULATING

    def last_cluster_end_position(self, history: DigitHistory) -> int:
        if self.last_cluster_end < 0:
            return -1
        return history.position_of(self.last_cluster_end)

    def to_dict(self, history: DigitHistory) -> Dict:
        return {
            "digit": self.digit,
            "clusters": self.current_cluster_count,
            "state": self.state.value,
            "active": self.active,
            "waiting_for_trigger": self.waiting_for_trigger,
            "last_cluster_end": self.last_cluster_end_position(history),
        }


# ============================================================
# PER-SYMBOL STATE AND REGISTRY
# ============================================================

class SymbolState:
    """Digit history plus the ten trackers of one symbol."""

    def __init__(self, symbol: str, window_size: int):
        self.symbol = symbol
        self.history = DigitHistory(window_size)
        self.trackers = [ClusterTracker(symbol, d) for d in range(10)]
        self.last_quote: Optional[float] = None
        self.last_epoch: Optional[int] = None
        self.lock = threading.Lock()

    def reset(self):
        with self.lock:
            self.history.clear()
            for tracker in self.trackers:
                tracker.clear()
            self.last_quote = None
            self.last_epoch = None

    def snapshot(self) -> Dict:
        with self.lock:
            digits = list(self.history.snapshot())
            trackers = [t.to_dict(self.history) for t in self.trackers]
            total = self.history.total
            last_quote = self.last_quote
        patterns = sorted(
            (t for t in trackers if t["active"]),
            key=lambda t: t["clusters"],
            reverse=True,
        )
        return {
            "symbol": self.symbol,
            "last_quote": last_quote,
            "tick_count": total,
            "window": self.history.capacity,
            "digits": digits,
            "cluster_sizes": cluster_sizes(digits),
            "frequencies": digit_frequencies(digits),
            "trackers": trackers,
            "patterns": patterns,
        }


class SymbolRegistry:
    """
    Explicit symbol -> SymbolState mapping owned by the application.
    """

    def __init__(self, window_size: int):
        self.window_size = window_size
        self._states: Dict[str, SymbolState] = {}
        self._lock = threading.Lock()

    def add(self, symbol: str) -> SymbolState:
        with self._lock:
            if symbol not in self._states:
                self._states[symbol] = SymbolState(symbol, self.window_size)
            return self._states[symbol]

    def get(self, symbol: str) -> Optional[SymbolState]:
        with self._lock:
            return self._states.get(symbol)

    def symbols(self) -> List[str]:
        with self._lock:
            return list(self._states.keys())

    def states(self) -> List[SymbolState]:
        with self._lock:
            return list(self._states.values())

    def reset(self):
        for state in self.states():
            state.reset()

    def __contains__(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._states


# ============================================================
# STATISTICS
# ============================================================

class ClusterStatistics:
    """Passive counters; nothing here feeds back into the engine."""

    def __init__(self):
        self._lock = threading.Lock()
        self.pattern_ends: Dict[int, int] = {b: 0 for b in STAT_BUCKETS}
        self.triggers = 0
        self.trades = 0

    def record_pattern_end(self, cluster_count: int):
        if cluster_count < STAT_BUCKETS[0]:
            return
        bucket = min(cluster_count, STAT_BUCKETS[-1])
        with self._lock:
            self.pattern_ends[bucket] += 1

    def record_trigger(self):
        with self._lock:
            self.triggers += 1

    def record_trade(self):
        with self._lock:
            self.trades += 1

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self.pattern_ends.values())

    @property
    def most_common(self) -> Optional[int]:
        with self._lock:
            if not any(self.pattern_ends.values()):
                return None
            return max(self.pattern_ends, key=lambda b: (self.pattern_ends[b], -b))

    def reset(self):
        with self._lock:
            self.pattern_ends = {b: 0 for b in STAT_BUCKETS}
            self.triggers = 0
            self.trades = 0

    def as_dict(self) -> Dict:
        with self._lock:
            ends = {str(b): n for b, n in self.pattern_ends.items()}
            triggers, trades = self.triggers, self.trades
        return {
            "pattern_ends": ends,
            "total": self.total,
            "most_common": self.most_common,
            "triggers": triggers,
            "trades": trades,
        }


# ============================================================
# ENGINE
# ============================================================

class PatternEngine:
    """
    Per-tick pipeline: digit extraction -> history -> ten trackers.

    Everything here is synchronous and in-memory. Ticks for one symbol
    must arrive in feed order; symbols never share state.
    """

    def __init__(
        self,
        settings: SettingsHolder,
        registry: Optional[SymbolRegistry] = None,
        statistics: Optional[ClusterStatistics] = None,
        alerts: Optional[AlertLog] = None,
    ):
        self.settings = settings
        self.registry = registry if registry is not None else SymbolRegistry(settings.get().history_window_size)
        self.statistics = statistics if statistics is not None else ClusterStatistics()
        self.alerts = alerts if alerts is not None else AlertLog()
        self._precision: Dict[str, int] = {}
        self._lock = threading.Lock()
        self.dropped: Counter = Counter()

    # ---------------- configuration ----------------

    def subscribe(self, symbols: Iterable[str]):
        for symbol in symbols:
            self.registry.add(symbol)

    def set_precision(self, symbol: str, precision: int):
        if isinstance(precision, bool) or not isinstance(precision, int) or precision < 0:
            raise ValueError(f"Invalid precision for {symbol}: {precision!r}")
        with self._lock:
            self._precision[symbol] = precision

    def set_pip(self, symbol: str, pip):
        self.set_precision(symbol, precision_from_pip(pip))

    def precision(self, symbol: str) -> Optional[int]:
        with self._lock:
            return self._precision.get(symbol)

    def reset(self):
        """Return every tracker to Idle and forget all histories."""
        self.registry.reset()
        logger.info("[ENGINE] All symbol state reset")

    # ---------------- tick path ----------------

    def _drop(self, tick: Tick, reason: str):
        key = (tick.symbol, reason)
        with self._lock:
            self.dropped[key] += 1
            first = self.dropped[key] == 1
        if first:
            logger.warning(f"[ENGINE] Dropping tick for {tick.symbol}: {reason}")
        else:
            logger.debug(f"[ENGINE] Dropping tick for {tick.symbol}: {reason}")

    def process_tick(self, tick: Tick) -> List[Trigger]:
        state = self.registry.get(tick.symbol)
        if state is None:
            self._drop(tick, "symbol not subscribed")
            return []

        precision = self.precision(tick.symbol)
        if precision is None:
            self._drop(tick, "unknown pip size")
            return []

        try:
            digit = extract_digit(tick.quote, precision)
        except MalformedTick as e:
            logger.debug(f"[ENGINE] {tick.symbol}: {e}")
            self._drop(tick, "malformed quote")
            return []

        settings = self.settings.get()
        triggers: List[Trigger] = []

        with state.lock:
            state.history.append(digit)
            state.last_quote = float(tick.quote)
            state.last_epoch = tick.epoch

            for tracker in state.trackers:
                before = tracker.current_cluster_count
                trigger = tracker.update(state.history, settings.min_cluster_size)
                after = tracker.current_cluster_count
                self._observe(tracker, before, after, settings)
                if trigger is not None:
                    triggers.append(trigger)

        for trigger in triggers:
            self.statistics.record_trigger()
            logger.info(
                f"[ENGINE] Isolated {trigger.digit} on {trigger.symbol} "
                f"after {trigger.cluster_count} clusters (pos {trigger.position})"
            )
        return triggers

    def _observe(self, tracker: ClusterTracker, before: int, after: int, settings: Settings):
        if after > before and after == settings.alert_threshold:
            self.alerts.add(
                f"Digit {tracker.digit} reached {after} clusters on {display_name(tracker.symbol)}",
                level="warning",
                kind="pattern",
                symbol=tracker.symbol,
                digit=tracker.digit,
                cluster_count=after,
            )
        elif after == 0 and before > 0:
            self.statistics.record_pattern_end(before)
            logger.debug(f"[ENGINE] {tracker.symbol} digit {tracker.digit} pattern ended at {before}")

    # ---------------- observability ----------------

    def snapshot(self) -> Dict:
        with self._lock:
            dropped = sum(self.dropped.values())
        symbols = {}
        for state in self.registry.states():
            snap = state.snapshot()
            snap["precision"] = self.precision(state.symbol)
            symbols[state.symbol] = snap
        return {
            "symbols": symbols,
            "statistics": self.statistics.as_dict(),
            "dropped_ticks": dropped,
        }
