"""
Unit tests for the digit-pattern engine.

Tests:
1. Digit extraction and pip precision
2. Digit history window
3. Cluster tracking and isolation triggers
4. Engine drops, alerts and statistics
"""

import random
from collections import deque

import pytest

from analytics import (
    ClusterStatistics,
    ClusterTracker,
    MalformedTick,
    PatternEngine,
    TrackerState,
    cluster_sizes,
    digit_frequencies,
    extract_digit,
    find_clusters,
    precision_from_pip,
)
from utils import DigitHistory, Settings, SettingsHolder, Tick
from conftest import feed, make_tick


def rescan_reference(digits, digit, capacity, min_clusters):
    """
    Same state machine, driven by a full rescan of the window every tick.

    Returns one (cluster_count, last_cluster_end, trigger) entry per tick,
    where trigger is (cluster_count, position) or None.
    """
    window = deque(maxlen=capacity)
    count, last_end, active, waiting = 0, -1, False, False
    trace = []
    for i, d in enumerate(digits):
        window.append(d)
        start = i - len(window) + 1
        clusters = find_clusters(list(window), digit)
        fresh = len(clusters)
        latest = start + clusters[-1][1] if clusters else -1
        if fresh > count:
            count, last_end, active, waiting = fresh, latest, True, False
        elif fresh < count:
            count, last_end, active, waiting = 0, -1, False, False
        elif fresh:
            last_end = latest

        trigger = None
        n = len(window)
        isolated = (
            n >= 2
            and window[-2] == digit
            and window[-1] != digit
            and not (n >= 3 and window[-3] == digit)
        )
        if active and not waiting and count >= min_clusters and isolated and i - 1 > last_end:
            waiting = True
            trigger = (count, n - 2)
        trace.append((count, last_end, trigger))
    return trace


def run_tracker(digits, digit, min_clusters=2, capacity=50):
    """Drive a single tracker; returns (history, tracker, [(index, trigger)])."""
    history = DigitHistory(capacity)
    tracker = ClusterTracker("R_10", digit)
    fired = []
    for i, d in enumerate(digits):
        history.append(d)
        trigger = tracker.update(history, min_clusters)
        if trigger is not None:
            fired.append((i, trigger))
    return history, tracker, fired


# ============================================================================
# Digit extraction
# ============================================================================


class TestExtractDigit:
    """Tests for trailing digit extraction."""

    def test_uses_precision_padding(self):
        """Trailing zeros dropped by float repr still count."""
        assert extract_digit(1234.5, 2) == 0
        assert extract_digit(1234.57, 2) == 7
        assert extract_digit(6543.123, 3) == 3

    def test_zero_precision(self):
        assert extract_digit(1235.0, 0) == 5

    def test_string_quote(self):
        assert extract_digit("987.64", 2) == 4

    def test_negative_quote_uses_magnitude(self):
        assert extract_digit(-12.34, 2) == 4

    @pytest.mark.parametrize("quote", [None, "abc", float("nan"), float("inf")])
    def test_malformed_quote(self, quote):
        with pytest.raises(MalformedTick):
            extract_digit(quote, 2)

    def test_invalid_precision(self):
        with pytest.raises(MalformedTick):
            extract_digit(1.23, -1)


class TestPrecisionFromPip:
    """Tests for pip size to decimal count."""

    @pytest.mark.parametrize("pip,expected", [(0.001, 3), (0.01, 2), ("0.0001", 4), (1, 0)])
    def test_decimals(self, pip, expected):
        assert precision_from_pip(pip) == expected

    @pytest.mark.parametrize("pip", [0, -0.01, "x"])
    def test_invalid(self, pip):
        with pytest.raises(ValueError):
            precision_from_pip(pip)


# ============================================================================
# Digit history
# ============================================================================


class TestDigitHistory:
    """Tests for the bounded digit window."""

    def test_evicts_oldest(self):
        history = DigitHistory(3)
        for d in [1, 2, 3, 4]:
            history.append(d)
        assert history.snapshot() == (2, 3, 4)
        assert history.total == 4
        assert history.window_start == 1
        assert history.last_sequence == 3

    def test_position_of(self):
        history = DigitHistory(3)
        for d in [1, 2, 3, 4]:
            history.append(d)
        assert history.position_of(0) == -1
        assert history.position_of(1) == 0
        assert history.position_of(3) == 2
        assert history.position_of(4) == -1

    def test_rejects_bad_digit(self):
        history = DigitHistory(3)
        with pytest.raises(ValueError):
            history.append(10)

    def test_minimum_capacity(self):
        with pytest.raises(ValueError):
            DigitHistory(2)


# ============================================================================
# Pure helpers
# ============================================================================


class TestClusterHelpers:
    """Tests for full-rescan helpers."""

    def test_find_clusters(self):
        digits = [7, 7, 5, 7, 7, 7, 9, 7]
        assert find_clusters(digits, 7) == [(0, 1), (3, 5)]
        assert find_clusters(digits, 5) == []

    def test_cluster_sizes(self):
        assert cluster_sizes([1, 1, 2, 3, 3, 3]) == [2, 2, 0, 3, 3, 3]
        assert cluster_sizes([]) == []

    def test_digit_frequencies(self):
        freq = digit_frequencies([1, 1, 2, 3])
        assert freq["counts"][1] == 2
        assert freq["percent"][1] == 50.0
        assert sum(freq["counts"]) == 4


# ============================================================================
# Cluster tracker
# ============================================================================


class TestClusterTracker:
    """Tests for the per-digit pattern state machine."""

    def test_cluster_counts(self):
        """A run of any length >= 2 is exactly one cluster."""
        digits = [7, 7, 3, 3, 3, 7, 7]
        _, sevens, _ = run_tracker(digits, 7)
        _, threes, _ = run_tracker(digits, 3)
        assert sevens.current_cluster_count == 2
        assert threes.current_cluster_count == 1

    def test_full_eviction_sequence(self):
        history, ones, _ = run_tracker([1, 1, 2, 2, 2, 9, 9, 9, 9, 9], 1, capacity=5)
        _, nines, _ = run_tracker([1, 1, 2, 2, 2, 9, 9, 9, 9, 9], 9, capacity=5)
        assert history.snapshot() == (9, 9, 9, 9, 9)
        assert ones.state == TrackerState.IDLE
        assert nines.current_cluster_count == 1

    def test_isolated_digit_after_clusters(self):
        """Trigger is confirmed on the tick after the isolated digit."""
        _, tracker, fired = run_tracker([7, 7, 5, 7, 7, 9, 7, 3], 7)
        assert len(fired) == 1
        index, trigger = fired[0]
        assert index == 7
        assert trigger.digit == 7
        assert trigger.cluster_count == 2
        assert trigger.position == 6
        assert trigger.sequence == 6
        assert tracker.waiting_for_trigger is True

    def test_no_trigger_before_confirmation(self):
        _, _, fired = run_tracker([7, 7, 5, 7, 7, 9, 7], 7)
        assert fired == []

    def test_cluster_end_is_not_isolated(self):
        """The last digit of a cluster never counts as isolated."""
        _, _, fired = run_tracker([7, 7, 5, 7, 7, 9], 7)
        assert fired == []

    def test_below_minimum_no_trigger(self):
        _, tracker, fired = run_tracker([7, 7, 5, 7, 7, 9, 7, 3], 7, min_clusters=3)
        assert fired == []
        assert tracker.state == TrackerState.ACCUMULATING

    def test_no_second_trigger_while_waiting(self):
        digits = [7, 7, 5, 7, 7, 9, 7, 3, 7, 1, 7, 4]
        _, _, fired = run_tracker(digits, 7)
        assert len(fired) == 1

    def test_new_cluster_rearms_trigger(self):
        digits = [7, 7, 5, 7, 7, 9, 7, 3, 7, 1, 7, 7, 2, 7, 4]
        _, _, fired = run_tracker(digits, 7)
        assert [i for i, _ in fired] == [7, 14]
        second = fired[1][1]
        assert second.cluster_count == 3
        assert second.position == 13

    def test_eviction_resets_to_idle(self):
        """Losing the only cluster to eviction returns the tracker to Idle."""
        history, tracker, _ = run_tracker([1, 1, 2, 2, 2, 9], 1, capacity=5)
        assert history.snapshot() == (1, 2, 2, 2, 9)
        assert tracker.current_cluster_count == 0
        assert tracker.state == TrackerState.IDLE
        assert tracker.last_cluster_end == -1

    def test_lower_count_readopted_next_tick(self):
        _, tracker, _ = run_tracker([1, 1, 2, 1, 1, 3], 1, capacity=5)
        assert tracker.current_cluster_count == 0
        _, tracker, _ = run_tracker([1, 1, 2, 1, 1, 3, 4], 1, capacity=5)
        assert tracker.current_cluster_count == 1
        assert tracker.active is True

    def test_waiting_state(self):
        _, tracker, _ = run_tracker([4, 4, 0, 4, 4], 4)
        assert tracker.state == TrackerState.WAITING

    def test_last_cluster_end_position(self):
        history, tracker, _ = run_tracker([7, 7, 5, 7, 7, 9], 7)
        assert tracker.last_cluster_end_position(history) == 4
        assert tracker.to_dict(history)["clusters"] == 2

    def test_rejects_bad_digit(self):
        with pytest.raises(ValueError):
            ClusterTracker("R_10", 10)

    def test_incremental_count_matches_rescan(self):
        """Cluster count inside the window always equals a full rescan."""
        rng = random.Random(7)
        history = DigitHistory(8)
        trackers = [ClusterTracker("R_10", d) for d in range(10)]
        for _ in range(2000):
            history.append(rng.choice([1, 1, 1, 2, 2, 3]))
            window = history.snapshot()
            for tracker in trackers:
                tracker.update(history, 2)
                assert tracker._clusters_in_window == len(find_clusters(window, tracker.digit))

    @pytest.mark.parametrize("seed,capacity,min_clusters", [(1, 8, 2), (2, 16, 3), (3, 9, 2), (4, 20, 2)])
    def test_trigger_timing_matches_rescan(self, seed, capacity, min_clusters):
        """Trigger ticks, counts and cluster ends agree with a full rescan, eviction included."""
        rng = random.Random(seed)
        digits = [rng.choice([1, 1, 1, 2, 2, 3]) for _ in range(3000)]
        fired = 0
        for digit in (1, 2, 3):
            history = DigitHistory(capacity)
            tracker = ClusterTracker("R_10", digit)
            expected = rescan_reference(digits, digit, capacity, min_clusters)
            for i, d in enumerate(digits):
                history.append(d)
                trigger = tracker.update(history, min_clusters)
                count, last_end, want = expected[i]
                got = None if trigger is None else (trigger.cluster_count, trigger.position)
                assert (i, got) == (i, want)
                assert tracker.current_cluster_count == count
                assert tracker.last_cluster_end == last_end
                fired += trigger is not None
        assert fired > 0


# ============================================================================
# Engine
# ============================================================================


class TestPatternEngine:
    """Tests for the per-tick engine."""

    def test_trigger_through_engine(self, engine):
        fired = feed(engine, "R_10", [7, 7, 5, 7, 7, 9, 7, 3])
        assert len(fired) == 1
        assert fired[0][1].symbol == "R_10"
        assert engine.statistics.triggers == 1

    def test_unsubscribed_symbol_dropped(self, engine):
        assert engine.process_tick(make_tick("R_99", 1)) == []
        assert engine.dropped[("R_99", "symbol not subscribed")] == 1

    def test_unknown_pip_dropped(self, settings):
        engine = PatternEngine(settings)
        engine.subscribe(["R_25"])
        assert engine.process_tick(make_tick("R_25", 1)) == []
        assert engine.dropped[("R_25", "unknown pip size")] == 1

    def test_malformed_quote_dropped(self, engine):
        tick = Tick(symbol="R_10", quote="n/a", epoch=0, receipt_time=0.0)
        assert engine.process_tick(tick) == []
        assert engine.dropped[("R_10", "malformed quote")] == 1
        assert len(engine.registry.get("R_10").history) == 0

    def test_symbols_are_independent(self, engine):
        engine.subscribe(["R_25"])
        engine.set_pip("R_25", 0.001)
        feed(engine, "R_10", [7, 7, 5, 7, 7])
        assert engine.registry.get("R_25").trackers[7].current_cluster_count == 0

    def test_interleaved_symbols_do_not_mix(self, engine):
        engine.subscribe(["R_25"])
        engine.set_pip("R_25", 0.01)
        fired = []
        for digit in [7, 7, 5, 7, 7, 9, 7, 3]:
            fired += engine.process_tick(make_tick("R_10", digit))
            fired += engine.process_tick(make_tick("R_25", 7))
        assert [t.symbol for t in fired] == ["R_10"]
        assert engine.registry.get("R_25").trackers[7].current_cluster_count == 1

    def test_pattern_alert_at_threshold(self, engine, alerts):
        feed(engine, "R_10", [7, 7, 5, 7, 7, 2, 7, 7])
        pattern_alerts = [a for a in alerts.recent() if a.kind == "pattern"]
        assert len(pattern_alerts) == 1
        assert pattern_alerts[0].digit == 7
        assert pattern_alerts[0].cluster_count == 3

    def test_pattern_end_recorded(self, alerts):
        settings = SettingsHolder(Settings(min_cluster_size=2, history_window_size=5))
        engine = PatternEngine(settings, alerts=alerts)
        engine.subscribe(["R_10"])
        engine.set_precision("R_10", 2)
        feed(engine, "R_10", [1, 1, 2, 1, 1, 3])
        assert engine.statistics.pattern_ends[2] == 1
        assert engine.statistics.total == 1

    def test_reset_clears_history(self, engine):
        feed(engine, "R_10", [7, 7, 5])
        engine.reset()
        state = engine.registry.get("R_10")
        assert len(state.history) == 0
        assert state.trackers[7].current_cluster_count == 0
        assert engine.precision("R_10") == 2

    def test_snapshot(self, engine):
        feed(engine, "R_10", [7, 7, 5])
        snap = engine.snapshot()
        r10 = snap["symbols"]["R_10"]
        assert r10["digits"] == [7, 7, 5]
        assert r10["cluster_sizes"] == [2, 2, 0]
        assert r10["precision"] == 2
        assert r10["patterns"][0]["digit"] == 7
        assert snap["dropped_ticks"] == 0


class TestClusterStatistics:
    """Tests for pattern-end buckets."""

    def test_buckets_and_most_common(self):
        stats = ClusterStatistics()
        for count in [2, 3, 3, 9, 1]:
            stats.record_pattern_end(count)
        assert stats.pattern_ends == {2: 1, 3: 2, 4: 0, 5: 0, 6: 1}
        assert stats.total == 4
        assert stats.most_common == 3

    def test_reset(self):
        stats = ClusterStatistics()
        stats.record_pattern_end(4)
        stats.record_trigger()
        stats.reset()
        assert stats.as_dict()["total"] == 0
        assert stats.triggers == 0
        assert stats.most_common is None
