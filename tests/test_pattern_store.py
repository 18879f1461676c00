"""Tests for the Pattern Store."""

from datetime import datetime, timedelta

import pytest

from popguard.errors import PersistenceFailure
from popguard.learning import rules
from popguard.models.characteristics import Characteristics, Dimensions
from popguard.models.config import EngineConfig
from popguard.models.pattern import PatternDecision
from popguard.patterns.store import PatternStore
from popguard.persistence.adapters import PATTERNS_KEY, InMemoryPersistenceAdapter


def _make_characteristics(**overrides) -> Characteristics:
    data = dict(
        has_close_button=True,
        contains_ads=True,
        has_external_links=False,
        is_modal=True,
        z_index=1000,
        dimensions=Dimensions(width=400, height=300),
    )
    data.update(overrides)
    return Characteristics(**data)


def _add_pattern(store, domain, characteristics, decision=PatternDecision.CLOSE,
                 confidence=0.5, last_seen=None, occurrences=1):
    now = last_seen or datetime.utcnow()
    pattern = rules.create_pattern(domain, characteristics, decision, store.config, now)
    pattern.confidence = confidence
    pattern.occurrences = occurrences
    store._patterns[pattern.pattern_id] = pattern
    return pattern


class FailingAdapter:
    async def get(self, keys):
        raise OSError("storage unavailable")

    async def set(self, mapping):
        raise OSError("quota exceeded")

    async def remove(self, keys):
        raise OSError("storage unavailable")


class TestMatching:
    def setup_method(self):
        self.store = PatternStore(EngineConfig())

    def test_no_match_on_empty_store(self):
        assert self.store.find_best_match("example.com", _make_characteristics()) is None

    def test_matching_is_scoped_to_domain(self):
        _add_pattern(self.store, "a.com", _make_characteristics())
        assert self.store.find_best_match("b.com", _make_characteristics()) is None
        assert self.store.find_best_match("a.com", _make_characteristics()) is not None

    def test_below_threshold_does_not_match(self):
        _add_pattern(self.store, "a.com", _make_characteristics())
        different = _make_characteristics(
            contains_ads=False, has_external_links=True, is_modal=False
        )
        assert self.store.find_best_match("a.com", different) is None

    def test_highest_score_wins(self):
        close = _add_pattern(self.store, "a.com", _make_characteristics())
        _add_pattern(self.store, "a.com", _make_characteristics(z_index=1090))
        assert self.store.find_best_match("a.com", _make_characteristics()) is close

    def test_ties_prefer_confidence_then_recency(self):
        now = datetime.utcnow()
        _add_pattern(self.store, "a.com", _make_characteristics(), confidence=0.5,
                     last_seen=now)
        strong = _add_pattern(self.store, "a.com", _make_characteristics(),
                              confidence=0.8, last_seen=now - timedelta(hours=1))
        assert self.store.find_best_match("a.com", _make_characteristics()) is strong

        recent = _add_pattern(self.store, "a.com", _make_characteristics(),
                              confidence=0.8, last_seen=now)
        assert self.store.find_best_match("a.com", _make_characteristics()) is recent


class TestUpsert:
    def setup_method(self):
        self.store = PatternStore(EngineConfig(max_patterns=3))

    def test_creates_pattern_with_initial_confidence(self):
        pattern = self.store.upsert("a.com", _make_characteristics(), PatternDecision.CLOSE)
        assert pattern.confidence == 0.5
        assert pattern.occurrences == 1
        assert self.store.size() == 1
        assert self.store.dirty

    def test_reinforces_matching_pattern(self):
        first = self.store.upsert("a.com", _make_characteristics(), PatternDecision.CLOSE)
        second = self.store.upsert("a.com", _make_characteristics(), PatternDecision.CLOSE)
        assert second is first
        assert first.confidence == pytest.approx(0.6)
        assert first.occurrences == 2
        assert self.store.size() == 1

    def test_capacity_never_exceeded_and_new_pattern_survives(self):
        old = datetime.utcnow() - timedelta(days=5)
        for i in range(3):
            self.store.upsert(f"site{i}.com", _make_characteristics(), PatternDecision.CLOSE,
                              now=old + timedelta(hours=i))

        newest = self.store.upsert("new.com", _make_characteristics(), PatternDecision.KEEP)
        assert self.store.size() == 3
        assert self.store.get(newest.pattern_id) is not None
        assert self.store.by_domain("site0.com") == []


class TestDecayAndCleanup:
    def setup_method(self):
        self.store = PatternStore(EngineConfig(max_patterns=10))
        self.now = datetime.utcnow()

    def test_confidence_decays_with_age(self):
        pattern = _add_pattern(self.store, "a.com", _make_characteristics(),
                               confidence=0.5, last_seen=self.now - timedelta(days=10))
        report = self.store.decay_and_cleanup(self.now)

        assert report.decayed == 1
        assert pattern.confidence == pytest.approx(0.4)
        assert pattern.last_decayed_at == self.now

    def test_decay_is_not_applied_twice_for_same_interval(self):
        pattern = _add_pattern(self.store, "a.com", _make_characteristics(),
                               confidence=0.5, last_seen=self.now - timedelta(days=10))
        self.store.decay_and_cleanup(self.now)
        self.store.decay_and_cleanup(self.now)
        assert pattern.confidence == pytest.approx(0.4)

    def test_frequent_cleanups_accumulate_decay(self):
        start = self.now - timedelta(days=1)
        pattern = _add_pattern(self.store, "a.com", _make_characteristics(),
                               confidence=0.5, last_seen=start)

        passes = 10000
        for second in range(1, passes + 1):
            self.store.decay_and_cleanup(start + timedelta(seconds=second))

        # One second per pass: far below the rounding step of a single decay
        expected = 0.5 - 0.01 * passes / 86400.0
        assert pattern.confidence == pytest.approx(expected, abs=1e-6)
        assert pattern.confidence < 0.5

    def test_scheduled_cleanups_match_single_pass(self):
        start = self.now - timedelta(days=2)
        pattern = _add_pattern(self.store, "a.com", _make_characteristics(),
                               confidence=0.5, last_seen=start)

        for minute in range(5, 2 * 24 * 60 + 1, 5):
            self.store.decay_and_cleanup(start + timedelta(minutes=minute))

        assert pattern.confidence == pytest.approx(0.48, abs=1e-6)

    def test_expired_patterns_removed(self):
        stale = _add_pattern(self.store, "a.com", _make_characteristics(),
                             confidence=0.9, last_seen=self.now - timedelta(days=31))
        report = self.store.decay_and_cleanup(self.now)

        assert report.removed_expired == [stale.pattern_id]
        assert self.store.size() == 0

    def test_low_confidence_patterns_removed(self):
        weak = _add_pattern(self.store, "a.com", _make_characteristics(),
                            confidence=0.15, last_seen=self.now - timedelta(days=10))
        report = self.store.decay_and_cleanup(self.now)

        assert report.removed_low_confidence == [weak.pattern_id]
        assert self.store.get(weak.pattern_id) is None

    def test_evicts_lowest_retention_score(self):
        store = PatternStore(EngineConfig(max_patterns=2))
        weak = _add_pattern(store, "a.com", _make_characteristics(), confidence=0.2)
        _add_pattern(store, "b.com", _make_characteristics(), confidence=0.9, occurrences=5)
        _add_pattern(store, "c.com", _make_characteristics(), confidence=0.7, occurrences=3)

        report = store.decay_and_cleanup(self.now)
        assert report.evicted == [weak.pattern_id]
        assert store.size() == 2

    def test_confidence_stays_in_bounds(self):
        _add_pattern(self.store, "a.com", _make_characteristics(),
                     confidence=1.0, last_seen=self.now - timedelta(days=1))
        self.store.decay_and_cleanup(self.now)
        for pattern in self.store.all():
            assert 0.1 <= pattern.confidence <= 1.0


class TestPersistenceLifecycle:
    @pytest.mark.asyncio
    async def test_flush_and_reload(self):
        adapter = InMemoryPersistenceAdapter()
        store = PatternStore(EngineConfig(), adapter)
        created = store.upsert("a.com", _make_characteristics(), PatternDecision.CLOSE)
        assert await store.flush() is True
        assert not store.dirty

        reloaded = PatternStore(EngineConfig(), adapter)
        assert await reloaded.init() == 1
        pattern = reloaded.get(created.pattern_id)
        assert pattern.user_decision == PatternDecision.CLOSE
        assert pattern.characteristics == created.characteristics

    @pytest.mark.asyncio
    async def test_malformed_records_are_skipped(self):
        now = datetime.utcnow()
        good = rules.create_pattern(
            "a.com", _make_characteristics(), PatternDecision.KEEP, EngineConfig(), now
        )
        adapter = InMemoryPersistenceAdapter({
            PATTERNS_KEY: {
                good.pattern_id: good.to_record(),
                "broken": {"domain": "a.com", "confidence": "high"},
                "not_a_record": 42,
            }
        })
        store = PatternStore(EngineConfig(), adapter)

        assert await store.init() == 1
        assert store.get(good.pattern_id) is not None

    @pytest.mark.asyncio
    async def test_records_without_created_at_fall_back_to_last_seen(self):
        record = rules.create_pattern(
            "a.com", _make_characteristics(), PatternDecision.CLOSE,
            EngineConfig(), datetime.utcnow(),
        ).to_record()
        del record["createdAt"]
        adapter = InMemoryPersistenceAdapter({PATTERNS_KEY: [record]})
        store = PatternStore(EngineConfig(), adapter)

        assert await store.init() == 1
        pattern = store.all()[0]
        assert pattern.created_at == pattern.last_seen

    @pytest.mark.asyncio
    async def test_unavailable_adapter_starts_empty(self):
        store = PatternStore(EngineConfig(), FailingAdapter())
        assert await store.init() == 0
        assert isinstance(store.last_error, PersistenceFailure)

    @pytest.mark.asyncio
    async def test_flush_failure_keeps_memory_authoritative(self):
        store = PatternStore(EngineConfig(), FailingAdapter())
        store.upsert("a.com", _make_characteristics(), PatternDecision.CLOSE)

        assert await store.flush() is False
        assert store.dirty
        assert store.size() == 1
        assert store.last_error.operation == "flush"
