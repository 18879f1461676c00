"""
Pattern Store — owns the collection of learned decision patterns.

Updated by: LearningUpdater (the single writer)
Queried by: LearningUpdater + SuggestionEngine

Behavioral Contract:
- Matching is always scoped to one domain
- Size never exceeds max_patterns after a mutation
- Every pattern's confidence stays within [0.1, 1.0]
- In-memory state is authoritative; flush() is best-effort
"""

import logging
import math
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import ValidationError

from popguard.errors import MalformedPattern, PersistenceFailure
from popguard.learning import rules
from popguard.models.characteristics import Characteristics
from popguard.models.config import EngineConfig
from popguard.models.pattern import CleanupReport, Pattern, PatternDecision
from popguard.persistence.adapters import PATTERNS_KEY, PersistenceAdapter
from popguard.similarity.scorer import similarity

logger = logging.getLogger(__name__)


class PatternStore:
    """
    Arena of patterns keyed by pattern id, with an optional persistence
    adapter behind it.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        adapter: Optional[PersistenceAdapter] = None,
    ):
        self.config = config or EngineConfig()
        self.adapter = adapter
        self._patterns: Dict[str, Pattern] = {}
        self._dirty = False
        self.last_error: Optional[PersistenceFailure] = None

    # --- Queries ---

    def get(self, pattern_id: str) -> Optional[Pattern]:
        return self._patterns.get(pattern_id)

    def all(self) -> List[Pattern]:
        return list(self._patterns.values())

    def by_domain(self, domain: str) -> List[Pattern]:
        return [p for p in self._patterns.values() if p.domain == domain]

    def size(self) -> int:
        return len(self._patterns)

    @property
    def dirty(self) -> bool:
        """True when in-memory state has changes not yet flushed."""
        return self._dirty

    def score_candidates(
        self, domain: str, characteristics: Characteristics
    ) -> List[tuple]:
        """(similarity, pattern) for every pattern recorded under the domain."""
        return [
            (similarity(p.characteristics, characteristics), p)
            for p in self.by_domain(domain)
        ]

    def find_best_match(
        self,
        domain: str,
        characteristics: Characteristics,
        threshold: Optional[float] = None,
    ) -> Optional[Pattern]:
        """
        Highest-scoring pattern on the domain with score >= threshold.
        Ties go to higher confidence, then the most recently seen.
        """
        if threshold is None:
            threshold = self.config.similarity_threshold

        candidates = [
            (score, p)
            for score, p in self.score_candidates(domain, characteristics)
            if score >= threshold
        ]
        if not candidates:
            return None

        _, best = max(
            candidates,
            key=lambda c: (c[0], c[1].confidence, c[1].last_seen),
        )
        return best

    # --- Mutations ---

    def upsert(
        self,
        domain: str,
        characteristics: Characteristics,
        decision: PatternDecision,
        now: Optional[datetime] = None,
    ) -> Pattern:
        """
        Reinforce the matching pattern or create a new one.
        `decision` must be close or keep; anything else never reaches the store.
        """
        decision = PatternDecision(decision)
        if now is None:
            now = datetime.utcnow()

        match = self.find_best_match(domain, characteristics)
        if match is not None:
            previous = match.user_decision
            relabeled = rules.reinforce(
                match, decision, characteristics, self.config, now
            )
            if relabeled:
                logger.info(
                    "Pattern %s relabeled %s -> %s on %s",
                    match.pattern_id, previous.value, match.user_decision.value, domain,
                )
            else:
                logger.debug(
                    "Pattern %s updated: confidence=%.2f occurrences=%d",
                    match.pattern_id, match.confidence, match.occurrences,
                )
            self._dirty = True
            return match

        pattern = rules.create_pattern(
            domain, characteristics, decision, self.config, now
        )
        self._patterns[pattern.pattern_id] = pattern
        self._dirty = True
        logger.debug("Pattern %s created on %s (%s)", pattern.pattern_id, domain, decision.value)
        self._enforce_capacity(now, protect=pattern.pattern_id)
        return pattern

    def remove(self, pattern_id: str) -> bool:
        if pattern_id in self._patterns:
            del self._patterns[pattern_id]
            self._dirty = True
            return True
        return False

    def clear(self) -> int:
        """Drop every pattern. Returns how many were removed."""
        count = len(self._patterns)
        self._patterns.clear()
        self._dirty = True
        return count

    def decay_and_cleanup(self, now: Optional[datetime] = None) -> CleanupReport:
        """
        Apply age decay, drop weak and stale patterns, then evict the
        lowest-scoring patterns until the store fits max_patterns.
        """
        if now is None:
            now = datetime.utcnow()

        report = CleanupReport()
        max_age = self.config.max_age_seconds

        for pattern in list(self._patterns.values()):
            if pattern.age_seconds(now) > max_age:
                del self._patterns[pattern.pattern_id]
                report.removed_expired.append(pattern.pattern_id)
                continue

            confidence = self._decayed_confidence(pattern, now)
            if confidence < self.config.min_confidence:
                del self._patterns[pattern.pattern_id]
                report.removed_low_confidence.append(pattern.pattern_id)
                continue

            # Unrounded, so frequent passes accumulate small decays
            if confidence != pattern.confidence:
                pattern.confidence = min(rules.CONFIDENCE_CEILING, confidence)
                pattern.last_decayed_at = now
                report.decayed += 1

        report.evicted.extend(self._enforce_capacity(now))
        report.remaining = len(self._patterns)

        if report.decayed or report.removed_total:
            self._dirty = True
            logger.info(
                "Pattern cleanup: decayed=%d expired=%d low_confidence=%d evicted=%d remaining=%d",
                report.decayed,
                len(report.removed_expired),
                len(report.removed_low_confidence),
                len(report.evicted),
                report.remaining,
            )
        return report

    def retention_score(self, pattern: Pattern, now: datetime) -> float:
        """confidence * ln(occurrences + 1) * recency; lowest is evicted first."""
        recency = max(0.0, 1.0 - pattern.age_seconds(now) / self.config.max_age_seconds)
        return pattern.confidence * math.log(pattern.occurrences + 1) * recency

    def _decayed_confidence(self, pattern: Pattern, now: datetime) -> float:
        """Unclamped confidence after decay since the later of last_seen and last decay."""
        rate = self.config.confidence_decay_per_day
        since = pattern.last_seen
        if pattern.last_decayed_at and pattern.last_decayed_at > since:
            since = pattern.last_decayed_at
        elapsed_days = max(0.0, (now - since).total_seconds()) / 86400.0
        return pattern.confidence - rate * elapsed_days

    def _enforce_capacity(
        self, now: datetime, protect: Optional[str] = None
    ) -> List[str]:
        """Evict lowest retention scores until size <= max_patterns."""
        overflow = len(self._patterns) - self.config.max_patterns
        if overflow <= 0:
            return []

        candidates = [
            p for p in self._patterns.values() if p.pattern_id != protect
        ]
        candidates.sort(key=lambda p: (self.retention_score(p, now), p.last_seen))

        evicted = []
        for pattern in candidates[:overflow]:
            del self._patterns[pattern.pattern_id]
            evicted.append(pattern.pattern_id)

        if evicted:
            self._dirty = True
            logger.debug("Evicted %d patterns over capacity", len(evicted))
        return evicted

    # --- Persistence lifecycle ---

    async def init(self) -> int:
        """
        Load patterns from the adapter. Malformed records are skipped;
        an unavailable adapter leaves the store empty.
        Returns the number of patterns loaded.
        """
        if self.adapter is None:
            return 0

        try:
            stored = await self.adapter.get([PATTERNS_KEY])
        except Exception as e:
            self.last_error = PersistenceFailure("load", e)
            logger.warning("%s; starting with an empty pattern store", self.last_error)
            return 0

        records = stored.get(PATTERNS_KEY) or {}
        if isinstance(records, list):
            # Older layout: a plain list of pattern records
            records = {
                str(r.get("patternId", i)) if isinstance(r, dict) else str(i): r
                for i, r in enumerate(records)
            }

        loaded = 0
        for key, record in records.items():
            try:
                pattern = self._load_record(key, record)
            except MalformedPattern as e:
                logger.warning("Skipping %s", e)
                continue
            self._patterns[pattern.pattern_id] = pattern
            loaded += 1

        self._dirty = False
        self._enforce_capacity(datetime.utcnow())
        logger.info("Loaded %d patterns (%d skipped)", loaded, len(records) - loaded)
        return loaded

    def _load_record(self, key: str, record: object) -> Pattern:
        if not isinstance(record, dict):
            raise MalformedPattern(key, "record is not an object")
        data = dict(record)
        # Records written before createdAt existed fall back to lastSeen
        if "createdAt" not in data and "created_at" not in data:
            data["createdAt"] = data.get("lastSeen", data.get("last_seen"))
        try:
            return Pattern.model_validate(data)
        except ValidationError as e:
            fields = ", ".join(
                ".".join(str(part) for part in err["loc"]) for err in e.errors()
            )
            raise MalformedPattern(key, f"invalid fields: {fields}") from e

    async def flush(self) -> bool:
        """
        Write every pattern to the adapter. Returns False (and stays dirty)
        when the write fails.
        """
        if self.adapter is None:
            self._dirty = False
            return True

        payload = {
            pattern_id: pattern.to_record()
            for pattern_id, pattern in self._patterns.items()
        }
        try:
            await self.adapter.set({PATTERNS_KEY: payload})
        except Exception as e:
            self.last_error = PersistenceFailure("flush", e)
            logger.warning("%s; keeping %d patterns in memory", self.last_error, len(payload))
            return False

        self._dirty = False
        self.last_error = None
        return True

    async def shutdown(self) -> bool:
        """Flush pending changes before the store goes away."""
        if not self._dirty:
            return True
        return await self.flush()
