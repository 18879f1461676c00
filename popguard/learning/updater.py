"""
Learning Updater — turns resolved observations into pattern store mutations.

The single-writer rule: every read-modify-write of the pattern store
(match → mutate → cleanup → persist) happens inside one asyncio.Lock, so two
popups resolving at the same time can never overwrite each other's update.

Only close/keep decisions teach the store. Pending, timeout and dismiss
observations are ignored without error.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import Optional

from popguard.models.config import EngineConfig
from popguard.models.decision import LearningStatistics
from popguard.models.observation import Observation
from popguard.models.pattern import CleanupReport, Pattern, PatternDecision
from popguard.patterns.store import PatternStore

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE = 0.8


class LearningUpdater:
    """
    Orchestrates observation → store mutation for one session.
    """

    def __init__(self, store: PatternStore, config: Optional[EngineConfig] = None):
        self.store = store
        self.config = config or store.config
        self._lock = asyncio.Lock()
        self._updates_since_cleanup = 0

    @property
    def enabled(self) -> bool:
        return self.config.learning_enabled

    async def learn(
        self, observation: Observation, now: Optional[datetime] = None
    ) -> Optional[Pattern]:
        """
        Fold one resolved observation into the store.
        Returns the created or updated pattern, or None when nothing was learned.
        """
        if not self.enabled:
            logger.debug("Learning disabled; skipping %s", observation.id)
            return None

        if not observation.is_learnable:
            logger.debug(
                "Not learning from %s (decision=%s)",
                observation.id, observation.user_decision.value,
            )
            return None

        if now is None:
            now = observation.decided_at or datetime.utcnow()

        async with self._lock:
            pattern = self.store.upsert(
                observation.domain,
                observation.characteristics,
                PatternDecision(observation.user_decision.value),
                now=now,
            )
            # Snapshot before cleanup: the pattern may be evicted below
            result = pattern.model_copy(deep=True)

            self._updates_since_cleanup += 1
            if self._updates_since_cleanup >= self.config.cleanup_every_n_updates:
                self.store.decay_and_cleanup(now)
                self._updates_since_cleanup = 0

            await self.store.flush()

        logger.debug(
            "Learned %s from %s on %s; %d patterns stored",
            observation.user_decision.value, observation.id,
            observation.domain, self.store.size(),
        )
        return result

    async def run_maintenance(self, now: Optional[datetime] = None) -> CleanupReport:
        """Decay and clean the store outside of a learning update."""
        async with self._lock:
            report = self.store.decay_and_cleanup(now)
            self._updates_since_cleanup = 0
            if self.store.dirty:
                await self.store.flush()
        return report

    async def clear(self) -> int:
        """Forget every learned pattern."""
        async with self._lock:
            removed = self.store.clear()
            await self.store.flush()
        logger.info("Cleared %d learned patterns", removed)
        return removed

    async def flush(self) -> bool:
        async with self._lock:
            return await self.store.flush()

    def statistics(self) -> LearningStatistics:
        """Summary of what the store has learned so far."""
        patterns = self.store.all()
        if not patterns:
            return LearningStatistics()

        decisions = Counter(p.user_decision for p in patterns)
        return LearningStatistics(
            total_patterns=len(patterns),
            high_confidence_patterns=sum(
                1 for p in patterns if p.confidence >= HIGH_CONFIDENCE
            ),
            close_patterns=decisions.get(PatternDecision.CLOSE, 0),
            keep_patterns=decisions.get(PatternDecision.KEEP, 0),
            average_confidence=round(
                sum(p.confidence for p in patterns) / len(patterns), 4
            ),
            total_occurrences=sum(p.occurrences for p in patterns),
            patterns_by_domain=dict(Counter(p.domain for p in patterns)),
        )
