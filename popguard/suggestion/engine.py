"""
Suggestion Engine — automatic recommendations from learned patterns.

Read-only over the pattern store. Automatic action needs materially more
certainty than reinforcing existing learning, so both bars are stricter
than the matching threshold: pattern confidence >= 0.7 and
similarity >= 0.8 by default.

Whenever a suggestion cannot be computed the answer is None: no automatic
action, the user decides.
"""

import logging
from typing import Optional

from popguard.models.characteristics import Characteristics
from popguard.models.config import EngineConfig
from popguard.models.decision import Suggestion
from popguard.patterns.store import PatternStore

logger = logging.getLogger(__name__)


class SuggestionEngine:

    def __init__(self, store: PatternStore, config: Optional[EngineConfig] = None):
        self.store = store
        self.config = config or store.config

    def suggest(
        self, domain: str, characteristics: Characteristics
    ) -> Optional[Suggestion]:
        """
        Best pattern on the domain clearing both thresholds.
        Ranked by confidence, then similarity, then most recently seen.
        """
        if not self.config.learning_enabled:
            return None

        try:
            candidates = [
                (score, pattern)
                for score, pattern in self.store.score_candidates(domain, characteristics)
                if pattern.confidence >= self.config.suggestion_min_confidence
                and score >= self.config.suggestion_min_similarity
            ]
        except Exception:
            logger.exception("Suggestion scoring failed for %s; no automatic action", domain)
            return None

        if not candidates:
            return None

        score, best = max(
            candidates,
            key=lambda c: (c[1].confidence, c[0], c[1].last_seen),
        )
        suggestion = Suggestion(
            decision=best.user_decision,
            confidence=best.confidence,
            similarity=round(score, 4),
            pattern_id=best.pattern_id,
            occurrences=best.occurrences,
        )
        logger.debug(
            "Suggesting %s for %s (confidence=%.2f similarity=%.2f)",
            suggestion.decision.value, domain, suggestion.confidence, suggestion.similarity,
        )
        return suggestion
