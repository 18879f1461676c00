"""
Reinforcement rules — how one observation moves a matched pattern.

  agree:    confidence += reinforce_step (capped at 1.0)
  disagree: confidence -= penalty_step (floored at 0.1); below the relabel
            threshold the pattern adopts the new decision and restarts at
            relabel_confidence

Characteristics are aggregated alongside: numeric features as a running
average, boolean features by majority vote once enough samples exist.
"""

from datetime import datetime
from typing import Dict, Optional
from uuid import uuid4

from popguard.models.characteristics import Characteristics, Dimensions
from popguard.models.config import EngineConfig
from popguard.models.pattern import BooleanVote, Pattern, PatternDecision

CONFIDENCE_FLOOR = 0.1
CONFIDENCE_CEILING = 1.0


def clamp_confidence(value: float) -> float:
    return round(min(CONFIDENCE_CEILING, max(CONFIDENCE_FLOOR, value)), 6)


def create_pattern(
    domain: str,
    characteristics: Characteristics,
    decision: PatternDecision,
    config: EngineConfig,
    now: datetime,
) -> Pattern:
    """Seed a pattern from a single observation."""
    votes = {
        name: BooleanVote(true_count=int(value), total=1)
        for name, value in characteristics.present_booleans().items()
    }
    samples = {
        name: 1
        for name in ("z_index", "dimensions")
        if getattr(characteristics, name) is not None
    }
    return Pattern(
        pattern_id=f"pattern_{uuid4().hex[:12]}",
        domain=domain,
        characteristics=characteristics,
        user_decision=decision,
        confidence=clamp_confidence(config.initial_confidence),
        occurrences=1,
        last_seen=now,
        created_at=now,
        boolean_votes=votes,
        feature_samples=samples,
    )


def reinforce(
    pattern: Pattern,
    decision: PatternDecision,
    characteristics: Characteristics,
    config: EngineConfig,
    now: datetime,
) -> bool:
    """
    Apply one matching observation to a pattern in place.
    Returns True when the pattern was relabeled.
    """
    relabeled = False

    if pattern.user_decision == decision:
        pattern.confidence = clamp_confidence(pattern.confidence + config.reinforce_step)
    else:
        confidence = clamp_confidence(pattern.confidence - config.penalty_step)
        if confidence < config.relabel_threshold:
            pattern.user_decision = decision
            confidence = clamp_confidence(config.relabel_confidence)
            relabeled = True
        pattern.confidence = confidence

    pattern.occurrences += 1
    pattern.last_seen = now
    (
        pattern.characteristics,
        pattern.boolean_votes,
        pattern.feature_samples,
    ) = aggregate_characteristics(
        pattern.characteristics,
        pattern.boolean_votes,
        pattern.feature_samples,
        characteristics,
        pattern.occurrences,
        config.boolean_flip_min_occurrences,
    )
    return relabeled


def aggregate_characteristics(
    current: Characteristics,
    votes: Dict[str, BooleanVote],
    samples: Dict[str, int],
    new: Characteristics,
    occurrences: int,
    flip_min_occurrences: int,
) -> tuple:
    """
    Fold a new sample into the aggregate signature.

    `occurrences` already counts the new sample. Numeric features average
    over the observations that actually carried them, tracked in `samples`.
    Returns the new (characteristics, boolean_votes, feature_samples)
    triple; no input is modified.
    """
    updates: dict = {}
    new_votes = {name: vote.model_copy() for name, vote in votes.items()}
    new_samples = dict(samples)

    if new.z_index is not None:
        n = _sample_count(new_samples, "z_index", current.z_index, occurrences)
        updates["z_index"] = _running_average(current.z_index, new.z_index, n)

    if new.dimensions is not None:
        n = _sample_count(new_samples, "dimensions", current.dimensions, occurrences)
        if current.dimensions is None:
            updates["dimensions"] = new.dimensions
        else:
            updates["dimensions"] = Dimensions(
                width=_running_average(current.dimensions.width, new.dimensions.width, n),
                height=_running_average(current.dimensions.height, new.dimensions.height, n),
            )

    for name, value in new.present_booleans().items():
        vote = new_votes.setdefault(name, BooleanVote())
        vote.total += 1
        if value:
            vote.true_count += 1

        stored = getattr(current, name)
        if stored is None:
            updates[name] = value
        elif occurrences >= flip_min_occurrences:
            majority = vote.majority
            if majority is not None and majority != stored:
                updates[name] = majority

    return current.model_copy(update=updates), new_votes, new_samples


def _sample_count(
    samples: Dict[str, int], name: str, stored: object, occurrences: int
) -> int:
    """Bump and return the sample count for a numeric feature, new sample included."""
    if stored is None:
        previous = 0
    else:
        # Records written before per-feature counts existed
        previous = samples.get(name, occurrences - 1)
    samples[name] = previous + 1
    return samples[name]


def _running_average(
    average: Optional[int], value: Optional[int], n: int
) -> Optional[int]:
    """avg' = avg*(n-1)/n + new/n, rounded back to an integer."""
    if value is None:
        return average
    if average is None or n <= 1:
        return value
    return int(round(average * (n - 1) / n + value / n))
