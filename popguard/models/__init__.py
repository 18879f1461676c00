"""popguard data models."""

from popguard.models.characteristics import BOOLEAN_FEATURES, Characteristics, Dimensions
from popguard.models.config import EngineConfig
from popguard.models.decision import (
    DecisionStatistics,
    DecisionStatus,
    DomainDecisionStatistics,
    LearningStatistics,
    PendingDecision,
    Suggestion,
)
from popguard.models.observation import (
    LEARNABLE_DECISIONS,
    RESOLVABLE_DECISIONS,
    Observation,
    UserDecision,
)
from popguard.models.pattern import BooleanVote, CleanupReport, Pattern, PatternDecision

__all__ = [
    "BOOLEAN_FEATURES",
    "BooleanVote",
    "Characteristics",
    "CleanupReport",
    "DecisionStatistics",
    "DecisionStatus",
    "Dimensions",
    "DomainDecisionStatistics",
    "EngineConfig",
    "LEARNABLE_DECISIONS",
    "LearningStatistics",
    "Observation",
    "Pattern",
    "PatternDecision",
    "PendingDecision",
    "RESOLVABLE_DECISIONS",
    "Suggestion",
    "UserDecision",
]
