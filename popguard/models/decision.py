"""Pending decisions, suggestions and decision statistics."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from popguard.models.observation import Observation, UserDecision
from popguard.models.pattern import PatternDecision
from popguard.models.timestamps import UTCDatetime


class DecisionStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset(
    {DecisionStatus.RESOLVED, DecisionStatus.TIMED_OUT, DecisionStatus.CANCELED}
)


class Suggestion(BaseModel):
    """An automatic recommendation backed by a high-confidence pattern."""

    decision: PatternDecision
    confidence: float = Field(ge=0.0, le=1.0)
    similarity: float = Field(ge=0.0, le=1.0)
    pattern_id: str
    occurrences: int = 1


class PendingDecision(BaseModel):
    """
    An open request for the user to decide on a popup.

    The coordinator keeps the timer handle next to this entry; the model
    itself carries only serializable state so it can be persisted for
    crash recovery.
    """

    popup_id: str
    tab_ref: Optional[Any] = None
    submitted_at: UTCDatetime
    status: DecisionStatus = DecisionStatus.PENDING
    observation: Observation
    suggestion: Optional[Suggestion] = None
    decision: Optional[UserDecision] = None
    resolved_at: Optional[UTCDatetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def age_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.submitted_at).total_seconds())


class DomainDecisionStatistics(BaseModel):
    """Terminal decisions recorded for one domain."""

    total: int = 0
    closed: int = 0
    kept: int = 0
    dismissed: int = 0
    timed_out: int = 0
    canceled: int = 0


class DecisionStatistics(BaseModel):
    """
    Counters over every terminal transition the coordinator performed this
    session. `by_domain` is computed from the persisted decision log, so it
    survives restarts.
    """

    closed: int = 0
    kept: int = 0
    dismissed: int = 0
    timed_out: int = 0
    canceled: int = 0
    pending: int = 0
    average_response_seconds: Optional[float] = None
    by_domain: Dict[str, DomainDecisionStatistics] = {}


class LearningStatistics(BaseModel):
    """Summary of the learned pattern store."""

    total_patterns: int = 0
    high_confidence_patterns: int = 0
    close_patterns: int = 0
    keep_patterns: int = 0
    average_confidence: float = 0.0
    total_occurrences: int = 0
    patterns_by_domain: Dict[str, int] = {}
