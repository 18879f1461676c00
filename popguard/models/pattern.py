"""Pattern — a learned (characteristics → decision) association."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from popguard.models.characteristics import Characteristics
from popguard.models.timestamps import UTCDatetime


class PatternDecision(str, Enum):
    """A pattern only ever stores an actionable decision."""
    CLOSE = "close"
    KEEP = "keep"


class BooleanVote(BaseModel):
    """Running tally for one boolean feature of an aggregate pattern."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    true_count: int = Field(ge=0, default=0)
    total: int = Field(ge=0, default=0)

    @property
    def majority(self) -> Optional[bool]:
        """True/False when one side holds a strict majority, else None."""
        false_count = self.total - self.true_count
        if self.true_count > false_count:
            return True
        if false_count > self.true_count:
            return False
        return None


class Pattern(BaseModel):
    """
    A reusable decision learned from repeated observations on one domain.

    Confidence is the running belief that `user_decision` is still what the
    user wants for popups that look like `characteristics`.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )

    pattern_id: str
    domain: str
    characteristics: Characteristics
    user_decision: PatternDecision
    confidence: float = Field(ge=0.1, le=1.0, default=0.5)
    occurrences: int = Field(ge=1, default=1)
    last_seen: UTCDatetime
    created_at: UTCDatetime
    last_decayed_at: Optional[UTCDatetime] = None
    boolean_votes: Dict[str, BooleanVote] = {}
    # Observations that carried each numeric feature (z_index, dimensions)
    feature_samples: Dict[str, int] = {}

    def age_seconds(self, now: datetime) -> float:
        """Seconds since this pattern last matched an observation."""
        return max(0.0, (now - self.last_seen).total_seconds())

    def to_record(self) -> dict:
        """Serializable form used by persistence adapters."""
        return self.model_dump(mode="json", by_alias=True)


class CleanupReport(BaseModel):
    """Outcome of one decay-and-cleanup pass over the store."""

    decayed: int = 0
    removed_low_confidence: List[str] = []
    removed_expired: List[str] = []
    evicted: List[str] = []
    remaining: int = 0

    @property
    def removed_total(self) -> int:
        return (
            len(self.removed_low_confidence)
            + len(self.removed_expired)
            + len(self.evicted)
        )
