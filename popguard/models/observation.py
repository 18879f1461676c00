"""Observation — one detected popup and the decision taken on it."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from popguard.models.characteristics import Characteristics
from popguard.models.timestamps import UTCDatetime


class UserDecision(str, Enum):
    PENDING = "pending"
    CLOSE = "close"
    KEEP = "keep"
    TIMEOUT = "timeout"
    DISMISS = "dismiss"


# Only these outcomes ever teach the pattern store.
LEARNABLE_DECISIONS = frozenset({UserDecision.CLOSE, UserDecision.KEEP})

# Decisions a user (or notification channel) may submit.
RESOLVABLE_DECISIONS = frozenset(
    {UserDecision.CLOSE, UserDecision.KEEP, UserDecision.DISMISS}
)


class Observation(BaseModel):
    """
    A popup seen on a page. Created pending; finalized exactly once, when
    the user answers or the decision window runs out.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    domain: str
    timestamp: UTCDatetime
    characteristics: Characteristics = Characteristics()
    user_decision: UserDecision = UserDecision.PENDING
    decided_at: Optional[UTCDatetime] = None

    @property
    def is_learnable(self) -> bool:
        return self.user_decision in LEARNABLE_DECISIONS

    def finalize(
        self, decision: UserDecision, at: Optional[datetime] = None
    ) -> "Observation":
        """Return the resolved copy of this observation."""
        return self.model_copy(
            update={
                "user_decision": decision,
                "decided_at": at or datetime.utcnow(),
            }
        )

    @property
    def response_time_seconds(self) -> Optional[float]:
        if self.decided_at is None:
            return None
        return (self.decided_at - self.timestamp).total_seconds()
