"""
Collaborator channels — how the engine talks to the UI and to telemetry.

NotificationChannel asks the user for a decision and reports outcomes back
to the originating tab. It may never answer; the coordinator's timeout
covers that. TelemetryChannel is fire-and-forget: its failures never touch
engine state.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

from popguard.models.decision import DecisionStatus, Suggestion
from popguard.models.observation import Observation

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    """Protocol for the decision UI — pluggable backend."""

    async def request_decision(
        self, observation: Observation, suggestion: Optional[Suggestion]
    ) -> Optional[str]: ...

    async def deliver_outcome(
        self,
        tab_ref: Any,
        popup_id: str,
        status: DecisionStatus,
        decision: Optional[str],
    ) -> None: ...


class TelemetryChannel(Protocol):
    """Protocol for outcome telemetry."""

    def record(self, event: Dict[str, Any]) -> None: ...


class SilentNotificationChannel:
    """
    Notification channel that never prompts. Decisions arrive only through
    DecisionCoordinator.resolve (e.g. from the HTTP API).
    """

    async def request_decision(
        self, observation: Observation, suggestion: Optional[Suggestion]
    ) -> Optional[str]:
        return None

    async def deliver_outcome(
        self,
        tab_ref: Any,
        popup_id: str,
        status: DecisionStatus,
        decision: Optional[str],
    ) -> None:
        logger.debug(
            "Outcome for %s on tab %s: %s (%s)", popup_id, tab_ref, status.value, decision
        )


class LoggingTelemetryChannel:
    """Telemetry sink that writes each event to the popguard.telemetry logger."""

    def __init__(self):
        self._logger = logging.getLogger("popguard.telemetry")

    def record(self, event: Dict[str, Any]) -> None:
        self._logger.info("%s", event)


class RecordingTelemetryChannel:
    """Keeps events in memory, newest last."""

    def __init__(self, limit: int = 1000):
        self.limit = limit
        self.events: List[Dict[str, Any]] = []

    def record(self, event: Dict[str, Any]) -> None:
        self.events.append(dict(event))
        if len(self.events) > self.limit:
            del self.events[: len(self.events) - self.limit]


def emit_telemetry(channel: Optional[TelemetryChannel], event: Dict[str, Any]) -> None:
    """Send an event without letting telemetry failures escape."""
    if channel is None:
        return
    try:
        channel.record(event)
    except Exception:
        logger.warning("Telemetry channel failed for %s", event.get("event"), exc_info=True)
