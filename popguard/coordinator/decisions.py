"""
Decision Coordinator — lifecycle of in-flight user decisions.

States:
  PENDING → RESOLVED | TIMED_OUT | CANCELED   (all terminal)

Behavioral Contract:
- At most one pending entry per popup id
- Exactly one terminal transition per entry. The transition (table removal
  and timer disarm) happens synchronously before any await, so a timeout
  and a resolve for the same popup are mutually exclusive
- Only RESOLVED close/keep outcomes reach the learning updater in a form
  it learns from; timeouts are forwarded but ignored there
- Shutdown disarms every timer and never learns from open entries
"""

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from popguard.channels import NotificationChannel, TelemetryChannel, emit_telemetry
from popguard.errors import (
    DuplicatePopup,
    EngineClosed,
    InvalidDecision,
    PersistenceFailure,
    UnknownPopup,
)
from popguard.learning.updater import LearningUpdater
from popguard.models.config import EngineConfig
from popguard.models.decision import (
    DecisionStatistics,
    DecisionStatus,
    DomainDecisionStatistics,
    PendingDecision,
)
from popguard.models.observation import RESOLVABLE_DECISIONS, Observation, UserDecision
from popguard.persistence.adapters import (
    PENDING_DECISIONS_KEY,
    USER_DECISIONS_KEY,
    PersistenceAdapter,
)
from popguard.suggestion.engine import SuggestionEngine

logger = logging.getLogger(__name__)


class _Entry:
    """A pending decision together with the timer that guards it."""

    def __init__(self, decision: PendingDecision):
        self.decision = decision
        self.timer: Optional[asyncio.TimerHandle] = None

    def disarm(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class DecisionCoordinator:
    """
    Owns the pending-decision table. Routes finalized observations to the
    learning updater and outcomes back to the originating tab.
    """

    def __init__(
        self,
        learning: LearningUpdater,
        suggestions: Optional[SuggestionEngine] = None,
        notifier: Optional[NotificationChannel] = None,
        telemetry: Optional[TelemetryChannel] = None,
        adapter: Optional[PersistenceAdapter] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.learning = learning
        self.suggestions = suggestions
        self.notifier = notifier
        self.telemetry = telemetry
        self.adapter = adapter
        self.config = config or learning.config

        self._pending: Dict[str, _Entry] = {}
        self._history: "OrderedDict[str, PendingDecision]" = OrderedDict()
        self._request_tasks: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._persist_lock = asyncio.Lock()
        self._closed = False
        self._history_dirty = False

        self._counts: Dict[str, int] = {
            "closed": 0,
            "kept": 0,
            "dismissed": 0,
            "timed_out": 0,
            "canceled": 0,
        }
        self._response_total = 0.0
        self._response_count = 0

    # --- Queries ---

    def pending(self) -> List[PendingDecision]:
        """All decisions still awaiting an answer, oldest first."""
        return sorted(
            (e.decision for e in self._pending.values()),
            key=lambda d: d.submitted_at,
        )

    def pending_for_tab(self, tab_ref: Any) -> List[PendingDecision]:
        return [d for d in self.pending() if d.tab_ref == tab_ref]

    def is_pending(self, popup_id: str) -> bool:
        return popup_id in self._pending

    def get(self, popup_id: str) -> Optional[PendingDecision]:
        """The pending entry, or the most recent terminal one."""
        entry = self._pending.get(popup_id)
        if entry is not None:
            return entry.decision
        return self._history.get(popup_id)

    def status_of(self, popup_id: str) -> Optional[DecisionStatus]:
        decision = self.get(popup_id)
        return decision.status if decision else None

    def decisions(
        self,
        domain: Optional[str] = None,
        status: Optional[DecisionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[PendingDecision]:
        """Terminal decisions from the decision log, newest first."""
        results = [
            d for d in reversed(self._history.values())
            if (domain is None or d.observation.domain == domain)
            and (status is None or d.status == status)
        ]
        if limit is not None:
            results = results[:max(0, limit)]
        return results

    def domain_statistics(self) -> Dict[str, DomainDecisionStatistics]:
        """Per-domain counts over the decision log."""
        by_domain: Dict[str, DomainDecisionStatistics] = {}
        for decision in self._history.values():
            stats = by_domain.setdefault(
                decision.observation.domain, DomainDecisionStatistics()
            )
            stats.total += 1
            key = _outcome_key(decision)
            setattr(stats, key, getattr(stats, key) + 1)
        return by_domain

    def statistics(self) -> DecisionStatistics:
        average = None
        if self._response_count:
            average = round(self._response_total / self._response_count, 3)
        return DecisionStatistics(
            pending=len(self._pending),
            average_response_seconds=average,
            by_domain=self.domain_statistics(),
            **self._counts,
        )

    # --- Lifecycle ---

    def start(self) -> None:
        """Accept new decisions again after a shutdown."""
        self._closed = False
        self._persist_lock = asyncio.Lock()

    async def load_history(self) -> int:
        """Load the persisted decision log. Returns how many entries were read."""
        if self.adapter is None:
            return 0
        try:
            stored = await self.adapter.get([USER_DECISIONS_KEY])
        except Exception as e:
            logger.warning("%s", PersistenceFailure("load decision log", e))
            return 0

        fresh = not self._history
        loaded = 0
        for record in stored.get(USER_DECISIONS_KEY) or []:
            try:
                decision = PendingDecision.model_validate(record)
            except ValidationError:
                logger.warning("Skipping malformed decision log entry")
                continue
            if not decision.is_terminal or decision.popup_id in self._history:
                continue
            self._remember(decision)
            loaded += 1
        if fresh:
            self._history_dirty = False
        return loaded

    # --- Transitions ---

    async def open(
        self,
        observation: Observation,
        tab_ref: Any = None,
        now: Optional[datetime] = None,
    ) -> PendingDecision:
        """
        Start waiting for a user decision on a popup.
        Raises DuplicatePopup when one is already pending for the same id.
        """
        if self._closed:
            raise EngineClosed()

        popup_id = observation.id
        if popup_id in self._pending:
            raise DuplicatePopup(popup_id)

        if now is None:
            now = datetime.utcnow()

        suggestion = None
        if self.suggestions is not None:
            suggestion = self.suggestions.suggest(
                observation.domain, observation.characteristics
            )

        decision = PendingDecision(
            popup_id=popup_id,
            tab_ref=tab_ref,
            submitted_at=now,
            observation=observation,
            suggestion=suggestion,
        )
        entry = _Entry(decision)
        self._pending[popup_id] = entry
        self._arm(entry, self.config.decision_timeout_seconds)

        logger.info(
            "Decision opened for %s on %s (suggestion=%s)",
            popup_id, observation.domain,
            suggestion.decision.value if suggestion else None,
        )
        emit_telemetry(self.telemetry, {
            "event": "decision_opened",
            "popup_id": popup_id,
            "domain": observation.domain,
            "suggestion": suggestion.decision.value if suggestion else None,
        })

        if self.notifier is not None:
            task = self._spawn(self._request_user_decision(decision))
            self._request_tasks[popup_id] = task

        await self._persist_state()
        return decision

    async def resolve(
        self,
        popup_id: str,
        decision: Any,
        now: Optional[datetime] = None,
    ) -> PendingDecision:
        """
        Record the user's answer. Raises UnknownPopup when nothing is pending
        for the id (including after a timeout) and InvalidDecision for
        anything other than close/keep/dismiss; neither case mutates state.
        """
        entry = self._pending.get(popup_id)
        if entry is None:
            raise UnknownPopup(popup_id)

        try:
            user_decision = UserDecision(decision)
        except ValueError:
            raise InvalidDecision(decision)
        if user_decision not in RESOLVABLE_DECISIONS:
            raise InvalidDecision(decision)

        if now is None:
            now = datetime.utcnow()

        pending = self._finish(popup_id, entry, DecisionStatus.RESOLVED, user_decision, now)

        try:
            await self.learning.learn(pending.observation, now=now)
        except Exception:
            logger.exception("Learning update failed for %s", popup_id)

        await self._persist_state()
        await self._deliver(pending)
        return pending

    async def cancel(self, popup_id: str, now: Optional[datetime] = None) -> PendingDecision:
        """Withdraw a pending decision without learning from it."""
        entry = self._pending.get(popup_id)
        if entry is None:
            raise UnknownPopup(popup_id)

        pending = self._finish(
            popup_id, entry, DecisionStatus.CANCELED, None, now or datetime.utcnow()
        )
        await self._persist_state()
        return pending

    async def cleanup_expired(
        self,
        max_age_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Safety-net sweep: drop pending entries at least max_age_seconds old
        that somehow never timed out. Returns how many were removed.
        """
        if max_age_seconds is None:
            max_age_seconds = self.config.expired_decision_seconds
        if now is None:
            now = datetime.utcnow()

        expired = [
            popup_id
            for popup_id, entry in self._pending.items()
            if entry.decision.age_seconds(now) >= max_age_seconds
        ]
        for popup_id in expired:
            entry = self._pending[popup_id]
            self._finish(popup_id, entry, DecisionStatus.CANCELED, None, now)
            logger.info("Expired pending decision removed: %s", popup_id)

        if expired:
            await self._persist_state()
        return len(expired)

    async def restore(self, now: Optional[datetime] = None) -> int:
        """
        Re-arm pending decisions persisted before a restart. Entries older
        than expired_decision_seconds are dropped; the rest get whatever is
        left of their decision window, at least one second.
        """
        if self.adapter is None:
            return 0
        if now is None:
            now = datetime.utcnow()

        await self.load_history()
        try:
            stored = await self.adapter.get([PENDING_DECISIONS_KEY])
        except Exception as e:
            logger.warning("%s", PersistenceFailure("restore pending decisions", e))
            return 0

        restored = 0
        for popup_id, record in (stored.get(PENDING_DECISIONS_KEY) or {}).items():
            if popup_id in self._pending:
                continue
            try:
                decision = PendingDecision.model_validate(record)
            except ValidationError:
                logger.warning("Skipping malformed pending decision %s", popup_id)
                continue

            age = decision.age_seconds(now)
            if age >= self.config.expired_decision_seconds:
                logger.info("Dropping stale pending decision %s (age %.0fs)", popup_id, age)
                continue

            decision.status = DecisionStatus.PENDING
            entry = _Entry(decision)
            self._pending[decision.popup_id] = entry
            remaining = max(1.0, self.config.decision_timeout_seconds - age)
            self._arm(entry, remaining)
            restored += 1
            logger.info("Restored pending decision %s (%.1fs left)", popup_id, remaining)

        await self._persist_state()
        return restored

    async def wait_idle(self) -> None:
        """Wait for background timeout and notification work to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """
        Disarm every timer and drop open entries without learning from them.
        Persisted pending entries are left in place for restore().
        """
        self._closed = True
        for entry in self._pending.values():
            entry.disarm()
        dropped = len(self._pending)
        self._pending.clear()

        for task in self._request_tasks.values():
            task.cancel()
        self._request_tasks.clear()
        await self.wait_idle()

        if dropped:
            logger.info("Coordinator shut down with %d open decisions", dropped)

    # --- Internals ---

    def _arm(self, entry: _Entry, delay: float) -> None:
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(delay, self._on_timeout, entry.decision.popup_id)

    def _on_timeout(self, popup_id: str) -> None:
        entry = self._pending.get(popup_id)
        if entry is None:
            return
        entry.timer = None
        pending = self._finish(
            popup_id, entry, DecisionStatus.TIMED_OUT, UserDecision.TIMEOUT, datetime.utcnow()
        )
        self._spawn(self._complete_timeout(pending))

    async def _complete_timeout(self, pending: PendingDecision) -> None:
        # Forwarded for the record; the updater never learns from timeouts
        await self.learning.learn(pending.observation)
        await self._persist_state()
        await self._deliver(pending)

    def _finish(
        self,
        popup_id: str,
        entry: _Entry,
        status: DecisionStatus,
        decision: Optional[UserDecision],
        now: datetime,
    ) -> PendingDecision:
        """The one terminal transition for an entry. Never awaits."""
        del self._pending[popup_id]
        entry.disarm()

        request = self._request_tasks.pop(popup_id, None)
        if request is not None and request is not asyncio.current_task():
            request.cancel()

        pending = entry.decision
        pending.status = status
        pending.resolved_at = now
        if decision is not None:
            pending.decision = decision
            pending.observation = pending.observation.finalize(decision, now)

        self._record_terminal(pending)
        return pending

    def _record_terminal(self, pending: PendingDecision) -> None:
        if pending.status == DecisionStatus.RESOLVED:
            self._response_total += pending.age_seconds(pending.resolved_at)
            self._response_count += 1
        self._counts[_outcome_key(pending)] += 1

        if self._remember(pending):
            self._history_dirty = True

        logger.info(
            "Decision %s for %s (%s)",
            pending.status.value, pending.popup_id,
            pending.decision.value if pending.decision else "-",
        )
        emit_telemetry(self.telemetry, {
            "event": f"decision_{pending.status.value}",
            "popup_id": pending.popup_id,
            "domain": pending.observation.domain,
            "decision": pending.decision.value if pending.decision else None,
            "response_seconds": pending.observation.response_time_seconds,
        })

    async def _request_user_decision(self, pending: PendingDecision) -> None:
        try:
            answer = await self.notifier.request_decision(
                pending.observation, pending.suggestion
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning(
                "Notification request failed for %s; waiting for timeout",
                pending.popup_id, exc_info=True,
            )
            return
        finally:
            if self._request_tasks.get(pending.popup_id) is asyncio.current_task():
                del self._request_tasks[pending.popup_id]

        if answer is None:
            return
        try:
            await self.resolve(pending.popup_id, answer)
        except UnknownPopup:
            logger.debug("Late answer for %s ignored", pending.popup_id)
        except InvalidDecision as e:
            logger.warning("Notification channel returned %s", e)

    async def _deliver(self, pending: PendingDecision) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.deliver_outcome(
                pending.tab_ref,
                pending.popup_id,
                pending.status,
                pending.decision.value if pending.decision else None,
            )
        except Exception:
            logger.warning("Could not notify tab %s about %s", pending.tab_ref, pending.popup_id, exc_info=True)

    async def _persist_state(self) -> None:
        """
        Write the pending table, plus the decision log when it changed.
        The latest snapshot always wins.
        """
        if self.adapter is None:
            return
        async with self._persist_lock:
            payload = {
                PENDING_DECISIONS_KEY: {
                    popup_id: entry.decision.model_dump(mode="json")
                    for popup_id, entry in self._pending.items()
                }
            }
            history_written = self._history_dirty
            if history_written:
                payload[USER_DECISIONS_KEY] = [
                    d.model_dump(mode="json") for d in self._history.values()
                ]
                self._history_dirty = False
            try:
                await self.adapter.set(payload)
            except Exception as e:
                if history_written:
                    self._history_dirty = True
                logger.warning("%s", PersistenceFailure("save decisions", e))

    def _remember(self, decision: PendingDecision) -> bool:
        """Append a terminal decision to the bounded log."""
        if not self.config.history_limit:
            return False
        self._history[decision.popup_id] = decision
        self._history.move_to_end(decision.popup_id)
        while len(self._history) > self.config.history_limit:
            self._history.popitem(last=False)
        return True

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def _outcome_key(decision: PendingDecision) -> str:
    """Statistics bucket for a terminal decision."""
    if decision.status == DecisionStatus.RESOLVED:
        return {
            UserDecision.CLOSE: "closed",
            UserDecision.KEEP: "kept",
            UserDecision.DISMISS: "dismissed",
        }[decision.decision]
    if decision.status == DecisionStatus.TIMED_OUT:
        return "timed_out"
    return "canceled"
