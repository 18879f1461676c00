"""
PopupEngine — composition root.

Wires PatternStore → LearningUpdater → SuggestionEngine → DecisionCoordinator
around one persistence adapter and the UI/telemetry channels, and runs the
cron-scheduled maintenance loop (decay, cleanup, expired-decision sweep).
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from croniter import croniter

from popguard.channels import NotificationChannel, TelemetryChannel
from popguard.coordinator.decisions import DecisionCoordinator
from popguard.learning.updater import LearningUpdater
from popguard.models.characteristics import Characteristics
from popguard.models.config import EngineConfig
from popguard.models.decision import PendingDecision, Suggestion
from popguard.models.observation import Observation
from popguard.models.pattern import CleanupReport
from popguard.patterns.store import PatternStore
from popguard.persistence.adapters import PersistenceAdapter
from popguard.suggestion.engine import SuggestionEngine

logger = logging.getLogger(__name__)


class PopupEngine:

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        adapter: Optional[PersistenceAdapter] = None,
        notifier: Optional[NotificationChannel] = None,
        telemetry: Optional[TelemetryChannel] = None,
    ):
        self.config = config or EngineConfig()
        self.adapter = adapter

        self.store = PatternStore(config=self.config, adapter=adapter)
        self.learning = LearningUpdater(self.store, self.config)
        self.suggestions = SuggestionEngine(self.store, self.config)
        self.coordinator = DecisionCoordinator(
            learning=self.learning,
            suggestions=self.suggestions,
            notifier=notifier,
            telemetry=telemetry,
            adapter=adapter,
            config=self.config,
        )

        self._initialized = False
        self._maintenance_running = False

    @property
    def status(self) -> str:
        if not self._initialized:
            return "stopped"
        return "running" if self._maintenance_running else "idle"

    async def init(self) -> None:
        """Load persisted patterns and re-arm pending decisions."""
        if self._initialized:
            return
        self.coordinator.start()
        loaded = await self.store.init()
        restored = await self.coordinator.restore()
        self._initialized = True
        logger.info("Engine ready: %d patterns, %d pending decisions", loaded, restored)

    async def observe(
        self,
        domain: str,
        characteristics: Any = None,
        popup_id: Optional[str] = None,
        tab_ref: Any = None,
        now: Optional[datetime] = None,
    ) -> PendingDecision:
        """Register a detected popup and open a decision for it."""
        if now is None:
            now = datetime.utcnow()
        observation = Observation(
            id=popup_id or f"popup_{uuid4().hex[:12]}",
            domain=domain,
            timestamp=now,
            characteristics=_coerce_characteristics(characteristics),
        )
        return await self.coordinator.open(observation, tab_ref=tab_ref, now=now)

    async def resolve(self, popup_id: str, decision: Any) -> PendingDecision:
        return await self.coordinator.resolve(popup_id, decision)

    def suggest(self, domain: str, characteristics: Any = None) -> Optional[Suggestion]:
        return self.suggestions.suggest(domain, _coerce_characteristics(characteristics))

    async def run_maintenance(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """One maintenance pass: pattern decay/cleanup and the expired-decision sweep."""
        report: CleanupReport = await self.learning.run_maintenance(now)
        expired = await self.coordinator.cleanup_expired(now=now)
        return {
            "patterns": report.model_dump(),
            "expired_decisions": expired,
        }

    async def run_maintenance_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run maintenance on the configured cron schedule until stop_event is set."""
        self._maintenance_running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        schedule = croniter(self.config.maintenance_schedule, datetime.utcnow())
        try:
            while not stop_event.is_set():
                next_run = schedule.get_next(datetime)
                delay = max(0.0, (next_run - datetime.utcnow()).total_seconds())
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass
                try:
                    result = await self.run_maintenance()
                except Exception:
                    logger.exception("Maintenance pass failed")
                    continue
                logger.debug("Maintenance pass: %s", result)
        finally:
            self._maintenance_running = False

    async def flush(self) -> bool:
        return await self.learning.flush()

    async def shutdown(self) -> None:
        """Stop timers and persist learned patterns."""
        await self.coordinator.shutdown()
        await self.store.shutdown()
        self._initialized = False
        logger.info("Engine shut down")


def _coerce_characteristics(value: Any) -> Characteristics:
    if value is None:
        return Characteristics()
    if isinstance(value, Characteristics):
        return value
    return Characteristics.from_raw(value)
