"""
popguard API — FastAPI endpoints.

Exposes the engine over HTTP for:
- Observation intake (opens a pending decision)
- Decision resolution, cancellation and inspection
- Suggestions
- Learned pattern inspection and reset
- Statistics and maintenance
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from popguard.engine import PopupEngine
from popguard.errors import DuplicatePopup, EngineClosed, InvalidDecision, UnknownPopup
from popguard.models.decision import DecisionStatus


# --- Request/Response Models ---

class ObservationRequest(BaseModel):
    domain: str
    popup_id: Optional[str] = None
    characteristics: Dict[str, Any] = {}
    tab_ref: Optional[Any] = None


class ResolveRequest(BaseModel):
    decision: str


class SuggestionRequest(BaseModel):
    domain: str
    characteristics: Dict[str, Any] = {}


class CleanupRequest(BaseModel):
    max_age_seconds: Optional[float] = None


# --- Application Factory ---

def create_app(engine: Optional[PopupEngine] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    eng = engine or PopupEngine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await eng.init()
        try:
            yield
        finally:
            await eng.shutdown()

    app = FastAPI(
        title="popguard API",
        description="Adaptive popup classification and decision coordination",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = eng

    coordinator = eng.coordinator

    # === OBSERVATIONS ===

    @app.post("/observations")
    async def observe_popup(req: ObservationRequest):
        """Register a popup and wait for the user's decision on it."""
        try:
            pending = await eng.observe(
                domain=req.domain,
                characteristics=req.characteristics,
                popup_id=req.popup_id,
                tab_ref=req.tab_ref,
            )
        except DuplicatePopup as e:
            raise HTTPException(409, str(e))
        except EngineClosed as e:
            raise HTTPException(503, str(e))
        return pending.model_dump(mode="json")

    # === DECISIONS ===

    @app.get("/decisions/pending")
    def get_pending_decisions(tab_ref: Optional[str] = None):
        """Decisions still awaiting an answer."""
        if tab_ref is None:
            decisions = coordinator.pending()
        else:
            decisions = [
                d for d in coordinator.pending() if str(d.tab_ref) == tab_ref
            ]
        return [d.model_dump(mode="json") for d in decisions]

    @app.get("/decisions")
    def list_decisions(
        domain: Optional[str] = None,
        status: Optional[DecisionStatus] = None,
        limit: Optional[int] = None,
    ):
        """Finished decisions from the decision log, newest first."""
        decisions = coordinator.decisions(domain=domain, status=status, limit=limit)
        return [d.model_dump(mode="json") for d in decisions]

    @app.get("/decisions/statistics")
    def get_decision_statistics():
        return coordinator.statistics().model_dump()

    @app.post("/decisions/cleanup")
    async def cleanup_decisions(req: Optional[CleanupRequest] = None):
        """Sweep pending decisions that outlived the expiry window."""
        max_age = req.max_age_seconds if req else None
        removed = await coordinator.cleanup_expired(max_age_seconds=max_age)
        return {"removed": removed, "pending": len(coordinator.pending())}

    @app.get("/decisions/{popup_id}")
    def get_decision(popup_id: str):
        decision = coordinator.get(popup_id)
        if decision is None:
            raise HTTPException(404, "Decision not found")
        return decision.model_dump(mode="json")

    @app.post("/decisions/{popup_id}/resolve")
    async def resolve_decision(popup_id: str, req: ResolveRequest):
        """Record the user's answer for a pending popup."""
        try:
            pending = await coordinator.resolve(popup_id, req.decision)
        except UnknownPopup as e:
            raise HTTPException(404, str(e))
        except InvalidDecision as e:
            raise HTTPException(422, str(e))
        return pending.model_dump(mode="json")

    @app.delete("/decisions/{popup_id}")
    async def cancel_decision(popup_id: str):
        try:
            pending = await coordinator.cancel(popup_id)
        except UnknownPopup as e:
            raise HTTPException(404, str(e))
        return {"status": pending.status.value, "popup_id": popup_id}

    # === SUGGESTIONS ===

    @app.post("/suggestions")
    def get_suggestion(req: SuggestionRequest):
        """Automatic recommendation, or null when the user should decide."""
        suggestion = eng.suggest(req.domain, req.characteristics)
        return {"suggestion": suggestion.model_dump(mode="json") if suggestion else None}

    # === PATTERNS ===

    @app.get("/patterns")
    def list_patterns(domain: Optional[str] = None):
        """Learned patterns, optionally for one domain."""
        patterns = eng.store.by_domain(domain) if domain else eng.store.all()
        return [p.to_record() for p in patterns]

    @app.delete("/patterns")
    async def clear_patterns():
        """Forget everything learned."""
        removed = await eng.learning.clear()
        return {"status": "cleared", "removed": removed}

    # === STATISTICS / MAINTENANCE ===

    @app.get("/learning/statistics")
    def get_learning_statistics():
        return eng.learning.statistics().model_dump()

    @app.post("/maintenance/run")
    async def run_maintenance():
        """Decay and clean up patterns, then sweep expired decisions."""
        return await eng.run_maintenance()

    @app.get("/status")
    def engine_status():
        return {
            "status": eng.status,
            "patterns": eng.store.size(),
            "pending_decisions": len(coordinator.pending()),
            "learning_enabled": eng.config.learning_enabled,
            "config": eng.config.model_dump(),
        }

    return app
