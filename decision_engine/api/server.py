"""
FastAPI server exposing the decision engine.
Run: uvicorn decision_engine.api.server:app --port 8000
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from decision_engine.core.config import settings
from decision_engine.core.logging import setup_logging
from decision_engine.engine.factory import build_engine
from decision_engine.engine.models import DeferStatus, NotificationEvent
from decision_engine.engine.prioritizer import DecisionEngine
from decision_engine.engine.scheduler import DeferQueueScheduler
from decision_engine.engine.store import StoreUnavailable

# ─── Request Schema ───────────────────────────────────────


class EvaluateRequest(BaseModel):
    event_id: Optional[str] = None
    user_id: str
    event_type: str
    channel: str
    title: Optional[str] = None
    message: Optional[str] = None
    source: Optional[str] = None
    priority_hint: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    dedupe_key: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_event(self) -> NotificationEvent:
        data = self.model_dump(exclude_none=True)
        event_id = data.pop("event_id", None)
        if event_id:
            data["id"] = event_id
        return NotificationEvent(**data)


class RuleRequest(BaseModel):
    name: str
    priority: int = 50
    conditions: List[Dict[str, Any]]
    action: str
    score: float = 0.0
    reason: str = ""
    enabled: bool = True


class PublishRequest(BaseModel):
    rules: Optional[List[RuleRequest]] = None
    enabled: Optional[bool] = None
    disabled_channels: Optional[List[str]] = None


class ConfirmRequest(BaseModel):
    delivered_at: Optional[datetime] = None


def create_app(engine: Optional[DecisionEngine] = None,
               scheduler: Optional[DeferQueueScheduler] = None,
               start_scheduler: bool = True) -> FastAPI:
    if engine is None:
        engine, scheduler = build_engine(settings)
    if scheduler is None:
        scheduler = DeferQueueScheduler(engine)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if start_scheduler:
            scheduler.start()
        yield
        scheduler.stop()

    app = FastAPI(title="Notification Decision Engine", version="1.0.0", lifespan=lifespan)
    app.state.engine = engine
    app.state.scheduler = scheduler

    # ─── Endpoints ───────────────────────────────────────

    @app.post("/v1/notifications/evaluate")
    def evaluate(req: EvaluateRequest):
        try:
            event = req.to_event()
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return engine.evaluate(event).to_dict()

    @app.get("/v1/notifications/{event_id}/audit")
    def audit_trail(event_id: str):
        if not engine.audit.has_event(event_id):
            raise HTTPException(status_code=404, detail=f"No decisions for event {event_id}")
        return engine.get_audit_trail(event_id)

    @app.post("/v1/notifications/{event_id}/confirm")
    def confirm(event_id: str, req: ConfirmRequest):
        if not engine.confirm_dispatch(event_id, req.delivered_at):
            raise HTTPException(status_code=404, detail=f"Unknown event {event_id}")
        return {"event_id": event_id, "status": "confirmed"}

    @app.get("/v1/notifications/history/{user_id}")
    def history(user_id: str, action: Optional[str] = None, limit: int = 50):
        results = engine.audit.get_user_history(user_id, action, limit)
        return {
            "user_id": user_id,
            "total": len(results),
            "results": [d.to_dict() for d in results],
        }

    @app.get("/v1/rules")
    def list_rules():
        config = engine.rules.current()
        return {
            "version": config.version,
            "enabled": config.enabled,
            "disabled_channels": sorted(config.disabled_channels),
            "rules": [r.to_dict() for r in config.ordered_rules()],
        }

    @app.post("/v1/rules")
    def create_rule(req: RuleRequest):
        try:
            config = engine.rules.add_rule(req.model_dump())
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=422, detail=str(e))
        return {"status": "published", "version": config.version, "rule": req.model_dump()}

    @app.post("/v1/rules/publish")
    def publish_rules(req: PublishRequest):
        try:
            config = engine.rules.publish(
                rules=[r.model_dump() for r in req.rules] if req.rules is not None else None,
                enabled=req.enabled,
                disabled_channels=req.disabled_channels,
            )
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=422, detail=str(e))
        return {"status": "published", "version": config.version}

    @app.get("/v1/defer-queue")
    def defer_queue(status: Optional[str] = None):
        try:
            wanted = DeferStatus(status) if status else None
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown status '{status}'")
        try:
            entries = engine.defer_queue.entries(wanted)
        except StoreUnavailable as e:
            raise HTTPException(status_code=503, detail=f"Defer queue unavailable: {e}")
        return {"entries": [e.to_dict() for e in entries]}

    @app.post("/v1/defer-queue/run")
    def run_defer_queue():
        decisions = scheduler.run_due()
        return {"processed": len(decisions), "decisions": [d.to_dict() for d in decisions]}

    @app.get("/v1/health")
    def health():
        breaker = engine.scorer.circuit_breaker
        store_ok = engine.store.ping()
        try:
            dead_letters = len(engine.defer_queue.dead_letters())
        except StoreUnavailable:
            dead_letters, store_ok = None, False
        return {
            "status": "ok" if store_ok and breaker.state == "CLOSED" else "degraded",
            "components": {
                "store": "ok" if store_ok else "unavailable",
                "ai_scorer": "ok" if engine.scorer.available else "absent",
                "circuit_breaker": breaker.status,
                "fallback_mode": not engine.scorer.available or breaker.state != "CLOSED",
                "rule_version": engine.rules.current().version,
                "dead_letters": dead_letters,
            },
        }

    @app.get("/v1/stats")
    def stats():
        return engine.audit.stats()

    return app


setup_logging(settings.LOG_LEVEL)
app = create_app()
