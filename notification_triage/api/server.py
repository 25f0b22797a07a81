"""
FastAPI server.
Run: uvicorn notification_triage.api.server:app --port 8000
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from notification_triage import __version__
from notification_triage.engine.errors import RuleConfigError, ValidationError
from notification_triage.engine.models import Verdict
from notification_triage.engine.orchestrator import DecisionOrchestrator, build_orchestrator
from notification_triage.engine.rules import parse_rule, parse_rules
from notification_triage.engine.snapshots import StaticConfigProvider
from notification_triage.engine.validation import validate_event
from notification_triage.logging import configure_logging, get_logger

logger = get_logger(__name__)


# ─── Request Schemas ──────────────────────────────────────

class ConditionModel(BaseModel):
    field: str
    op: str
    value: Any = None


class RuleRequest(BaseModel):
    name: str
    conditions: List[ConditionModel] = Field(default_factory=list)
    action: str
    override_fatigue: bool = False
    record_always: bool = False
    defer: Optional[Dict[str, Any]] = None
    description: str = ""
    position: Optional[int] = Field(default=None, ge=0)

    def as_rule(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"position"}, exclude_none=True)


class RuleListRequest(BaseModel):
    rules: List[RuleRequest]


def create_app(orchestrator: Optional[DecisionOrchestrator] = None) -> FastAPI:
    engine = orchestrator or build_orchestrator()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        stop = asyncio.Event()
        poller = asyncio.create_task(
            engine.registry.run_polling(engine.settings.rules_poll_seconds, stop)
        )
        logger.info("Serving with rule snapshot v%s", engine.registry.current.version)
        try:
            yield
        finally:
            stop.set()
            await poller

    app = FastAPI(title="Notification Triage", version=__version__, lifespan=lifespan)
    app.state.engine = engine

    @app.exception_handler(ValidationError)
    async def rejected(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": "validation_error", "detail": str(exc), "field": exc.field},
        )

    def _publish(rules: List[Dict[str, Any]]) -> int:
        provider = engine.registry.provider
        if not isinstance(provider, StaticConfigProvider):
            raise HTTPException(409, "Rules are managed by an external provider")
        try:
            parse_rules(rules)
        except RuleConfigError as e:
            raise HTTPException(400, str(e)) from e
        version = provider.publish(rules)
        engine.registry.notify()
        return version

    # ─── Endpoints ───────────────────────────────────────────

    @app.post("/v1/notifications/evaluate")
    async def evaluate(payload: Dict[str, Any] = Body(...)):
        decision = await engine.evaluate_payload(payload)
        return decision.to_dict()

    @app.post("/v1/notifications/evaluate/batch")
    async def evaluate_batch(payloads: List[Dict[str, Any]] = Body(...)):
        events = [validate_event(p) for p in payloads]
        decisions = await engine.evaluate_many(events)
        return {"decisions": [d.to_dict() for d in decisions]}

    @app.get("/v1/notifications/history/{user_id}")
    def history(user_id: str, verdict: Optional[str] = None, limit: int = 50):
        try:
            wanted = Verdict.parse(verdict) if verdict else None
        except ValueError:
            raise HTTPException(400, f"Unknown verdict {verdict!r}") from None
        results = engine.audit.get_user_history(user_id, wanted, limit)
        return {
            "user_id": user_id,
            "total": len(results),
            "results": [d.to_dict() for d in results],
        }

    @app.get("/v1/rules")
    def list_rules():
        snapshot = engine.registry.current
        return {
            "version": snapshot.version,
            "loaded_at": snapshot.loaded_at.isoformat(),
            "rules": [r.to_dict() for r in snapshot.rules],
        }

    @app.post("/v1/rules", status_code=201)
    def create_rule(req: RuleRequest):
        rule = req.as_rule()
        try:
            parse_rule(rule)
        except RuleConfigError as e:
            raise HTTPException(400, str(e)) from e
        rules = [r.to_dict() for r in engine.registry.current.rules]
        position = len(rules) if req.position is None else min(req.position, len(rules))
        rules.insert(position, rule)
        version = _publish(rules)
        return {"status": "created", "version": version, "position": position, "rule": rule}

    @app.put("/v1/rules")
    def replace_rules(req: RuleListRequest):
        version = _publish([r.as_rule() for r in req.rules])
        return {"status": "replaced", "version": version}

    @app.post("/v1/rules/reload")
    def reload_rules():
        changed = engine.registry.refresh()
        return {
            "changed": changed,
            "version": engine.registry.current.version,
            "last_error": engine.registry.last_error,
        }

    @app.get("/v1/health")
    def health():
        classifier = engine.classifier
        breaker = classifier.breaker.status if classifier else "n/a"
        store_ok = getattr(engine.dedup.store, "available", True)
        degraded = breaker == "OPEN" or not store_ok or engine.registry.last_error is not None
        return {
            "status": "degraded" if degraded else "ok",
            "components": {
                "history_store": "ok" if store_ok else "unavailable",
                "classifier_breaker": breaker,
                "embedding_breaker": classifier.embedding_breaker.status if classifier else "n/a",
                "rules_version": engine.registry.current.version,
                "rules_error": engine.registry.last_error,
            },
        }

    @app.get("/v1/stats")
    def stats():
        return engine.audit.stats()

    return app


app = create_app()
