# fastapi_app.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from tierdeploy.adapters import build_adapters, build_orchestrator
from tierdeploy.audit import JsonlRolloutLog, MemoryRolloutLog, StateFile
from tierdeploy.config import configure_logging, settings
from tierdeploy.errors import ConfigError
from tierdeploy.models import TIER_ORDER, Tier
from tierdeploy.orchestrator import DeploymentOrchestrator, OrchestrationResult
from tierdeploy.plan import load_plan

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class RollbackBody(BaseModel):
    environment: Optional[str] = Field(default=None, description="Defaults to APP_ENV")


class RunResponse(BaseModel):
    state: str
    reason: str
    attempt_id: str
    exit_code: int
    records: List[Dict[str, Any]]


def _response(result: OrchestrationResult) -> RunResponse:
    return RunResponse(
        state=result.state.value,
        reason=result.reason,
        attempt_id=result.attempt_id,
        exit_code=result.exit_code,
        records=[r.to_dict() for r in result.records],
    )


def _default_orchestrator() -> DeploymentOrchestrator:
    return build_orchestrator(settings, build_adapters(settings))


def create_app(
    orchestrator_factory: Callable[[], DeploymentOrchestrator] = _default_orchestrator,
    history: Callable[[], MemoryRolloutLog] = lambda: JsonlRolloutLog(settings.AUDIT_LOG_PATH),
    state_file: Optional[StateFile] = None,
    config_dir: Optional[str] = None,
) -> FastAPI:
    app = FastAPI(title="tierdeploy operator API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    states = state_file or StateFile(settings.STATE_PATH)
    # Single writer against the cluster: one mutating run at a time
    running = threading.Lock()
    app.state.running = running

    def _plan(environment: str):
        try:
            return load_plan(environment, config_dir or settings.DEPLOY_CONFIG_DIR)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e))

    def _exclusive(run: Callable[[], OrchestrationResult]) -> RunResponse:
        if not running.acquire(blocking=False):
            raise HTTPException(status_code=409, detail="A deployment is already in progress")
        try:
            return _response(run())
        finally:
            running.release()

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------
    @app.get("/health")
    def health():
        return {"status": "healthy"}

    @app.get("/api/status")
    def api_status():
        latest = history().latest_by_tier()
        return {
            "current": states.load(),
            "tiers": {
                tier.value: latest[tier].to_dict() if tier in latest else None
                for tier in TIER_ORDER
            },
        }

    @app.get("/api/history")
    def api_history(tier: Optional[Tier] = Query(default=None)):
        log = history()
        records = log.history(tier) if tier else list(log.records())
        return [r.to_dict() for r in records]

    @app.post("/api/deploy/{environment}", response_model=RunResponse)
    def api_deploy(environment: str):
        plan = _plan(environment)
        logger.info(f"🚀 Deploy of {environment} requested")
        return _exclusive(lambda: orchestrator_factory().run(plan))

    @app.post("/api/rollback/{tier}", response_model=RunResponse)
    def api_rollback(tier: Tier, body: Optional[RollbackBody] = None):
        environment = (body.environment if body else None) or settings.APP_ENV
        plan = _plan(environment)
        logger.info(f"↩️ Rollback of {tier.value} in {environment} requested")
        return _exclusive(lambda: orchestrator_factory().rollback(plan, tier))

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    configure_logging(settings.LOG_LEVEL)
    uvicorn.run(app, host="0.0.0.0", port=settings.HTTP_PORT)
