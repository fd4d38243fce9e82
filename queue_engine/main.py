"""REST API for the queue intelligence engine: routing, demand forecasts, anomaly sweeps."""

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from queue_engine import config
from queue_engine.activity import emit as activity_emit, emit_anomaly, get_recent as activity_get_recent, start_redis_subscriber
from queue_engine.models import (
    AgentSkill,
    Anomaly,
    DailyForecast,
    RouteRequest,
    RoutingConfig,
    RoutingResult,
    RoutingStrategy,
    StaffingRecommendation,
    SweepResult,
)
from queue_engine.services import anomaly_detector, demand_forecaster, routing_engine
from queue_engine.stores.base import StoreError, TicketStore
from queue_engine.stores.factory import get_store

logger = logging.getLogger(__name__)


_arq_pool = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _arq_pool
    _arq_pool = None
    if config.STORE_BACKEND == "redis":
        try:
            from arq import create_pool
            from arq.connections import RedisSettings
            _arq_pool = await create_pool(RedisSettings.from_dsn(config.REDIS_URL))
        except Exception as e:
            logger.warning("Redis/ARQ pool unavailable: %s. POST /forecast/warm will return 503.", e)
        start_redis_subscriber()
    try:
        yield
    finally:
        if _arq_pool is not None:
            await _arq_pool.close()
            _arq_pool = None


app = FastAPI(
    title="Queue Intelligence Engine",
    description="Agent routing, hourly demand forecasts and operational anomaly detection.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.warning("Store unavailable for %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Ticket store unavailable"})


# --- Routing ---


@app.post("/route", response_model=RoutingResult)
def route_ticket(payload: RouteRequest, store: TicketStore = Depends(get_store)) -> RoutingResult:
    """Pick the agent and station for the next ticket. agent_id is null when no agent is active."""
    result = routing_engine.route_ticket(store, payload.organization_id, payload.branch_id, payload.service_id)
    activity_emit(
        "ticket_routed",
        {"branch_id": payload.branch_id, "service_id": payload.service_id, "agent_id": result.agent_id, "reason": result.reason},
    )
    return result


class RoutingConfigUpdate(BaseModel):
    strategy: RoutingStrategy
    load_balance_weight: float = Field(default=config.DEFAULT_LOAD_BALANCE_WEIGHT, ge=0.0, le=1.0)
    prefer_same_agent: bool = False


@app.get("/organizations/{organization_id}/routing-config", response_model=RoutingConfig)
def get_routing_config(organization_id: str, store: TicketStore = Depends(get_store)) -> RoutingConfig:
    cfg = routing_engine.get_routing_config(store, organization_id)
    if cfg is None:
        raise HTTPException(status_code=404, detail="Routing config not found")
    return cfg


@app.put("/organizations/{organization_id}/routing-config", response_model=RoutingConfig)
def put_routing_config(
    organization_id: str, payload: RoutingConfigUpdate, store: TicketStore = Depends(get_store)
) -> RoutingConfig:
    return routing_engine.save_routing_config(
        store,
        organization_id,
        payload.strategy.value,
        load_balance_weight=payload.load_balance_weight,
        prefer_same_agent=payload.prefer_same_agent,
    )


class AgentSkillUpdate(BaseModel):
    agent_id: str
    service_id: str
    proficiency: float = Field(..., description="Clamped to [1, 10]")


@app.get("/agent-skills", response_model=list[AgentSkill])
def get_agent_skills(
    agent_id: Optional[list[str]] = Query(None),
    service_id: Optional[str] = None,
    store: TicketStore = Depends(get_store),
) -> list[AgentSkill]:
    return routing_engine.list_agent_skills(store, agent_id, service_id=service_id)


@app.put("/agent-skills", response_model=AgentSkill)
def put_agent_skill(payload: AgentSkillUpdate, store: TicketStore = Depends(get_store)) -> AgentSkill:
    return routing_engine.save_agent_skill(store, payload.agent_id, payload.service_id, payload.proficiency)


# --- Forecasting ---


@app.get("/forecast", response_model=DailyForecast)
def get_forecast(
    organization_id: str,
    branch_id: str,
    target_date: date = Query(..., alias="date"),
    store: TicketStore = Depends(get_store),
) -> DailyForecast:
    return demand_forecaster.get_forecast(store, organization_id, branch_id, target_date)


@app.get("/forecast/staffing", response_model=list[StaffingRecommendation])
def get_staffing(
    organization_id: str,
    branch_id: str,
    target_date: date = Query(..., alias="date"),
    avg_service_minutes: float = Query(config.DEFAULT_AVG_SERVICE_MINUTES, gt=0),
    sla_target_minutes: float = Query(config.DEFAULT_SLA_TARGET_MINUTES, gt=0),
    store: TicketStore = Depends(get_store),
) -> list[StaffingRecommendation]:
    return demand_forecaster.get_staffing_recommendations(
        store,
        organization_id,
        branch_id,
        target_date,
        avg_service_minutes=avg_service_minutes,
        sla_target_minutes=sla_target_minutes,
    )


@app.post("/forecast/warm", status_code=202)
async def warm_forecast(
    organization_id: str,
    branch_id: str,
    target_date: date = Query(..., alias="date"),
) -> dict:
    """Queue a background forecast computation so later dashboard reads hit the cache."""
    pool = _arq_pool
    if pool is None:
        raise HTTPException(status_code=503, detail="Worker pool not ready")
    job = await pool.enqueue_job("warm_forecast", organization_id, branch_id, target_date.isoformat())
    return {"job_id": job.job_id if job else None, "message": "Accepted for processing"}


@app.post("/forecast/actuals")
def post_forecast_actuals(
    organization_id: str,
    branch_id: str,
    target_date: date = Query(..., alias="date"),
    store: TicketStore = Depends(get_store),
) -> dict:
    """Store observed hourly ticket counts for a date next to its forecast."""
    actuals = demand_forecaster.record_actual_counts(store, organization_id, branch_id, target_date)
    return {"date": target_date.isoformat(), "total_actual": sum(actuals.values())}


# --- Anomalies ---


@app.get("/cron/detect-anomalies")
def cron_detect_anomalies(
    authorization: Optional[str] = Header(None),
    store: TicketStore = Depends(get_store),
) -> dict:
    """Scheduled sweep. Requires `Authorization: Bearer <CRON_SECRET>`."""
    if not config.CRON_SECRET or authorization != f"Bearer {config.CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    result: SweepResult = anomaly_detector.detect_anomalies(store, notify=emit_anomaly)
    activity_emit("anomaly_sweep", result.model_dump())
    return {
        "message": f"Anomaly detection complete: {result.detected} new anomalies found",
        **result.model_dump(),
    }


@app.get("/organizations/{organization_id}/anomalies", response_model=list[Anomaly])
def get_anomalies(
    organization_id: str,
    include_resolved: bool = False,
    store: TicketStore = Depends(get_store),
) -> list[Anomaly]:
    return anomaly_detector.list_anomalies(store, organization_id, include_resolved=include_resolved)


@app.post("/anomalies/{anomaly_id}/resolve", response_model=Anomaly)
def resolve_anomaly(anomaly_id: str, store: TicketStore = Depends(get_store)) -> Anomaly:
    anomaly = anomaly_detector.resolve_anomaly(store, anomaly_id)
    if anomaly is None:
        raise HTTPException(status_code=404, detail="Anomaly not found")
    activity_emit("anomaly_resolved", {"anomaly_id": anomaly_id, "organization_id": anomaly.organization_id})
    return anomaly


@app.get("/activity")
def get_activity(limit: int = 100) -> dict:
    """Recent engine events (routing decisions, anomalies, sweeps)."""
    if limit < 1 or limit > 200:
        limit = 100
    return {"events": activity_get_recent(limit=limit)}


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
