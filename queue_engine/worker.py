"""
ARQ background worker: scheduled anomaly sweep and on-demand forecast warm-up.
Detected anomalies are published to the activity channel; the sweep never waits on delivery.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import date

from arq import cron, run_worker
from arq.connections import RedisSettings

from queue_engine.activity import publish_anomaly, publish_event
from queue_engine.config import ANOMALY_SWEEP_HOURS, REDIS_CONN_TIMEOUT, REDIS_URL
from queue_engine.services.anomaly_detector import detect_anomalies
from queue_engine.services.demand_forecaster import get_forecast
from queue_engine.stores.factory import get_store

logger = logging.getLogger(__name__)


async def detect_anomalies_job(ctx: dict) -> dict:
    """ARQ cron job: sweep all active organizations."""
    try:
        result = await asyncio.to_thread(detect_anomalies, get_store(), notify=publish_anomaly)
    except Exception as e:
        logger.exception("Anomaly sweep failed: %s", e)
        raise
    publish_event("anomaly_sweep", result.model_dump())
    return result.model_dump()


async def warm_forecast(ctx: dict, organization_id: str, branch_id: str, target_date: str) -> int:
    """ARQ job: compute (or read) the forecast so dashboard views hit the cache."""
    logger.info("Warming forecast for branch %s on %s...", branch_id, target_date)
    try:
        forecast = await asyncio.to_thread(
            get_forecast, get_store(), organization_id, branch_id, date.fromisoformat(target_date)
        )
    except Exception as e:
        logger.exception("Failed to warm forecast for branch %s: %s", branch_id, e)
        raise
    return forecast.total_predicted


def sweep_hours(every: int = ANOMALY_SWEEP_HOURS) -> set[int]:
    """Hours of the day at which the sweep runs, e.g. every=4 -> {0, 4, 8, 12, 16, 20}."""
    every = max(1, min(every, 24))
    return set(range(0, 24, every))


class WorkerSettings:
    functions = [warm_forecast]
    cron_jobs = [cron(detect_anomalies_job, hour=sweep_hours(), minute=0, run_at_startup=False)]
    redis_settings = replace(
        RedisSettings.from_dsn(REDIS_URL),
        conn_timeout=REDIS_CONN_TIMEOUT,
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.info("Worker starting (Redis: %s).", REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL)
    run_worker(WorkerSettings)
