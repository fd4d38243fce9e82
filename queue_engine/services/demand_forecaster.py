"""
Demand Forecaster
=================

Predicts hourly ticket volume for a branch on a target date from the same weekday
of the trailing four weeks, weighted by recency (week 0 = most recent):

    weights = [0.4, 0.3, 0.2, 0.1]   (weeks >= 3 all use 0.1)
    predicted[h] = round(sum_w(count[w][h] * weight[w]) / sum_w(weight[w]))

The sum runs over the weeks that had at least one ticket on that weekday, so an
hour with no tickets in a sampled week still carries that week's weight.

Forecasts are cache-first: the first computation for a (branch, date) stores its
non-zero cells plus a "computed" marker, and later calls read the cache only.
Staffing recommendations are derived from the forecast.
"""

import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import numpy as np

from queue_engine.config import (
    DEFAULT_AVG_SERVICE_MINUTES,
    DEFAULT_SLA_TARGET_MINUTES,
    ENGINE_TIMEZONE,
    FORECAST_HISTORY_DAYS,
    FORECAST_WEEK_WEIGHTS,
)
from queue_engine.models import (
    MATERIALIZED_STATUSES,
    DailyForecast,
    ForecastCell,
    HourlyForecast,
    StaffingRecommendation,
    Ticket,
    TicketQuery,
    utcnow,
)
from queue_engine.services.scoring import demand_label, round_half_up
from queue_engine.stores.base import TicketStore

logger = logging.getLogger(__name__)

HOURS_PER_DAY = 24
WEEK = timedelta(days=7)


def _local(dt: datetime, tz: ZoneInfo) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(tz)


def week_weight(week_number: int) -> float:
    return FORECAST_WEEK_WEIGHTS[min(max(week_number, 0), len(FORECAST_WEEK_WEIGHTS) - 1)]


def bucket_by_week(
    tickets: list[Ticket], weekday: int, now: datetime, tz: ZoneInfo
) -> dict[int, np.ndarray]:
    """Hourly counts per week-ago for tickets created on `weekday` (0 = Monday)."""
    buckets: dict[int, np.ndarray] = {}
    for ticket in tickets:
        created = _local(ticket.created_at, tz)
        if created.weekday() != weekday:
            continue
        # tickets stamped after `now` (clock skew) belong to the current week
        week_number = max(0, int((now - created) // WEEK))
        hours = buckets.setdefault(week_number, np.zeros(HOURS_PER_DAY, dtype=np.float64))
        hours[created.hour] += 1
    return buckets


def weighted_hourly_prediction(buckets: dict[int, np.ndarray]) -> list[int]:
    """Recency-weighted average of the weekly hour profiles, rounded half-up."""
    if not buckets:
        return [0] * HOURS_PER_DAY
    weeks = sorted(buckets)
    counts = np.vstack([buckets[w] for w in weeks])
    weights = np.array([week_weight(w) for w in weeks], dtype=np.float64)
    averaged = weights @ counts / weights.sum()
    return [round_half_up(v) for v in averaged]


def _from_cache(target_date: date, cells: list[ForecastCell]) -> DailyForecast:
    by_hour = {c.hour: c for c in cells}
    hourly = []
    for hour in range(HOURS_PER_DAY):
        cell = by_hour.get(hour)
        hourly.append(
            HourlyForecast(
                hour=hour,
                predicted=round_half_up(cell.predicted_count) if cell else 0,
                actual=cell.actual_count if cell else None,
            )
        )
    actuals = [h.actual for h in hourly if h.actual is not None]
    return DailyForecast(
        date=target_date,
        hourly=hourly,
        total_predicted=sum(h.predicted for h in hourly),
        total_actual=sum(actuals) if actuals else None,
    )


def get_forecast(
    store: TicketStore,
    organization_id: str,
    branch_id: str,
    target_date: date,
    now: Optional[datetime] = None,
) -> DailyForecast:
    """
    Hourly forecast for `target_date`. Served from the cache when the date was already
    computed; otherwise recomputed from 28 days of history and cached.
    """
    cells = store.get_forecast_cells(branch_id, target_date)
    if any(c.predicted_count > 0 for c in cells) or store.is_forecast_computed(branch_id, target_date):
        logger.debug("Forecast cache hit for branch %s on %s.", branch_id, target_date)
        return _from_cache(target_date, cells)

    now = _local(now or utcnow(), timezone.utc)
    tz = ZoneInfo(ENGINE_TIMEZONE)
    history = store.list_tickets(
        TicketQuery(
            organization_id=organization_id,
            branch_id=branch_id,
            statuses=list(MATERIALIZED_STATUSES),
            created_since=now - timedelta(days=FORECAST_HISTORY_DAYS),
            created_before=now,
        )
    )
    if not history:
        logger.info("No ticket history for branch %s; forecasting zero demand.", branch_id)
        return _from_cache(target_date, cells)

    buckets = bucket_by_week(history, target_date.weekday(), now, tz)
    predictions = weighted_hourly_prediction(buckets)

    new_cells = [
        ForecastCell(
            organization_id=organization_id,
            branch_id=branch_id,
            forecast_date=target_date,
            hour=hour,
            predicted_count=float(predicted),
        )
        for hour, predicted in enumerate(predictions)
        if predicted > 0
    ]
    store.save_forecast(branch_id, target_date, new_cells)
    logger.info(
        "Computed forecast for branch %s on %s from %d tickets (%d weeks sampled).",
        branch_id, target_date, len(history), len(buckets),
    )

    # Actual counts may have been recorded before the forecast existed.
    recorded = {c.hour: c.actual_count for c in cells}
    hourly = [HourlyForecast(hour=h, predicted=p, actual=recorded.get(h)) for h, p in enumerate(predictions)]
    actuals = [h.actual for h in hourly if h.actual is not None]
    return DailyForecast(
        date=target_date,
        hourly=hourly,
        total_predicted=sum(predictions),
        total_actual=sum(actuals) if actuals else None,
    )


def staffing_for_hour(hour: int, predicted: int, avg_service_minutes: float) -> StaffingRecommendation:
    tickets_per_agent = max(1, math.floor(60 / avg_service_minutes))
    return StaffingRecommendation(
        hour=hour,
        predicted_tickets=predicted,
        recommended_agents=max(1, math.ceil(predicted / tickets_per_agent)),
        reason=demand_label(predicted),
    )


def get_staffing_recommendations(
    store: TicketStore,
    organization_id: str,
    branch_id: str,
    target_date: date,
    avg_service_minutes: float = DEFAULT_AVG_SERVICE_MINUTES,
    sla_target_minutes: float = DEFAULT_SLA_TARGET_MINUTES,
    now: Optional[datetime] = None,
) -> list[StaffingRecommendation]:
    """
    Agents needed per hour with predicted demand. Hours predicting 0 are omitted.
    sla_target_minutes is accepted but does not change the result yet.
    """
    if avg_service_minutes <= 0:
        raise ValueError("avg_service_minutes must be positive")
    forecast = get_forecast(store, organization_id, branch_id, target_date, now=now)
    return [
        staffing_for_hour(h.hour, h.predicted, avg_service_minutes)
        for h in forecast.hourly
        if h.predicted > 0
    ]


def record_actual_counts(
    store: TicketStore,
    organization_id: str,
    branch_id: str,
    target_date: date,
) -> dict[int, int]:
    """Count real demand per hour on `target_date` and store it as the cells' actual counts."""
    tz = ZoneInfo(ENGINE_TIMEZONE)
    day_start = datetime.combine(target_date, time.min, tzinfo=tz)
    tickets = store.list_tickets(
        TicketQuery(
            organization_id=organization_id,
            branch_id=branch_id,
            statuses=list(MATERIALIZED_STATUSES),
            created_since=day_start,
            created_before=day_start + timedelta(days=1),
        )
    )
    actuals = {hour: 0 for hour in range(HOURS_PER_DAY)}
    for ticket in tickets:
        actuals[_local(ticket.created_at, tz).hour] += 1
    store.upsert_actual_counts(organization_id, branch_id, target_date, actuals)
    logger.info("Recorded %d actual tickets for branch %s on %s.", len(tickets), branch_id, target_date)
    return actuals
