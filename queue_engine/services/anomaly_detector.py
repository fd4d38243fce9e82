"""
Anomaly detection sweep over all active organizations.

Per organization, four independent checks:
  - high_wait_time: mean wait of tickets called in the last 4h (>= 3 samples).
  - high_no_show: share of today's tickets that were no-shows (>= 5 samples).
  - low_csat: share of ratings >= 4 over the last 7 days (>= 5 samples); lower is worse.
  - traffic_spike: today's ticket count / 7-day daily average.

A check that lands above `low` becomes a candidate anomaly. Candidates are skipped
when an unresolved anomaly of the same (organization, type) was created within the
dedup window. A store failure only skips the affected check; one organization's
failure never aborts the sweep.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from queue_engine.config import (
    ANOMALY_SWEEP_WORKERS,
    CSAT_THRESHOLDS,
    CSAT_WINDOW_DAYS,
    DEDUP_WINDOW_HOURS,
    ENGINE_TIMEZONE,
    MIN_CSAT_SAMPLES,
    MIN_NO_SHOW_SAMPLES,
    MIN_WAIT_SAMPLES,
    NO_SHOW_THRESHOLDS,
    SATISFIED_RATING,
    TRAFFIC_BASELINE_DAYS,
    TRAFFIC_SPIKE_THRESHOLDS,
    WAIT_TIME_THRESHOLDS,
    WAIT_WINDOW_HOURS,
)
from queue_engine.models import (
    Anomaly,
    AnomalyType,
    Severity,
    SweepResult,
    Ticket,
    TicketQuery,
    TicketStatus,
    utcnow,
)
from queue_engine.services.scoring import classify_severity
from queue_engine.stores.base import StoreError, TicketStore

logger = logging.getLogger(__name__)

Notifier = Callable[[Anomaly], None]


def start_of_day(now: datetime, tz: ZoneInfo) -> datetime:
    return datetime.combine(now.astimezone(tz).date(), time.min, tzinfo=tz)


def _candidate(
    organization_id: str,
    anomaly_type: AnomalyType,
    severity: Severity,
    title: str,
    description: str,
    value: float,
    thresholds: dict,
    now: datetime,
) -> Optional[Anomaly]:
    if severity == Severity.LOW:
        return None
    return Anomaly(
        organization_id=organization_id,
        anomaly_type=anomaly_type,
        severity=severity,
        title=title,
        description=description,
        metric_value=value,
        threshold_value=thresholds["medium"],
        created_at=now,
    )


def check_wait_time(store: TicketStore, organization_id: str, now: datetime) -> Optional[Anomaly]:
    tickets = store.list_tickets(
        TicketQuery(
            organization_id=organization_id,
            statuses=[TicketStatus.SERVING, TicketStatus.COMPLETED],
            called_since=now - timedelta(hours=WAIT_WINDOW_HOURS),
            has_wait_time=True,
        )
    )
    if len(tickets) < MIN_WAIT_SAMPLES:
        return None
    avg_wait = sum(t.wait_time_seconds for t in tickets) / len(tickets) / 60
    return _candidate(
        organization_id,
        AnomalyType.HIGH_WAIT_TIME,
        classify_severity(avg_wait, WAIT_TIME_THRESHOLDS),
        "High wait time",
        f"Average wait {avg_wait:.1f} min over the last {WAIT_WINDOW_HOURS} hours ({len(tickets)} tickets)",
        avg_wait,
        WAIT_TIME_THRESHOLDS,
        now,
    )


def check_no_show(organization_id: str, today: list[Ticket], now: datetime) -> Optional[Anomaly]:
    if len(today) < MIN_NO_SHOW_SAMPLES:
        return None
    no_shows = sum(1 for t in today if t.status == TicketStatus.NO_SHOW)
    rate = no_shows / len(today) * 100
    return _candidate(
        organization_id,
        AnomalyType.HIGH_NO_SHOW,
        classify_severity(rate, NO_SHOW_THRESHOLDS),
        "High no-show rate",
        f"{rate:.1f}% no-shows today ({no_shows}/{len(today)})",
        rate,
        NO_SHOW_THRESHOLDS,
        now,
    )


def check_csat(store: TicketStore, organization_id: str, now: datetime) -> Optional[Anomaly]:
    rated = store.list_tickets(
        TicketQuery(
            organization_id=organization_id,
            completed_since=now - timedelta(days=CSAT_WINDOW_DAYS),
            has_rating=True,
        )
    )
    if len(rated) < MIN_CSAT_SAMPLES:
        return None
    satisfied = sum(1 for t in rated if t.rating >= SATISFIED_RATING)
    csat = satisfied / len(rated) * 100
    return _candidate(
        organization_id,
        AnomalyType.LOW_CSAT,
        classify_severity(csat, CSAT_THRESHOLDS, lower_is_worse=True),
        "Low customer satisfaction",
        f"CSAT {csat:.1f}% over the last {CSAT_WINDOW_DAYS} days ({len(rated)} ratings)",
        csat,
        CSAT_THRESHOLDS,
        now,
    )


def check_traffic_spike(
    store: TicketStore, organization_id: str, today: list[Ticket], now: datetime
) -> Optional[Anomaly]:
    week_count = store.count_tickets(
        TicketQuery(
            organization_id=organization_id,
            created_since=now - timedelta(days=TRAFFIC_BASELINE_DAYS),
        )
    )
    if week_count <= 0:
        return None
    daily_avg = week_count / TRAFFIC_BASELINE_DAYS
    multiplier = len(today) / daily_avg
    return _candidate(
        organization_id,
        AnomalyType.TRAFFIC_SPIKE,
        classify_severity(multiplier, TRAFFIC_SPIKE_THRESHOLDS),
        "Traffic spike detected",
        f"{len(today)} tickets today vs {daily_avg:.0f}/day average ({multiplier:.1f}x)",
        multiplier,
        TRAFFIC_SPIKE_THRESHOLDS,
        now,
    )


def evaluate_organization(store: TicketStore, organization_id: str, now: datetime) -> list[Anomaly]:
    """Run the four checks; a failed store query skips only the checks that need it."""
    candidates: list[Optional[Anomaly]] = []

    def guarded(metric: str, fn, *args):
        try:
            return fn(*args)
        except StoreError as e:
            logger.warning("Skipping %s check for organization %s: %s", metric, organization_id, e)
            return None

    candidates.append(guarded("wait time", check_wait_time, store, organization_id, now))

    tz = ZoneInfo(ENGINE_TIMEZONE)
    today = guarded(
        "today's tickets",
        store.list_tickets,
        TicketQuery(organization_id=organization_id, created_since=start_of_day(now, tz)),
    )
    if today is not None:
        candidates.append(check_no_show(organization_id, today, now))

    candidates.append(guarded("satisfaction", check_csat, store, organization_id, now))

    if today is not None:
        candidates.append(guarded("traffic", check_traffic_spike, store, organization_id, today, now))

    return [c for c in candidates if c is not None]


def persist_anomalies(
    store: TicketStore,
    candidates: list[Anomaly],
    now: datetime,
    notify: Optional[Notifier] = None,
) -> int:
    """Insert candidates not already open within the dedup window. Returns the number inserted."""
    since = now - timedelta(hours=DEDUP_WINDOW_HOURS)
    inserted = 0
    for anomaly in candidates:
        try:
            existing = store.find_open_anomaly(anomaly.organization_id, anomaly.anomaly_type, since)
            if existing is not None:
                logger.debug(
                    "Anomaly %s for %s already open (%s); skipping.",
                    anomaly.anomaly_type.value, anomaly.organization_id, existing.anomaly_id,
                )
                continue
            store.insert_anomaly(anomaly)
        except StoreError as e:
            logger.warning("Could not persist %s anomaly for %s: %s", anomaly.anomaly_type.value, anomaly.organization_id, e)
            continue
        inserted += 1
        logger.info(
            "Anomaly %s (%s) detected for organization %s: %s",
            anomaly.anomaly_type.value, anomaly.severity.value, anomaly.organization_id, anomaly.description,
        )
        if notify is not None:
            notify(anomaly)
    return inserted


def _sweep_organization(
    store: TicketStore, organization_id: str, now: datetime, notify: Optional[Notifier]
) -> int:
    try:
        candidates = evaluate_organization(store, organization_id, now)
        return persist_anomalies(store, candidates, now, notify)
    except Exception:
        logger.exception("Anomaly sweep failed for organization %s; continuing.", organization_id)
        return 0


def detect_anomalies(
    store: TicketStore,
    now: Optional[datetime] = None,
    notify: Optional[Notifier] = None,
    max_workers: int = ANOMALY_SWEEP_WORKERS,
) -> SweepResult:
    """
    Evaluate every active organization (bounded worker pool) and persist new anomalies.
    Failure to list organizations propagates; per-organization failures do not.
    """
    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    organizations = store.list_active_organizations()
    if not organizations:
        return SweepResult(detected=0, checked=0)

    workers = max(1, min(max_workers, len(organizations)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        detected = list(
            pool.map(
                lambda org: _sweep_organization(store, org.organization_id, now, notify),
                organizations,
            )
        )
    result = SweepResult(detected=sum(detected), checked=len(organizations))
    logger.info("Anomaly sweep: %d new anomalies across %d organizations.", result.detected, result.checked)
    return result


# --- Operator actions ---


def list_anomalies(store: TicketStore, organization_id: str, include_resolved: bool = False) -> list[Anomaly]:
    return store.list_anomalies(organization_id, include_resolved=include_resolved)


def resolve_anomaly(store: TicketStore, anomaly_id: str, now: Optional[datetime] = None) -> Optional[Anomaly]:
    """Mark an anomaly resolved. Returns None when it does not exist; resolving twice keeps the first timestamp."""
    return store.resolve_anomaly(anomaly_id, now or utcnow())
