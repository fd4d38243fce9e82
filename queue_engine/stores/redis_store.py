"""
Redis-backed ticket store.

Each record is a JSON document (ticket:{id}, session:{branch}:{agent}, anomaly:{id}, ...);
sorted sets index tickets (by created, called and completed time) and anomalies per
organization, and per-status sets index tickets by status, so the engine's queries load
only the window or status they ask for.
"""

import functools
import logging
import time
from datetime import date, datetime
from typing import Iterable, Optional

from queue_engine.config import REDIS_URL
from queue_engine.models import (
    AgentSession,
    AgentSkill,
    Anomaly,
    AnomalyType,
    ForecastCell,
    Organization,
    RoutingConfig,
    Ticket,
    TicketQuery,
)
from queue_engine.stores.base import StoreError, TicketStore, sort_skills

logger = logging.getLogger(__name__)

TICKET_PREFIX = "ticket:"
ORG_TICKETS_PREFIX = "org_tickets:"
ORG_STATUS_PREFIX = "org_status:"
ORG_CALLED_PREFIX = "org_called:"
ORG_COMPLETED_PREFIX = "org_completed:"
SESSION_PREFIX = "session:"
BRANCH_SESSIONS_PREFIX = "branch_sessions:"
AGENT_SKILLS_PREFIX = "agent_skills:"
ROUTING_CONFIG_PREFIX = "routing_config:"
FORECAST_PREFIX = "forecast:"
FORECAST_COMPUTED_PREFIX = "forecast_computed:"
ORGANIZATION_PREFIX = "organization:"
ORGANIZATIONS_SET = "organizations"
ANOMALY_PREFIX = "anomaly:"
ORG_ANOMALIES_PREFIX = "org_anomalies:"


def _wrap_errors(fn):
    """Re-raise redis failures as StoreError."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        import redis

        try:
            return fn(*args, **kwargs)
        except redis.RedisError as e:
            logger.warning("Redis store call %s failed: %s", fn.__name__, e)
            raise StoreError(str(e)) from e

    return wrapper


class RedisStore(TicketStore):
    def __init__(self, url: str = REDIS_URL, client=None) -> None:
        self._url = url
        self._client = client

    def _redis(self):
        import redis

        if self._client is None:
            self._client = redis.from_url(self._url, decode_responses=True)
        return self._client

    @_wrap_errors
    def ping(self) -> bool:
        return bool(self._redis().ping())

    # --- Tickets ---

    def _candidate_ids(self, r, organization_id: str, query: TicketQuery) -> list[str]:
        """Ticket ids from the narrowest index the query allows; matches() does the rest."""
        status_keys = [f"{ORG_STATUS_PREFIX}{organization_id}:{s.value}" for s in query.statuses or []]
        if query.created_since or query.created_before:
            low = query.created_since.timestamp() if query.created_since else "-inf"
            high = f"({query.created_before.timestamp()}" if query.created_before else "+inf"
            ids = r.zrangebyscore(f"{ORG_TICKETS_PREFIX}{organization_id}", low, high)
        elif query.called_since:
            ids = r.zrangebyscore(f"{ORG_CALLED_PREFIX}{organization_id}", query.called_since.timestamp(), "+inf")
        elif query.completed_since:
            ids = r.zrangebyscore(
                f"{ORG_COMPLETED_PREFIX}{organization_id}", query.completed_since.timestamp(), "+inf"
            )
        elif status_keys:
            return list(r.sunion(status_keys))
        else:
            return r.zrange(f"{ORG_TICKETS_PREFIX}{organization_id}", 0, -1)
        if status_keys and ids:
            with_status = r.sunion(status_keys)
            ids = [tid for tid in ids if tid in with_status]
        return ids

    @_wrap_errors
    def list_tickets(self, query: TicketQuery) -> list[Ticket]:
        r = self._redis()
        if query.organization_id is not None:
            organization_ids = [query.organization_id]
        else:
            organization_ids = [
                key[len(ORG_TICKETS_PREFIX):] for key in r.scan_iter(match=f"{ORG_TICKETS_PREFIX}*")
            ]
        ids: list[str] = []
        for organization_id in organization_ids:
            ids.extend(self._candidate_ids(r, organization_id, query))
        if not ids:
            return []
        raws = r.mget([f"{TICKET_PREFIX}{tid}" for tid in ids])
        tickets = [Ticket.model_validate_json(raw) for raw in raws if raw]
        return [t for t in tickets if query.matches(t)]

    @_wrap_errors
    def save_ticket(self, ticket: Ticket) -> None:
        r = self._redis()
        org = ticket.organization_id
        key = f"{TICKET_PREFIX}{ticket.ticket_id}"
        previous_raw = r.get(key)
        pipe = r.pipeline()
        if previous_raw:
            previous = Ticket.model_validate_json(previous_raw)
            if previous.status != ticket.status:
                pipe.srem(f"{ORG_STATUS_PREFIX}{org}:{previous.status.value}", ticket.ticket_id)
        pipe.set(key, ticket.model_dump_json())
        pipe.zadd(f"{ORG_TICKETS_PREFIX}{org}", {ticket.ticket_id: ticket.created_at.timestamp()})
        pipe.sadd(f"{ORG_STATUS_PREFIX}{org}:{ticket.status.value}", ticket.ticket_id)
        if ticket.called_at is not None:
            pipe.zadd(f"{ORG_CALLED_PREFIX}{org}", {ticket.ticket_id: ticket.called_at.timestamp()})
        else:
            pipe.zrem(f"{ORG_CALLED_PREFIX}{org}", ticket.ticket_id)
        if ticket.completed_at is not None:
            pipe.zadd(f"{ORG_COMPLETED_PREFIX}{org}", {ticket.ticket_id: ticket.completed_at.timestamp()})
        else:
            pipe.zrem(f"{ORG_COMPLETED_PREFIX}{org}", ticket.ticket_id)
        pipe.execute()

    # --- Agents ---

    @_wrap_errors
    def list_active_sessions(self, branch_id: str) -> list[AgentSession]:
        r = self._redis()
        agent_ids = r.zrange(f"{BRANCH_SESSIONS_PREFIX}{branch_id}", 0, -1)
        if not agent_ids:
            return []
        raws = r.mget([f"{SESSION_PREFIX}{branch_id}:{aid}" for aid in agent_ids])
        sessions = [AgentSession.model_validate_json(raw) for raw in raws if raw]
        return [s for s in sessions if s.is_active]

    @_wrap_errors
    def save_session(self, session: AgentSession) -> None:
        r = self._redis()
        key = f"{BRANCH_SESSIONS_PREFIX}{session.branch_id}"
        pipe = r.pipeline()
        pipe.set(f"{SESSION_PREFIX}{session.branch_id}:{session.agent_id}", session.model_dump_json())
        if session.is_active:
            # nx keeps the original login time as the ordering key
            pipe.zadd(key, {session.agent_id: time.time()}, nx=True)
        else:
            pipe.zrem(key, session.agent_id)
        pipe.execute()

    @_wrap_errors
    def list_agent_skills(
        self,
        agent_ids: Optional[Iterable[str]] = None,
        service_id: Optional[str] = None,
        active_only: bool = True,
    ) -> list[AgentSkill]:
        r = self._redis()
        if agent_ids is None:
            keys = sorted(r.scan_iter(match=f"{AGENT_SKILLS_PREFIX}*"))
        else:
            keys = [f"{AGENT_SKILLS_PREFIX}{aid}" for aid in agent_ids]
        rows: list[AgentSkill] = []
        for key in keys:
            if service_id is not None:
                raw = r.hget(key, service_id)
                raws = [raw] if raw else []
            else:
                raws = list(r.hgetall(key).values())
            for raw in raws:
                skill = AgentSkill.model_validate_json(raw)
                if skill.is_active or not active_only:
                    rows.append(skill)
        return sort_skills(rows)

    @_wrap_errors
    def upsert_agent_skill(self, skill: AgentSkill) -> AgentSkill:
        self._redis().hset(f"{AGENT_SKILLS_PREFIX}{skill.agent_id}", skill.service_id, skill.model_dump_json())
        return skill

    # --- Routing config ---

    @_wrap_errors
    def get_routing_config(self, organization_id: str) -> Optional[RoutingConfig]:
        raw = self._redis().get(f"{ROUTING_CONFIG_PREFIX}{organization_id}")
        if not raw:
            return None
        return RoutingConfig.model_validate_json(raw)

    @_wrap_errors
    def upsert_routing_config(self, config: RoutingConfig) -> RoutingConfig:
        self._redis().set(f"{ROUTING_CONFIG_PREFIX}{config.organization_id}", config.model_dump_json())
        return config

    # --- Forecast cache ---

    @staticmethod
    def _forecast_key(branch_id: str, forecast_date: date) -> str:
        return f"{FORECAST_PREFIX}{branch_id}:{forecast_date.isoformat()}"

    @_wrap_errors
    def get_forecast_cells(self, branch_id: str, forecast_date: date) -> list[ForecastCell]:
        raw = self._redis().hgetall(self._forecast_key(branch_id, forecast_date))
        cells = [ForecastCell.model_validate_json(v) for v in raw.values()]
        return sorted(cells, key=lambda c: c.hour)

    @_wrap_errors
    def is_forecast_computed(self, branch_id: str, forecast_date: date) -> bool:
        key = f"{FORECAST_COMPUTED_PREFIX}{branch_id}:{forecast_date.isoformat()}"
        return bool(self._redis().exists(key))

    @_wrap_errors
    def save_forecast(self, branch_id: str, forecast_date: date, cells: list[ForecastCell]) -> None:
        r = self._redis()
        key = self._forecast_key(branch_id, forecast_date)
        existing = r.hgetall(key)
        pipe = r.pipeline()
        for cell in cells:
            stored = cell.model_copy()
            prev = existing.get(str(cell.hour))
            if prev and stored.actual_count is None:
                stored.actual_count = ForecastCell.model_validate_json(prev).actual_count
            pipe.hset(key, str(cell.hour), stored.model_dump_json())
        pipe.set(f"{FORECAST_COMPUTED_PREFIX}{branch_id}:{forecast_date.isoformat()}", "1")
        pipe.execute()

    @_wrap_errors
    def upsert_actual_counts(
        self, organization_id: str, branch_id: str, forecast_date: date, actuals: dict[int, int]
    ) -> None:
        r = self._redis()
        key = self._forecast_key(branch_id, forecast_date)
        existing = r.hgetall(key)
        pipe = r.pipeline()
        for hour, count in actuals.items():
            prev = existing.get(str(hour))
            if prev:
                cell = ForecastCell.model_validate_json(prev)
            else:
                cell = ForecastCell(
                    organization_id=organization_id,
                    branch_id=branch_id,
                    forecast_date=forecast_date,
                    hour=hour,
                )
            cell.actual_count = count
            pipe.hset(key, str(hour), cell.model_dump_json())
        pipe.execute()

    # --- Organizations ---

    @_wrap_errors
    def list_active_organizations(self) -> list[Organization]:
        r = self._redis()
        ids = sorted(r.smembers(ORGANIZATIONS_SET))
        if not ids:
            return []
        raws = r.mget([f"{ORGANIZATION_PREFIX}{oid}" for oid in ids])
        orgs = [Organization.model_validate_json(raw) for raw in raws if raw]
        return [o for o in orgs if o.is_active]

    @_wrap_errors
    def save_organization(self, organization: Organization) -> None:
        r = self._redis()
        r.set(f"{ORGANIZATION_PREFIX}{organization.organization_id}", organization.model_dump_json())
        r.sadd(ORGANIZATIONS_SET, organization.organization_id)

    # --- Anomalies ---

    def _load_anomalies(self, r, organization_id: str, since: Optional[datetime] = None) -> list[Anomaly]:
        low = since.timestamp() if since else "-inf"
        ids = r.zrangebyscore(f"{ORG_ANOMALIES_PREFIX}{organization_id}", low, "+inf")
        if not ids:
            return []
        raws = r.mget([f"{ANOMALY_PREFIX}{aid}" for aid in ids])
        return [Anomaly.model_validate_json(raw) for raw in raws if raw]

    @_wrap_errors
    def find_open_anomaly(
        self, organization_id: str, anomaly_type: AnomalyType, since: datetime
    ) -> Optional[Anomaly]:
        for anomaly in self._load_anomalies(self._redis(), organization_id, since):
            if anomaly.anomaly_type == anomaly_type and not anomaly.resolved:
                return anomaly
        return None

    @_wrap_errors
    def insert_anomaly(self, anomaly: Anomaly) -> Anomaly:
        r = self._redis()
        pipe = r.pipeline()
        pipe.set(f"{ANOMALY_PREFIX}{anomaly.anomaly_id}", anomaly.model_dump_json())
        pipe.zadd(f"{ORG_ANOMALIES_PREFIX}{anomaly.organization_id}", {anomaly.anomaly_id: anomaly.created_at.timestamp()})
        pipe.execute()
        return anomaly

    @_wrap_errors
    def list_anomalies(self, organization_id: str, include_resolved: bool = False) -> list[Anomaly]:
        rows = [
            a for a in self._load_anomalies(self._redis(), organization_id)
            if include_resolved or not a.resolved
        ]
        return sorted(rows, key=lambda a: a.created_at, reverse=True)

    @_wrap_errors
    def resolve_anomaly(self, anomaly_id: str, resolved_at: datetime) -> Optional[Anomaly]:
        r = self._redis()
        key = f"{ANOMALY_PREFIX}{anomaly_id}"
        raw = r.get(key)
        if not raw:
            return None
        anomaly = Anomaly.model_validate_json(raw)
        if not anomaly.resolved:
            anomaly.resolved = True
            anomaly.resolved_at = resolved_at
            r.set(key, anomaly.model_dump_json())
        return anomaly
