"""In-memory ticket store (single process; tests and local runs)."""

import threading
from datetime import date, datetime
from typing import Iterable, Optional

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
from queue_engine.stores.base import TicketStore, sort_skills


class MemoryStore(TicketStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.clear()

    def clear(self) -> None:
        """Drop everything (e.g. between tests)."""
        self._tickets: dict[str, Ticket] = {}
        # Dicts keep insertion order, which stands in for login / row order.
        self._sessions: dict[tuple[str, str], AgentSession] = {}
        self._skills: dict[tuple[str, str], AgentSkill] = {}
        self._configs: dict[str, RoutingConfig] = {}
        self._cells: dict[tuple[str, date, int], ForecastCell] = {}
        self._computed: set[tuple[str, date]] = set()
        self._organizations: dict[str, Organization] = {}
        self._anomalies: dict[str, Anomaly] = {}

    def list_tickets(self, query: TicketQuery) -> list[Ticket]:
        with self._lock:
            return [t.model_copy() for t in self._tickets.values() if query.matches(t)]

    def save_ticket(self, ticket: Ticket) -> None:
        with self._lock:
            self._tickets[ticket.ticket_id] = ticket.model_copy()

    def list_active_sessions(self, branch_id: str) -> list[AgentSession]:
        with self._lock:
            return [
                s.model_copy()
                for s in self._sessions.values()
                if s.branch_id == branch_id and s.is_active
            ]

    def save_session(self, session: AgentSession) -> None:
        key = (session.branch_id, session.agent_id)
        with self._lock:
            existing = self._sessions.get(key)
            if session.is_active and (existing is None or not existing.is_active):
                # a fresh login goes to the back of the login order
                self._sessions.pop(key, None)
            self._sessions[key] = session.model_copy()

    def list_agent_skills(
        self,
        agent_ids: Optional[Iterable[str]] = None,
        service_id: Optional[str] = None,
        active_only: bool = True,
    ) -> list[AgentSkill]:
        wanted = set(agent_ids) if agent_ids is not None else None
        with self._lock:
            rows = [
                s.model_copy()
                for s in self._skills.values()
                if (wanted is None or s.agent_id in wanted)
                and (service_id is None or s.service_id == service_id)
                and (s.is_active or not active_only)
            ]
        return sort_skills(rows)

    def upsert_agent_skill(self, skill: AgentSkill) -> AgentSkill:
        with self._lock:
            self._skills[(skill.agent_id, skill.service_id)] = skill.model_copy()
        return skill

    def get_routing_config(self, organization_id: str) -> Optional[RoutingConfig]:
        with self._lock:
            config = self._configs.get(organization_id)
            return config.model_copy() if config else None

    def upsert_routing_config(self, config: RoutingConfig) -> RoutingConfig:
        with self._lock:
            self._configs[config.organization_id] = config.model_copy()
        return config

    def get_forecast_cells(self, branch_id: str, forecast_date: date) -> list[ForecastCell]:
        with self._lock:
            cells = [
                c.model_copy()
                for (b, d, _), c in self._cells.items()
                if b == branch_id and d == forecast_date
            ]
        return sorted(cells, key=lambda c: c.hour)

    def is_forecast_computed(self, branch_id: str, forecast_date: date) -> bool:
        with self._lock:
            return (branch_id, forecast_date) in self._computed

    def save_forecast(self, branch_id: str, forecast_date: date, cells: list[ForecastCell]) -> None:
        with self._lock:
            for cell in cells:
                key = (branch_id, forecast_date, cell.hour)
                existing = self._cells.get(key)
                stored = cell.model_copy()
                if existing is not None and stored.actual_count is None:
                    stored.actual_count = existing.actual_count
                self._cells[key] = stored
            self._computed.add((branch_id, forecast_date))

    def upsert_actual_counts(
        self, organization_id: str, branch_id: str, forecast_date: date, actuals: dict[int, int]
    ) -> None:
        with self._lock:
            for hour, count in actuals.items():
                key = (branch_id, forecast_date, hour)
                cell = self._cells.get(key) or ForecastCell(
                    organization_id=organization_id,
                    branch_id=branch_id,
                    forecast_date=forecast_date,
                    hour=hour,
                )
                cell.actual_count = count
                self._cells[key] = cell

    def list_active_organizations(self) -> list[Organization]:
        with self._lock:
            return [o.model_copy() for o in self._organizations.values() if o.is_active]

    def save_organization(self, organization: Organization) -> None:
        with self._lock:
            self._organizations[organization.organization_id] = organization.model_copy()

    def find_open_anomaly(
        self, organization_id: str, anomaly_type: AnomalyType, since: datetime
    ) -> Optional[Anomaly]:
        with self._lock:
            for a in self._anomalies.values():
                if (
                    a.organization_id == organization_id
                    and a.anomaly_type == anomaly_type
                    and not a.resolved
                    and a.created_at >= since
                ):
                    return a.model_copy()
        return None

    def insert_anomaly(self, anomaly: Anomaly) -> Anomaly:
        with self._lock:
            self._anomalies[anomaly.anomaly_id] = anomaly.model_copy()
        return anomaly

    def list_anomalies(self, organization_id: str, include_resolved: bool = False) -> list[Anomaly]:
        with self._lock:
            rows = [
                a.model_copy()
                for a in self._anomalies.values()
                if a.organization_id == organization_id and (include_resolved or not a.resolved)
            ]
        return sorted(rows, key=lambda a: a.created_at, reverse=True)

    def resolve_anomaly(self, anomaly_id: str, resolved_at: datetime) -> Optional[Anomaly]:
        with self._lock:
            anomaly = self._anomalies.get(anomaly_id)
            if anomaly is None:
                return None
            if not anomaly.resolved:
                anomaly.resolved = True
                anomaly.resolved_at = resolved_at
            return anomaly.model_copy()
