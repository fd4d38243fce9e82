"""
Ticket store interface consumed by the engine.

The store owns tickets, agent sessions, skills and routing configs; the engine only
reads those and writes derived records (forecast cells, anomalies) back.
"""

from abc import ABC, abstractmethod
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


class StoreError(Exception):
    """A store read or write failed."""


class TicketStore(ABC):
    # --- Tickets ---

    @abstractmethod
    def list_tickets(self, query: TicketQuery) -> list[Ticket]:
        ...

    def count_tickets(self, query: TicketQuery) -> int:
        return len(self.list_tickets(query))

    @abstractmethod
    def save_ticket(self, ticket: Ticket) -> None:
        ...

    # --- Agents ---

    @abstractmethod
    def list_active_sessions(self, branch_id: str) -> list[AgentSession]:
        """Active sessions for a branch, in login order."""

    @abstractmethod
    def save_session(self, session: AgentSession) -> None:
        ...

    @abstractmethod
    def list_agent_skills(
        self,
        agent_ids: Optional[Iterable[str]] = None,
        service_id: Optional[str] = None,
        active_only: bool = True,
    ) -> list[AgentSkill]:
        """Skills ordered by proficiency descending; equal proficiencies keep insertion order."""

    @abstractmethod
    def upsert_agent_skill(self, skill: AgentSkill) -> AgentSkill:
        ...

    # --- Routing config ---

    @abstractmethod
    def get_routing_config(self, organization_id: str) -> Optional[RoutingConfig]:
        ...

    @abstractmethod
    def upsert_routing_config(self, config: RoutingConfig) -> RoutingConfig:
        ...

    # --- Forecast cache ---

    @abstractmethod
    def get_forecast_cells(self, branch_id: str, forecast_date: date) -> list[ForecastCell]:
        """Cached cells for a branch/date ordered by hour."""

    @abstractmethod
    def is_forecast_computed(self, branch_id: str, forecast_date: date) -> bool:
        ...

    @abstractmethod
    def save_forecast(self, branch_id: str, forecast_date: date, cells: list[ForecastCell]) -> None:
        """Upsert cells keyed by (branch, date, hour) and mark the date as computed."""

    @abstractmethod
    def upsert_actual_counts(
        self, organization_id: str, branch_id: str, forecast_date: date, actuals: dict[int, int]
    ) -> None:
        """Set actual_count per hour, creating zero-predicted cells where none exist."""

    # --- Organizations ---

    @abstractmethod
    def list_active_organizations(self) -> list[Organization]:
        ...

    @abstractmethod
    def save_organization(self, organization: Organization) -> None:
        ...

    # --- Anomalies ---

    @abstractmethod
    def find_open_anomaly(
        self, organization_id: str, anomaly_type: AnomalyType, since: datetime
    ) -> Optional[Anomaly]:
        """Unresolved anomaly of this type created at or after `since`, if any."""

    @abstractmethod
    def insert_anomaly(self, anomaly: Anomaly) -> Anomaly:
        ...

    @abstractmethod
    def list_anomalies(self, organization_id: str, include_resolved: bool = False) -> list[Anomaly]:
        """Newest first."""

    @abstractmethod
    def resolve_anomaly(self, anomaly_id: str, resolved_at: datetime) -> Optional[Anomaly]:
        ...


def sort_skills(skills: list[AgentSkill]) -> list[AgentSkill]:
    """Proficiency descending; sorted() is stable so ties keep store order."""
    return sorted(skills, key=lambda s: -s.proficiency)
