"""Data models for the queue intelligence engine."""

import math
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from queue_engine.config import (
    DEFAULT_LOAD_BALANCE_WEIGHT,
    DEFAULT_ROUTING_STRATEGY,
    MAX_PROFICIENCY,
    MIN_PROFICIENCY,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# --- Tickets and agent presence (owned by the ticket store) ---


class TicketStatus(str, Enum):
    WAITING = "waiting"
    CALLED = "called"
    SERVING = "serving"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    TRANSFERRED = "transferred"


# Statuses that count as real demand (cancellations and no-shows excluded).
MATERIALIZED_STATUSES = (
    TicketStatus.COMPLETED,
    TicketStatus.SERVING,
    TicketStatus.WAITING,
    TicketStatus.CALLED,
)


class Ticket(BaseModel):
    """A single customer visit as recorded by the ticket store."""

    ticket_id: str = Field(..., description="Unique ticket identifier")
    organization_id: str
    branch_id: str
    service_id: Optional[str] = None
    agent_id: Optional[str] = Field(None, description="Assigned agent, if any")
    status: TicketStatus = TicketStatus.WAITING
    priority: int = Field(default=0, description="Higher = more urgent")
    created_at: datetime = Field(default_factory=utcnow)
    called_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    wait_time_seconds: Optional[float] = Field(None, ge=0)
    service_time_seconds: Optional[float] = Field(None, ge=0)
    rating: Optional[int] = Field(None, ge=1, le=5)
    sentiment: Optional[str] = None

    _utc_timestamps = field_validator("created_at", "called_at", "completed_at")(as_utc)


class TicketQuery(BaseModel):
    """Filter over tickets. Unset fields do not constrain the result."""

    organization_id: Optional[str] = None
    branch_id: Optional[str] = None
    agent_ids: Optional[list[str]] = None
    statuses: Optional[list[TicketStatus]] = None
    created_since: Optional[datetime] = None
    created_before: Optional[datetime] = None
    called_since: Optional[datetime] = None
    completed_since: Optional[datetime] = None
    has_wait_time: bool = False
    has_rating: bool = False

    _utc_bounds = field_validator("created_since", "created_before", "called_since", "completed_since")(as_utc)

    def matches(self, ticket: Ticket) -> bool:
        if self.organization_id is not None and ticket.organization_id != self.organization_id:
            return False
        if self.branch_id is not None and ticket.branch_id != self.branch_id:
            return False
        if self.agent_ids is not None and ticket.agent_id not in self.agent_ids:
            return False
        if self.statuses is not None and ticket.status not in self.statuses:
            return False
        if self.created_since is not None and ticket.created_at < self.created_since:
            return False
        if self.created_before is not None and ticket.created_at >= self.created_before:
            return False
        if self.called_since is not None and (ticket.called_at is None or ticket.called_at < self.called_since):
            return False
        if self.completed_since is not None and (
            ticket.completed_at is None or ticket.completed_at < self.completed_since
        ):
            return False
        if self.has_wait_time and ticket.wait_time_seconds is None:
            return False
        if self.has_rating and ticket.rating is None:
            return False
        return True


class AgentSession(BaseModel):
    """An agent logged in at a station of a branch."""

    agent_id: str
    branch_id: str
    station_id: Optional[str] = None
    is_active: bool = True


class Organization(BaseModel):
    organization_id: str
    name: str = ""
    is_active: bool = True


# --- Routing ---


class RoutingStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    LEAST_BUSY = "least_busy"
    SKILL_BASED = "skill_based"
    HYBRID = "hybrid"


class RoutingConfig(BaseModel):
    """Per-organization routing settings."""

    organization_id: str
    strategy: RoutingStrategy = RoutingStrategy(DEFAULT_ROUTING_STRATEGY)
    load_balance_weight: float = Field(default=DEFAULT_LOAD_BALANCE_WEIGHT, ge=0.0, le=1.0)
    prefer_same_agent: bool = False
    is_active: bool = True


class AgentSkill(BaseModel):
    """Proficiency of one agent for one service. Proficiency is clamped to [1, 10]."""

    agent_id: str
    service_id: str
    proficiency: int = Field(default=5)
    is_active: bool = True

    @field_validator("proficiency", mode="before")
    @classmethod
    def _clamp_proficiency(cls, v):
        value = float(v)
        if math.isnan(value):
            raise ValueError("proficiency must be a number")
        return int(round(min(float(MAX_PROFICIENCY), max(float(MIN_PROFICIENCY), value))))


class RouteRequest(BaseModel):
    organization_id: str
    branch_id: str
    service_id: str


class RoutingResult(BaseModel):
    """Routing decision. agent_id is None when nobody can take the ticket right now."""

    agent_id: Optional[str] = None
    station_id: Optional[str] = None
    reason: str


# --- Demand forecasting ---


class ForecastCell(BaseModel):
    """Persisted (branch, date, hour) forecast value."""

    organization_id: str
    branch_id: str
    forecast_date: date
    hour: int = Field(..., ge=0, le=23)
    predicted_count: float = Field(default=0.0, ge=0.0)
    actual_count: Optional[int] = Field(None, ge=0)


class HourlyForecast(BaseModel):
    hour: int = Field(..., ge=0, le=23)
    predicted: int = Field(..., ge=0)
    actual: Optional[int] = None


class DailyForecast(BaseModel):
    date: date
    hourly: list[HourlyForecast]
    total_predicted: int
    total_actual: Optional[int] = None


class StaffingRecommendation(BaseModel):
    hour: int
    predicted_tickets: int
    recommended_agents: int = Field(..., ge=1)
    reason: str = Field(..., description="Demand label: low / moderate / high / very high")


# --- Anomaly detection ---


class AnomalyType(str, Enum):
    HIGH_WAIT_TIME = "high_wait_time"
    HIGH_NO_SHOW = "high_no_show"
    LOW_CSAT = "low_csat"
    TRAFFIC_SPIKE = "traffic_spike"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Anomaly(BaseModel):
    """An operational issue raised by the detector. branch_id None = organization-wide."""

    anomaly_id: str = Field(default_factory=lambda: uuid4().hex)
    organization_id: str
    branch_id: Optional[str] = None
    anomaly_type: AnomalyType
    severity: Severity
    title: str
    description: str
    metric_value: float
    threshold_value: float = Field(..., description="Reference (medium) threshold for this metric")
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    _utc_timestamps = field_validator("created_at", "resolved_at")(as_utc)


class SweepResult(BaseModel):
    detected: int = Field(..., description="Anomalies inserted by this sweep")
    checked: int = Field(..., description="Organizations evaluated")
