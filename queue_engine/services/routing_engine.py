"""
Agent routing: pick the agent (and station) that should receive the next ticket of a service.

Strategies, in order of precedence:
  - skill_based: highest proficiency for the service among active agents.
  - hybrid: max of proficiency * (1 - normalized_load * load_balance_weight) over skilled agents.
  - least_busy (also hybrid when nobody has the skill): fewest tickets in `serving`.
  - round_robin / fallback: first active session (no persisted rotation pointer).

This is a pure decision over current store state; the caller applies the assignment.
"""

import logging
from typing import Iterable, Optional

import numpy as np

from queue_engine.config import DEFAULT_LOAD_BALANCE_WEIGHT, DEFAULT_ROUTING_STRATEGY
from queue_engine.models import (
    AgentSkill,
    RoutingConfig,
    RoutingResult,
    RoutingStrategy,
    TicketQuery,
    TicketStatus,
)
from queue_engine.services.scoring import hybrid_scores
from queue_engine.stores.base import TicketStore

logger = logging.getLogger(__name__)

NO_ACTIVE_AGENTS = "no active agents"


def _effective_config(store: TicketStore, organization_id: str) -> tuple[RoutingStrategy, float]:
    config = store.get_routing_config(organization_id)
    if config is None or not config.is_active:
        return RoutingStrategy(DEFAULT_ROUTING_STRATEGY), DEFAULT_LOAD_BALANCE_WEIGHT
    return config.strategy, config.load_balance_weight


def current_loads(store: TicketStore, organization_id: str, agent_ids: list[str]) -> dict[str, int]:
    """Tickets in `serving` per agent; agents with nothing in flight get 0."""
    loads = {aid: 0 for aid in agent_ids}
    serving = store.list_tickets(
        TicketQuery(
            organization_id=organization_id,
            agent_ids=agent_ids,
            statuses=[TicketStatus.SERVING],
        )
    )
    for ticket in serving:
        if ticket.agent_id in loads:
            loads[ticket.agent_id] += 1
    return loads


def _pick_hybrid(
    skills: list[AgentSkill], loads: dict[str, int], weight: float
) -> tuple[str, str]:
    max_load = max(loads.values(), default=0)
    skill_loads = [loads.get(s.agent_id, 0) for s in skills]
    scores = hybrid_scores([s.proficiency for s in skills], skill_loads, max_load, weight)
    # argmax returns the first maximum, so earlier (higher-proficiency) rows win ties.
    best = int(np.argmax(scores))
    skill = skills[best]
    return skill.agent_id, f"Hybrid (skill: {skill.proficiency}, load: {skill_loads[best]})"


def _pick_least_busy(loads: dict[str, int]) -> tuple[str, str]:
    agent_id = min(loads, key=lambda aid: loads[aid])
    return agent_id, f"Least busy (load: {loads[agent_id]})"


def route_ticket(
    store: TicketStore,
    organization_id: str,
    branch_id: str,
    service_id: str,
) -> RoutingResult:
    """
    Choose the best active agent in the branch for a ticket of `service_id`.
    Returns agent_id=None with reason "no active agents" when the branch has no active session.
    Store failures propagate as StoreError.
    """
    strategy, weight = _effective_config(store, organization_id)

    sessions = store.list_active_sessions(branch_id)
    if not sessions:
        logger.info("No active agents in branch %s.", branch_id)
        return RoutingResult(agent_id=None, station_id=None, reason=NO_ACTIVE_AGENTS)

    agent_ids = list(dict.fromkeys(s.agent_id for s in sessions))
    loads = current_loads(store, organization_id, agent_ids)

    best_agent: Optional[str] = None
    reason = "Round robin"

    if strategy in (RoutingStrategy.SKILL_BASED, RoutingStrategy.HYBRID):
        skills = [
            s for s in store.list_agent_skills(agent_ids, service_id=service_id)
            if s.agent_id in loads
        ]
        if skills:
            if strategy == RoutingStrategy.HYBRID:
                best_agent, reason = _pick_hybrid(skills, loads, weight)
            else:
                best_agent = skills[0].agent_id
                reason = f"Skill-based (proficiency: {skills[0].proficiency})"

    if best_agent is None and strategy in (RoutingStrategy.LEAST_BUSY, RoutingStrategy.HYBRID):
        best_agent, reason = _pick_least_busy(loads)

    if best_agent is None:
        best_agent = sessions[0].agent_id
        reason = "Round robin (first available)"

    station_id = next((s.station_id for s in sessions if s.agent_id == best_agent), None)
    logger.info(
        "Routed service %s in branch %s to agent %s (%s).",
        service_id, branch_id, best_agent, reason,
    )
    return RoutingResult(agent_id=best_agent, station_id=station_id, reason=reason)


# --- Configuration ---


def get_routing_config(store: TicketStore, organization_id: str) -> Optional[RoutingConfig]:
    return store.get_routing_config(organization_id)


def save_routing_config(
    store: TicketStore,
    organization_id: str,
    strategy: str,
    load_balance_weight: float = DEFAULT_LOAD_BALANCE_WEIGHT,
    prefer_same_agent: bool = False,
) -> RoutingConfig:
    """Upsert the organization's config. Raises ValueError for an unknown strategy."""
    config = RoutingConfig(
        organization_id=organization_id,
        strategy=RoutingStrategy(strategy),
        load_balance_weight=load_balance_weight,
        prefer_same_agent=prefer_same_agent,
        is_active=True,
    )
    store.upsert_routing_config(config)
    logger.info("Routing config for %s set to %s (weight=%.2f).", organization_id, config.strategy.value, load_balance_weight)
    return config


def list_agent_skills(
    store: TicketStore,
    agent_ids: Optional[Iterable[str]] = None,
    service_id: Optional[str] = None,
) -> list[AgentSkill]:
    return store.list_agent_skills(agent_ids, service_id=service_id, active_only=False)


def save_agent_skill(store: TicketStore, agent_id: str, service_id: str, proficiency: float) -> AgentSkill:
    """Upsert an (agent, service) skill. Proficiency outside [1, 10] is clamped, not rejected."""
    skill = AgentSkill(agent_id=agent_id, service_id=service_id, proficiency=proficiency, is_active=True)
    return store.upsert_agent_skill(skill)
