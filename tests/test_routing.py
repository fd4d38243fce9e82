"""
Unit tests for agent routing (strategies, loads, configuration). No server or Redis required.
Run: pytest tests/test_routing.py -v
"""

import numpy as np
import pytest

from queue_engine.models import AgentSession, AgentSkill, RoutingConfig, RoutingStrategy, TicketStatus
from queue_engine.services.routing_engine import (
    NO_ACTIVE_AGENTS,
    current_loads,
    get_routing_config,
    list_agent_skills,
    route_ticket,
    save_agent_skill,
    save_routing_config,
)
from queue_engine.services.scoring import hybrid_scores
from tests.factories import add_tickets, login


def _configure(store, strategy, weight=0.5, active=True):
    store.upsert_routing_config(
        RoutingConfig(organization_id="org-1", strategy=strategy, load_balance_weight=weight, is_active=active)
    )


def _serving(store, agent_id, n):
    add_tickets(store, n, status=TicketStatus.SERVING, agent_id=agent_id)


class TestNoCandidates:
    def test_no_sessions_returns_null_result(self, store):
        result = route_ticket(store, "org-1", "branch-1", "svc-1")
        assert result.agent_id is None
        assert result.station_id is None
        assert result.reason == NO_ACTIVE_AGENTS

    def test_no_sessions_for_every_strategy(self, store):
        for strategy in RoutingStrategy:
            _configure(store, strategy)
            assert route_ticket(store, "org-1", "branch-1", "svc-1").agent_id is None

    def test_sessions_in_other_branch_ignored(self, store):
        login(store, "agent-x", branch="branch-2")
        assert route_ticket(store, "org-1", "branch-1", "svc-1").reason == NO_ACTIVE_AGENTS


class TestLoads:
    def test_counts_only_serving_tickets(self, store):
        _serving(store, "a", 2)
        add_tickets(store, 3, status=TicketStatus.CALLED, agent_id="a")
        add_tickets(store, 1, status=TicketStatus.SERVING, agent_id="b")
        loads = current_loads(store, "org-1", ["a", "b", "c"])
        assert loads == {"a": 2, "b": 1, "c": 0}


class TestRoundRobin:
    def test_default_strategy_picks_first_session(self, store):
        login(store, "first")
        login(store, "second")
        _serving(store, "first", 5)
        result = route_ticket(store, "org-1", "branch-1", "svc-1")
        assert result.agent_id == "first"
        assert result.station_id == "station-first"
        assert "Round robin" in result.reason

    def test_inactive_config_falls_back_to_round_robin(self, store):
        _configure(store, RoutingStrategy.LEAST_BUSY, active=False)
        login(store, "first")
        login(store, "second")
        _serving(store, "first", 3)
        assert route_ticket(store, "org-1", "branch-1", "svc-1").agent_id == "first"

    def test_relogin_moves_agent_to_back(self, store):
        login(store, "first")
        login(store, "second")
        store.save_session(AgentSession(agent_id="first", branch_id="branch-1", is_active=False))
        login(store, "third")
        login(store, "first")
        assert [s.agent_id for s in store.list_active_sessions("branch-1")] == ["second", "third", "first"]
        assert route_ticket(store, "org-1", "branch-1", "svc-1").agent_id == "second"

    def test_repeated_login_keeps_position(self, store):
        login(store, "first")
        login(store, "second")
        login(store, "first", station_id="S9")
        result = route_ticket(store, "org-1", "branch-1", "svc-1")
        assert (result.agent_id, result.station_id) == ("first", "S9")


class TestLeastBusy:
    def test_picks_minimum_load(self, store):
        _configure(store, RoutingStrategy.LEAST_BUSY)
        login(store, "busy")
        login(store, "idle")
        _serving(store, "busy", 2)
        result = route_ticket(store, "org-1", "branch-1", "svc-1")
        assert result.agent_id == "idle"
        assert result.reason == "Least busy (load: 0)"

    def test_first_minimum_wins_ties(self, store):
        _configure(store, RoutingStrategy.LEAST_BUSY)
        login(store, "a")
        login(store, "b")
        assert route_ticket(store, "org-1", "branch-1", "svc-1").agent_id == "a"


class TestSkillBased:
    def test_highest_proficiency_wins(self, store):
        _configure(store, RoutingStrategy.SKILL_BASED)
        login(store, "novice")
        login(store, "expert")
        save_agent_skill(store, "novice", "svc-1", 3)
        save_agent_skill(store, "expert", "svc-1", 9)
        result = route_ticket(store, "org-1", "branch-1", "svc-1")
        assert result.agent_id == "expert"
        assert result.reason == "Skill-based (proficiency: 9)"

    def test_ignores_skills_of_agents_not_logged_in(self, store):
        _configure(store, RoutingStrategy.SKILL_BASED)
        login(store, "present")
        save_agent_skill(store, "present", "svc-1", 4)
        save_agent_skill(store, "absent", "svc-1", 10)
        assert route_ticket(store, "org-1", "branch-1", "svc-1").agent_id == "present"

    def test_ignores_other_services_and_inactive_skills(self, store):
        _configure(store, RoutingStrategy.SKILL_BASED)
        login(store, "a")
        login(store, "b")
        save_agent_skill(store, "a", "svc-2", 10)
        store.upsert_agent_skill(AgentSkill(agent_id="b", service_id="svc-1", proficiency=10, is_active=False))
        result = route_ticket(store, "org-1", "branch-1", "svc-1")
        assert result.agent_id == "a"
        assert "Round robin" in result.reason

    def test_tie_keeps_store_order(self, store):
        _configure(store, RoutingStrategy.SKILL_BASED)
        login(store, "a")
        login(store, "b")
        save_agent_skill(store, "b", "svc-1", 7)
        save_agent_skill(store, "a", "svc-1", 7)
        assert route_ticket(store, "org-1", "branch-1", "svc-1").agent_id == "b"


class TestHybrid:
    def test_competent_free_agent_beats_loaded_expert(self, store):
        """loads 0 and 2, weight 0.5: scoreA = 8, scoreB = 5 * (1 - 1 * 0.5) = 2.5."""
        _configure(store, RoutingStrategy.HYBRID, weight=0.5)
        login(store, "agentA")
        login(store, "agentB")
        _serving(store, "agentB", 2)
        save_agent_skill(store, "agentA", "svc-1", 8)
        save_agent_skill(store, "agentB", "svc-1", 5)
        result = route_ticket(store, "org-1", "branch-1", "svc-1")
        assert result.agent_id == "agentA"
        assert result.station_id == "station-agentA"
        assert result.reason == "Hybrid (skill: 8, load: 0)"

    def test_high_weight_prefers_free_agent(self, store):
        _configure(store, RoutingStrategy.HYBRID, weight=1.0)
        login(store, "expert")
        login(store, "junior")
        _serving(store, "expert", 2)
        save_agent_skill(store, "expert", "svc-1", 8)
        save_agent_skill(store, "junior", "svc-1", 5)
        assert route_ticket(store, "org-1", "branch-1", "svc-1").agent_id == "junior"

    def test_zero_weight_ignores_load(self, store):
        _configure(store, RoutingStrategy.HYBRID, weight=0.0)
        login(store, "expert")
        login(store, "junior")
        _serving(store, "expert", 4)
        save_agent_skill(store, "expert", "svc-1", 8)
        save_agent_skill(store, "junior", "svc-1", 5)
        assert route_ticket(store, "org-1", "branch-1", "svc-1").agent_id == "expert"

    def test_without_skills_degrades_to_least_busy(self, store):
        _configure(store, RoutingStrategy.HYBRID)
        login(store, "busy")
        login(store, "idle")
        _serving(store, "busy", 1)
        result = route_ticket(store, "org-1", "branch-1", "svc-1")
        assert result.agent_id == "idle"
        assert result.reason.startswith("Least busy")

    def test_max_load_spans_unskilled_candidates(self, store):
        """Normalization uses the busiest candidate, skilled or not."""
        _configure(store, RoutingStrategy.HYBRID, weight=1.0)
        login(store, "skilled")
        login(store, "other")
        _serving(store, "skilled", 1)
        _serving(store, "other", 4)
        save_agent_skill(store, "skilled", "svc-1", 6)
        result = route_ticket(store, "org-1", "branch-1", "svc-1")
        assert result.agent_id == "skilled"
        assert result.reason == "Hybrid (skill: 6, load: 1)"


class TestHybridScores:
    def test_scores_match_formula(self):
        scores = hybrid_scores([8, 5], [0, 2], max_load=2, load_balance_weight=0.5)
        assert scores[0] == pytest.approx(8.0)
        assert scores[1] == pytest.approx(2.5)

    def test_non_increasing_in_load(self):
        for weight in (0.0, 0.25, 0.5, 1.0):
            loads = list(range(0, 11))
            scores = hybrid_scores([7] * len(loads), loads, max_load=10, load_balance_weight=weight)
            assert np.all(np.diff(scores) <= 1e-12)

    def test_zero_max_load_does_not_divide_by_zero(self):
        scores = hybrid_scores([3, 4], [0, 0], max_load=0, load_balance_weight=0.5)
        assert list(scores) == [3.0, 4.0]


class TestConfiguration:
    def test_missing_config_is_none(self, store):
        assert get_routing_config(store, "org-1") is None

    def test_save_and_get_config(self, store):
        saved = save_routing_config(store, "org-1", "hybrid", load_balance_weight=0.7, prefer_same_agent=True)
        loaded = get_routing_config(store, "org-1")
        assert loaded == saved
        assert loaded.strategy == RoutingStrategy.HYBRID
        assert loaded.is_active

    def test_unknown_strategy_rejected(self, store):
        with pytest.raises(ValueError):
            save_routing_config(store, "org-1", "random")
        assert get_routing_config(store, "org-1") is None

    def test_weight_out_of_range_rejected(self, store):
        with pytest.raises(ValueError):
            save_routing_config(store, "org-1", "hybrid", load_balance_weight=1.5)

    def test_proficiency_is_clamped(self, store):
        assert save_agent_skill(store, "a", "svc-1", 15).proficiency == 10
        assert save_agent_skill(store, "b", "svc-1", 0).proficiency == 1
        assert save_agent_skill(store, "c", "svc-1", -3).proficiency == 1
        assert save_agent_skill(store, "d", "svc-1", 6).proficiency == 6

    def test_infinite_proficiency_is_clamped(self, store):
        assert save_agent_skill(store, "a", "svc-1", float("inf")).proficiency == 10
        assert save_agent_skill(store, "b", "svc-1", float("-inf")).proficiency == 1
        assert save_agent_skill(store, "c", "svc-1", 1e308).proficiency == 10

    def test_nan_proficiency_rejected(self, store):
        with pytest.raises(ValueError):
            save_agent_skill(store, "a", "svc-1", float("nan"))
        assert list_agent_skills(store, ["a"]) == []

    def test_skill_upsert_is_per_agent_and_service(self, store):
        save_agent_skill(store, "a", "svc-1", 3)
        save_agent_skill(store, "a", "svc-1", 9)
        save_agent_skill(store, "a", "svc-2", 4)
        skills = list_agent_skills(store, ["a"])
        assert [(s.service_id, s.proficiency) for s in skills] == [("svc-1", 9), ("svc-2", 4)]
