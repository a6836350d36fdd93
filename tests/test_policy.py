# tests/test_policy.py
"""
Unit tests for the purchase decision policy.
"""
from decimal import Decimal

import pytest

from app.agents.models import AgentStatus, BuyerAgent
from app.agents.policy import (
    DEFAULT_PRICE_PER_RECORD,
    MAX_RECORDS_PER_PURCHASE,
    decide,
    format_amount,
    to_price,
)
from app.agents.quality import QualityAssessment
from app.agents.store import AgentStore
from app.catalog.store import Dataset


def make_agent(**overrides) -> BuyerAgent:
    fields = dict(
        id="agent-1",
        owner_id="owner-1",
        name="Weather collector",
        goal="Collect weather data",
        budget=Decimal("1.00"),
        quantity_required=10,
    )
    fields.update(overrides)
    return BuyerAgent(**fields)


def make_dataset(price="0.01") -> Dataset:
    return Dataset(
        id="ds-1",
        seller_id="seller-1",
        name="Hourly weather",
        price_per_record=Decimal(price) if price is not None else None,
    )


def make_assessment(score=0.9, required_present=True) -> QualityAssessment:
    return QualityAssessment(
        completeness=1.0,
        schema_match=1.0,
        data_quality=0.8,
        required_fields_present=required_present,
        overall_score=score,
    )


class TestFormatting:
    """Test amount helpers."""

    def test_format_amount_six_places(self):
        """Amounts are rendered with exactly 6 decimals."""
        assert format_amount(Decimal("0.05")) == "0.050000"
        assert format_amount(Decimal("1")) == "1.000000"

    def test_to_price_default(self):
        """Missing prices fall back to 0.001."""
        assert to_price(None) == DEFAULT_PRICE_PER_RECORD
        assert to_price("") == DEFAULT_PRICE_PER_RECORD
        assert to_price("0.02") == Decimal("0.02")


class TestDecide:
    """Test purchase decisions."""

    def test_approves_full_goal(self):
        """Quality 0.9 with room in the budget buys the whole remaining goal."""
        decision = decide(make_agent(), make_dataset(), make_assessment(0.9))

        assert decision.approve is True
        assert decision.quantity == 10
        assert decision.estimated_cost_str == "0.100000"
        assert decision.reason == "Quality acceptable (90.0%), budget sufficient, purchasing 10 records"

    def test_rejects_below_threshold(self):
        """A score below the agent threshold is rejected."""
        decision = decide(make_agent(), make_dataset(), make_assessment(0.5))

        assert decision.approve is False
        assert "below threshold" in decision.reason
        assert decision.reason == "Quality score 50.0% below threshold 70.0%"
        assert decision.quantity == 0

    def test_rejects_missing_required_fields(self):
        """Missing required fields reject even with a good score."""
        decision = decide(make_agent(), make_dataset(), make_assessment(0.9, required_present=False))

        assert decision.approve is False
        assert decision.reason == "Missing required fields"

    def test_threshold_checked_before_required_fields(self):
        """The first failing check supplies the reason."""
        decision = decide(make_agent(), make_dataset(), make_assessment(0.1, required_present=False))
        assert "below threshold" in decision.reason

    def test_rejects_exhausted_budget(self):
        """No remaining budget means no purchase."""
        agent = make_agent(spent=Decimal("1.00"))
        decision = decide(agent, make_dataset(), make_assessment())

        assert decision.approve is False
        assert decision.reason == "Budget exhausted"

    def test_rejects_unaffordable(self):
        """A remaining budget below one record's price buys nothing."""
        agent = make_agent(spent=Decimal("0.995"))
        decision = decide(agent, make_dataset("0.01"), make_assessment())

        assert decision.approve is False
        assert decision.reason == "Cannot afford any records with remaining budget"

    def test_limited_by_budget(self):
        """Remaining budget 0.05 at 0.01 per record buys 5 records."""
        agent = make_agent(spent=Decimal("0.95"))
        decision = decide(agent, make_dataset("0.01"), make_assessment())

        assert decision.approve is True
        assert decision.quantity == 5
        assert decision.estimated_cost == Decimal("0.050000")

    def test_limited_by_cap(self):
        """No more than the per-purchase cap is bought at once."""
        agent = make_agent(budget=Decimal("100"), quantity_required=1000)
        decision = decide(agent, make_dataset("0.01"), make_assessment())

        assert decision.quantity == MAX_RECORDS_PER_PURCHASE

    def test_custom_cap(self):
        """The cap can be lowered per call."""
        decision = decide(make_agent(), make_dataset(), make_assessment(), max_per_purchase=3)
        assert decision.quantity == 3

    def test_cap_cannot_be_raised(self):
        """A configured cap above 100 still buys at most 100 records."""
        agent = make_agent(budget=Decimal("100"), quantity_required=1000)
        decision = decide(agent, make_dataset("0.01"), make_assessment(), max_per_purchase=500)

        assert decision.quantity == MAX_RECORDS_PER_PURCHASE
        assert decision.estimated_cost == Decimal("1.000000")

    def test_no_quantity_target_uses_default_goal(self):
        """Agents without a target buy up to 100 records at a time."""
        agent = make_agent(budget=Decimal("100"), quantity_required=None)
        decision = decide(agent, make_dataset("0.01"), make_assessment())

        assert decision.quantity == 100

    def test_missing_price_uses_default(self):
        """A listing without a price is bought at 0.001 per record."""
        decision = decide(make_agent(), make_dataset(None), make_assessment())

        assert decision.approve is True
        assert decision.estimated_cost_str == "0.010000"

    def test_approved_decisions_fit_budget_and_goal(self):
        """Approved quantities stay within goal, cap and budget."""
        for spent in ("0", "0.3", "0.91", "0.999"):
            for price in ("0.001", "0.007", "0.01", "0.25"):
                agent = make_agent(spent=Decimal(spent), quantity_required=50, quantity_acquired=12)
                decision = decide(agent, make_dataset(price), make_assessment())
                if not decision.approve:
                    continue
                assert 1 <= decision.quantity <= min(38, MAX_RECORDS_PER_PURCHASE)
                assert decision.estimated_cost == Decimal(price) * decision.quantity
                assert decision.estimated_cost <= agent.remaining_budget


class TestDecisionOutcomes:
    """Test decisions followed by recording the purchase."""

    def test_goal_reached_completes_agent(self):
        """Buying the whole goal completes the agent."""
        store = AgentStore()
        agent = store.create("owner-1", "a", "g", Decimal("1.00"), quantity_required=10)

        decision = decide(agent, make_dataset("0.01"), make_assessment(0.9))
        updated = store.record_purchase(agent.id, decision.estimated_cost, decision.quantity)

        assert updated.quantity_acquired == 10
        assert updated.status == AgentStatus.COMPLETED

    def test_rejection_leaves_spend_unchanged(self):
        """A rejected decision records nothing."""
        store = AgentStore()
        agent = store.create("owner-1", "a", "g", Decimal("1.00"), quantity_required=10)

        decision = decide(agent, make_dataset("0.01"), make_assessment(0.5))

        assert decision.approve is False
        assert store.get(agent.id).spent == Decimal("0")

    def test_budget_spent_before_goal_fails_agent(self):
        """Spending the last of the budget fails the agent even if the goal is unmet."""
        store = AgentStore()
        agent = store.create("owner-1", "a", "g", Decimal("1.00"), quantity_required=10)
        agent = store.record_purchase(agent.id, Decimal("0.95"), 0)
        assert agent.status == AgentStatus.ACTIVE

        decision = decide(agent, make_dataset("0.01"), make_assessment(0.9))
        assert decision.quantity == 5
        assert decision.estimated_cost == Decimal("0.05")

        updated = store.record_purchase(agent.id, decision.estimated_cost, decision.quantity)

        assert updated.spent == updated.budget
        assert updated.quantity_acquired == 5
        assert updated.status == AgentStatus.FAILED
