# app/agents/policy.py
"""
Purchase decision policy.

Given an agent, a probed dataset and the sample assessment, decide whether to
buy and how many records. Checks run in a fixed order and the first failing
check supplies the rejection reason:

1. overall score below the agent's quality threshold
2. required fields missing from the sample
3. remaining budget exhausted
4. nothing affordable within the remaining goal and per-purchase cap
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Optional

from app.agents.models import BuyerAgent
from app.catalog.store import Dataset
from app.agents.quality import QualityAssessment

MAX_RECORDS_PER_PURCHASE = 100
# Remaining goal assumed for agents without a quantity target
DEFAULT_REMAINING_GOAL = 100
# Price assumed when a listing has none
DEFAULT_PRICE_PER_RECORD = Decimal("0.001")

SIX_PLACES = Decimal("0.000001")


@dataclass(frozen=True)
class PurchaseDecision:
    approve: bool
    reason: str
    quantity: int = 0
    estimated_cost: Decimal = Decimal("0")

    @property
    def estimated_cost_str(self) -> str:
        return format_amount(self.estimated_cost)


def format_amount(amount: Decimal) -> str:
    """Fixed 6-decimal rendering used for every USDC amount."""
    return str(Decimal(amount).quantize(SIX_PLACES))


def to_price(value) -> Decimal:
    if value is None or value == "":
        return DEFAULT_PRICE_PER_RECORD
    return Decimal(str(value))


def _reject(reason: str) -> PurchaseDecision:
    return PurchaseDecision(approve=False, reason=reason)


def decide(
    agent: BuyerAgent,
    dataset: Dataset,
    assessment: QualityAssessment,
    max_per_purchase: Optional[int] = None,
) -> PurchaseDecision:
    """
    Decide whether and how much to buy.

    Args:
        agent: Current agent state (budget, spent, goal, threshold)
        dataset: The probed dataset; a missing price counts as 0.001
        assessment: Result of assessing the dataset's sample
        max_per_purchase: Per-purchase record cap (default and ceiling 100)

    Returns:
        PurchaseDecision. Approved decisions satisfy
        1 <= quantity <= min(remaining goal, cap) and
        estimated_cost == quantity * price <= remaining budget.
    """
    cap = min(max_per_purchase or MAX_RECORDS_PER_PURCHASE, MAX_RECORDS_PER_PURCHASE)
    score = assessment.overall_score
    threshold = agent.quality_threshold

    if score < threshold:
        return _reject(
            f"Quality score {score * 100:.1f}% below threshold {threshold * 100:.1f}%"
        )

    if not assessment.required_fields_present:
        return _reject("Missing required fields")

    remaining_budget = agent.remaining_budget
    if remaining_budget <= 0:
        return _reject("Budget exhausted")

    if agent.quantity_required is not None:
        remaining_goal = max(0, agent.quantity_required - agent.quantity_acquired)
    else:
        remaining_goal = DEFAULT_REMAINING_GOAL

    price = to_price(dataset.price_per_record)
    if price > 0:
        max_affordable = int((remaining_budget / price).to_integral_value(rounding=ROUND_FLOOR))
    else:
        max_affordable = cap

    quantity = min(remaining_goal, max_affordable, cap)
    if quantity <= 0:
        return _reject("Cannot afford any records with remaining budget")

    estimated_cost = (price * quantity).quantize(SIX_PLACES)
    return PurchaseDecision(
        approve=True,
        reason=(
            f"Quality acceptable ({score * 100:.1f}%), budget sufficient, "
            f"purchasing {quantity} records"
        ),
        quantity=quantity,
        estimated_cost=estimated_cost,
    )
