# app/agents/executor.py
"""
One acquisition cycle for one buyer agent.

A cycle runs these steps in order, recording each in the action log:

1. reload the agent; stop unless it is active
2. budget exhausted -> failed; goal reached -> completed
3. discover active datasets in the agent's category
4. select the candidate with the best quality/price trade-off
5. probe it for authoritative price, quality and schema
6. fetch a small sample and assess it
7. decide whether and how much to buy
8. buy through the x402 handshake and record the purchase

Failures after step 2 end the cycle with a failed `error` entry; the agent
stays active and the next cycle starts over. Cycles of the same agent never
overlap: a second concurrent run_cycle raises ConcurrencyError.
"""
import logging
import threading
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from app.agents.actions import ActionLog
from app.agents.models import ActionStatus, ActionType, AgentStatus, BuyerAgent
from app.agents.policy import decide, format_amount
from app.agents.quality import QualityAssessment, assess, declared_fields
from app.agents.store import AgentStore
from app.agents.wallets import WalletService
from app.catalog.store import Dataset
from app.core.config import settings
from app.core.errors import (
    AuthorizationError,
    ConcurrencyError,
    MarketplaceError,
    PaymentError,
)
from app.services.marketplace_api import MarketplaceClient

logger = logging.getLogger(__name__)


class CycleOutcome(Enum):
    CONTINUE = "continue"
    STOP = "stop"


def selection_score(dataset: Dataset) -> Decimal:
    """Quality minus price; a listing without a quality score counts as 0."""
    quality = Decimal(str(dataset.quality_score or 0))
    price = dataset.price_per_record or Decimal("0")
    return quality - price


def select_dataset(candidates: List[Dataset]) -> Optional[Dataset]:
    """Best candidate by selection_score; ties keep discovery order."""
    if not candidates:
        return None
    return max(candidates, key=selection_score)


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


class _CycleLog:
    """Action logging for one cycle; remembers pending entries it opened."""

    def __init__(self, action_log: ActionLog, agent_id: str):
        self.action_log = action_log
        self.agent_id = agent_id
        self._open: List[str] = []

    def log(
        self,
        action_type: ActionType,
        details: Dict[str, Any],
        status: ActionStatus = ActionStatus.SUCCESS,
    ) -> str:
        return self.action_log.append(self.agent_id, action_type, details, status).id

    def begin(self, action_type: ActionType, details: Dict[str, Any]) -> str:
        action_id = self.log(action_type, details, ActionStatus.PENDING)
        self._open.append(action_id)
        return action_id

    def finish(self, action_id: str, status: ActionStatus = ActionStatus.SUCCESS) -> None:
        self.action_log.update_status(action_id, status)
        if action_id in self._open:
            self._open.remove(action_id)

    def fail_open(self) -> None:
        for action_id in list(self._open):
            self.finish(action_id, ActionStatus.FAILED)


class AgentCycleExecutor:
    def __init__(
        self,
        agent_store: AgentStore,
        action_log: ActionLog,
        marketplace: MarketplaceClient,
        wallets: WalletService,
        sample_size: Optional[int] = None,
        max_per_purchase: Optional[int] = None,
    ):
        self.agent_store = agent_store
        self.action_log = action_log
        self.marketplace = marketplace
        self.wallets = wallets
        self._sample_size = sample_size
        self._max_per_purchase = max_per_purchase
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def sample_size(self) -> int:
        return self._sample_size or settings.AGENT_SAMPLE_SIZE

    @property
    def max_per_purchase(self) -> int:
        return self._max_per_purchase or settings.AGENT_MAX_RECORDS_PER_PURCHASE

    def _lock_for(self, agent_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(agent_id, threading.Lock())

    def forget(self, agent_id: str) -> None:
        """Drop the per-agent lock of a deleted agent."""
        with self._locks_guard:
            self._locks.pop(agent_id, None)

    def run_cycle(self, agent_id: str) -> CycleOutcome:
        """
        Run one cycle for an agent.

        Returns:
            CycleOutcome.STOP when the agent should no longer be scheduled
            (missing, not active, or finished during this cycle)

        Raises:
            ConcurrencyError: A cycle for this agent is already running
        """
        lock = self._lock_for(agent_id)
        if not lock.acquire(blocking=False):
            raise ConcurrencyError(f"A cycle for agent {agent_id} is already running")
        try:
            return self._run_cycle(agent_id)
        finally:
            lock.release()

    def _run_cycle(self, agent_id: str) -> CycleOutcome:
        agent = self.agent_store.find(agent_id)
        if agent is None or agent.status != AgentStatus.ACTIVE:
            return CycleOutcome.STOP

        cycle = _CycleLog(self.action_log, agent_id)

        try:
            if agent.spent >= agent.budget:
                self.agent_store.update_status(agent_id, AgentStatus.FAILED)
                cycle.log(ActionType.ERROR, {"error": "Budget exhausted"}, ActionStatus.FAILED)
                return CycleOutcome.STOP

            if agent.goal_reached:
                self.agent_store.update_status(agent_id, AgentStatus.COMPLETED)
                cycle.log(ActionType.GOAL_COMPLETED, {"quantity_acquired": agent.quantity_acquired})
                return CycleOutcome.STOP
        except ConcurrencyError as e:
            # Status changed under us (e.g. stopped); nothing to do this cycle.
            logger.info(f"Agent {agent_id} status changed before cycle: {e}")
            return CycleOutcome.STOP

        try:
            return self._acquire(agent, cycle)
        except Exception as e:
            logger.error(f"Error in agent cycle for {agent_id}: {e}", exc_info=True)
            cycle.fail_open()
            cycle.log(ActionType.ERROR, {"error": str(e)}, ActionStatus.FAILED)
            return CycleOutcome.CONTINUE

    def _discover(self, agent: BuyerAgent, cycle: _CycleLog) -> List[Dataset]:
        discovering = cycle.begin(
            ActionType.DISCOVERING_DATASETS,
            {
                "category": agent.requirements.category,
                "required_fields": agent.requirements.required_fields,
                "quality_threshold": agent.quality_threshold,
            },
        )
        datasets = self.marketplace.get_active_datasets(category=agent.requirements.category)
        cycle.finish(discovering)

        # Listings without a quality score are judged on their sample instead.
        return [
            d for d in datasets
            if d.quality_score is None or d.quality_score >= agent.quality_threshold
        ]

    def _acquire(self, agent: BuyerAgent, cycle: _CycleLog) -> CycleOutcome:
        candidates = self._discover(agent, cycle)
        if not candidates:
            cycle.log(ActionType.NO_DATASETS_FOUND, {"message": "No matching datasets found in marketplace"})
            return CycleOutcome.CONTINUE

        cycle.log(
            ActionType.DATASET_FOUND,
            {"count": len(candidates), "datasets": [{"id": d.id, "name": d.name} for d in candidates]},
        )

        selected = select_dataset(candidates)
        cycle.log(
            ActionType.DATASET_SELECTED,
            {"dataset_id": selected.id, "dataset_name": selected.name, "reason": "Best quality/price ratio"},
        )

        probe = self._probe(selected, cycle)
        if probe is None:
            return CycleOutcome.CONTINUE

        sample = self._sample(probe, cycle)
        if sample is None:
            return CycleOutcome.CONTINUE
        if not sample:
            cycle.log(
                ActionType.DECISION_SKIP,
                {"dataset_id": probe.id, "reason": "No sample data available"},
            )
            return CycleOutcome.CONTINUE

        assessment = self._assess(agent, probe, sample, cycle)

        deciding = cycle.begin(
            ActionType.DECISION_MAKING,
            {
                "dataset_id": probe.id,
                "quality_score": assessment.overall_score,
                "threshold": agent.quality_threshold,
                "budget_remaining": format_amount(agent.remaining_budget),
            },
        )
        decision = decide(agent, probe, assessment, max_per_purchase=self.max_per_purchase)
        cycle.finish(deciding)

        if not decision.approve:
            cycle.log(
                ActionType.DECISION_SKIP,
                {
                    "dataset_id": probe.id,
                    "dataset_name": probe.name,
                    "reason": decision.reason,
                    "quality_score": assessment.overall_score,
                },
            )
            return CycleOutcome.CONTINUE

        cycle.log(
            ActionType.DECISION_PURCHASE,
            {
                "dataset_id": probe.id,
                "dataset_name": probe.name,
                "reason": decision.reason,
                "quality_score": assessment.overall_score,
                "quantity": decision.quantity,
                "estimated_cost": decision.estimated_cost_str,
            },
        )
        return self._purchase(agent, probe, decision.quantity, cycle)

    def _probe(self, dataset: Dataset, cycle: _CycleLog) -> Optional[Dataset]:
        probing = cycle.begin(
            ActionType.PROBING_DATASET,
            {"dataset_id": dataset.id, "dataset_name": dataset.name},
        )
        try:
            probe = self.marketplace.probe_dataset(dataset.id)
        except MarketplaceError as e:
            logger.warning(f"Probe of dataset {dataset.id} failed: {e}")
            cycle.finish(probing, ActionStatus.FAILED)
            cycle.log(
                ActionType.ERROR,
                {"error": "Failed to probe dataset", "dataset_id": dataset.id, "detail": str(e)},
                ActionStatus.FAILED,
            )
            return None
        cycle.finish(probing)

        cycle.log(
            ActionType.PROBE_COMPLETE,
            {
                "dataset_id": probe.id,
                "dataset_name": probe.name,
                "price_per_record": format_amount(probe.price_per_record) if probe.price_per_record is not None else None,
                "quality_score": probe.quality_score,
                "total_rows": probe.total_rows,
                "schema_fields": declared_fields(probe.schema),
            },
        )
        return probe

    def _sample(self, dataset: Dataset, cycle: _CycleLog) -> Optional[List[Dict[str, Any]]]:
        requesting = cycle.begin(
            ActionType.REQUESTING_SAMPLE,
            {"dataset_id": dataset.id, "sample_size": self.sample_size},
        )
        try:
            sample = self.marketplace.get_sample(dataset.id, self.sample_size)
        except MarketplaceError as e:
            logger.warning(f"Sample request for dataset {dataset.id} failed: {e}")
            cycle.finish(requesting, ActionStatus.FAILED)
            cycle.log(
                ActionType.ERROR,
                {"error": "Failed to request sample", "dataset_id": dataset.id, "detail": str(e)},
                ActionStatus.FAILED,
            )
            return None
        cycle.finish(requesting)

        cycle.log(
            ActionType.SAMPLE_RECEIVED,
            {"dataset_id": dataset.id, "sample_count": len(sample), "sample_preview": sample[:2]},
        )
        return sample

    def _assess(
        self,
        agent: BuyerAgent,
        dataset: Dataset,
        sample: List[Dict[str, Any]],
        cycle: _CycleLog,
    ) -> QualityAssessment:
        analyzing = cycle.begin(
            ActionType.ANALYZING_SAMPLE,
            {"dataset_id": dataset.id, "sample_count": len(sample)},
        )
        assessment = assess(sample, agent.requirements.required_fields, dataset.schema)
        cycle.finish(analyzing)

        cycle.log(
            ActionType.QUALITY_CHECK,
            {
                "dataset_id": dataset.id,
                "completeness": _pct(assessment.completeness),
                "schema_match": _pct(assessment.schema_match),
                "data_quality": _pct(assessment.data_quality),
                "required_fields_present": assessment.required_fields_present,
                "overall_score": _pct(assessment.overall_score),
                "issues": assessment.issues or ["No issues found"],
            },
        )
        passed = assessment.passes(agent.quality_threshold)
        cycle.log(
            ActionType.QUALITY_ASSESSMENT_COMPLETE,
            {
                "dataset_id": dataset.id,
                "overall_score": assessment.overall_score,
                "passed_threshold": passed,
            },
            ActionStatus.SUCCESS if passed else ActionStatus.FAILED,
        )
        return assessment

    def _purchase(
        self,
        agent: BuyerAgent,
        dataset: Dataset,
        quantity: int,
        cycle: _CycleLog,
    ) -> CycleOutcome:
        requesting = cycle.begin(
            ActionType.REQUESTING_DATA,
            {"dataset_id": dataset.id, "dataset_name": dataset.name, "quantity": quantity},
        )

        response = self.marketplace.request_data(dataset.id, quantity, agent_id=agent.id)
        # Data is only ever bought through a 402 handshake.
        if response.status_code != 402:
            raise PaymentError(f"Unexpected response to unpaid data request: HTTP {response.status_code}")

        challenge = response.body
        try:
            amount_paid = Decimal(str(challenge.get("amount")))
        except InvalidOperation as e:
            raise PaymentError(f"Invalid payment challenge amount: {challenge.get('amount')!r}") from e

        if amount_paid > agent.remaining_budget:
            cycle.finish(requesting, ActionStatus.FAILED)
            cycle.log(
                ActionType.ERROR,
                {
                    "error": "Payment amount exceeds remaining budget",
                    "dataset_id": dataset.id,
                    "amount": format_amount(amount_paid),
                    "budget_remaining": format_amount(agent.remaining_budget),
                },
                ActionStatus.FAILED,
            )
            return CycleOutcome.CONTINUE

        if not agent.wallet_id:
            raise AuthorizationError("Agent has no wallet to sign payments with")

        payment = self.wallets.sign_payment(agent.wallet_id, challenge)
        response = self.marketplace.request_data(
            dataset.id, quantity, agent_id=agent.id, payment=payment
        )

        if response.status_code != 200:
            reason = response.body.get("error") or response.body.get("detail") or "unknown error"
            raise PaymentError(f"Data request failed with HTTP {response.status_code}: {reason}")

        records = response.body.get("records") or []
        receipt = response.body.get("payment") or {}
        transaction_hash = receipt.get("transaction_hash")
        received = len(records) or quantity
        cycle.finish(requesting)

        cycle.log(
            ActionType.DATA_RECEIVED,
            {
                "dataset_id": dataset.id,
                "dataset_name": dataset.name,
                "quantity": len(records),
                "records_preview": records[:3],
            },
        )

        updated = self.agent_store.record_purchase(agent.id, amount_paid, received)
        cycle.log(
            ActionType.PURCHASE_COMPLETE,
            {
                "dataset_id": dataset.id,
                "dataset_name": dataset.name,
                "quantity": received,
                "amount": format_amount(amount_paid),
                "transaction_hash": transaction_hash,
                "total_spent": format_amount(updated.spent),
                "total_acquired": updated.quantity_acquired,
            },
        )
        logger.info(
            f"Agent {agent.id} bought {received} records of {dataset.id} for {format_amount(amount_paid)} USDC"
        )

        if updated.status == AgentStatus.COMPLETED:
            cycle.log(ActionType.GOAL_COMPLETED, {"quantity_acquired": updated.quantity_acquired})
        if updated.status != AgentStatus.ACTIVE:
            return CycleOutcome.STOP
        return CycleOutcome.CONTINUE
