# app/agents/store.py
"""
Ledger store for BuyerAgent records.

Agents live in memory behind a single lock. When a path is configured the
whole table is rewritten as JSON after every mutation, so a restart (and the
scheduler's recovery sweep) sees the last committed state.

Readers always receive copies; the only way to change an agent is through
the methods below, which enforce the status machine:

    active -> paused | completed | failed
    paused -> active
    completed, failed: terminal
"""
import copy
import json
import logging
import threading
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from app.agents.models import (
    ALLOWED_TRANSITIONS,
    AgentRequirements,
    AgentStatus,
    BuyerAgent,
    utcnow,
)
from app.core.errors import ConcurrencyError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class AgentStore:
    """Thread-safe BuyerAgent table with optional JSON file persistence."""

    def __init__(self, path: Optional[str] = None):
        self._agents: Dict[str, BuyerAgent] = {}
        self._lock = threading.Lock()
        self._path = Path(path) if path else None
        if self._path is not None:
            self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            with open(self._path, "r") as f:
                rows = json.load(f)
            for row in rows:
                agent = BuyerAgent.from_dict(row)
                self._agents[agent.id] = agent
            logger.info(f"Loaded {len(self._agents)} agents from {self._path}")
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to load agent store from {self._path}: {e}")
            raise

    def _persist(self) -> None:
        # Caller holds the lock.
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump([a.to_dict() for a in self._agents.values()], f)
        tmp_path.replace(self._path)

    def _require(self, agent_id: str) -> BuyerAgent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return agent

    def create(
        self,
        owner_id: str,
        name: str,
        goal: str,
        budget: Decimal,
        requirements: Optional[AgentRequirements] = None,
        description: Optional[str] = None,
        quality_threshold: float = 0.7,
        quantity_required: Optional[int] = None,
        wallet_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> BuyerAgent:
        if budget <= 0:
            raise ValidationError("Budget must be positive")
        if not 0 <= quality_threshold <= 1:
            raise ValidationError("Quality threshold must be between 0 and 1")
        if quantity_required is not None and quantity_required <= 0:
            raise ValidationError("Quantity required must be positive")

        agent = BuyerAgent(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            name=name,
            description=description,
            goal=goal,
            requirements=requirements or AgentRequirements(),
            budget=budget,
            quality_threshold=quality_threshold,
            quantity_required=quantity_required,
            wallet_id=wallet_id,
            wallet_address=wallet_address,
        )
        with self._lock:
            self._agents[agent.id] = agent
            self._persist()
        logger.info(f"Created agent {agent.id} for owner {owner_id} (budget {budget})")
        return copy.deepcopy(agent)

    def get(self, agent_id: str) -> BuyerAgent:
        with self._lock:
            return copy.deepcopy(self._require(agent_id))

    def find(self, agent_id: str) -> Optional[BuyerAgent]:
        with self._lock:
            agent = self._agents.get(agent_id)
            return copy.deepcopy(agent) if agent else None

    def list_by_owner(self, owner_id: str) -> List[BuyerAgent]:
        """Agents of one owner, newest first."""
        with self._lock:
            agents = [a for a in self._agents.values() if a.owner_id == owner_id]
            # Stable ascending sort, then reverse: ties go to the later insert.
            agents.sort(key=lambda a: a.created_at)
            agents.reverse()
            return copy.deepcopy(agents)

    def list_by_status(self, status: AgentStatus) -> List[BuyerAgent]:
        with self._lock:
            return copy.deepcopy([a for a in self._agents.values() if a.status == status])

    def update_status(self, agent_id: str, status: AgentStatus) -> BuyerAgent:
        """
        Move an agent to a new status.

        Setting the current status again is a no-op. Any other move not in
        the transition table raises ConcurrencyError (409).
        """
        with self._lock:
            agent = self._require(agent_id)
            if agent.status == status:
                return copy.deepcopy(agent)
            if status not in ALLOWED_TRANSITIONS[agent.status]:
                raise ConcurrencyError(
                    f"Cannot change agent status from {agent.status.value} to {status.value}"
                )
            agent.status = status
            agent.updated_at = utcnow()
            self._persist()
            logger.info(f"Agent {agent_id} status -> {status.value}")
            return copy.deepcopy(agent)

    def assign_wallet(self, agent_id: str, wallet_id: str, wallet_address: str) -> BuyerAgent:
        with self._lock:
            agent = self._require(agent_id)
            agent.wallet_id = wallet_id
            agent.wallet_address = wallet_address
            agent.updated_at = utcnow()
            self._persist()
            return copy.deepcopy(agent)

    def record_purchase(self, agent_id: str, amount: Decimal, quantity: int) -> BuyerAgent:
        """
        Add a completed purchase to the agent's counters in one step.

        After the increment: goal reached -> completed; otherwise spent at or
        over budget -> failed. Status only changes while the agent is active,
        so a purchase landing after a stop leaves the agent paused.
        """
        if amount < 0 or quantity < 0:
            raise ValidationError("Purchase amount and quantity must be non-negative")

        with self._lock:
            agent = self._require(agent_id)
            agent.spent += amount
            agent.quantity_acquired += quantity

            if agent.status == AgentStatus.ACTIVE:
                if agent.goal_reached:
                    agent.status = AgentStatus.COMPLETED
                elif agent.spent >= agent.budget:
                    agent.status = AgentStatus.FAILED

            agent.updated_at = utcnow()
            self._persist()
            logger.info(
                f"Agent {agent_id} purchase recorded: +{quantity} records, +{amount} spent "
                f"(total {agent.quantity_acquired} records, {agent.spent}/{agent.budget}), "
                f"status {agent.status.value}"
            )
            return copy.deepcopy(agent)

    def delete(self, agent_id: str) -> None:
        with self._lock:
            self._require(agent_id)
            del self._agents[agent_id]
            self._persist()
        logger.info(f"Deleted agent {agent_id}")
