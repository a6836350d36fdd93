# app/agents/models.py
"""
Domain types for buyer agents and their action log.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


# Terminal statuses never change again.
TERMINAL_STATUSES = frozenset({AgentStatus.COMPLETED, AgentStatus.FAILED})

ALLOWED_TRANSITIONS = {
    AgentStatus.ACTIVE: frozenset({AgentStatus.PAUSED, AgentStatus.COMPLETED, AgentStatus.FAILED}),
    AgentStatus.PAUSED: frozenset({AgentStatus.ACTIVE}),
    AgentStatus.COMPLETED: frozenset(),
    AgentStatus.FAILED: frozenset(),
}


class ActionStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ActionType(Enum):
    """Every step an agent (or the gateway on its behalf) records."""
    AGENT_STARTED = "agent_started"
    AGENT_STOPPED = "agent_stopped"
    WALLET_FIXED = "wallet_fixed"
    DISCOVERING_DATASETS = "discovering_datasets"
    DATASET_FOUND = "dataset_found"
    NO_DATASETS_FOUND = "no_datasets_found"
    DATASET_SELECTED = "dataset_selected"
    PROBING_DATASET = "probing_dataset"
    PROBE_COMPLETE = "probe_complete"
    REQUESTING_SAMPLE = "requesting_sample"
    SAMPLE_RECEIVED = "sample_received"
    ANALYZING_SAMPLE = "analyzing_sample"
    QUALITY_CHECK = "quality_check"
    QUALITY_ASSESSMENT_COMPLETE = "quality_assessment_complete"
    DECISION_MAKING = "decision_making"
    DECISION_PURCHASE = "decision_purchase"
    DECISION_SKIP = "decision_skip"
    REQUESTING_DATA = "requesting_data"
    PAYMENT_402_RECEIVED = "payment_402_received"
    PAYMENT_SIGNING = "payment_signing"
    PAYMENT_SENT = "payment_sent"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    DATA_RECEIVED = "data_received"
    PURCHASE_COMPLETE = "purchase_complete"
    GOAL_COMPLETED = "goal_completed"
    ERROR = "error"


# Human-readable labels for the live feed. Must cover every ActionType.
ACTION_LABELS: Dict[ActionType, str] = {
    ActionType.AGENT_STARTED: "Agent started",
    ActionType.AGENT_STOPPED: "Agent stopped",
    ActionType.WALLET_FIXED: "Wallet assigned",
    ActionType.DISCOVERING_DATASETS: "Discovering datasets",
    ActionType.DATASET_FOUND: "Datasets found",
    ActionType.NO_DATASETS_FOUND: "No datasets found",
    ActionType.DATASET_SELECTED: "Dataset selected",
    ActionType.PROBING_DATASET: "Probing dataset",
    ActionType.PROBE_COMPLETE: "Probe complete",
    ActionType.REQUESTING_SAMPLE: "Requesting sample",
    ActionType.SAMPLE_RECEIVED: "Sample received",
    ActionType.ANALYZING_SAMPLE: "Analyzing sample",
    ActionType.QUALITY_CHECK: "Quality check",
    ActionType.QUALITY_ASSESSMENT_COMPLETE: "Quality assessment complete",
    ActionType.DECISION_MAKING: "Making decision",
    ActionType.DECISION_PURCHASE: "Decided to purchase",
    ActionType.DECISION_SKIP: "Skipped dataset",
    ActionType.REQUESTING_DATA: "Requesting data",
    ActionType.PAYMENT_402_RECEIVED: "Payment required (402)",
    ActionType.PAYMENT_SIGNING: "Verifying signed payment",
    ActionType.PAYMENT_SENT: "Payment sent",
    ActionType.PAYMENT_VERIFIED: "Payment verified",
    ActionType.PAYMENT_SETTLED: "Payment settled",
    ActionType.DATA_RECEIVED: "Data received",
    ActionType.PURCHASE_COMPLETE: "Purchase complete",
    ActionType.GOAL_COMPLETED: "Goal completed",
    ActionType.ERROR: "Error",
}


@dataclass
class AgentRequirements:
    category: Optional[str] = None
    required_fields: List[str] = field(default_factory=list)
    format: Optional[str] = None
    min_quality: Optional[float] = None
    filters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AgentRequirements":
        data = data or {}
        return cls(
            category=data.get("category"),
            required_fields=list(data.get("required_fields") or []),
            format=data.get("format"),
            min_quality=data.get("min_quality"),
            filters=dict(data.get("filters") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BuyerAgent:
    id: str
    owner_id: str
    name: str
    goal: str
    budget: Decimal
    requirements: AgentRequirements = field(default_factory=AgentRequirements)
    description: Optional[str] = None
    wallet_id: Optional[str] = None
    wallet_address: Optional[str] = None
    status: AgentStatus = AgentStatus.ACTIVE
    spent: Decimal = Decimal("0")
    quality_threshold: float = 0.7
    quantity_required: Optional[int] = None
    quantity_acquired: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def remaining_budget(self) -> Decimal:
        return self.budget - self.spent

    @property
    def goal_reached(self) -> bool:
        return (
            self.quantity_required is not None
            and self.quantity_acquired >= self.quantity_required
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "goal": self.goal,
            "requirements": self.requirements.to_dict(),
            "wallet_id": self.wallet_id,
            "wallet_address": self.wallet_address,
            "status": self.status.value,
            "budget": str(self.budget),
            "spent": str(self.spent),
            "quality_threshold": self.quality_threshold,
            "quantity_required": self.quantity_required,
            "quantity_acquired": self.quantity_acquired,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuyerAgent":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            name=data["name"],
            description=data.get("description"),
            goal=data.get("goal", ""),
            requirements=AgentRequirements.from_dict(data.get("requirements")),
            wallet_id=data.get("wallet_id"),
            wallet_address=data.get("wallet_address"),
            status=AgentStatus(data.get("status", AgentStatus.ACTIVE.value)),
            budget=Decimal(str(data["budget"])),
            spent=Decimal(str(data.get("spent", "0"))),
            quality_threshold=float(data.get("quality_threshold", 0.7)),
            quantity_required=data.get("quantity_required"),
            quantity_acquired=int(data.get("quantity_acquired", 0)),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else utcnow(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else utcnow(),
        )


@dataclass(frozen=True)
class AgentAction:
    id: str
    agent_id: str
    action_type: ActionType
    status: ActionStatus
    details: Dict[str, Any]
    created_at: datetime

    @property
    def label(self) -> str:
        return ACTION_LABELS[self.action_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "action_type": self.action_type.value,
            "status": self.status.value,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentAction":
        return cls(
            id=data["id"],
            agent_id=data["agent_id"],
            action_type=ActionType(data["action_type"]),
            status=ActionStatus(data["status"]),
            details=data.get("details") or {},
            created_at=datetime.fromisoformat(data["created_at"]),
        )
