from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from app.agents.models import AgentAction, BuyerAgent


class AgentRequirementsModel(BaseModel):
    category: Optional[str] = Field(None, description="Only consider datasets in this category.")
    required_fields: List[str] = Field(default_factory=list, description="Fields every record must carry.")
    format: Optional[str] = None
    min_quality: Optional[float] = Field(None, ge=0, le=1)
    filters: Dict[str, Any] = Field(default_factory=dict)


class AgentCreateRequest(BaseModel):
    """
    Request body for creating a buyer agent. Budget is in USDC; a wallet is
    provisioned for the agent automatically when possible.
    """
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    goal: str = Field(..., min_length=1)
    requirements: AgentRequirementsModel = Field(default_factory=AgentRequirementsModel)
    budget: Decimal = Field(..., gt=0, description="Total USDC the agent may spend.")
    quality_threshold: Optional[float] = Field(None, ge=0, le=1, description="Minimum sample score (default 0.7).")
    quantity_required: Optional[int] = Field(None, gt=0, description="Records to acquire before completing.")

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Weather collector",
                "goal": "Collect 500 hourly weather observations",
                "requirements": {"category": "weather", "required_fields": ["timestamp", "temperature"]},
                "budget": "5.00",
                "quality_threshold": 0.7,
                "quantity_required": 500
            }
        }


class AgentResponse(BaseModel):
    id: str
    owner_id: str
    name: str
    description: Optional[str] = None
    goal: str
    requirements: AgentRequirementsModel
    wallet_id: Optional[str] = None
    wallet_address: Optional[str] = None
    status: str
    budget: str
    spent: str
    quality_threshold: float
    quantity_required: Optional[int] = None
    quantity_acquired: int
    created_at: str
    updated_at: str
    running: bool = Field(False, description="Whether cycles are currently scheduled.")

    @classmethod
    def from_agent(cls, agent: BuyerAgent, running: bool = False) -> "AgentResponse":
        return cls(**agent.to_dict(), running=running)


class AgentListResponse(BaseModel):
    agents: List[AgentResponse]
    total_count: int


class AgentBalanceResponse(BaseModel):
    agent_id: str
    wallet_id: str
    address: str
    asset: str
    network: str
    amount: str


class ActionResponse(BaseModel):
    id: str
    agent_id: str
    action_type: str
    label: str
    status: str
    details: Dict[str, Any]
    created_at: str

    @classmethod
    def from_action(cls, action: AgentAction) -> "ActionResponse":
        return cls(**action.to_dict(), label=action.label)


class ActionListResponse(BaseModel):
    actions: List[ActionResponse]
    total_count: int
