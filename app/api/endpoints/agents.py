# app/api/endpoints/agents.py
from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from datetime import datetime, timezone
from typing import Any, Optional
import logging

from app.agents.actions import ActionLog
from app.agents.executor import AgentCycleExecutor
from app.agents.models import ActionType, AgentRequirements, AgentStatus, BuyerAgent, TERMINAL_STATUSES
from app.agents.scheduler import AgentScheduler
from app.agents.store import AgentStore
from app.agents.wallets import WalletService
from app.api.deps import (
    get_action_log,
    get_agent_store,
    get_executor,
    get_scheduler,
    get_wallet_service,
)
from app.api.models.agent import (
    ActionListResponse,
    ActionResponse,
    AgentBalanceResponse,
    AgentCreateRequest,
    AgentListResponse,
    AgentResponse,
)
from app.core.auth import get_current_owner
from app.core.config import settings
from app.core.errors import ConcurrencyError, ExternalServiceError, NotFoundError, ValidationError

router = APIRouter()
logger = logging.getLogger(__name__)


def _get_owned_agent(store: AgentStore, agent_id: str, owner_id: str) -> BuyerAgent:
    """Agent by id, hidden (404) from everyone but its owner."""
    try:
        agent = store.get(agent_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    if agent.owner_id != owner_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    return agent


@router.post(
    "",
    response_model=AgentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a Buyer Agent"
)
async def create_agent(
    request: AgentCreateRequest,
    owner_id: str = Depends(get_current_owner),
    store: AgentStore = Depends(get_agent_store),
    wallets: WalletService = Depends(get_wallet_service),
    scheduler: AgentScheduler = Depends(get_scheduler),
) -> Any:
    """
    Creates an agent, provisions a wallet for it and starts it.

    Wallet creation failures do not block creation: the agent is created
    without a wallet and gets its owner's wallet when it starts.
    """
    wallet = None
    try:
        wallet = wallets.create_wallet(owner_id, f"{request.name} wallet")
    except Exception as e:
        logger.warning(f"Wallet creation failed for new agent {request.name!r}, continuing without: {e}")

    quality_threshold = request.quality_threshold
    if quality_threshold is None:
        quality_threshold = settings.AGENT_DEFAULT_QUALITY_THRESHOLD

    try:
        agent = store.create(
            owner_id=owner_id,
            name=request.name,
            description=request.description,
            goal=request.goal,
            requirements=AgentRequirements.from_dict(request.requirements.model_dump()),
            budget=request.budget,
            quality_threshold=quality_threshold,
            quantity_required=request.quantity_required,
            wallet_id=wallet.id if wallet else None,
            wallet_address=wallet.address if wallet else None,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    try:
        scheduler.start(agent.id)
    except Exception as e:
        logger.error(f"Failed to start agent {agent.id} after creation: {e}")

    agent = store.get(agent.id)
    return AgentResponse.from_agent(agent, running=scheduler.is_running(agent.id))


@router.get(
    "",
    response_model=AgentListResponse,
    summary="List My Agents"
)
async def list_agents(
    owner_id: str = Depends(get_current_owner),
    store: AgentStore = Depends(get_agent_store),
    scheduler: AgentScheduler = Depends(get_scheduler),
) -> Any:
    agents = [
        AgentResponse.from_agent(a, running=scheduler.is_running(a.id))
        for a in store.list_by_owner(owner_id)
    ]
    return AgentListResponse(agents=agents, total_count=len(agents))


@router.get(
    "/{agent_id}",
    response_model=AgentResponse,
    summary="Get Agent Details"
)
async def get_agent(
    agent_id: str = Path(..., description="Agent identifier."),
    owner_id: str = Depends(get_current_owner),
    store: AgentStore = Depends(get_agent_store),
    scheduler: AgentScheduler = Depends(get_scheduler),
) -> Any:
    agent = _get_owned_agent(store, agent_id, owner_id)
    return AgentResponse.from_agent(agent, running=scheduler.is_running(agent_id))


@router.get(
    "/{agent_id}/balance",
    response_model=AgentBalanceResponse,
    summary="Get Agent Wallet Balance"
)
def get_agent_balance(
    agent_id: str = Path(..., description="Agent identifier."),
    asset: str = Query("USDC", description="Asset to report."),
    owner_id: str = Depends(get_current_owner),
    store: AgentStore = Depends(get_agent_store),
    wallets: WalletService = Depends(get_wallet_service),
) -> Any:
    """
    On-chain balance of the agent's wallet.

    Raises:
        HTTPException: 403 if the agent has no wallet, 400 for an unsupported
        asset, 502 if the RPC endpoint cannot be reached
    """
    agent = _get_owned_agent(store, agent_id, owner_id)
    if not agent.wallet_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Agent has no wallet configured")

    try:
        balance = wallets.get_balance(agent.wallet_id, asset)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except ExternalServiceError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)

    return AgentBalanceResponse(agent_id=agent_id, **balance)


@router.post(
    "/{agent_id}/start",
    response_model=AgentResponse,
    summary="Start (or Resume) an Agent"
)
async def start_agent(
    agent_id: str = Path(..., description="Agent identifier."),
    owner_id: str = Depends(get_current_owner),
    store: AgentStore = Depends(get_agent_store),
    scheduler: AgentScheduler = Depends(get_scheduler),
) -> Any:
    """
    Resumes a paused agent and schedules its cycles. Completed and failed
    agents cannot be restarted (409).
    """
    agent = _get_owned_agent(store, agent_id, owner_id)
    if agent.status in TERMINAL_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Agent is {agent.status.value} and cannot be restarted"
        )

    try:
        if agent.status == AgentStatus.PAUSED:
            store.update_status(agent_id, AgentStatus.ACTIVE)
        started = scheduler.start(agent_id)
    except ConcurrencyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    if not started:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Agent could not be started: no wallet available"
        )

    return AgentResponse.from_agent(store.get(agent_id), running=scheduler.is_running(agent_id))


@router.post(
    "/{agent_id}/stop",
    response_model=AgentResponse,
    summary="Stop (Pause) an Agent"
)
async def stop_agent(
    agent_id: str = Path(..., description="Agent identifier."),
    owner_id: str = Depends(get_current_owner),
    store: AgentStore = Depends(get_agent_store),
    action_log: ActionLog = Depends(get_action_log),
    scheduler: AgentScheduler = Depends(get_scheduler),
) -> Any:
    """
    Cancels future cycles and pauses an active agent. A cycle already in
    progress finishes normally.
    """
    agent = _get_owned_agent(store, agent_id, owner_id)
    was_running = scheduler.stop(agent_id)
    paused = False

    if agent.status == AgentStatus.ACTIVE:
        try:
            agent = store.update_status(agent_id, AgentStatus.PAUSED)
            paused = True
        except ConcurrencyError:
            # Finished between the read and the update; report current state.
            agent = store.get(agent_id)

    if was_running or paused:
        action_log.append(agent_id, ActionType.AGENT_STOPPED, {"message": "Agent stopped by owner"})

    return AgentResponse.from_agent(agent, running=False)


@router.post(
    "/{agent_id}/fix-wallet",
    response_model=AgentResponse,
    summary="Assign the Owner's Wallet to an Agent"
)
async def fix_agent_wallet(
    agent_id: str = Path(..., description="Agent identifier."),
    owner_id: str = Depends(get_current_owner),
    store: AgentStore = Depends(get_agent_store),
    wallets: WalletService = Depends(get_wallet_service),
    action_log: ActionLog = Depends(get_action_log),
    scheduler: AgentScheduler = Depends(get_scheduler),
) -> Any:
    """
    Gives an agent without a wallet its owner's wallet, creating one for the
    owner if needed. Agents that already have a wallet are returned as is.
    """
    agent = _get_owned_agent(store, agent_id, owner_id)
    if agent.wallet_id:
        return AgentResponse.from_agent(agent, running=scheduler.is_running(agent_id))

    try:
        wallet = wallets.provision_agent_wallet(owner_id, agent.name)
    except Exception as e:
        logger.error(f"Failed to fix wallet for agent {agent_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not provision a wallet for the agent"
        )

    agent = store.assign_wallet(agent_id, wallet.id, wallet.address)
    action_log.append(
        agent_id,
        ActionType.WALLET_FIXED,
        {"message": "Agent wallet was fixed by owner", "wallet_address": wallet.address},
    )
    return AgentResponse.from_agent(agent, running=scheduler.is_running(agent_id))


@router.delete(
    "/{agent_id}",
    summary="Delete an Agent"
)
async def delete_agent(
    agent_id: str = Path(..., description="Agent identifier."),
    owner_id: str = Depends(get_current_owner),
    store: AgentStore = Depends(get_agent_store),
    scheduler: AgentScheduler = Depends(get_scheduler),
    executor: AgentCycleExecutor = Depends(get_executor),
) -> Any:
    """Stops the agent's schedule, then deletes it. Its action history is kept."""
    _get_owned_agent(store, agent_id, owner_id)
    scheduler.stop(agent_id)
    store.delete(agent_id)
    executor.forget(agent_id)
    return {"message": "Agent deleted", "agent_id": agent_id}


@router.get(
    "/{agent_id}/actions",
    response_model=ActionListResponse,
    summary="Agent Action History"
)
async def list_agent_actions(
    agent_id: str = Path(..., description="Agent identifier."),
    limit: int = Query(100, ge=1, le=1000),
    owner_id: str = Depends(get_current_owner),
    store: AgentStore = Depends(get_agent_store),
    action_log: ActionLog = Depends(get_action_log),
) -> Any:
    """Most recent actions first."""
    _get_owned_agent(store, agent_id, owner_id)
    actions = [ActionResponse.from_action(a) for a in action_log.list(agent_id, limit)]
    return ActionListResponse(actions=actions, total_count=len(actions))


@router.get(
    "/{agent_id}/actions/recent",
    response_model=ActionListResponse,
    summary="Agent Actions Since a Timestamp"
)
async def list_recent_agent_actions(
    agent_id: str = Path(..., description="Agent identifier."),
    since: Optional[datetime] = Query(None, description="Only actions created strictly after this ISO timestamp."),
    owner_id: str = Depends(get_current_owner),
    store: AgentStore = Depends(get_agent_store),
    action_log: ActionLog = Depends(get_action_log),
) -> Any:
    """Up to 50 actions created after `since`, oldest first."""
    _get_owned_agent(store, agent_id, owner_id)
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    actions = [ActionResponse.from_action(a) for a in action_log.list_since(agent_id, since)]
    return ActionListResponse(actions=actions, total_count=len(actions))
