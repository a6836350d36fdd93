# app/api/endpoints/realtime.py
"""
Live agent action feed over server-sent events.

The stream opens with a `connected` event, then polls the action log every
REALTIME_POLL_INTERVAL_SECONDS and forwards each new entry as an `action`
event. The watermark is the created_at of the last forwarded entry, and
the log guarantees strictly increasing timestamps, so nothing is skipped or
sent twice. A failed poll produces an `error` event and the stream keeps
going; it ends when the client disconnects.

EventSource cannot set headers, so the token may be passed as ?token=.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from app.agents.actions import ActionLog
from app.agents.store import AgentStore
from app.api.deps import get_action_log, get_agent_store
from app.api.models.agent import ActionResponse
from app.core.auth import get_current_owner
from app.core.config import settings
from app.core.errors import NotFoundError

router = APIRouter()
logger = logging.getLogger(__name__)


def sse_data(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def action_event_stream(
    agent_id: str,
    action_log: ActionLog,
    is_disconnected: Callable[[], Awaitable[bool]],
    poll_interval: float,
    since: Optional[datetime] = None,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for one agent until the client goes away.

    Args:
        agent_id: Agent whose actions are streamed
        action_log: Source of actions
        is_disconnected: Awaitable check, typically Request.is_disconnected
        poll_interval: Seconds between polls
        since: Replay entries after this instant (default: only entries
            logged after the client connected)
    """
    watermark = since
    if watermark is None:
        latest = await run_in_threadpool(action_log.list, agent_id, 1)
        watermark = latest[0].created_at if latest else None
    yield sse_data({"type": "connected", "agentId": agent_id})

    while not await is_disconnected():
        try:
            actions = await run_in_threadpool(action_log.list_since, agent_id, watermark)
        except Exception as e:
            logger.error(f"Failed to poll actions for agent {agent_id}: {e}")
            yield sse_data({"type": "error", "message": "Failed to fetch actions"})
        else:
            for action in actions:
                yield sse_data({"type": "action", "data": ActionResponse.from_action(action).model_dump()})
            if actions:
                watermark = actions[-1].created_at

        await asyncio.sleep(poll_interval)

    logger.info(f"Realtime client for agent {agent_id} disconnected")


@router.get(
    "/agent/{agent_id}",
    summary="Stream Agent Actions (SSE)"
)
async def stream_agent_actions(
    request: Request,
    agent_id: str = Path(..., description="Agent identifier."),
    since: Optional[datetime] = Query(None, description="Replay actions created after this ISO timestamp."),
    owner_id: str = Depends(get_current_owner),
    store: AgentStore = Depends(get_agent_store),
    action_log: ActionLog = Depends(get_action_log),
) -> Any:
    try:
        agent = store.get(agent_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    if agent.owner_id != owner_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")

    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)

    generator = action_event_stream(
        agent_id,
        action_log,
        request.is_disconnected,
        settings.REALTIME_POLL_INTERVAL_SECONDS,
        since=since,
    )
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
