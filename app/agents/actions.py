# app/agents/actions.py
"""
Append-only action log for buyer agents.

Every step of an agent cycle, and every payment event the gateway handles on
an agent's behalf, is recorded here. The log backs three consumers:
- the owner's action history (most recent first)
- the live feed, which polls for entries strictly after a watermark
- seller views (dataset interactions, sales stats, records sold)

Ordering: created_at is strictly increasing across the whole log. When two
appends land on the same clock tick the later one is bumped by a microsecond,
so a created_at watermark never skips or repeats an entry.

Persistence (optional): JSON lines, one entry per line. A status update
re-appends the full entry; on load the last line for an id wins.
"""
import json
import logging
import threading
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from app.agents.models import ActionStatus, ActionType, AgentAction, utcnow
from app.core.errors import NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 100
RECENT_LIMIT = 50
RECENT_SALES_LIMIT = 10


class ActionLog:
    """Thread-safe, append-only AgentAction storage."""

    def __init__(self, path: Optional[str] = None):
        self._entries: List[AgentAction] = []
        self._index: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._last_created_at: Optional[datetime] = None
        self._path = Path(path) if path else None
        if self._path is not None:
            self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return

        latest: Dict[str, AgentAction] = {}
        with open(self._path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    action = AgentAction.from_dict(json.loads(line))
                except (ValueError, KeyError) as e:
                    logger.warning(f"Skipping unreadable action log line: {e}")
                    continue
                latest[action.id] = action

        self._entries = sorted(latest.values(), key=lambda a: a.created_at)
        self._index = {a.id: i for i, a in enumerate(self._entries)}
        if self._entries:
            self._last_created_at = self._entries[-1].created_at
        logger.info(f"Loaded {len(self._entries)} actions from {self._path}")

    def _write_line(self, action: AgentAction) -> None:
        # Caller holds the lock.
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a") as f:
                f.write(json.dumps(action.to_dict()) + "\n")
        except OSError as e:
            logger.error(f"Failed to write action log entry {action.id}: {e}")

    def _next_timestamp(self) -> datetime:
        now = utcnow()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    def append(
        self,
        agent_id: str,
        action_type: ActionType,
        details: Optional[Dict[str, Any]] = None,
        status: ActionStatus = ActionStatus.SUCCESS,
    ) -> AgentAction:
        with self._lock:
            action = AgentAction(
                id=str(uuid.uuid4()),
                agent_id=agent_id,
                action_type=action_type,
                status=status,
                details=dict(details or {}),
                created_at=self._next_timestamp(),
            )
            self._index[action.id] = len(self._entries)
            self._entries.append(action)
            self._write_line(action)

        logger.debug(f"Agent {agent_id} action: {action_type.value} [{status.value}]")
        return action

    def update_status(self, action_id: str, status: ActionStatus) -> AgentAction:
        """
        Finalise a pending entry.

        Only pending entries change; an entry that is already final is
        returned untouched. The entry keeps its position and created_at.
        """
        with self._lock:
            position = self._index.get(action_id)
            if position is None:
                raise NotFoundError(f"Action not found: {action_id}")
            action = self._entries[position]
            if action.status != ActionStatus.PENDING or status == ActionStatus.PENDING:
                return action

            updated = AgentAction(
                id=action.id,
                agent_id=action.agent_id,
                action_type=action.action_type,
                status=status,
                details=action.details,
                created_at=action.created_at,
            )
            self._entries[position] = updated
            self._write_line(updated)
            return updated

    def get(self, action_id: str) -> AgentAction:
        with self._lock:
            position = self._index.get(action_id)
            if position is None:
                raise NotFoundError(f"Action not found: {action_id}")
            return self._entries[position]

    def list(self, agent_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[AgentAction]:
        """Entries of one agent, most recent first."""
        with self._lock:
            result = []
            for action in reversed(self._entries):
                if action.agent_id != agent_id:
                    continue
                result.append(action)
                if len(result) >= limit:
                    break
            return result

    def list_since(
        self,
        agent_id: str,
        since: Optional[datetime],
        limit: int = RECENT_LIMIT,
    ) -> List[AgentAction]:
        """Entries of one agent created strictly after `since`, oldest first."""
        with self._lock:
            result = []
            for action in self._entries:
                if action.agent_id != agent_id:
                    continue
                if since is not None and action.created_at <= since:
                    continue
                result.append(action)
                if len(result) >= limit:
                    break
            return result

    def _purchases(self, dataset_ids: Iterable[str]) -> List[AgentAction]:
        # Caller holds the lock.
        wanted = set(dataset_ids)
        return [
            a for a in self._entries
            if a.action_type == ActionType.PURCHASE_COMPLETE
            and a.status == ActionStatus.SUCCESS
            and a.details.get("dataset_id") in wanted
        ]

    def dataset_interactions(self, dataset_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[AgentAction]:
        """Every agent's entries that reference the dataset, most recent first."""
        with self._lock:
            result = []
            for action in reversed(self._entries):
                if action.details.get("dataset_id") != dataset_id:
                    continue
                result.append(action)
                if len(result) >= limit:
                    break
            return result

    def records_sold(self, dataset_id: str) -> int:
        with self._lock:
            return sum(int(a.details.get("quantity") or 0) for a in self._purchases([dataset_id]))

    def seller_stats(self, dataset_ids: Iterable[str]) -> Dict[str, Any]:
        """
        Sales summary across a seller's datasets.

        Returns:
            Dict with total_sales, total_revenue (6dp string),
            total_records_sold and the most recent sales (newest first).
        """
        with self._lock:
            purchases = self._purchases(dataset_ids)

        revenue = Decimal("0")
        records = 0
        for purchase in purchases:
            revenue += Decimal(str(purchase.details.get("amount") or "0"))
            records += int(purchase.details.get("quantity") or 0)

        recent_sales = [
            {
                "agent_id": p.agent_id,
                "dataset_id": p.details.get("dataset_id"),
                "dataset_name": p.details.get("dataset_name"),
                "quantity": p.details.get("quantity"),
                "amount": p.details.get("amount"),
                "created_at": p.created_at.isoformat(),
            }
            for p in reversed(purchases[-RECENT_SALES_LIMIT:])
        ]

        return {
            "total_sales": len(purchases),
            "total_revenue": str(revenue.quantize(Decimal("0.000001"))),
            "total_records_sold": records,
            "recent_sales": recent_sales,
        }
