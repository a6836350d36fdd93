# app/agents/scheduler.py
"""
Periodic execution of agent cycles.

Each running agent gets a daemon thread and its own stop event. The thread
waits one interval, runs a cycle, and only then starts waiting again, so
cycles of the same agent never overlap. Stopping an agent sets its event:
no further cycles start, and a cycle already in flight runs to completion.

On startup recover_active_agents() restarts every agent left active by a
previous process; it is the only place agents are started implicitly.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from app.agents.actions import ActionLog
from app.agents.executor import AgentCycleExecutor, CycleOutcome
from app.agents.models import ActionStatus, ActionType, AgentStatus
from app.agents.store import AgentStore
from app.agents.wallets import WalletService
from app.core.config import settings
from app.core.errors import ConcurrencyError

logger = logging.getLogger(__name__)


@dataclass
class ScheduledAgent:
    agent_id: str
    stop: threading.Event
    thread: Optional[threading.Thread] = None


class AgentScheduler:
    def __init__(
        self,
        agent_store: AgentStore,
        action_log: ActionLog,
        executor: AgentCycleExecutor,
        wallets: WalletService,
        interval: Optional[float] = None,
    ):
        self.agent_store = agent_store
        self.action_log = action_log
        self.executor = executor
        self.wallets = wallets
        self._interval = interval
        self._tasks: Dict[str, ScheduledAgent] = {}
        self._lock = threading.Lock()

    @property
    def interval(self) -> float:
        """Seconds between cycles (lazy load from settings if not set)."""
        if self._interval is not None:
            return self._interval
        return settings.AGENT_CYCLE_INTERVAL_SECONDS

    def is_running(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._tasks

    def running_agents(self) -> List[str]:
        with self._lock:
            return list(self._tasks.keys())

    def _ensure_wallet(self, agent_id: str) -> bool:
        """Give a wallet-less agent its owner's wallet. False if that fails."""
        agent = self.agent_store.get(agent_id)
        if agent.wallet_id:
            return True

        logger.warning(f"Agent {agent_id} does not have a wallet - attempting to fix")
        try:
            wallet = self.wallets.provision_agent_wallet(agent.owner_id, agent.name)
            self.agent_store.assign_wallet(agent_id, wallet.id, wallet.address)
        except Exception as e:
            logger.error(f"Failed to fix wallet for agent {agent_id}: {e}")
            self.action_log.append(
                agent_id,
                ActionType.ERROR,
                {"error": f"Agent wallet not found: {e}"},
                ActionStatus.FAILED,
            )
            return False

        self.action_log.append(
            agent_id,
            ActionType.WALLET_FIXED,
            {"message": "Agent wallet was automatically fixed", "wallet_address": wallet.address},
        )
        return True

    def start(self, agent_id: str) -> bool:
        """
        Start scheduling an agent.

        Returns:
            True if the agent is (now or already) running, False if it is
            not active or has no usable wallet

        Raises:
            NotFoundError: Unknown agent
        """
        if self.is_running(agent_id):
            logger.warning(f"Agent {agent_id} is already running")
            return True

        agent = self.agent_store.get(agent_id)
        if agent.status != AgentStatus.ACTIVE:
            logger.warning(f"Agent {agent_id} is not active, status: {agent.status.value}")
            return False

        if not self._ensure_wallet(agent_id):
            return False

        with self._lock:
            if agent_id in self._tasks:
                return True
            task = ScheduledAgent(agent_id=agent_id, stop=threading.Event())
            task.thread = threading.Thread(
                target=self._run,
                args=(task,),
                name=f"agent-{agent_id[:8]}",
                daemon=True,
            )
            self._tasks[agent_id] = task

        self.action_log.append(
            agent_id,
            ActionType.AGENT_STARTED,
            {"message": "Agent started discovering datasets"},
        )
        task.thread.start()
        logger.info(f"Starting agent execution: {agent_id}")
        return True

    def _run(self, task: ScheduledAgent) -> None:
        agent_id = task.agent_id
        try:
            while not task.stop.wait(timeout=self.interval):
                try:
                    outcome = self.executor.run_cycle(agent_id)
                except ConcurrencyError as e:
                    logger.warning(f"Skipping cycle for agent {agent_id}: {e}")
                    continue
                except Exception as e:
                    logger.error(f"Error in agent cycle for {agent_id}: {e}", exc_info=True)
                    self.action_log.append(
                        agent_id, ActionType.ERROR, {"error": str(e)}, ActionStatus.FAILED
                    )
                    continue

                if outcome == CycleOutcome.STOP:
                    logger.info(f"Agent {agent_id} finished; no further cycles scheduled")
                    break
        finally:
            with self._lock:
                if self._tasks.get(agent_id) is task:
                    del self._tasks[agent_id]

    def stop(self, agent_id: str) -> bool:
        """
        Cancel future cycles of an agent.

        Returns:
            True if the agent was running
        """
        with self._lock:
            task = self._tasks.pop(agent_id, None)
        if task is None:
            return False
        task.stop.set()
        logger.info(f"Stopped agent execution: {agent_id}")
        return True

    def stop_all(self, timeout: Optional[float] = None) -> None:
        """Stop every running agent and wait briefly for in-flight cycles."""
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for task in tasks:
            task.stop.set()
        for task in tasks:
            if task.thread is not None and task.thread.is_alive():
                task.thread.join(timeout=timeout)
        if tasks:
            logger.info(f"Stopped {len(tasks)} running agents")

    def recover_active_agents(self) -> int:
        """
        Restart every agent persisted as active.

        Returns:
            Number of agents now running
        """
        started = 0
        for agent in self.agent_store.list_by_status(AgentStatus.ACTIVE):
            try:
                if self.start(agent.id):
                    started += 1
            except Exception as e:
                logger.error(f"Failed to recover agent {agent.id}: {e}")
        logger.info(f"Recovered {started} active agents")
        return started
