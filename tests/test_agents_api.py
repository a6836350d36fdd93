# tests/test_agents_api.py
"""
API tests for the buyer agent endpoints.

The scheduler is mocked so no cycles run; stores and wallets are real
in-memory instances.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from unittest.mock import patch, MagicMock
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.agents.actions import ActionLog
from app.agents.models import ActionType, AgentStatus
from app.agents.scheduler import AgentScheduler
from app.agents.store import AgentStore
from app.agents.wallets import WalletService
from app.api import deps
from app.api.endpoints import agents
from app.core.errors import MarketplaceError, marketplace_error_handler

OWNER_TOKEN = "owner-token"
OTHER_TOKEN = "other-token"

CREATE_BODY = {
    "name": "Weather collector",
    "goal": "Collect hourly weather observations",
    "requirements": {"category": "weather", "required_fields": ["timestamp"]},
    "budget": "1.00",
    "quantity_required": 10,
}


class Env:
    def __init__(self):
        self.store = AgentStore()
        self.action_log = ActionLog()
        self.wallets = WalletService(rpc_url="https://rpc.test", network="base-sepolia")
        self.scheduler = MagicMock(spec=AgentScheduler)
        self.scheduler.start.return_value = True
        self.scheduler.stop.return_value = True
        self.scheduler.is_running.return_value = False
        self.executor = MagicMock()

        app = FastAPI()
        app.add_exception_handler(MarketplaceError, marketplace_error_handler)
        app.include_router(agents.router, prefix="/api/v1/agents")
        app.dependency_overrides[deps.get_agent_store] = lambda: self.store
        app.dependency_overrides[deps.get_action_log] = lambda: self.action_log
        app.dependency_overrides[deps.get_wallet_service] = lambda: self.wallets
        app.dependency_overrides[deps.get_scheduler] = lambda: self.scheduler
        app.dependency_overrides[deps.get_executor] = lambda: self.executor
        self.client = TestClient(app)

    def create(self, **overrides):
        body = {**CREATE_BODY, **overrides}
        response = self.client.post("/api/v1/agents", json=body, headers=auth())
        assert response.status_code == 201, response.text
        return response.json()


@pytest.fixture(autouse=True)
def api_tokens():
    with patch("app.core.auth.settings") as mock_settings:
        mock_settings.API_TOKENS = f"{OWNER_TOKEN}:owner-1,{OTHER_TOKEN}:owner-2"
        yield


@pytest.fixture
def env():
    return Env()


def auth(token=OWNER_TOKEN):
    return {"Authorization": f"Bearer {token}"}


class TestCreateAgent:
    """Test agent creation."""

    def test_create(self, env):
        """A new agent is active, has a wallet and is started."""
        data = env.create()

        assert data["status"] == "active"
        assert data["owner_id"] == "owner-1"
        assert data["budget"] == "1.00"
        assert data["spent"] == "0"
        assert data["quality_threshold"] == 0.7
        assert data["wallet_address"].startswith("0x")
        env.scheduler.start.assert_called_once_with(data["id"])

    def test_requires_auth(self, env):
        """Creating an agent needs a token."""
        response = env.client.post("/api/v1/agents", json=CREATE_BODY)
        assert response.status_code == 401

    @pytest.mark.parametrize("overrides", [
        {"budget": "0"},
        {"budget": "-5"},
        {"quality_threshold": 1.2},
        {"quantity_required": 0},
        {"name": ""},
    ])
    def test_invalid_body(self, env, overrides):
        """Invalid values are rejected."""
        response = env.client.post("/api/v1/agents", json={**CREATE_BODY, **overrides}, headers=auth())
        assert response.status_code == 422

    def test_wallet_failure_tolerated(self, env):
        """The agent is created even if its wallet cannot be."""
        with patch.object(env.wallets, "create_wallet", side_effect=RuntimeError("keystore down")):
            data = env.create()

        assert data["wallet_id"] is None
        assert env.store.get(data["id"]).status == AgentStatus.ACTIVE

    def test_start_failure_tolerated(self, env):
        """A scheduler error does not fail creation."""
        env.scheduler.start.side_effect = RuntimeError("boom")
        assert env.create()["status"] == "active"


class TestReadAgents:
    """Test listing and fetching."""

    def test_list_own_agents(self, env):
        """Owners list only their agents."""
        env.create(name="one")
        env.create(name="two")

        data = env.client.get("/api/v1/agents", headers=auth()).json()
        other = env.client.get("/api/v1/agents", headers=auth(OTHER_TOKEN)).json()

        assert data["total_count"] == 2
        assert [a["name"] for a in data["agents"]] == ["two", "one"]
        assert other["total_count"] == 0

    def test_get_hidden_from_others(self, env):
        """Other owners get 404."""
        agent = env.create()

        assert env.client.get(f"/api/v1/agents/{agent['id']}", headers=auth()).status_code == 200
        assert env.client.get(f"/api/v1/agents/{agent['id']}", headers=auth(OTHER_TOKEN)).status_code == 404
        assert env.client.get("/api/v1/agents/missing", headers=auth()).status_code == 404


class TestLifecycle:
    """Test start, stop, fix-wallet and delete."""

    def test_stop_pauses(self, env):
        """Stopping pauses the agent and logs it."""
        agent = env.create()

        response = env.client.post(f"/api/v1/agents/{agent['id']}/stop", headers=auth())

        assert response.status_code == 200
        assert response.json()["status"] == "paused"
        assert response.json()["running"] is False
        env.scheduler.stop.assert_called_with(agent["id"])
        assert env.action_log.list(agent["id"])[0].action_type == ActionType.AGENT_STOPPED

    def test_start_resumes_paused(self, env):
        """Starting a paused agent makes it active again."""
        agent = env.create()
        env.client.post(f"/api/v1/agents/{agent['id']}/stop", headers=auth())
        env.scheduler.start.reset_mock()

        response = env.client.post(f"/api/v1/agents/{agent['id']}/start", headers=auth())

        assert response.status_code == 200
        assert response.json()["status"] == "active"
        env.scheduler.start.assert_called_once_with(agent["id"])

    @pytest.mark.parametrize("terminal", [AgentStatus.COMPLETED, AgentStatus.FAILED])
    def test_start_terminal(self, env, terminal):
        """Finished agents cannot be restarted."""
        agent = env.create()
        env.store.update_status(agent["id"], terminal)

        response = env.client.post(f"/api/v1/agents/{agent['id']}/start", headers=auth())

        assert response.status_code == 409

    def test_start_without_wallet(self, env):
        """A start the scheduler refuses is a 403."""
        agent = env.create()
        env.scheduler.start.return_value = False

        response = env.client.post(f"/api/v1/agents/{agent['id']}/start", headers=auth())

        assert response.status_code == 403

    def test_fix_wallet(self, env):
        """An agent without a wallet gets its owner's wallet."""
        with patch.object(env.wallets, "create_wallet", side_effect=RuntimeError("down")):
            agent = env.create()
        owner_wallet = env.wallets.create_wallet("owner-1", "Main")

        response = env.client.post(f"/api/v1/agents/{agent['id']}/fix-wallet", headers=auth())

        assert response.status_code == 200
        assert response.json()["wallet_id"] == owner_wallet.id
        assert env.action_log.list(agent["id"])[0].action_type == ActionType.WALLET_FIXED

    def test_fix_wallet_noop(self, env):
        """Agents with a wallet are returned unchanged."""
        agent = env.create()

        response = env.client.post(f"/api/v1/agents/{agent['id']}/fix-wallet", headers=auth())

        assert response.json()["wallet_id"] == agent["wallet_id"]

    def test_delete(self, env):
        """Deleting stops the schedule and removes the agent."""
        agent = env.create()

        response = env.client.delete(f"/api/v1/agents/{agent['id']}", headers=auth())

        assert response.status_code == 200
        assert response.json() == {"message": "Agent deleted", "agent_id": agent["id"]}
        env.scheduler.stop.assert_called_with(agent["id"])
        env.executor.forget.assert_called_once_with(agent["id"])
        assert env.client.get(f"/api/v1/agents/{agent['id']}", headers=auth()).status_code == 404


class TestBalance:
    """Test the wallet balance endpoint."""

    @patch("app.agents.wallets.requests.post")
    def test_balance(self, mock_post, env):
        """The agent's USDC balance is reported."""
        mock_post.return_value = MagicMock(json=MagicMock(return_value={"result": hex(2_500_000)}))
        agent = env.create()

        response = env.client.get(f"/api/v1/agents/{agent['id']}/balance", headers=auth())

        assert response.status_code == 200
        data = response.json()
        assert data["amount"] == "2.500000"
        assert data["address"] == agent["wallet_address"]

    def test_no_wallet(self, env):
        """Agents without a wallet have no balance."""
        with patch.object(env.wallets, "create_wallet", side_effect=RuntimeError("down")):
            agent = env.create()

        response = env.client.get(f"/api/v1/agents/{agent['id']}/balance", headers=auth())

        assert response.status_code == 403

    def test_unsupported_asset(self, env):
        """Only USDC is supported."""
        agent = env.create()
        response = env.client.get(f"/api/v1/agents/{agent['id']}/balance", params={"asset": "ETH"}, headers=auth())
        assert response.status_code == 400


class TestActions:
    """Test action history endpoints."""

    def test_history_most_recent_first(self, env):
        """History is newest first and labelled."""
        agent = env.create()
        env.action_log.append(agent["id"], ActionType.DISCOVERING_DATASETS)
        env.action_log.append(agent["id"], ActionType.NO_DATASETS_FOUND)

        data = env.client.get(f"/api/v1/agents/{agent['id']}/actions", headers=auth()).json()

        assert data["total_count"] == 2
        assert data["actions"][0]["action_type"] == "no_datasets_found"
        assert data["actions"][0]["label"] == "No datasets found"

    def test_recent_since(self, env):
        """Only actions after `since` are returned, oldest first."""
        agent = env.create()
        first = env.action_log.append(agent["id"], ActionType.DISCOVERING_DATASETS)
        second = env.action_log.append(agent["id"], ActionType.DATASET_FOUND)
        third = env.action_log.append(agent["id"], ActionType.DATASET_SELECTED)

        response = env.client.get(
            f"/api/v1/agents/{agent['id']}/actions/recent",
            params={"since": first.created_at.isoformat()},
            headers=auth(),
        )

        ids = [a["id"] for a in response.json()["actions"]]
        assert ids == [second.id, third.id]

    def test_recent_naive_since_is_utc(self, env):
        """A timestamp without zone is read as UTC."""
        agent = env.create()
        action = env.action_log.append(agent["id"], ActionType.DISCOVERING_DATASETS)
        naive = (action.created_at - timedelta(seconds=1)).replace(tzinfo=None)

        response = env.client.get(
            f"/api/v1/agents/{agent['id']}/actions/recent",
            params={"since": naive.isoformat()},
            headers=auth(),
        )

        assert [a["id"] for a in response.json()["actions"]] == [action.id]

    def test_actions_hidden_from_others(self, env):
        """Other owners cannot read an agent's history."""
        agent = env.create()
        response = env.client.get(f"/api/v1/agents/{agent['id']}/actions", headers=auth(OTHER_TOKEN))
        assert response.status_code == 404
