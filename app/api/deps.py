# app/api/deps.py
"""
Process-wide collaborators, built once and shared by endpoints, the x402
middleware and the scheduler. Tests override these with
app.dependency_overrides or by patching the getters.
"""
from functools import lru_cache

from app.agents.actions import ActionLog
from app.agents.executor import AgentCycleExecutor
from app.agents.scheduler import AgentScheduler
from app.agents.store import AgentStore
from app.agents.wallets import WalletService
from app.catalog.store import CatalogStore
from app.core.config import settings
from app.services.marketplace_api import MarketplaceClient
from app.x402.gateway import PaymentGateway


@lru_cache()
def get_catalog() -> CatalogStore:
    return CatalogStore(seed_path=settings.CATALOG_SEED_PATH)


@lru_cache()
def get_action_log() -> ActionLog:
    return ActionLog(path=settings.ACTION_LOG_PATH)


@lru_cache()
def get_agent_store() -> AgentStore:
    return AgentStore(path=settings.AGENT_STORE_PATH)


@lru_cache()
def get_wallet_service() -> WalletService:
    return WalletService(keystore_dir=settings.WALLET_KEYSTORE_DIR)


@lru_cache()
def get_payment_gateway() -> PaymentGateway:
    return PaymentGateway(catalog=get_catalog(), action_log=get_action_log())


@lru_cache()
def get_executor() -> AgentCycleExecutor:
    return AgentCycleExecutor(
        agent_store=get_agent_store(),
        action_log=get_action_log(),
        marketplace=MarketplaceClient(),
        wallets=get_wallet_service(),
    )


@lru_cache()
def get_scheduler() -> AgentScheduler:
    return AgentScheduler(
        agent_store=get_agent_store(),
        action_log=get_action_log(),
        executor=get_executor(),
        wallets=get_wallet_service(),
    )
