# app/core/config.py
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Data Marketplace"
    API_V1_STR: str = "/api/v1"

    # Base URL agents use to reach the marketplace API (discovery, probe, sample, data)
    MARKETPLACE_API_URL: AnyHttpUrl = "http://localhost:8000/api/v1/"
    HTTP_TIMEOUT_SECONDS: int = 10

    # x402 payment gateway
    X402_NETWORK: str = "base-sepolia"
    X402_FACILITATOR_URL: str = "https://x402.org/facilitator"
    X402_FACILITATOR_TIMEOUT_SECONDS: int = 10
    X402_CHALLENGE_TTL_SECONDS: int = 300  # 5 minutes
    # When true, an unreachable facilitator denies the payment instead of accepting it
    X402_FAIL_CLOSED: bool = False

    # JSON-RPC endpoint used for USDC balance lookups
    BASE_RPC_URL: str = "https://sepolia.base.org"

    # Agent runtime
    AGENT_CYCLE_INTERVAL_SECONDS: float = 10
    AGENT_SAMPLE_SIZE: int = 5
    AGENT_MAX_RECORDS_PER_PURCHASE: int = 100
    AGENT_DEFAULT_QUALITY_THRESHOLD: float = 0.7
    AGENT_RECOVER_ON_STARTUP: bool = True

    # Live action feed
    REALTIME_POLL_INTERVAL_SECONDS: float = 2

    # Persistence (in-memory only when unset)
    ACTION_LOG_PATH: Optional[str] = None
    AGENT_STORE_PATH: Optional[str] = None
    CATALOG_SEED_PATH: Optional[str] = None
    WALLET_KEYSTORE_DIR: Optional[str] = None
    WALLET_KEYSTORE_PASSWORD: str = "change-me"

    # Comma-separated "token:owner_id" pairs
    API_TOKENS: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
