# app/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI
from app.core.config import settings
from app.core.errors import MarketplaceError, marketplace_error_handler
from app.api.deps import get_scheduler
from app.api.endpoints import agents, datasets, realtime
from app.x402.middleware import X402Middleware
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = get_scheduler()
    if settings.AGENT_RECOVER_ON_STARTUP:
        # Agents left active by a previous process resume here, and only here.
        scheduler.recover_active_agents()
    yield
    scheduler.stop_all(timeout=5)


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(X402Middleware)
app.add_exception_handler(MarketplaceError, marketplace_error_handler)

# Include the API router(s)
# The prefix ensures all routes start with /api/v1
app.include_router(datasets.router, prefix=f"{settings.API_V1_STR}/datasets", tags=["datasets"])
app.include_router(agents.router, prefix=f"{settings.API_V1_STR}/agents", tags=["agents"])
app.include_router(realtime.router, prefix=f"{settings.API_V1_STR}/realtime", tags=["realtime"])

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}
