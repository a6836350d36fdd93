# app/x402/middleware.py
"""
FastAPI middleware for x402 payment verification.

This module provides HTTP middleware that:
1. Intercepts requests to the dataset data endpoint
2. Returns 402 Payment Required with a fresh challenge when unpaid
3. Verifies the X-PAYMENT header through the payment gateway
4. Hands the verified payment to the endpoint via request.state
5. Adds an X-PAYMENT-RESPONSE receipt to the successful response
"""
import logging
import re
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings
from app.x402.gateway import ChallengeIssued, Denied, PaymentGateway
from app.x402.payment import (
    X_AGENT_ID_HEADER,
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    encode_payment_response,
)

logger = logging.getLogger(__name__)


def protected_dataset_id(method: str, path: str) -> Optional[str]:
    """Dataset id if the request targets the paid data endpoint, else None."""
    if method != "GET":
        return None
    pattern = rf"^{re.escape(settings.API_V1_STR)}/datasets/([^/]+)/data/?$"
    match = re.match(pattern, path)
    return match.group(1) if match else None


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check for forwarded headers first
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection
    if request.client:
        return request.client.host

    return "unknown"


def parse_quantity(raw: Optional[str]) -> Optional[int]:
    """Requested record count; missing means 1, invalid means None."""
    if raw is None or raw == "":
        return 1
    try:
        quantity = int(raw)
    except ValueError:
        return None
    return quantity if quantity >= 1 else None


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment verification middleware for FastAPI.

    Only GET {API_V1_STR}/datasets/{id}/data is protected; every other
    request passes through unchanged.
    """

    def __init__(
        self,
        app,
        gateway: Optional[PaymentGateway] = None,
        gateway_factory: Optional[Callable[[], PaymentGateway]] = None,
    ):
        super().__init__(app)
        self._gateway = gateway
        self._gateway_factory = gateway_factory

    @property
    def gateway(self) -> PaymentGateway:
        """Lazy initialization of the payment gateway."""
        if self._gateway is None:
            if self._gateway_factory is None:
                from app.api.deps import get_payment_gateway
                self._gateway_factory = get_payment_gateway
            self._gateway = self._gateway_factory()
        return self._gateway

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        dataset_id = protected_dataset_id(request.method, request.url.path)
        if dataset_id is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        logger.info(f"x402: Processing protected request from {client_ip}: {request.method} {request.url.path}")

        quantity = parse_quantity(request.query_params.get("quantity"))
        if quantity is None:
            return JSONResponse(
                status_code=400,
                content={"error": "quantity must be a positive integer"}
            )

        agent_id = request.query_params.get("agent_id") or request.headers.get(X_AGENT_ID_HEADER)
        payment_header = request.headers.get(X_PAYMENT_HEADER)

        result = await run_in_threadpool(
            self.gateway.authorize, dataset_id, quantity, payment_header, agent_id
        )

        if isinstance(result, ChallengeIssued):
            logger.info(f"x402: No X-PAYMENT header, returning 402 for {result.challenge.amount} USDC")
            return JSONResponse(status_code=402, content=result.body)

        if isinstance(result, Denied):
            logger.warning(f"x402: Request denied for {client_ip} ({result.status_code}): {result.reason}")
            return JSONResponse(status_code=result.status_code, content={"error": result.reason})

        request.state.dataset = result.dataset
        request.state.payment = result.payment
        request.state.agent_id = agent_id
        request.state.transaction_hash = result.transaction_hash
        request.state.payment_degraded = result.degraded

        response = await call_next(request)
        if not 200 <= response.status_code < 300:
            return response

        # Create new response with header added
        body = b""
        async for chunk in response.body_iterator:
            body += chunk

        new_response = Response(
            content=body,
            status_code=response.status_code,
            headers=dict(response.headers),
            media_type=response.media_type
        )
        new_response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(
            result.transaction_hash, result.network, degraded=result.degraded
        )
        return new_response
