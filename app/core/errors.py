# app/core/errors.py
"""
Error taxonomy for the marketplace.

Every error carries the HTTP status it maps to, so endpoints and the
application-level exception handler can render it without a lookup table.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    """Base class for all marketplace errors."""

    status_code = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(MarketplaceError):
    """Malformed input (bad quantity, unparseable payment header)."""
    status_code = 400


class AuthorizationError(MarketplaceError):
    """The caller may not perform the operation (e.g. no wallet configured)."""
    status_code = 403


class NotFoundError(MarketplaceError):
    """Dataset, agent or wallet does not exist (or is not visible)."""
    status_code = 404


class PaymentError(MarketplaceError):
    """Payment missing, rejected, or not matching the issued challenge."""
    status_code = 402


class ConcurrencyError(MarketplaceError):
    """Another operation already holds the resource."""
    status_code = 409


class ExternalServiceError(MarketplaceError):
    """An upstream collaborator failed."""
    status_code = 502


class FacilitatorUnavailableError(ExternalServiceError):
    """The payment facilitator could not be reached."""
    status_code = 503


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    """Render a MarketplaceError as a JSON error response."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
