# app/core/auth.py
"""
Bearer-token authentication.

Tokens are issued outside this service; here they are only mapped to an
owner id. The mapping is configured via API_TOKENS as comma-separated
"token:owner_id" pairs. The token may arrive in the Authorization header
or, for EventSource clients that cannot set headers, in a ?token= query
parameter.
"""
import logging
from typing import Dict, Optional

from fastapi import HTTPException, Request, status

from app.core.config import settings

logger = logging.getLogger(__name__)


def parse_token_map(token_string: Optional[str]) -> Dict[str, str]:
    """
    Parse a comma-separated "token:owner_id" list into a dict.

    Entries without a separator or with an empty side are skipped.
    """
    if not token_string or not token_string.strip():
        return {}

    result = {}
    for item in token_string.split(","):
        item = item.strip()
        if not item:
            continue
        token, sep, owner = item.partition(":")
        token, owner = token.strip(), owner.strip()
        if not sep or not token or not owner:
            logger.warning(f"Invalid API token entry in config: {item!r}")
            continue
        result[token] = owner

    return result


def extract_token(request: Request) -> Optional[str]:
    """Return the bearer token from the Authorization header or ?token= query."""
    auth_header = request.headers.get("Authorization")
    if auth_header:
        scheme, _, value = auth_header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()

    token = request.query_params.get("token")
    if token:
        return token.strip()

    return None


def resolve_owner(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return parse_token_map(settings.API_TOKENS).get(token)


def get_current_owner(request: Request) -> str:
    """FastAPI dependency returning the authenticated owner id."""
    owner_id = resolve_owner(extract_token(request))
    if owner_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return owner_id
