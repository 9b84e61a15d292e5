"""Bearer-token guard for the admin API.

The token comes from ``ADMIN_TOKEN`` (or ``ADMIN_TOKEN_FILE``). It is never
logged or echoed back.
"""

import hmac
import logging

from fastapi import Header, HTTPException, status

from app import config

logger = logging.getLogger("sugar.auth")


def bearer_token(authorization: str) -> str:
    prefix = "Bearer "
    return authorization[len(prefix):].strip() if authorization.startswith(prefix) else ""


def require_admin(authorization: str = Header(default="")) -> None:
    if not config.ADMIN_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is disabled",
        )

    token = bearer_token(authorization)
    if not hmac.compare_digest(token.encode(), config.ADMIN_TOKEN.encode()):
        logger.info("Rejected admin request with %s token", "invalid" if token else "missing")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )
