"""
Authentication Module

Handles inbound authentication using a shared secret token sent in the
X-Auth-Token header.
"""

import logging
import secrets
from typing import Optional

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from .config import ServiceSettings, get_settings

logger = logging.getLogger(__name__)
auth_header = APIKeyHeader(name="X-Auth-Token", auto_error=False)


def _settings_for(request: Request) -> ServiceSettings:
    runtime = getattr(request.app.state, "runtime", None)
    return runtime.settings if runtime is not None else get_settings()


async def verify_token(
    request: Request,
    token: Optional[str] = Security(auth_header),
) -> Optional[str]:
    """
    Verify the shared secret token.

    Raises:
        HTTPException: 401 if the token is missing or wrong,
                       500 if auth is required but no token is configured
    """
    settings = _settings_for(request)

    if not settings.auth_required:
        # Auth not required in development without a configured token
        return token

    expected = settings.internal_auth_token
    if not expected:
        raise HTTPException(status_code=500, detail="Server authentication not configured")

    if token is None or not secrets.compare_digest(token, expected):
        logger.warning("Rejected request with invalid auth token")
        raise HTTPException(status_code=401, detail="Unauthorized")

    return token
