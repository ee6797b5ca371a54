"""Shared API dependencies."""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from syncengine.config import get_settings

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


def webhook_rate_limit() -> str:
    return f"{get_settings().webhook_rate_limit_per_minute}/minute"


def api_rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


async def require_sync_token(
    x_sync_token: Optional[str] = Header(None, alias="X-Sync-Token"),
) -> None:
    """Check the shared token guarding engine endpoints, when one is configured."""
    expected = get_settings().api_token
    if not expected:
        return

    if not x_sync_token or not hmac.compare_digest(expected, x_sync_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing sync token",
        )
