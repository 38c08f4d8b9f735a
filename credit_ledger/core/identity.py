import hmac
from typing import Optional

from fastapi import Header, HTTPException

from credit_ledger.core import config


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """User id forwarded by the upstream identity provider."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    """Admin routes require X-Admin-Token to match ADMIN_API_TOKEN."""
    if not config.ADMIN_API_TOKEN:
        raise HTTPException(status_code=503, detail="Admin API not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, config.ADMIN_API_TOKEN):
        raise HTTPException(status_code=403, detail="Invalid admin token")
