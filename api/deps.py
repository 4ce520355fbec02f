"""Request-scoped dependencies: caller identity (from the trusted gateway) and the change feed."""
import secrets
from typing import Optional

from fastapi import Header, HTTPException

from config import settings
from services.notifier import ChangeFeed, change_feed


async def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized - Missing authenticated user")
    return x_user_id


async def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.admin_api_key):
        raise HTTPException(status_code=403, detail="Unauthorized - Admin access required")


def get_feed() -> ChangeFeed:
    return change_feed
