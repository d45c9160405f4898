"""FastAPI dependencies: current user from JWT, cron shared-secret guard."""

import hmac
import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from deadman.config import settings
from deadman.core.auth import decode_token
from deadman.db.session import get_db
from deadman.models.user import User

logger = logging.getLogger(__name__)


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


async def get_current_user(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    token = _bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_token(token)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    r = await session.execute(select(User).where(User.id == str(user_id)))
    user = r.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def require_cron_secret(request: Request) -> None:
    """Shared-secret check for scheduler calls. Runs before any session is opened."""
    token = _bearer_token(request)
    if not settings.cron_secret or not token or not hmac.compare_digest(
        token.encode("utf-8"), settings.cron_secret.encode("utf-8")
    ):
        logger.warning("Rejected cron call from %s", request.client.host if request.client else "unknown")
        raise HTTPException(status_code=401, detail="Unauthorized")
