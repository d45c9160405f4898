"""Single-use check-in link tokens: issue, and consume atomically."""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from deadman.config import settings
from deadman.models.check_in_token import CheckInToken
from deadman.services.errors import CheckInTokenError


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


async def issue_check_in_token(session: AsyncSession, secret_id: str, now: datetime) -> str:
    """Create a token for the secret and return the plain value (only its hash is stored)."""
    token = secrets.token_urlsafe(32)
    session.add(
        CheckInToken(
            secret_id=secret_id,
            token_hash=hash_token(token),
            expires_at=now + timedelta(days=settings.check_in_token_ttl_days),
        )
    )
    await session.flush()
    return token


async def consume_check_in_token(session: AsyncSession, token: str, now: datetime) -> str:
    """
    Mark the token used and return its secret id.
    Conditional update: valid iff unused and not expired, so a replay cannot consume it twice.
    The caller's transaction must also hold the check-in so a rejected check-in leaves it unused.
    """
    token_hash = hash_token(token)
    r = await session.execute(
        update(CheckInToken)
        .where(
            CheckInToken.token_hash == token_hash,
            CheckInToken.used_at.is_(None),
            CheckInToken.expires_at > now,
        )
        .values(used_at=now)
        .returning(CheckInToken.secret_id)
        .execution_options(synchronize_session=False)
    )
    secret_id = r.scalar_one_or_none()
    if secret_id is not None:
        return secret_id

    r = await session.execute(select(CheckInToken).where(CheckInToken.token_hash == token_hash))
    row = r.scalar_one_or_none()
    if row is None:
        raise CheckInTokenError("invalid")
    if row.used_at is not None:
        raise CheckInTokenError("used")
    raise CheckInTokenError("expired")


async def purge_expired_tokens(session: AsyncSession, now: datetime) -> int:
    """Delete tokens that expired more than the retention window ago. Every reminder send issues one."""
    cutoff = now - timedelta(days=settings.check_in_token_retention_days)
    r = await session.execute(
        delete(CheckInToken).where(CheckInToken.expires_at < cutoff).execution_options(synchronize_session=False)
    )
    return r.rowcount or 0
