"""Overdue detection: read-only, system-wide queries for secrets past their deadline."""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from deadman.models.enums import SecretStatus
from deadman.models.secret import Secret


def _overdue_clause(now: datetime):
    return (Secret.status == SecretStatus.ACTIVE.value, Secret.next_check_in <= now)


async def find_overdue_secrets(session: AsyncSession, now: datetime, limit: int | None = None) -> list[Secret]:
    """Active secrets whose deadline is at or before `now`, oldest deadline first. No side effects."""
    stmt = select(Secret).where(*_overdue_clause(now)).order_by(Secret.next_check_in, Secret.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    r = await session.execute(stmt)
    return list(r.scalars().all())


async def count_overdue_secrets(session: AsyncSession, now: datetime) -> int:
    r = await session.execute(select(func.count()).select_from(Secret).where(*_overdue_clause(now)))
    return int(r.scalar_one())
