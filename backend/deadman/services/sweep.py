"""
One stateless sweep, safe to invoke any number of times (external cron, APScheduler,
scripts/run_sweep.py): trigger overdue secrets, send due reminders, recover stale
disclosure deliveries, purge long-expired check-in tokens.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime

from deadman.config import settings
from deadman.core import metrics
from deadman.db.session import async_session_maker
from deadman.db.types import utcnow
from deadman.services.check_in_tokens import purge_expired_tokens
from deadman.services.disclosure import DisclosureOutcome, recover_stale_deliveries, trigger
from deadman.services.notifications import Dispatcher, get_dispatcher
from deadman.services.overdue import find_overdue_secrets
from deadman.services.reminders import process_due_reminders

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    triggered: int = 0
    cancelled: int = 0
    recovered: int = 0
    purged: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


async def check_overdue_secrets(now: datetime, dispatcher: Dispatcher) -> list[DisclosureOutcome]:
    """Trigger every overdue secret found in this batch. Losers of a trigger race are no-ops."""
    async with async_session_maker() as session:
        overdue = await find_overdue_secrets(session, now, limit=settings.sweep_batch_size)
        ids = [s.id for s in overdue]
    if not ids:
        return []
    logger.info("Found %s overdue secrets", len(ids))

    sem = asyncio.Semaphore(max(1, settings.sweep_concurrency))

    async def run_one(secret_id: str) -> DisclosureOutcome:
        async with sem:
            return await trigger(secret_id, now, dispatcher)

    return list(await asyncio.gather(*[run_one(sid) for sid in ids]))


async def run_sweep(now: datetime | None = None, dispatcher: Dispatcher | None = None) -> SweepSummary:
    now = now or utcnow()
    dispatcher = dispatcher or get_dispatcher()
    summary = SweepSummary()
    start = time.perf_counter()

    for outcome in await check_overdue_secrets(now, dispatcher):
        if not outcome.triggered:
            continue
        summary.triggered += 1
        summary.processed += 1
        summary.sent += outcome.sent
        summary.failed += outcome.failed

    reminders = await process_due_reminders(now, dispatcher)
    summary.processed += reminders.processed
    summary.sent += reminders.sent
    summary.failed += reminders.failed
    summary.cancelled += reminders.cancelled

    summary.recovered = await recover_stale_deliveries(now, dispatcher)

    async with async_session_maker() as session:
        summary.purged = await purge_expired_tokens(session, now)
        await session.commit()

    elapsed = time.perf_counter() - start
    metrics.SWEEP_DURATION_SECONDS.labels(kind="full").observe(elapsed)
    logger.info("Sweep finished in %.2fs: %s", elapsed, summary.as_dict())
    return summary
