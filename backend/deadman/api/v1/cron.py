"""
Scheduler entry points. Every route requires Authorization: Bearer <CRON_SECRET>;
the check runs as a router dependency, before any datastore access.
"""

import time
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from deadman.api.deps import require_cron_secret
from deadman.core import metrics
from deadman.db.session import get_db
from deadman.db.types import utcnow
from deadman.models.disclosure_delivery import DisclosureDelivery
from deadman.models.enums import DeliveryStatus, ReminderStatus
from deadman.models.reminder import Reminder
from deadman.schemas.cron import CronStatusResponse, RedeliveryResponse, SweepResponse
from deadman.services.disclosure import DisclosureOutcome, redeliver_delivery, redeliver_failed
from deadman.services.notifications import get_dispatcher
from deadman.services.overdue import count_overdue_secrets
from deadman.services.reminders import process_due_reminders
from deadman.services.sweep import check_overdue_secrets, run_sweep

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])

_UNAUTHORIZED = {401: {"description": "Missing or wrong cron secret"}}


@router.post("/sweep", response_model=SweepResponse, responses=_UNAUTHORIZED)
async def sweep():
    """Trigger overdue secrets, send due reminders, recover stale deliveries."""
    summary = await run_sweep()
    return summary.as_dict()


@router.post("/process-reminders", response_model=SweepResponse, responses=_UNAUTHORIZED)
async def process_reminders():
    start = time.perf_counter()
    result = await process_due_reminders(utcnow())
    metrics.SWEEP_DURATION_SECONDS.labels(kind="reminders").observe(time.perf_counter() - start)
    return SweepResponse(
        processed=result.processed, sent=result.sent, failed=result.failed, cancelled=result.cancelled
    )


@router.post("/check-secrets", response_model=SweepResponse, responses=_UNAUTHORIZED)
async def check_secrets():
    start = time.perf_counter()
    outcomes = [o for o in await check_overdue_secrets(utcnow(), get_dispatcher()) if o.triggered]
    metrics.SWEEP_DURATION_SECONDS.labels(kind="secrets").observe(time.perf_counter() - start)
    return SweepResponse(
        processed=len(outcomes),
        triggered=len(outcomes),
        sent=sum(o.sent for o in outcomes),
        failed=sum(o.failed for o in outcomes),
    )


@router.get("/status", response_model=CronStatusResponse, responses=_UNAUTHORIZED)
async def status(session: Annotated[AsyncSession, Depends(get_db)]):
    """Read-only backlog counts for monitoring."""
    now = utcnow()

    async def count(model, *where) -> int:
        r = await session.execute(select(func.count()).select_from(model).where(*where))
        return int(r.scalar_one())

    pending = Reminder.status == ReminderStatus.PENDING.value
    return CronStatusResponse(
        overdue_secrets=await count_overdue_secrets(session, now),
        pending_reminders=await count(Reminder, pending),
        due_reminders=await count(Reminder, pending, Reminder.scheduled_for <= now),
        pending_deliveries=await count(DisclosureDelivery, DisclosureDelivery.status == DeliveryStatus.PENDING.value),
        failed_deliveries=await count(DisclosureDelivery, DisclosureDelivery.status == DeliveryStatus.FAILED.value),
        timestamp=now.isoformat(),
    )


def _redelivery_response(outcome: DisclosureOutcome) -> RedeliveryResponse:
    return RedeliveryResponse(
        secret_id=outcome.secret_id,
        retried=outcome.sent + outcome.failed,
        sent=outcome.sent,
        failed=outcome.failed,
    )


@router.post(
    "/deliveries/{delivery_id}/retry",
    response_model=RedeliveryResponse,
    responses={**_UNAUTHORIZED, 404: {"description": "Unknown delivery"}, 409: {"description": "Delivery not failed"}},
)
async def retry_delivery(delivery_id: int):
    """Send one failed disclosure delivery again."""
    return _redelivery_response(await redeliver_delivery(delivery_id, utcnow()))


@router.post("/secrets/{secret_id}/redeliver", response_model=RedeliveryResponse, responses=_UNAUTHORIZED)
async def redeliver_secret(secret_id: str):
    """Send every failed disclosure delivery of a triggered secret again."""
    return _redelivery_response(await redeliver_failed(secret_id, utcnow()))
