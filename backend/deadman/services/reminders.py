"""
Reminder scheduler: keeps a secret's reminder rows in line with its current deadline,
and sends the due ones to the owner.

materialize_schedule() runs inside the caller's transaction with the secret row
locked. process_due_reminders() is the system-wide sweep: each reminder is claimed
with a conditional update, so overlapping sweeps never send the same reminder twice.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from deadman.config import settings
from deadman.core import metrics
from deadman.db.session import async_session_maker
from deadman.models.enums import Channel, ContactMethod, ReminderStatus, SecretStatus
from deadman.models.reminder import Reminder
from deadman.models.secret import Secret
from deadman.models.user import User
from deadman.services import admin_alerts
from deadman.services.check_in_tokens import issue_check_in_token
from deadman.services.deadlines import compute_reminder_schedule, interval_delta
from deadman.services.notifications import Dispatcher, Message, calculate_backoff_delay, get_dispatcher, safe_send
from deadman.services.templates import build_check_in_url, reminder_message

logger = logging.getLogger(__name__)


@dataclass
class ReminderSweepResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0


async def lock_secret(session: AsyncSession, secret_id: str, user_id: str | None = None) -> Secret | None:
    """SELECT ... FOR UPDATE on the secret row; scoped by owner when user_id is given."""
    stmt = select(Secret).where(Secret.id == secret_id).with_for_update().execution_options(populate_existing=True)
    if user_id is not None:
        stmt = stmt.where(Secret.user_id == user_id)
    r = await session.execute(stmt)
    return r.scalar_one_or_none()


async def cancel_pending_reminders(session: AsyncSession, secret_id: str) -> int:
    r = await session.execute(
        update(Reminder)
        .where(Reminder.secret_id == secret_id, Reminder.status == ReminderStatus.PENDING.value)
        .values(status=ReminderStatus.CANCELLED.value, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    return r.rowcount or 0


async def materialize_schedule(session: AsyncSession, secret: Secret, now: datetime) -> list[Reminder]:
    """
    Converge the secret's reminders to exactly those implied by its current deadline.

    Pending rows that do not match (type, scheduled_for) of the current schedule are
    cancelled; milestones still in the future with no live row are inserted. Rows
    already sent for the same (type, scheduled_for) are history and block re-insertion.
    The caller must hold the secret row lock (lock_secret) for the whole transaction.
    Returns the newly created reminders.
    """
    if secret.status != SecretStatus.ACTIVE.value:
        await cancel_pending_reminders(session, secret.id)
        return []

    last_check_in = secret.next_check_in - interval_delta(secret.check_in_days)
    current = compute_reminder_schedule(secret.next_check_in, secret.check_in_days, last_check_in)
    wanted = {(s.type.value, s.fires_at) for s in current}

    r = await session.execute(
        select(Reminder).where(
            Reminder.secret_id == secret.id,
            Reminder.status != ReminderStatus.CANCELLED.value,
        )
    )
    live: set[tuple[str, datetime]] = set()
    for reminder in r.scalars().all():
        key = (reminder.type, reminder.scheduled_for)
        if reminder.status == ReminderStatus.PENDING.value and key not in wanted:
            reminder.status = ReminderStatus.CANCELLED.value
            reminder.claimed_at = None
            continue
        live.add(key)

    created: list[Reminder] = []
    for item in current:
        if item.fires_at <= now or (item.type.value, item.fires_at) in live:
            continue
        reminder = Reminder(
            secret_id=secret.id,
            user_id=secret.user_id,
            type=item.type.value,
            scheduled_for=item.fires_at,
            status=ReminderStatus.PENDING.value,
        )
        session.add(reminder)
        created.append(reminder)
    await session.flush()
    if created:
        logger.debug("Scheduled %s reminders for secret_id=%s", len(created), secret.id)
    return created


def _owner_message_target(owner: User) -> tuple[Channel, str | None]:
    if owner.contact_method == ContactMethod.PHONE.value and owner.phone:
        return Channel.SMS, owner.phone
    if owner.email:
        return Channel.EMAIL, owner.email
    if owner.phone:
        return Channel.SMS, owner.phone
    return Channel.EMAIL, None


def _retry_due(reminder: Reminder, now: datetime) -> bool:
    if reminder.last_retry_at is None or reminder.retry_count == 0:
        return True
    # Seeded per reminder so every sweep computes the same retry time
    delay = calculate_backoff_delay(reminder.retry_count, rng=random.Random(reminder.id))
    return now >= reminder.last_retry_at + timedelta(seconds=delay)


async def _claim_reminder(reminder_id: str, now: datetime) -> bool:
    stale_before = now - timedelta(minutes=settings.stale_claim_minutes)
    async with async_session_maker() as session:
        r = await session.execute(
            update(Reminder)
            .where(
                Reminder.id == reminder_id,
                Reminder.status == ReminderStatus.PENDING.value,
                or_(Reminder.claimed_at.is_(None), Reminder.claimed_at < stale_before),
            )
            .values(claimed_at=now)
            .returning(Reminder.id)
            .execution_options(synchronize_session=False)
        )
        claimed = r.scalar_one_or_none() is not None
        await session.commit()
    return claimed


async def _finish_reminder(reminder_id: str, values: dict) -> bool:
    """Apply the final status unless a check-in cancelled the reminder meanwhile."""
    async with async_session_maker() as session:
        r = await session.execute(
            update(Reminder)
            .where(Reminder.id == reminder_id, Reminder.status == ReminderStatus.PENDING.value)
            .values(claimed_at=None, **values)
            .returning(Reminder.id)
            .execution_options(synchronize_session=False)
        )
        updated = r.scalar_one_or_none() is not None
        await session.commit()
    return updated


async def send_reminder(reminder_id: str, now: datetime, dispatcher: Dispatcher) -> str:
    """
    Claim and send one reminder. Returns "sent", "retry", "failed", "cancelled" or "skipped"
    (claimed by another sweep).
    """
    if not await _claim_reminder(reminder_id, now):
        return "skipped"

    async with async_session_maker() as session:
        r = await session.execute(
            select(Reminder)
            .where(Reminder.id == reminder_id)
            .options(selectinload(Reminder.secret).selectinload(Secret.owner))
        )
        reminder = r.scalar_one_or_none()
        if reminder is None:
            return "skipped"
        secret = reminder.secret
        if secret.status != SecretStatus.ACTIVE.value or reminder.scheduled_for >= secret.next_check_in:
            reminder.status = ReminderStatus.CANCELLED.value
            reminder.claimed_at = None
            await session.commit()
            return "cancelled"

        owner = secret.owner
        channel, to = _owner_message_target(owner)
        token = await issue_check_in_token(session, secret.id, now)
        subject, text, html = reminder_message(
            owner_name=owner.name,
            secret_title=secret.title,
            reminder_type=reminder.type,
            deadline=secret.next_check_in,
            now=now,
            check_in_url=build_check_in_url(settings.site_url, token),
        )
        reminder_type, retry_count = reminder.type, reminder.retry_count
        secret_id, secret_title = secret.id, secret.title
        await session.commit()

    result = await safe_send(
        dispatcher,
        Message(
            channel=channel,
            to=to or "",
            subject=subject,
            text=text,
            html=html if channel == Channel.EMAIL else None,
            idempotency_key=f"reminder-{reminder_id}",
        ),
    )

    if result.success:
        await _finish_reminder(reminder_id, {"status": ReminderStatus.SENT.value, "sent_at": now, "error": None})
        metrics.REMINDERS_TOTAL.labels(outcome="sent").inc()
        logger.info("Reminder %s (%s) sent for secret_id=%s", reminder_id, reminder_type, secret_id)
        return "sent"

    attempts = retry_count + 1
    exhausted = attempts >= settings.reminder_max_attempts
    if result.retryable and not exhausted:
        await _finish_reminder(
            reminder_id, {"retry_count": attempts, "last_retry_at": now, "error": result.error}
        )
        metrics.REMINDERS_TOTAL.labels(outcome="retry").inc()
        logger.warning(
            "Reminder %s failed (attempt %s/%s), will retry: %s",
            reminder_id,
            attempts,
            settings.reminder_max_attempts,
            result.error,
        )
        return "retry"

    updated = await _finish_reminder(
        reminder_id,
        {
            "status": ReminderStatus.FAILED.value,
            "retry_count": attempts,
            "last_retry_at": now,
            "error": result.error,
        },
    )
    metrics.REMINDERS_TOTAL.labels(outcome="failed").inc()
    logger.warning("Reminder %s failed permanently after %s attempts: %s", reminder_id, attempts, result.error)
    if updated:
        await admin_alerts.notify_admin(
            admin_alerts.AdminAlert(
                email_type=admin_alerts.EMAIL_TYPE_REMINDER,
                error_message=result.error or "Unknown error",
                secret_title=secret_title,
                secret_id=secret_id,
                recipient=to,
                retry_count=attempts,
            )
        )
    return "failed"


async def cancel_orphaned_reminders(session: AsyncSession, now: datetime) -> int:
    """Cancel due pending reminders whose secret is no longer active."""
    inactive = select(Secret.id).where(Secret.status != SecretStatus.ACTIVE.value)
    r = await session.execute(
        update(Reminder)
        .where(
            Reminder.status == ReminderStatus.PENDING.value,
            Reminder.scheduled_for <= now,
            Reminder.secret_id.in_(inactive),
        )
        .values(status=ReminderStatus.CANCELLED.value, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    return r.rowcount or 0


async def _due_reminder_ids(session: AsyncSession, now: datetime, limit: int) -> list[str]:
    """
    Ids of up to `limit` due reminders of active secrets whose backoff has elapsed,
    oldest first. Pages past rows still backing off so they cannot fill the batch.
    """
    due: list[str] = []
    after: tuple[datetime, str] | None = None
    while len(due) < limit:
        stmt = (
            select(Reminder)
            .join(Secret, Secret.id == Reminder.secret_id)
            .where(
                Reminder.status == ReminderStatus.PENDING.value,
                Reminder.scheduled_for <= now,
                Secret.status == SecretStatus.ACTIVE.value,
            )
            .order_by(Reminder.scheduled_for, Reminder.id)
            .limit(limit)
        )
        if after is not None:
            stmt = stmt.where(
                or_(
                    Reminder.scheduled_for > after[0],
                    and_(Reminder.scheduled_for == after[0], Reminder.id > after[1]),
                )
            )
        rows = list((await session.execute(stmt)).scalars().all())
        due.extend(row.id for row in rows if _retry_due(row, now))
        if len(rows) < limit:
            break
        after = (rows[-1].scheduled_for, rows[-1].id)
    return due[:limit]


async def process_due_reminders(
    now: datetime,
    dispatcher: Dispatcher | None = None,
    limit: int | None = None,
) -> ReminderSweepResult:
    """Send every due pending reminder of an active secret (system-wide, not owner scoped)."""
    dispatcher = dispatcher or get_dispatcher()
    result = ReminderSweepResult()
    async with async_session_maker() as session:
        result.cancelled = await cancel_orphaned_reminders(session, now)
        await session.commit()
        due = await _due_reminder_ids(session, now, limit or settings.sweep_batch_size)

    if not due:
        return result

    sem = asyncio.Semaphore(max(1, settings.sweep_concurrency))

    async def run_one(reminder_id: str) -> str:
        async with sem:
            return await send_reminder(reminder_id, now, dispatcher)

    outcomes = await asyncio.gather(*[run_one(rid) for rid in due])
    for outcome in outcomes:
        if outcome == "skipped":
            continue
        result.processed += 1
        if outcome == "sent":
            result.sent += 1
        elif outcome == "failed":
            result.failed += 1
        elif outcome == "cancelled":
            result.cancelled += 1
    return result

