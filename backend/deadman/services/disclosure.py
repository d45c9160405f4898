"""
Disclosure engine: the one-way active -> triggered transition and delivery of the
decrypted secret to its recipients.

claim_trigger() is a compare-and-set on the secret row. Only the caller whose
UPDATE returns the row proceeds; it creates one DisclosureDelivery row per
recipient and channel in the same transaction. deliver() then works through those
rows. Rows left pending by a crashed worker are picked up again by
recover_stale_deliveries() on a later sweep.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from deadman.config import settings
from deadman.core import metrics
from deadman.db.session import async_session_maker
from deadman.models.disclosure_delivery import DisclosureDelivery
from deadman.models.enums import Channel, ContactMethod, DeliveryStatus, SecretStatus
from deadman.models.secret import Secret, SecretRecipient
from deadman.services import admin_alerts
from deadman.services.audit import ACTION_DISCLOSURE_RETRIED, ACTION_SECRET_TRIGGERED, log_action
from deadman.services.crypto import DecryptionError, decrypt
from deadman.services.errors import DeliveryNotFoundError, DeliveryNotRetryableError
from deadman.services.notifications import Dispatcher, Message, get_dispatcher, send_with_retries
from deadman.services.reminders import cancel_pending_reminders
from deadman.services.templates import disclosure_message

logger = logging.getLogger(__name__)
decryption_logger = logging.getLogger(__name__ + ".decryption")


@dataclass
class DisclosureOutcome:
    secret_id: str
    triggered: bool = False  # False: another caller won the transition (no-op)
    sent: int = 0
    failed: int = 0
    decryption_failed: bool = False


def recipient_channels(recipient: SecretRecipient) -> list[tuple[Channel, str]]:
    """(channel, destination) pairs implied by the recipient's contact method."""
    out: list[tuple[Channel, str]] = []
    if recipient.contact_method in (ContactMethod.EMAIL.value, ContactMethod.BOTH.value) and recipient.email:
        out.append((Channel.EMAIL, recipient.email))
    if recipient.contact_method in (ContactMethod.PHONE.value, ContactMethod.BOTH.value) and recipient.phone:
        out.append((Channel.SMS, recipient.phone))
    return out


async def claim_trigger(session: AsyncSession, secret_id: str, now: datetime) -> bool:
    """
    Flip an overdue active secret to triggered. Returns False when the secret is not
    (or no longer) active and overdue, in which case nothing was written.
    On True the caller must commit; deliveries are then pending and claimed by it.
    """
    r = await session.execute(
        update(Secret)
        .where(
            Secret.id == secret_id,
            Secret.status == SecretStatus.ACTIVE.value,
            Secret.next_check_in <= now,
        )
        .values(status=SecretStatus.TRIGGERED.value, triggered_at=now)
        .returning(Secret.id)
        .execution_options(synchronize_session=False)
    )
    if r.scalar_one_or_none() is None:
        return False

    await cancel_pending_reminders(session, secret_id)
    r = await session.execute(
        select(Secret)
        .where(Secret.id == secret_id)
        .options(selectinload(Secret.recipients))
        .execution_options(populate_existing=True)
    )
    secret = r.scalar_one()
    for recipient in secret.recipients:
        for channel, destination in recipient_channels(recipient):
            session.add(
                DisclosureDelivery(
                    secret_id=secret.id,
                    recipient_id=recipient.id,
                    position=recipient.position,
                    channel=channel.value,
                    destination=destination,
                    status=DeliveryStatus.PENDING.value,
                    claimed_at=now,
                )
            )
    await log_action(
        session,
        secret.user_id,
        ACTION_SECRET_TRIGGERED,
        resource_id=secret.id,
        details={"recipients": len(secret.recipients), "next_check_in": secret.next_check_in.isoformat()},
    )
    await session.flush()
    return True


async def _fail_all(session: AsyncSession, deliveries: list[DisclosureDelivery], error: str) -> None:
    for delivery in deliveries:
        delivery.status = DeliveryStatus.FAILED.value
        delivery.error = error
        delivery.claimed_at = None
    await session.commit()


async def deliver(
    secret_id: str,
    now: datetime,
    dispatcher: Dispatcher,
    delivery_ids: list[int] | None = None,
) -> DisclosureOutcome:
    """
    Decrypt once and send every claimed pending delivery of a triggered secret, in
    recipient order. Each row is committed as soon as its outcome is known.
    """
    outcome = DisclosureOutcome(secret_id=secret_id, triggered=True)
    alerts: list[admin_alerts.AdminAlert] = []
    async with async_session_maker() as session:
        r = await session.execute(
            select(Secret).where(Secret.id == secret_id).options(selectinload(Secret.owner))
        )
        secret = r.scalar_one_or_none()
        if secret is None:
            logger.warning("Secret %s was deleted before its disclosure could be delivered", secret_id)
            return outcome
        stmt = (
            select(DisclosureDelivery)
            .where(
                DisclosureDelivery.secret_id == secret_id,
                DisclosureDelivery.status == DeliveryStatus.PENDING.value,
            )
            .options(selectinload(DisclosureDelivery.recipient))
            .order_by(DisclosureDelivery.position, DisclosureDelivery.id)
        )
        if delivery_ids is not None:
            stmt = stmt.where(DisclosureDelivery.id.in_(delivery_ids))
        deliveries = list((await session.execute(stmt)).scalars().all())
        if not deliveries:
            logger.warning("Secret %s triggered with no pending deliveries", secret_id)
            return outcome

        try:
            content = decrypt(secret.ciphertext, secret.iv, secret.auth_tag)
        except DecryptionError as e:
            decryption_logger.error("Decryption failed for secret_id=%s: %s", secret_id, e)
            await _fail_all(session, deliveries, f"Decryption failed: {e}")
            metrics.DECRYPTION_FAILURES_TOTAL.inc()
            outcome.decryption_failed = True
            outcome.failed = len(deliveries)
            await admin_alerts.notify_admin(
                admin_alerts.AdminAlert(
                    email_type=admin_alerts.EMAIL_TYPE_DECRYPTION,
                    error_message=str(e),
                    secret_title=secret.title,
                    secret_id=secret_id,
                )
            )
            return outcome

        owner = secret.owner
        sender = (owner.name or owner.email or "Someone") if owner else "Someone"
        for delivery in deliveries:
            channel = Channel(delivery.channel)
            subject, text, html = disclosure_message(
                recipient_name=delivery.recipient.name,
                sender=sender,
                secret_title=secret.title,
                content=content,
            )
            result, attempts = await send_with_retries(
                dispatcher,
                Message(
                    channel=channel,
                    to=delivery.destination,
                    subject=subject,
                    text=text,
                    html=html if channel == Channel.EMAIL else None,
                    idempotency_key=f"disclosure-{delivery.id}",
                ),
                settings.disclosure_max_attempts,
            )
            delivery.attempts += attempts
            delivery.claimed_at = None
            if result.success:
                delivery.status = DeliveryStatus.SENT.value
                delivery.sent_at = now
                delivery.error = None
                outcome.sent += 1
                metrics.DISCLOSURE_DELIVERIES_TOTAL.labels(channel=channel.value, outcome="sent").inc()
                logger.info(
                    "Disclosure delivered for secret_id=%s recipient #%s via %s",
                    secret_id,
                    delivery.position,
                    channel.value,
                )
            else:
                delivery.status = DeliveryStatus.FAILED.value
                delivery.error = result.error
                outcome.failed += 1
                metrics.DISCLOSURE_DELIVERIES_TOTAL.labels(channel=channel.value, outcome="failed").inc()
                logger.warning(
                    "Disclosure delivery failed for secret_id=%s recipient #%s via %s after %s attempts: %s",
                    secret_id,
                    delivery.position,
                    channel.value,
                    attempts,
                    result.error,
                )
                alerts.append(
                    admin_alerts.AdminAlert(
                        email_type=admin_alerts.EMAIL_TYPE_DISCLOSURE,
                        error_message=result.error or "Unknown error",
                        secret_title=secret.title,
                        secret_id=secret_id,
                        recipient=delivery.destination,
                        retry_count=attempts,
                    )
                )
            await session.commit()

    for alert in alerts:
        await admin_alerts.notify_admin(alert)
    return outcome


async def trigger(secret_id: str, now: datetime, dispatcher: Dispatcher | None = None) -> DisclosureOutcome:
    """Run the trigger transition and, if this caller won it, the disclosure."""
    async with async_session_maker() as session:
        won = await claim_trigger(session, secret_id, now)
        if not won:
            await session.rollback()
            logger.debug("Trigger for secret_id=%s already handled elsewhere", secret_id)
            return DisclosureOutcome(secret_id=secret_id)
        await session.commit()

    metrics.SECRETS_TRIGGERED_TOTAL.inc()
    logger.info("Secret %s triggered at %s; starting disclosure", secret_id, now.isoformat())
    return await deliver(secret_id, now, dispatcher or get_dispatcher())


async def recover_stale_deliveries(now: datetime, dispatcher: Dispatcher | None = None) -> int:
    """Reclaim pending deliveries whose worker went away and deliver them. Returns rows reclaimed."""
    stale_before = now - timedelta(minutes=settings.stale_claim_minutes)
    stale = or_(DisclosureDelivery.claimed_at.is_(None), DisclosureDelivery.claimed_at < stale_before)
    async with async_session_maker() as session:
        r = await session.execute(
            select(DisclosureDelivery.id, DisclosureDelivery.secret_id)
            .join(Secret, Secret.id == DisclosureDelivery.secret_id)
            .where(
                DisclosureDelivery.status == DeliveryStatus.PENDING.value,
                Secret.status == SecretStatus.TRIGGERED.value,
                stale,
            )
            .order_by(DisclosureDelivery.id)
            .limit(settings.sweep_batch_size)
        )
        candidates = r.all()
        claimed: dict[str, list[int]] = defaultdict(list)
        for delivery_id, secret_id in candidates:
            r = await session.execute(
                update(DisclosureDelivery)
                .where(
                    DisclosureDelivery.id == delivery_id,
                    DisclosureDelivery.status == DeliveryStatus.PENDING.value,
                    stale,
                )
                .values(claimed_at=now)
                .returning(DisclosureDelivery.id)
                .execution_options(synchronize_session=False)
            )
            if r.scalar_one_or_none() is not None:
                claimed[secret_id].append(delivery_id)
        await session.commit()

    if not claimed:
        return 0
    dispatcher = dispatcher or get_dispatcher()
    total = 0
    for secret_id, ids in claimed.items():
        logger.warning("Recovering %s stale disclosure deliveries for secret_id=%s", len(ids), secret_id)
        await deliver(secret_id, now, dispatcher, delivery_ids=ids)
        total += len(ids)
    return total


async def redeliver_failed(
    secret_id: str,
    now: datetime,
    dispatcher: Dispatcher | None = None,
    delivery_ids: list[int] | None = None,
) -> DisclosureOutcome:
    """
    Manual retry after an incident: put failed deliveries of the secret back to pending,
    claimed by this caller, and deliver them again. Only rows still failed at the
    moment of the update are taken, so two concurrent retries never resend the same row.
    """
    async with async_session_maker() as session:
        stmt = (
            update(DisclosureDelivery)
            .where(
                DisclosureDelivery.secret_id == secret_id,
                DisclosureDelivery.status == DeliveryStatus.FAILED.value,
            )
            .values(status=DeliveryStatus.PENDING.value, claimed_at=now, error=None)
            .returning(DisclosureDelivery.id)
            .execution_options(synchronize_session=False)
        )
        if delivery_ids is not None:
            stmt = stmt.where(DisclosureDelivery.id.in_(delivery_ids))
        reset = list((await session.execute(stmt)).scalars().all())
        if not reset:
            await session.rollback()
            return DisclosureOutcome(secret_id=secret_id)
        owner_id = (await session.execute(select(Secret.user_id).where(Secret.id == secret_id))).scalar_one_or_none()
        await log_action(
            session,
            owner_id,
            ACTION_DISCLOSURE_RETRIED,
            resource_id=secret_id,
            details={"deliveries": sorted(reset)},
        )
        await session.commit()

    logger.info("Retrying %s failed disclosure deliveries for secret_id=%s", len(reset), secret_id)
    return await deliver(secret_id, now, dispatcher or get_dispatcher(), delivery_ids=reset)


async def redeliver_delivery(delivery_id: int, now: datetime, dispatcher: Dispatcher | None = None) -> DisclosureOutcome:
    async with async_session_maker() as session:
        r = await session.execute(
            select(DisclosureDelivery.secret_id, DisclosureDelivery.status).where(DisclosureDelivery.id == delivery_id)
        )
        row = r.one_or_none()
    if row is None:
        raise DeliveryNotFoundError("Delivery not found")
    secret_id, status = row
    if status != DeliveryStatus.FAILED.value:
        raise DeliveryNotRetryableError(status)
    return await redeliver_failed(secret_id, now, dispatcher, delivery_ids=[delivery_id])
