"""
Secret lifecycle: create, check in, pause, resume, edit, delete.

States: active, paused, triggered (terminal). Every mutation locks the secret row
scoped by (id, owner) before reading its status, then re-materializes reminders in
the same transaction. A secret that does not exist and one owned by someone else
both raise SecretNotFoundError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from deadman.config import settings
from deadman.db.types import utcnow
from deadman.models.check_in_history import CheckInHistory
from deadman.models.enums import ContactMethod, SecretStatus, Tier
from deadman.models.secret import Secret, SecretRecipient
from deadman.models.user import User
from deadman.services import audit
from deadman.services.check_in_tokens import consume_check_in_token
from deadman.services.crypto import encrypt
from deadman.services.deadlines import compute_next_check_in
from deadman.services.errors import CheckInTokenError, InvalidTransitionError, SecretNotFoundError, SecretValidationError
from deadman.services.reminders import cancel_pending_reminders, lock_secret, materialize_schedule

logger = logging.getLogger(__name__)


@dataclass
class RecipientSpec:
    name: str
    contact_method: str
    email: str | None = None
    phone: str | None = None


def max_interval_days(user: User) -> int:
    return settings.custom_max_check_in_days if user.custom_intervals else settings.max_check_in_days


def max_recipients(user: User) -> int:
    return settings.pro_max_recipients if user.tier == Tier.PRO.value else settings.free_max_recipients


def validate_interval(check_in_days: int, user: User) -> None:
    upper = max_interval_days(user)
    if check_in_days < settings.min_check_in_days:
        raise SecretValidationError(f"Check-in interval must be at least {settings.min_check_in_days} days")
    if check_in_days > upper:
        raise SecretValidationError(f"Check-in interval cannot exceed {upper} days on your plan")


def validate_recipients(recipients: list[RecipientSpec], user: User) -> None:
    if not recipients:
        raise SecretValidationError("At least one recipient is required")
    limit = max_recipients(user)
    if len(recipients) > limit:
        raise SecretValidationError(f"Your plan allows at most {limit} recipient(s) per secret")
    for i, r in enumerate(recipients, start=1):
        if not (r.name or "").strip():
            raise SecretValidationError(f"Recipient {i}: name is required")
        try:
            method = ContactMethod(r.contact_method)
        except ValueError:
            raise SecretValidationError(f"Recipient {i}: unknown contact method {r.contact_method!r}")
        if method in (ContactMethod.EMAIL, ContactMethod.BOTH) and not r.email:
            raise SecretValidationError(f"Recipient {i}: email is required for contact method {method.value}")
        if method in (ContactMethod.PHONE, ContactMethod.BOTH) and not r.phone:
            raise SecretValidationError(f"Recipient {i}: phone is required for contact method {method.value}")


def _record_check_in(session: AsyncSession, secret: Secret, now: datetime) -> None:
    secret.last_check_in = now
    secret.next_check_in = compute_next_check_in(now, secret.check_in_days)
    session.add(
        CheckInHistory(
            secret_id=secret.id,
            user_id=secret.user_id,
            checked_in_at=now,
            next_check_in=secret.next_check_in,
        )
    )


async def _locked_owned(session: AsyncSession, secret_id: str, user_id: str) -> Secret:
    secret = await lock_secret(session, secret_id, user_id)
    if secret is None:
        raise SecretNotFoundError("Secret not found")
    return secret


async def create_secret(
    session: AsyncSession,
    user: User,
    title: str,
    content: str,
    check_in_days: int,
    recipients: list[RecipientSpec],
    now: datetime | None = None,
) -> Secret:
    now = now or utcnow()
    title = (title or "").strip()
    if not title:
        raise SecretValidationError("Title is required")
    if not content:
        raise SecretValidationError("Secret content is required")
    validate_interval(check_in_days, user)
    validate_recipients(recipients, user)

    payload = encrypt(content)
    secret = Secret(
        user_id=user.id,
        title=title,
        ciphertext=payload.ciphertext,
        iv=payload.iv,
        auth_tag=payload.auth_tag,
        check_in_days=check_in_days,
        status=SecretStatus.ACTIVE.value,
        last_check_in=now,
        next_check_in=compute_next_check_in(now, check_in_days),
        recipients=[
            SecretRecipient(
                position=i,
                name=r.name.strip(),
                email=r.email,
                phone=r.phone,
                contact_method=r.contact_method,
            )
            for i, r in enumerate(recipients)
        ],
    )
    session.add(secret)
    await session.flush()
    await materialize_schedule(session, secret, now)
    await audit.log_action(
        session,
        user.id,
        audit.ACTION_SECRET_CREATED,
        resource_id=secret.id,
        details={"check_in_days": check_in_days, "recipients": len(recipients)},
    )
    logger.info("Secret %s created by user %s, deadline %s", secret.id, user.id, secret.next_check_in.isoformat())
    return secret


async def get_owned_secret(session: AsyncSession, secret_id: str, user_id: str) -> Secret:
    r = await session.execute(
        select(Secret)
        .where(Secret.id == secret_id, Secret.user_id == user_id)
        .options(selectinload(Secret.recipients))
        .execution_options(populate_existing=True)
    )
    secret = r.scalar_one_or_none()
    if secret is None:
        raise SecretNotFoundError("Secret not found")
    return secret


async def list_secrets(session: AsyncSession, user_id: str) -> list[Secret]:
    r = await session.execute(
        select(Secret)
        .where(Secret.user_id == user_id)
        .options(selectinload(Secret.recipients))
        .order_by(Secret.created_at.desc())
    )
    return list(r.scalars().all())


async def check_in(session: AsyncSession, secret_id: str, user_id: str, now: datetime | None = None) -> Secret:
    """active -> active: reset the clock and reschedule. Paused and triggered secrets are rejected."""
    now = now or utcnow()
    secret = await _locked_owned(session, secret_id, user_id)
    if secret.status != SecretStatus.ACTIVE.value:
        raise InvalidTransitionError(secret.status, "check in")
    _record_check_in(session, secret, now)
    await session.flush()
    await materialize_schedule(session, secret, now)
    await audit.log_action(
        session,
        user_id,
        audit.ACTION_CHECK_IN,
        resource_id=secret.id,
        details={"next_check_in": secret.next_check_in.isoformat()},
    )
    logger.info("Check-in for secret %s, next deadline %s", secret.id, secret.next_check_in.isoformat())
    return secret


async def check_in_with_token(
    session: AsyncSession,
    token: str,
    now: datetime | None = None,
    secret_id: str | None = None,
) -> Secret:
    """
    Consume a single-use link token and check in. Both happen in the caller's
    transaction, so a rejected check-in (e.g. secret already triggered) rolls the
    token back to unused.
    """
    now = now or utcnow()
    token_secret_id = await consume_check_in_token(session, token, now)
    if secret_id is not None and secret_id != token_secret_id:
        raise CheckInTokenError("invalid")
    secret_id = token_secret_id
    r = await session.execute(select(Secret.user_id).where(Secret.id == secret_id))
    owner_id = r.scalar_one_or_none()
    if owner_id is None:
        raise SecretNotFoundError("Secret not found")
    return await check_in(session, secret_id, owner_id, now)


async def pause_secret(session: AsyncSession, secret_id: str, user_id: str, now: datetime | None = None) -> Secret:
    secret = await _locked_owned(session, secret_id, user_id)
    if secret.status != SecretStatus.ACTIVE.value:
        raise InvalidTransitionError(secret.status, "pause")
    secret.status = SecretStatus.PAUSED.value
    cancelled = await cancel_pending_reminders(session, secret.id)
    await session.flush()
    await audit.log_action(
        session, user_id, audit.ACTION_SECRET_PAUSED, resource_id=secret.id, details={"cancelled": cancelled}
    )
    return secret


async def resume_secret(session: AsyncSession, secret_id: str, user_id: str, now: datetime | None = None) -> Secret:
    now = now or utcnow()
    secret = await _locked_owned(session, secret_id, user_id)
    if secret.status != SecretStatus.PAUSED.value:
        raise InvalidTransitionError(secret.status, "resume")
    secret.status = SecretStatus.ACTIVE.value
    _record_check_in(session, secret, now)
    await session.flush()
    await materialize_schedule(session, secret, now)
    await audit.log_action(
        session,
        user_id,
        audit.ACTION_SECRET_RESUMED,
        resource_id=secret.id,
        details={"next_check_in": secret.next_check_in.isoformat()},
    )
    return secret


async def update_secret(
    session: AsyncSession,
    user: User,
    secret_id: str,
    title: str | None = None,
    check_in_days: int | None = None,
    now: datetime | None = None,
) -> Secret:
    """
    Edit title and/or interval. A new interval on an active secret counts as a check-in
    (clock restarts now); on a paused secret the deadline is recomputed from the last
    check-in and applies on resume.
    """
    now = now or utcnow()
    secret = await _locked_owned(session, secret_id, user.id)
    if secret.status == SecretStatus.TRIGGERED.value:
        raise InvalidTransitionError(secret.status, "edit")

    changes: dict = {}
    if title is not None:
        title = title.strip()
        if not title:
            raise SecretValidationError("Title is required")
        if title != secret.title:
            secret.title = title
            changes["title"] = True
    if check_in_days is not None and check_in_days != secret.check_in_days:
        validate_interval(check_in_days, user)
        changes["check_in_days"] = {"from": secret.check_in_days, "to": check_in_days}
        secret.check_in_days = check_in_days
        if secret.status == SecretStatus.ACTIVE.value:
            _record_check_in(session, secret, now)
        else:
            secret.next_check_in = compute_next_check_in(secret.last_check_in, check_in_days)
        await session.flush()
        await materialize_schedule(session, secret, now)

    if changes:
        await session.flush()
        await audit.log_action(session, user.id, audit.ACTION_SECRET_EDITED, resource_id=secret.id, details=changes)
    return secret


async def delete_secret(session: AsyncSession, secret_id: str, user_id: str) -> None:
    secret = await _locked_owned(session, secret_id, user_id)
    await audit.log_action(
        session, user_id, audit.ACTION_SECRET_DELETED, resource_id=secret.id, details={"status": secret.status}
    )
    await session.delete(secret)
    await session.flush()
    logger.info("Secret %s deleted by user %s", secret_id, user_id)
