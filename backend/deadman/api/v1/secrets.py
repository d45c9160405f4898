"""Owner API: create, list, edit, delete secrets; check in, pause, resume."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from deadman.api.deps import get_current_user
from deadman.db.session import get_db
from deadman.models.reminder import Reminder
from deadman.models.user import User
from deadman.schemas.secret import (
    CheckInResponse,
    ReminderResponse,
    SecretCreate,
    SecretResponse,
    SecretUpdate,
)
from deadman.services import lifecycle

router = APIRouter(prefix="/secrets", tags=["secrets"])

_NOT_FOUND = {404: {"description": "Secret not found"}}
_CONFLICT = {409: {"description": "Transition not allowed in current status"}}


@router.post("", response_model=SecretResponse, status_code=201, responses={422: {"description": "Invalid secret"}})
async def create_secret(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    body: SecretCreate,
):
    secret = await lifecycle.create_secret(
        session,
        user,
        title=body.title,
        content=body.content,
        check_in_days=body.check_in_days,
        recipients=[
            lifecycle.RecipientSpec(
                name=r.name, email=r.email, phone=r.phone, contact_method=r.contact_method.value
            )
            for r in body.recipients
        ],
    )
    return await lifecycle.get_owned_secret(session, secret.id, user.id)


@router.get("", response_model=list[SecretResponse])
async def list_secrets(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
):
    return await lifecycle.list_secrets(session, user.id)


@router.get("/{secret_id}", response_model=SecretResponse, responses=_NOT_FOUND)
async def get_secret(
    secret_id: str,
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
):
    return await lifecycle.get_owned_secret(session, secret_id, user.id)


@router.patch("/{secret_id}", response_model=SecretResponse, responses={**_NOT_FOUND, **_CONFLICT})
async def update_secret(
    secret_id: str,
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    body: SecretUpdate,
):
    await lifecycle.update_secret(session, user, secret_id, title=body.title, check_in_days=body.check_in_days)
    return await lifecycle.get_owned_secret(session, secret_id, user.id)


@router.delete("/{secret_id}", status_code=204, responses=_NOT_FOUND)
async def delete_secret(
    secret_id: str,
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
):
    await lifecycle.delete_secret(session, secret_id, user.id)


@router.post("/{secret_id}/check-in", response_model=CheckInResponse, responses={**_NOT_FOUND, **_CONFLICT})
async def check_in(
    secret_id: str,
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
):
    secret = await lifecycle.check_in(session, secret_id, user.id)
    return CheckInResponse(secret_id=secret.id, secret_title=secret.title, next_check_in=secret.next_check_in)


@router.post("/{secret_id}/pause", response_model=SecretResponse, responses={**_NOT_FOUND, **_CONFLICT})
async def pause_secret(
    secret_id: str,
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
):
    await lifecycle.pause_secret(session, secret_id, user.id)
    return await lifecycle.get_owned_secret(session, secret_id, user.id)


@router.post("/{secret_id}/resume", response_model=SecretResponse, responses={**_NOT_FOUND, **_CONFLICT})
async def resume_secret(
    secret_id: str,
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
):
    await lifecycle.resume_secret(session, secret_id, user.id)
    return await lifecycle.get_owned_secret(session, secret_id, user.id)


@router.get("/{secret_id}/reminders", response_model=list[ReminderResponse], responses=_NOT_FOUND)
async def list_reminders(
    secret_id: str,
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
):
    """Reminder rows for one owned secret, in firing order."""
    await lifecycle.get_owned_secret(session, secret_id, user.id)
    r = await session.execute(
        select(Reminder)
        .where(Reminder.secret_id == secret_id, Reminder.user_id == user.id)
        .order_by(Reminder.scheduled_for)
    )
    return list(r.scalars().all())
