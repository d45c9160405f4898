"""Link check-in: the single-use token from a reminder message checks the secret in without a login."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from deadman.core.rate_limit import CHECK_IN_LIMIT, limiter
from deadman.db.session import get_db
from deadman.schemas.secret import CheckInResponse
from deadman.services import lifecycle

router = APIRouter(tags=["check-in"])


@router.post(
    "/check-in",
    response_model=CheckInResponse,
    responses={
        400: {"description": "Token invalid, used or expired"},
        409: {"description": "Secret is paused or already triggered"},
    },
)
@limiter.limit(CHECK_IN_LIMIT)
async def check_in_with_token(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
    token: Annotated[str, Query(min_length=1)],
    secret_id: Annotated[str | None, Query(alias="secretId")] = None,
):
    secret = await lifecycle.check_in_with_token(session, token, secret_id=secret_id)
    return CheckInResponse(secret_id=secret.id, secret_title=secret.title, next_check_in=secret.next_check_in)
