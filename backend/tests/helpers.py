"""Test helpers shared across modules."""

from datetime import datetime, timezone

from sqlalchemy import select

from deadman.db.session import async_session_maker
from deadman.models.reminder import Reminder
from deadman.models.secret import Secret
from deadman.services import lifecycle
from deadman.services.notifications import DispatchResult

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeDispatcher:
    """Records every message; answers from a queue of results, then `default`."""

    def __init__(self, results=None, default=None):
        self.results = list(results or [])
        self.default = default or DispatchResult(success=True)
        self.sent = []

    async def send(self, message):
        self.sent.append(message)
        if self.results:
            return self.results.pop(0)
        return self.default


async def make_secret(
    user,
    now=NOW,
    check_in_days=30,
    content="the combination is 12-34-56",
    recipients=None,
    title="Safe",
) -> str:
    recipients = recipients or [
        lifecycle.RecipientSpec(name="Rita", email="rita@example.com", contact_method="email")
    ]
    async with async_session_maker() as session:
        secret = await lifecycle.create_secret(
            session, user, title=title, content=content, check_in_days=check_in_days, recipients=recipients, now=now
        )
        await session.commit()
        return secret.id


async def load_secret(secret_id: str) -> Secret:
    async with async_session_maker() as session:
        r = await session.execute(select(Secret).where(Secret.id == secret_id))
        return r.scalar_one()


async def load_reminders(secret_id: str, status: str | None = None) -> list[Reminder]:
    async with async_session_maker() as session:
        stmt = select(Reminder).where(Reminder.secret_id == secret_id).order_by(Reminder.scheduled_for)
        if status is not None:
            stmt = stmt.where(Reminder.status == status)
        r = await session.execute(stmt)
        return list(r.scalars().all())
