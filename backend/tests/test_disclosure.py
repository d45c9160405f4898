"""Tests for the trigger guard and disclosure delivery."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import select, update

from deadman.db.session import async_session_maker
from deadman.models.disclosure_delivery import DisclosureDelivery
from deadman.models.enums import Channel, DeliveryStatus, ReminderStatus, SecretStatus
from deadman.models.secret import Secret
from deadman.services import lifecycle
from deadman.services.admin_alerts import Severity
from deadman.services.disclosure import deliver, recover_stale_deliveries, redeliver_delivery, redeliver_failed, trigger
from deadman.services.errors import DeliveryNotFoundError, DeliveryNotRetryableError
from deadman.services.notifications import (
    SMS_MAX_CHARS,
    TELNYX_URL,
    ChannelDispatcher,
    DispatchResult,
    TelnyxSmsDispatcher,
)
from helpers import NOW, FakeDispatcher, load_reminders, load_secret, make_secret

DEADLINE = NOW + timedelta(days=2)


async def _deliveries(secret_id):
    async with async_session_maker() as session:
        r = await session.execute(
            select(DisclosureDelivery)
            .where(DisclosureDelivery.secret_id == secret_id)
            .order_by(DisclosureDelivery.position, DisclosureDelivery.id)
        )
        return list(r.scalars().all())


@pytest.mark.asyncio
async def test_trigger_before_deadline_is_noop(test_user):
    secret_id = await make_secret(test_user, check_in_days=2)
    fake = FakeDispatcher()
    outcome = await trigger(secret_id, DEADLINE - timedelta(seconds=1), fake)
    assert outcome.triggered is False
    assert fake.sent == []
    assert (await load_secret(secret_id)).status == SecretStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_trigger_delivers_decrypted_content(test_user):
    secret_id = await make_secret(test_user, check_in_days=2, content="bank: 1234")
    fake = FakeDispatcher()
    outcome = await trigger(secret_id, DEADLINE, fake)
    assert outcome.triggered is True
    assert outcome.sent == 1
    assert len(fake.sent) == 1
    assert fake.sent[0].to == "rita@example.com"
    assert "bank: 1234" in fake.sent[0].text

    secret = await load_secret(secret_id)
    assert secret.status == SecretStatus.TRIGGERED.value
    assert secret.triggered_at == DEADLINE
    assert await load_reminders(secret_id, ReminderStatus.PENDING.value) == []
    rows = await _deliveries(secret_id)
    assert [(r.status, r.attempts) for r in rows] == [(DeliveryStatus.SENT.value, 1)]


@pytest.mark.asyncio
async def test_concurrent_triggers_disclose_exactly_once(test_user):
    secret_id = await make_secret(test_user, check_in_days=2)
    fake = FakeDispatcher()
    outcomes = await asyncio.gather(*[trigger(secret_id, DEADLINE + timedelta(seconds=i), fake) for i in range(8)])
    winners = [o for o in outcomes if o.triggered]
    assert len(winners) == 1
    assert len(fake.sent) == 1
    assert len(await _deliveries(secret_id)) == 1
    secret = await load_secret(secret_id)
    assert secret.status == SecretStatus.TRIGGERED.value


@pytest.mark.asyncio
async def test_retrigger_after_trigger_is_noop(test_user):
    secret_id = await make_secret(test_user, check_in_days=2)
    fake = FakeDispatcher()
    await trigger(secret_id, DEADLINE, fake)
    outcome = await trigger(secret_id, DEADLINE + timedelta(hours=1), fake)
    assert outcome.triggered is False
    assert len(fake.sent) == 1
    assert (await load_secret(secret_id)).triggered_at == DEADLINE


@pytest.mark.asyncio
async def test_paused_secret_is_never_triggered(test_user):
    secret_id = await make_secret(test_user, check_in_days=2)
    async with async_session_maker() as session:
        await lifecycle.pause_secret(session, secret_id, test_user.id)
        await session.commit()
    outcome = await trigger(secret_id, DEADLINE + timedelta(days=5), FakeDispatcher())
    assert outcome.triggered is False
    assert (await load_secret(secret_id)).status == SecretStatus.PAUSED.value


@pytest.mark.asyncio
async def test_decryption_failure_keeps_triggered_and_escalates_critical(test_user):
    secret_id = await make_secret(test_user, check_in_days=2)
    async with async_session_maker() as session:
        await session.execute(update(Secret).where(Secret.id == secret_id).values(auth_tag="AAAAAAAAAAAAAAAAAAAAAA=="))
        await session.commit()
    fake = FakeDispatcher()
    notify = AsyncMock()
    with patch("deadman.services.admin_alerts.notify_admin", notify):
        outcome = await trigger(secret_id, DEADLINE, fake)
    assert outcome.triggered is True
    assert outcome.decryption_failed is True
    assert fake.sent == []
    assert (await load_secret(secret_id)).status == SecretStatus.TRIGGERED.value
    rows = await _deliveries(secret_id)
    assert rows[0].status == DeliveryStatus.FAILED.value
    assert rows[0].error.startswith("Decryption failed")
    notify.assert_awaited_once()
    alert = notify.await_args.args[0]
    assert alert.email_type == "decryption"
    assert alert.resolved_severity() == Severity.CRITICAL


@pytest.mark.asyncio
async def test_partial_failure_does_not_block_other_recipients(pro_user):
    recipients = [
        lifecycle.RecipientSpec(name="First", email="bad@example.com", contact_method="email"),
        lifecycle.RecipientSpec(name="Second", email="ok@example.com", phone="+15550002222", contact_method="both"),
    ]
    secret_id = await make_secret(pro_user, check_in_days=2, recipients=recipients)
    fake = FakeDispatcher(results=[DispatchResult(success=False, retryable=False, error="Invalid email address")])
    notify = AsyncMock()
    with patch("deadman.services.admin_alerts.notify_admin", notify):
        outcome = await trigger(secret_id, DEADLINE, fake)

    assert outcome.sent == 2
    assert outcome.failed == 1
    assert [(m.channel, m.to) for m in fake.sent] == [
        (Channel.EMAIL, "bad@example.com"),
        (Channel.EMAIL, "ok@example.com"),
        (Channel.SMS, "+15550002222"),
    ]
    rows = await _deliveries(secret_id)
    assert [r.status for r in rows] == [
        DeliveryStatus.FAILED.value,
        DeliveryStatus.SENT.value,
        DeliveryStatus.SENT.value,
    ]
    notify.assert_awaited_once()
    alert = notify.await_args.args[0]
    assert alert.email_type == "disclosure"
    assert alert.recipient == "bad@example.com"
    assert alert.resolved_severity() == Severity.CRITICAL
    assert (await load_secret(secret_id)).status == SecretStatus.TRIGGERED.value


@pytest.mark.asyncio
async def test_transient_delivery_failure_is_retried(test_user):
    secret_id = await make_secret(test_user, check_in_days=2)
    fake = FakeDispatcher(
        results=[
            DispatchResult(success=False, retryable=True, error="timeout"),
            DispatchResult(success=False, retryable=True, error="503"),
        ]
    )
    outcome = await trigger(secret_id, DEADLINE, fake)
    assert outcome.sent == 1
    rows = await _deliveries(secret_id)
    assert rows[0].attempts == 3
    assert rows[0].status == DeliveryStatus.SENT.value


@pytest.mark.asyncio
async def test_stale_pending_delivery_is_recovered(test_user):
    secret_id = await make_secret(test_user, check_in_days=2)
    # Simulate a worker that crashed after the trigger commit: deliveries stay pending and claimed
    fake = FakeDispatcher()
    with patch("deadman.services.disclosure.deliver", AsyncMock()):
        await trigger(secret_id, DEADLINE, fake)
    assert fake.sent == []

    assert await recover_stale_deliveries(DEADLINE + timedelta(minutes=5), fake) == 0
    assert await recover_stale_deliveries(DEADLINE + timedelta(hours=1), fake) == 1
    assert len(fake.sent) == 1
    rows = await _deliveries(secret_id)
    assert rows[0].status == DeliveryStatus.SENT.value
    assert await recover_stale_deliveries(DEADLINE + timedelta(hours=2), fake) == 0


def _phone_recipient():
    return [lifecycle.RecipientSpec(name="Pat", phone="+15550001111", contact_method="phone")]


def _telnyx_response(status_code=200):
    return httpx.Response(status_code, json={}, request=httpx.Request("POST", TELNYX_URL))


@pytest.mark.asyncio
async def test_long_sms_disclosure_arrives_complete_in_parts(test_user):
    content = "x" * 3000 + "END-OF-SECRET"
    secret_id = await make_secret(test_user, check_in_days=2, content=content, recipients=_phone_recipient())
    client = AsyncMock()
    client.post.return_value = _telnyx_response()
    dispatcher = ChannelDispatcher(email=FakeDispatcher(), sms=TelnyxSmsDispatcher("key", "+15550000000"))
    with patch("deadman.services.notifications.get_http_client", return_value=client):
        outcome = await trigger(secret_id, DEADLINE, dispatcher)

    assert outcome.sent == 1
    texts = [call.kwargs["json"]["text"] for call in client.post.call_args_list]
    assert len(texts) > 1
    assert all(len(t) <= SMS_MAX_CHARS for t in texts)
    assert all(call.kwargs["json"]["to"] == "+15550001111" for call in client.post.call_args_list)
    assert content in "".join(t.split(") ", 1)[1] for t in texts)
    rows = await _deliveries(secret_id)
    assert rows[0].status == DeliveryStatus.SENT.value


@pytest.mark.asyncio
async def test_sms_disclosure_with_rejected_part_fails_and_escalates(test_user):
    content = "y" * 3000
    secret_id = await make_secret(test_user, check_in_days=2, content=content, recipients=_phone_recipient())
    client = AsyncMock()
    client.post.side_effect = [_telnyx_response(), _telnyx_response(400)]
    dispatcher = ChannelDispatcher(email=FakeDispatcher(), sms=TelnyxSmsDispatcher("key", "+15550000000"))
    notify = AsyncMock()
    with patch("deadman.services.notifications.get_http_client", return_value=client), patch(
        "deadman.services.admin_alerts.notify_admin", notify
    ):
        outcome = await trigger(secret_id, DEADLINE, dispatcher)

    assert outcome.sent == 0
    assert outcome.failed == 1
    rows = await _deliveries(secret_id)
    assert rows[0].status == DeliveryStatus.FAILED.value
    assert "part 2/" in rows[0].error
    notify.assert_awaited_once()
    assert notify.await_args.args[0].resolved_severity() == Severity.CRITICAL


@pytest.mark.asyncio
async def test_deliver_after_secret_deleted_returns_quietly(test_user):
    secret_id = await make_secret(test_user, check_in_days=2)
    fake = FakeDispatcher()
    with patch("deadman.services.disclosure.deliver", AsyncMock()):
        await trigger(secret_id, DEADLINE, fake)
    async with async_session_maker() as session:
        await lifecycle.delete_secret(session, secret_id, test_user.id)
        await session.commit()

    outcome = await deliver(secret_id, DEADLINE, fake)
    assert outcome.sent == 0
    assert outcome.failed == 0
    assert fake.sent == []


async def _trigger_with_failed_delivery(user):
    secret_id = await make_secret(user, check_in_days=2)
    fake = FakeDispatcher(default=DispatchResult(success=False, retryable=False, error="Invalid email address"))
    with patch("deadman.services.admin_alerts.notify_admin", AsyncMock()):
        await trigger(secret_id, DEADLINE, fake)
    rows = await _deliveries(secret_id)
    assert rows[0].status == DeliveryStatus.FAILED.value
    return secret_id, rows[0].id


@pytest.mark.asyncio
async def test_failed_delivery_can_be_sent_again(test_user):
    secret_id, delivery_id = await _trigger_with_failed_delivery(test_user)
    fake = FakeDispatcher()
    later = DEADLINE + timedelta(hours=6)
    outcome = await redeliver_failed(secret_id, later, fake)

    assert outcome.sent == 1
    assert len(fake.sent) == 1
    assert "the combination is 12-34-56" in fake.sent[0].text
    rows = await _deliveries(secret_id)
    assert rows[0].id == delivery_id
    assert rows[0].status == DeliveryStatus.SENT.value
    assert rows[0].sent_at == later
    assert rows[0].error is None
    assert rows[0].attempts == 2

    again = await redeliver_failed(secret_id, later, fake)
    assert again.sent == 0
    assert len(fake.sent) == 1


@pytest.mark.asyncio
async def test_redeliver_single_delivery_checks_state(test_user):
    secret_id, delivery_id = await _trigger_with_failed_delivery(test_user)
    with pytest.raises(DeliveryNotFoundError):
        await redeliver_delivery(delivery_id + 1000, DEADLINE, FakeDispatcher())

    outcome = await redeliver_delivery(delivery_id, DEADLINE + timedelta(hours=1), FakeDispatcher())
    assert outcome.sent == 1
    with pytest.raises(DeliveryNotRetryableError) as exc:
        await redeliver_delivery(delivery_id, DEADLINE + timedelta(hours=2), FakeDispatcher())
    assert exc.value.status == DeliveryStatus.SENT.value
