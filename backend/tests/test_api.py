"""Tests for the HTTP surface: owner secrets API, link check-in, cron endpoints."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from deadman.db.session import async_session_maker
from deadman.db.types import utcnow
from deadman.models.disclosure_delivery import DisclosureDelivery
from deadman.services.check_in_tokens import issue_check_in_token
from deadman.services.notifications import DispatchResult
from helpers import FakeDispatcher, load_secret, make_secret

SECRET_BODY = {
    "title": "Passwords",
    "content": "vault pin 0000",
    "check_in_days": 30,
    "recipients": [{"name": "Rita", "email": "rita@example.com", "contact_method": "email"}],
}


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_secrets_require_auth(client: AsyncClient):
    resp = await client.get("/api/v1/secrets")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_create_and_get_secret(client: AsyncClient, auth_headers: dict):
    resp = await client.post("/api/v1/secrets", json=SECRET_BODY, headers=auth_headers)
    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "active"
    assert data["check_in_days"] == 30
    assert data["recipients"][0]["email"] == "rita@example.com"
    assert "content" not in data
    assert "ciphertext" not in data

    resp = await client.get(f"/api/v1/secrets/{data['id']}", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["title"] == "Passwords"

    resp = await client.get(f"/api/v1/secrets/{data['id']}/reminders", headers=auth_headers)
    assert resp.status_code == 200
    assert len(resp.json()) == 7
    assert {r["status"] for r in resp.json()} == {"pending"}


@pytest.mark.asyncio
async def test_create_rejects_bad_interval_and_contact(client: AsyncClient, auth_headers: dict):
    resp = await client.post("/api/v1/secrets", json={**SECRET_BODY, "check_in_days": 1}, headers=auth_headers)
    assert resp.status_code == 422
    body = {**SECRET_BODY, "recipients": [{"name": "P", "contact_method": "phone", "email": "p@example.com"}]}
    resp = await client.post("/api/v1/secrets", json=body, headers=auth_headers)
    assert resp.status_code == 422
    resp = await client.get("/api/v1/secrets", headers=auth_headers)
    assert resp.json() == []


@pytest.mark.asyncio
async def test_other_user_gets_404(client: AsyncClient, auth_headers: dict, other_auth_headers: dict):
    created = (await client.post("/api/v1/secrets", json=SECRET_BODY, headers=auth_headers)).json()
    for method, path in [
        ("GET", f"/api/v1/secrets/{created['id']}"),
        ("POST", f"/api/v1/secrets/{created['id']}/check-in"),
        ("POST", f"/api/v1/secrets/{created['id']}/pause"),
        ("DELETE", f"/api/v1/secrets/{created['id']}"),
    ]:
        resp = await client.request(method, path, headers=other_auth_headers)
        assert resp.status_code == 404
    resp = await client.get("/api/v1/secrets", headers=other_auth_headers)
    assert resp.json() == []


@pytest.mark.asyncio
async def test_check_in_pause_resume_flow(client: AsyncClient, auth_headers: dict):
    created = (await client.post("/api/v1/secrets", json=SECRET_BODY, headers=auth_headers)).json()
    sid = created["id"]

    resp = await client.post(f"/api/v1/secrets/{sid}/check-in", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    resp = await client.post(f"/api/v1/secrets/{sid}/pause", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "paused"

    resp = await client.post(f"/api/v1/secrets/{sid}/check-in", headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["status"] == "paused"

    resp = await client.post(f"/api/v1/secrets/{sid}/resume", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "active"


@pytest.mark.asyncio
async def test_patch_and_delete(client: AsyncClient, auth_headers: dict):
    sid = (await client.post("/api/v1/secrets", json=SECRET_BODY, headers=auth_headers)).json()["id"]
    resp = await client.patch(f"/api/v1/secrets/{sid}", json={"check_in_days": 7}, headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["check_in_days"] == 7

    resp = await client.patch(f"/api/v1/secrets/{sid}", json={"check_in_days": 400}, headers=auth_headers)
    assert resp.status_code == 422

    resp = await client.delete(f"/api/v1/secrets/{sid}", headers=auth_headers)
    assert resp.status_code == 204
    resp = await client.get(f"/api/v1/secrets/{sid}", headers=auth_headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_link_check_in(client: AsyncClient, test_user):
    secret_id = await make_secret(test_user, now=utcnow() - timedelta(days=1))
    async with async_session_maker() as session:
        token = await issue_check_in_token(session, secret_id, utcnow())
        await session.commit()

    resp = await client.post("/api/v1/check-in", params={"token": token})
    assert resp.status_code == 200
    assert resp.json()["secret_id"] == secret_id
    assert (await load_secret(secret_id)).next_check_in > utcnow() + timedelta(days=29)

    resp = await client.post("/api/v1/check-in", params={"token": token})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "used"

    resp = await client.post("/api/v1/check-in", params={"token": "bogus"})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "invalid"


@pytest.mark.asyncio
async def test_link_check_in_rejects_mismatched_secret(client: AsyncClient, test_user):
    secret_id = await make_secret(test_user, now=utcnow())
    async with async_session_maker() as session:
        token = await issue_check_in_token(session, secret_id, utcnow())
        await session.commit()
    resp = await client.post("/api/v1/check-in", params={"token": token, "secretId": "other"})
    assert resp.status_code == 400
    resp = await client.post("/api/v1/check-in", params={"token": token, "secretId": secret_id})
    assert resp.status_code == 200


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "test-cron-secret"}])
async def test_cron_rejects_bad_secret_before_work(client: AsyncClient, headers: dict):
    sweep = AsyncMock()
    with patch("deadman.api.v1.cron.run_sweep", sweep):
        for path in ("/api/v1/cron/sweep", "/api/v1/cron/process-reminders", "/api/v1/cron/check-secrets"):
            resp = await client.post(path, headers=headers)
            assert resp.status_code == 401
        resp = await client.get("/api/v1/cron/status", headers=headers)
        assert resp.status_code == 401
    sweep.assert_not_awaited()


@pytest.mark.asyncio
async def test_cron_sweep_triggers_overdue_secret(client: AsyncClient, cron_headers: dict, test_user):
    secret_id = await make_secret(test_user, check_in_days=2, now=utcnow() - timedelta(days=3))
    resp = await client.get("/api/v1/cron/status", headers=cron_headers)
    assert resp.status_code == 200
    assert resp.json()["overdue_secrets"] == 1

    resp = await client.post("/api/v1/cron/sweep", headers=cron_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["triggered"] == 1
    assert data["sent"] == 1
    assert (await load_secret(secret_id)).status == "triggered"

    resp = await client.post("/api/v1/cron/sweep", headers=cron_headers)
    assert resp.json()["triggered"] == 0


@pytest.mark.asyncio
async def test_cron_process_reminders_and_check_secrets(client: AsyncClient, cron_headers: dict, test_user):
    await make_secret(test_user, check_in_days=30, now=utcnow() - timedelta(days=8))
    resp = await client.post("/api/v1/cron/process-reminders", headers=cron_headers)
    assert resp.status_code == 200
    assert resp.json()["sent"] == 1

    resp = await client.post("/api/v1/cron/check-secrets", headers=cron_headers)
    assert resp.status_code == 200
    assert resp.json()["triggered"] == 0


@pytest.mark.asyncio
async def test_cron_retries_failed_delivery(client: AsyncClient, cron_headers: dict, test_user):
    secret_id = await make_secret(test_user, check_in_days=2, now=utcnow() - timedelta(days=3))
    failing = FakeDispatcher(default=DispatchResult(success=False, retryable=False, error="Invalid email address"))
    with patch("deadman.services.sweep.get_dispatcher", return_value=failing), patch(
        "deadman.services.admin_alerts.notify_admin", AsyncMock()
    ):
        resp = await client.post("/api/v1/cron/sweep", headers=cron_headers)
    assert resp.json()["failed"] == 1

    resp = await client.get("/api/v1/cron/status", headers=cron_headers)
    assert resp.json()["failed_deliveries"] == 1

    async with async_session_maker() as session:
        r = await session.execute(select(DisclosureDelivery.id).where(DisclosureDelivery.secret_id == secret_id))
        delivery_id = r.scalar_one()

    resp = await client.post(f"/api/v1/cron/deliveries/{delivery_id}/retry", headers={})
    assert resp.status_code == 401

    resp = await client.post(f"/api/v1/cron/deliveries/{delivery_id}/retry", headers=cron_headers)
    assert resp.status_code == 200
    assert resp.json() == {"secret_id": secret_id, "retried": 1, "sent": 1, "failed": 0}

    resp = await client.post(f"/api/v1/cron/deliveries/{delivery_id}/retry", headers=cron_headers)
    assert resp.status_code == 409
    assert resp.json()["status"] == "sent"

    resp = await client.post("/api/v1/cron/deliveries/999999/retry", headers=cron_headers)
    assert resp.status_code == 404

    resp = await client.post(f"/api/v1/cron/secrets/{secret_id}/redeliver", headers=cron_headers)
    assert resp.status_code == 200
    assert resp.json()["retried"] == 0
