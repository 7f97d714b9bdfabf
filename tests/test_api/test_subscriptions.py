from __future__ import annotations

import datetime as dt

import pytest

from tests.conftest import API_PREFIX, build_auth_header

URL = f"{API_PREFIX}/subscriptions"


async def create(client, plan_id="basic", tenant_id="T1", **extra):
    body = {"planId": plan_id, **extra}
    return await client.post(URL, json=body, headers=build_auth_header(tenant_id))


@pytest.mark.asyncio
async def test_create_then_conflict_then_active_lookup(client):
    first = await create(client, "basic")
    assert first.status_code == 201
    payload = first.json()
    assert payload["success"] is True
    data = payload["data"]
    assert data["status"] == "ACTIVE"
    assert data["planId"] == "basic"
    assert data["basePrice"] == 0
    assert data["currency"] == "EUR"
    assert data["planHistory"] == []
    assert data["tenantId"] == "T1"
    assert data["createdBy"] == "user-1"

    second = await create(client, "premium")
    assert second.status_code == 409
    assert second.json() == {
        "success": False,
        "error": "CONFLICT",
        "message": "Tenant already has an active subscription",
    }

    active = await client.get(f"{URL}/active", headers=build_auth_header("T1"))
    assert active.status_code == 200
    assert active.json()["data"]["id"] == data["id"]
    assert active.json()["data"]["planId"] == "basic"


@pytest.mark.asyncio
async def test_create_requires_valid_plan(client):
    missing = await client.post(URL, json={}, headers=build_auth_header())
    assert missing.status_code == 400
    assert missing.json()["error"] == "VALIDATION_ERROR"

    unknown = await create(client, "platinum")
    assert unknown.status_code == 400

    bad_cycle = await create(client, "basic", billingCycle="weekly")
    assert bad_cycle.status_code == 400
    assert bad_cycle.json()["success"] is False


@pytest.mark.asyncio
async def test_active_is_null_without_subscription(client):
    response = await client.get(f"{URL}/active", headers=build_auth_header("empty"))
    assert response.status_code == 200
    assert response.json() == {"success": True, "data": None}


@pytest.mark.asyncio
async def test_requests_without_tenant_or_user_are_unauthorized(client):
    no_header = await client.get(URL)
    assert no_header.status_code == 401
    assert no_header.json()["error"] == "UNAUTHORIZED"

    no_tenant = await client.get(URL, headers=build_auth_header(tenant_id=None))
    assert no_tenant.status_code == 401

    no_user = await client.get(URL, headers=build_auth_header(user_id=None))
    assert no_user.status_code == 401

    garbage = await client.get(URL, headers={"Authorization": "Bearer not-a-jwt"})
    assert garbage.status_code == 401


@pytest.mark.asyncio
async def test_get_is_tenant_scoped(client):
    created = (await create(client, tenant_id="T1")).json()["data"]

    own = await client.get(f"{URL}/{created['id']}", headers=build_auth_header("T1"))
    assert own.status_code == 200

    foreign = await client.get(f"{URL}/{created['id']}", headers=build_auth_header("T2"))
    assert foreign.status_code == 404
    assert foreign.json()["error"] == "NOT_FOUND"

    missing = await client.get(f"{URL}/nope", headers=build_auth_header("T1"))
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_update_subscription(client):
    created = (await create(client)).json()["data"]

    response = await client.put(
        f"{URL}/{created['id']}",
        json={"planId": "premium", "metadata": {"seats": 10}},
        headers=build_auth_header(),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["planId"] == "premium"
    assert data["metadata"] == {"seats": 10}
    assert data["planHistory"][0]["changeType"] == "UPGRADE"
    assert data["planHistory"][0]["priceDifference"] == 50.0


@pytest.mark.asyncio
async def test_update_errors(client):
    created = (await create(client)).json()["data"]

    missing = await client.put(f"{URL}/nope", json={"planId": "premium"}, headers=build_auth_header())
    assert missing.status_code == 404

    bad_plan = await client.put(
        f"{URL}/{created['id']}", json={"planId": "gold"}, headers=build_auth_header()
    )
    assert bad_plan.status_code == 400

    bad_transition = await client.put(
        f"{URL}/{created['id']}", json={"status": "CANCELLED"}, headers=build_auth_header()
    )
    assert bad_transition.status_code == 400

    tenant_change = await client.put(
        f"{URL}/{created['id']}", json={"tenantId": "T9"}, headers=build_auth_header()
    )
    assert tenant_change.status_code == 400


@pytest.mark.asyncio
async def test_cancel_twice(client):
    created = (await create(client)).json()["data"]

    first = await client.request(
        "DELETE",
        f"{URL}/{created['id']}",
        json={"reason": "closing the account"},
        headers=build_auth_header(),
    )
    assert first.status_code == 200
    data = first.json()["data"]
    assert data["status"] == "CANCELLED"
    assert data["cancelReason"] == "closing the account"

    second = await client.delete(f"{URL}/{created['id']}", headers=build_auth_header())
    assert second.status_code == 400
    assert "already cancelled" in second.json()["message"]

    missing = await client.delete(f"{URL}/nope", headers=build_auth_header())
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_list_pagination(client):
    headers = build_auth_header("T1")
    for _ in range(25):
        created = (await create(client, tenant_id="T1")).json()["data"]
        await client.delete(f"{URL}/{created['id']}", headers=headers)

    page = await client.get(URL, params={"page": 1, "limit": 20}, headers=headers)
    assert page.status_code == 200
    body = page.json()
    assert body["success"] is True
    assert len(body["data"]) == 20
    assert body["pagination"] == {"page": 1, "limit": 20, "total": 25, "totalPages": 2}

    clamped = await client.get(URL, params={"limit": 500}, headers=headers)
    assert clamped.json()["pagination"]["limit"] == 100
    assert len(clamped.json()["data"]) == 25

    filtered = await client.get(URL, params={"status": "ACTIVE"}, headers=headers)
    assert filtered.json()["pagination"]["total"] == 0

    invalid = await client.get(URL, params={"status": "bogus"}, headers=headers)
    assert invalid.status_code == 400


@pytest.mark.asyncio
async def test_change_plan_renew_and_history(client):
    headers = build_auth_header()
    created = (await create(client, "premium")).json()["data"]

    changed = await client.post(
        f"{URL}/{created['id']}/change-plan",
        json={"planId": "basic", "reason": "budget"},
        headers=headers,
    )
    assert changed.status_code == 200
    assert changed.json()["data"]["basePrice"] == 29.0

    renewed = await client.post(f"{URL}/{created['id']}/renew", headers=headers)
    assert renewed.status_code == 200
    assert renewed.json()["data"]["metadata"]["renewal_count"] == 1

    history = await client.get(f"{URL}/{created['id']}/history", headers=headers)
    assert history.status_code == 200
    entries = history.json()["data"]
    assert len(entries) == 1
    assert entries[0]["changeType"] == "DOWNGRADE"
    assert entries[0]["reason"] == "budget"
    assert entries[0]["changedBy"] == "user-1"


@pytest.mark.asyncio
async def test_reactivate_after_cancel(client):
    headers = build_auth_header()
    created = (await create(client)).json()["data"]
    await client.delete(f"{URL}/{created['id']}", headers=headers)

    response = await client.post(f"{URL}/{created['id']}/reactivate", headers=headers)

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ACTIVE"
    assert response.json()["data"]["cancelledAt"] is None


@pytest.mark.asyncio
async def test_grace_period_flow(client):
    headers = build_auth_header()
    created = (await create(client, "free")).json()["data"]
    ends_at = (dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=7)).isoformat()

    entered = await client.post(
        f"{URL}/{created['id']}/grace-period",
        json={"gracePeriodId": "grace-42", "endsAt": ends_at},
        headers=headers,
    )
    assert entered.status_code == 200
    assert entered.json()["data"]["status"] == "GRACE_PERIOD"
    assert entered.json()["data"]["isInGracePeriod"] is True

    converted = await client.post(
        f"{URL}/{created['id']}/grace-period/convert",
        json={"planId": "basic"},
        headers=headers,
    )
    assert converted.status_code == 200
    data = converted.json()["data"]
    assert data["status"] == "ACTIVE"
    assert data["planHistory"][-1]["changeType"] == "GRACE_CONVERSION"


@pytest.mark.asyncio
async def test_idempotency_key_rejects_replay(client):
    headers = {**build_auth_header(), "Idempotency-Key": "abc"}

    first = await client.post(URL, json={"planId": "basic"}, headers=headers)
    replay = await client.post(URL, json={"planId": "basic"}, headers=headers)

    assert first.status_code == 201
    assert replay.status_code == 409
    assert replay.json()["message"] == "Duplicate request (idempotency)"


@pytest.mark.asyncio
async def test_rate_limit_applies_per_tenant(client, monkeypatch):
    from src.core.config import settings

    monkeypatch.setattr(settings, "RATE_LIMIT_RPM", 2)
    headers = build_auth_header("busy")

    statuses = [
        (await client.get(f"{URL}/active", headers=headers)).status_code
        for _ in range(3)
    ]

    assert statuses == [200, 200, 429]
    other = await client.get(f"{URL}/active", headers=build_auth_header("quiet"))
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_failed_create_releases_idempotency_key(client):
    headers = {**build_auth_header(), "Idempotency-Key": "retry-me"}

    rejected = await client.post(URL, json={"planId": "platinum"}, headers=headers)
    retried = await client.post(URL, json={"planId": "basic"}, headers=headers)
    replay = await client.post(URL, json={"planId": "basic"}, headers=headers)

    assert rejected.status_code == 400
    assert retried.status_code == 201
    assert replay.status_code == 409


@pytest.mark.asyncio
async def test_grace_fields_must_match_status(client):
    headers = build_auth_header()
    created = (await create(client, "free")).json()["data"]
    url = f"{URL}/{created['id']}"

    flagged = await client.put(url, json={"isInGracePeriod": True}, headers=headers)
    assert flagged.status_code == 400

    stray = await client.put(url, json={"gracePeriodId": "g-1"}, headers=headers)
    assert stray.status_code == 400
    assert stray.json()["error"] == "VALIDATION_ERROR"

    ends_at = (dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=7)).isoformat()
    await client.post(
        f"{url}/grace-period",
        json={"gracePeriodId": "g-1", "endsAt": ends_at},
        headers=headers,
    )
    cleared = await client.put(
        url,
        json={"gracePeriodId": None, "gracePeriodEndsAt": None},
        headers=headers,
    )
    assert cleared.status_code == 400

    current = (await client.get(url, headers=headers)).json()["data"]
    assert current["status"] == "GRACE_PERIOD"
    assert current["gracePeriodId"] == "g-1"
    assert current["isInGracePeriod"] is True


@pytest.mark.asyncio
async def test_cancelled_subscription_rejects_updates(client):
    headers = build_auth_header()
    created = (await create(client)).json()["data"]
    await client.delete(f"{URL}/{created['id']}", headers=headers)

    response = await client.put(
        f"{URL}/{created['id']}", json={"planId": "premium"}, headers=headers
    )

    assert response.status_code == 400
    history = (await client.get(f"{URL}/{created['id']}/history", headers=headers)).json()
    assert [entry["changeType"] for entry in history["data"]] == ["CANCELLATION"]


@pytest.mark.asyncio
async def test_cancel_at_period_end_is_scheduled(client):
    headers = build_auth_header()
    created = (await create(client)).json()["data"]

    response = await client.request(
        "DELETE",
        f"{URL}/{created['id']}",
        json={"cancelAtPeriodEnd": True, "reason": "switching provider"},
        headers=headers,
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["message"] == "Subscription cancellation scheduled"
    data = payload["data"]
    assert data["status"] == "ACTIVE"
    assert data["cancelAtPeriodEnd"] is True
    assert data["cancelledAt"] is None
    assert data["cancelEffectiveAt"][:19] == data["currentPeriodEnd"][:19]

    processed = await client.post(f"{URL}/process-expired", headers=headers)
    assert processed.status_code == 200
    assert processed.json()["data"] == {"processed": 0, "cancelled": 0, "past_due": 0}
