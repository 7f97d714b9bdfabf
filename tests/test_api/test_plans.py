from __future__ import annotations

import pytest

from tests.conftest import API_PREFIX


@pytest.mark.asyncio
async def test_plan_catalog_is_public_and_ordered(client):
    response = await client.get(f"{API_PREFIX}/plans")

    assert response.status_code == 200
    plans = response.json()["data"]
    assert [plan["id"] for plan in plans] == ["free", "basic", "premium", "enterprise"]
    assert plans[0]["monthlyPrice"] == 0
    assert all(plan["currency"] == "EUR" for plan in plans)


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
