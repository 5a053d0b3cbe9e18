"""Integration tests for GET /api/credits and POST /api/credits/claim."""

import pytest


@pytest.mark.asyncio
class TestCreditsEndpoints:
    async def test_balance_before_any_claim(self, test_client, act_as, seed):
        act_as(seed.creator)

        response = await test_client.get("/api/credits")

        assert response.status_code == 200
        assert response.json() == {"balance": 10.0, "canClaim": True, "lastClaimDate": None}

    async def test_claim_once_per_day(self, test_client, act_as, seed, get_balance, settings):
        act_as(seed.creator)

        first = await test_client.post("/api/credits/claim")
        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["balance"] == 10.0 + settings.daily_credit_amount

        second = await test_client.post("/api/credits/claim")
        assert second.status_code == 400
        assert second.json() == {
            "success": False,
            "balance": 10.0 + settings.daily_credit_amount,
            "message": "Daily credits already claimed today",
        }

        status = (await test_client.get("/api/credits")).json()
        assert status["canClaim"] is False
        assert status["lastClaimDate"] is not None
        assert await get_balance(seed.creator.id) == 10.0 + settings.daily_credit_amount

    async def test_user_without_credit_row_can_claim(self, test_client, act_as, seed):
        act_as(seed.other)

        assert (await test_client.get("/api/credits")).json()["balance"] == 0.0

        response = await test_client.post("/api/credits/claim")

        assert response.status_code == 200
        assert response.json()["balance"] == 10.0

    async def test_requires_authentication(self, test_client, seed):
        assert (await test_client.post("/api/credits/claim")).status_code == 401
