"""
HTTP Tests for the Loyalty API

Tests cover:
1. Account and points endpoints
2. Error to status code mapping
3. Reward redemption over HTTP
4. Business level and admin endpoints
"""

import pytest
from uuid import uuid4

from fastapi.testclient import TestClient

from loyalty.api import app


client = TestClient(app)


def unique(prefix):
    return f"{prefix}-{uuid4().hex[:8]}"


def open_account(role, prefix):
    account_id = unique(prefix)
    response = client.post("/accounts", json={"account_id": account_id, "role": role})
    assert response.status_code == 201
    return account_id


class TestAccountsEndpoints:
    """Tests for accounts and points."""

    def test_health(self):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_award_and_read_balance(self):
        customer = open_account("CUSTOMER", "cust")

        response = client.post(f"/accounts/{customer}/award", json={"amount": 80, "reason": "Welcome bonus"})

        assert response.status_code == 200
        assert response.json()["balance_after"] == 80
        account = client.get(f"/accounts/{customer}").json()
        assert account["point_balance"] == 80

    def test_ledger_history(self):
        customer = open_account("CUSTOMER", "cust")
        client.post(f"/accounts/{customer}/award", json={"amount": 80, "reason": "Welcome bonus"})
        client.post(f"/accounts/{customer}/spend", json={"amount": 30, "reason": "Purchase"})

        response = client.get(f"/accounts/{customer}/ledger")

        body = response.json()
        assert body["total_count"] == 2
        assert body["current_balance"] == 50
        assert [e["amount"] for e in body["entries"]] == [-30, 80]

    def test_customer_level(self):
        customer = open_account("CUSTOMER", "cust")
        client.post(f"/accounts/{customer}/award", json={"amount": 500, "reason": "Launch bonus"})

        response = client.get(f"/accounts/{customer}/level")

        assert response.status_code == 200
        assert response.json()["level"] == 3
        assert response.json()["level_name"] == "Insider"

    def test_overspend_is_conflict(self):
        customer = open_account("CUSTOMER", "cust")

        response = client.post(f"/accounts/{customer}/spend", json={"amount": 10, "reason": "Purchase"})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "InsufficientBalanceError"

    def test_unknown_account_is_not_found(self):
        response = client.get("/accounts/nobody-here")

        assert response.status_code == 404

    def test_non_positive_amount_is_rejected(self):
        customer = open_account("CUSTOMER", "cust")

        response = client.post(f"/accounts/{customer}/award", json={"amount": 0, "reason": "Nothing"})

        assert response.status_code == 422

    def test_mission_award_once(self):
        customer = open_account("CUSTOMER", "cust")
        body = {"mission_id": "mission-7", "amount": 40}

        first = client.post(f"/accounts/{customer}/missions", json=body)
        second = client.post(f"/accounts/{customer}/missions", json=body)

        assert first.json()["amount"] == 40
        assert second.status_code == 200
        assert second.json() is None
        assert client.get(f"/accounts/{customer}").json()["point_balance"] == 40

    def test_customer_cannot_convert(self):
        customer = open_account("CUSTOMER", "cust")
        client.post(f"/accounts/{customer}/award", json={"amount": 80, "reason": "Welcome bonus"})

        response = client.post(f"/accounts/{customer}/convert", json={"points": 50})

        assert response.status_code == 403

    def test_daily_streak(self):
        customer = open_account("CUSTOMER", "cust")

        first = client.post(f"/accounts/{customer}/streak").json()
        second = client.post(f"/accounts/{customer}/streak").json()

        assert first["already_claimed_today"] is False
        assert first["total_points"] == 5
        assert second["already_claimed_today"] is True


class TestRedemptionEndpoints:
    """Tests for the redeem and validate flow."""

    def test_redeem_and_use(self):
        customer = open_account("CUSTOMER", "cust")
        business = open_account("BUSINESS", "biz")
        client.post(f"/accounts/{customer}/award", json={"amount": 100, "reason": "Welcome bonus"})
        reward = client.post(
            "/rewards",
            json={"business_id": business, "title": "Free espresso", "points_cost": 60, "total_available": 5},
        )
        assert reward.status_code == 201
        reward_id = reward.json()["reward_id"]

        redeemed = client.post(f"/rewards/{reward_id}/redeem", json={"user_id": customer})

        assert redeemed.status_code == 201
        redemption = redeemed.json()
        assert redemption["status"] == "PENDING"
        assert client.get(f"/accounts/{customer}").json()["point_balance"] == 40
        assert client.get(f"/accounts/{business}").json()["point_balance"] == 60

        used = client.post(
            f"/coupons/{redemption['coupon_code']}/validate", json={"business_user_id": business}
        )
        assert used.status_code == 200
        assert used.json()["status"] == "USED"

        again = client.post(
            f"/redemptions/{redemption['redemption_id']}/use", json={"business_user_id": business}
        )
        assert again.status_code == 409
        assert again.json()["detail"]["error"] == "InvalidStateTransitionError"

    def test_list_redemptions_by_status(self):
        customer = open_account("CUSTOMER", "cust")
        business = open_account("BUSINESS", "biz")
        client.post(f"/accounts/{customer}/award", json={"amount": 100, "reason": "Welcome bonus"})
        reward_id = client.post(
            "/rewards",
            json={"business_id": business, "title": "Pastry", "points_cost": 20, "total_available": 5},
        ).json()["reward_id"]
        first = client.post(f"/rewards/{reward_id}/redeem", json={"user_id": customer}).json()
        client.post(f"/rewards/{reward_id}/redeem", json={"user_id": customer})
        client.post(f"/redemptions/{first['redemption_id']}/cancel")

        response = client.get("/redemptions", params={"user_id": customer, "redemption_status": "CANCELLED"})

        assert response.status_code == 200
        assert [r["redemption_id"] for r in response.json()] == [first["redemption_id"]]
        assert client.get(f"/accounts/{customer}").json()["point_balance"] == 80

    def test_unknown_reward(self):
        customer = open_account("CUSTOMER", "cust")

        response = client.post(f"/rewards/{uuid4()}/redeem", json={"user_id": customer})

        assert response.status_code == 404

    def test_customer_cannot_publish(self):
        customer = open_account("CUSTOMER", "cust")

        response = client.post(
            "/rewards",
            json={"business_id": customer, "title": "Fake", "points_cost": 10, "total_available": 1},
        )

        assert response.status_code == 403


class TestBusinessEndpoints:
    """Tests for business levels and the admin queue."""

    def test_upgrade_cycle(self):
        business = open_account("BUSINESS", "biz")

        early = client.post(f"/businesses/{business}/upgrade-request")
        assert early.status_code == 409

        client.post(f"/businesses/{business}/xp", json={"amount": 440, "reason": "EVENT_HOSTED_5_PLUS"})
        requested = client.post(f"/businesses/{business}/upgrade-request")
        assert requested.json()["upgrade_requested"] is True
        pending = [p["business_id"] for p in client.get("/admin/upgrades").json()]
        assert business in pending

        approved = client.post(f"/admin/upgrades/{business}/approve", json={"admin_id": "admin-grace"})

        assert approved.status_code == 200
        assert approved.json()["business_level"] == 2
        audit = client.get("/admin/audit-log", params={"target_id": business}).json()
        assert [e["action"] for e in audit] == ["APPROVE_BUSINESS_UPGRADE"]

    def test_reject_without_reason_is_bad_request(self):
        business = open_account("BUSINESS", "biz")
        client.post(f"/businesses/{business}/xp", json={"amount": 440})
        client.post(f"/businesses/{business}/upgrade-request")

        response = client.post(f"/admin/upgrades/{business}/reject", json={"admin_id": "admin-grace"})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "MissingReasonError"


class TestServerlessHandler:
    def test_handler_wraps_app(self):
        from mangum import Mangum

        from api import index

        assert index.app is app
        assert isinstance(index.handler, Mangum)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
