"""
Tests for the /api/v1/credits endpoints.
"""
from app.features.credits.services.ledger import CreditLedger


class TestCreditRoutes:
    def test_balance_starts_at_zero(self, auth_client, user_id):
        response = auth_client.get("/api/v1/credits")

        assert response.status_code == 200
        assert response.json()["data"] == {"user_id": user_id, "amount": 0}

    def test_add_credits(self, auth_client):
        response = auth_client.post("/api/v1/credits/add", json={"amount": 25, "reason": "starter pack"})

        assert response.status_code == 201
        assert response.json()["data"] == {"amount": 25, "delta": 25, "applied": True}
        assert auth_client.get("/api/v1/credits").json()["data"]["amount"] == 25

    def test_add_over_limit_is_400(self, auth_client):
        response = auth_client.post("/api/v1/credits/add", json={"amount": 20000})

        assert response.status_code == 400
        assert response.json()["message"] == "Cannot add more than 10,000 credits at once"

    def test_add_non_positive_is_422(self, auth_client):
        response = auth_client.post("/api/v1/credits/add", json={"amount": 0})

        assert response.status_code == 422

    def test_history(self, auth_client, db_session, user_id):
        ledger = CreditLedger(db_session)
        ledger.add(user_id, 10, "purchase")
        ledger.deduct(user_id, 4, "Sitemap scan")

        response = auth_client.get("/api/v1/credits/history", params={"limit": 1})

        body = response.json()
        assert response.status_code == 200
        assert len(body["data"]) == 1
        assert body["data"][0]["kind"] == "debit"
        assert body["data"][0]["delta"] == -4
        assert body["pagination"]["total"] == 2
        assert body["pagination"]["total_pages"] == 2

    def test_statistics(self, auth_client, db_session, user_id):
        CreditLedger(db_session).add(user_id, 10, "purchase")

        response = auth_client.get("/api/v1/credits/statistics")

        data = response.json()["data"]
        assert data["current_balance"] == 10
        assert data["total_added"] == 10
        assert data["total_scans"] == 0
        assert data["success_rate"] == 0.0

    def test_requires_authentication(self, client):
        response = client.get("/api/v1/credits")

        assert response.status_code in (401, 403)
