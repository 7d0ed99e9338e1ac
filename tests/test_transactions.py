import asyncio
import uuid
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from idempotency import IdempotencyGateway, configure_ledger, get_idempotency_gateway
from main import app
from repositories import (
    LedgerError,
    get_account_repository,
    get_idempotency_store,
    get_transaction_repository,
    reset_repositories,
)

client = TestClient(app)

AUTH_U1 = {"Authorization": "Bearer token-u1"}
AUTH_U2 = {"Authorization": "Bearer token-u2"}


def keyed(key, auth=AUTH_U1):
    return {**auth, "Idempotency-Key": key}


class TestBasicTransactions:
    """Test transaction creation through the idempotent route."""

    def test_create_transaction_success(self, income_payload):
        """A fresh key runs the mutation and returns 201."""
        response = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))

        assert response.status_code == 201
        transaction = response.json()["transaction"]
        assert transaction["user_id"] == "u1"
        assert transaction["transaction_type"] == "income"
        assert transaction["amount_origin"] == 150.25
        assert "id" in transaction

    def test_transfer_between_own_accounts(self, account):
        """Transfers need no category."""
        destination = get_account_repository().add_account("u1", name="Savings")
        response = client.post("/v1/transactions", json={
            "transaction_type": "transfer",
            "origin_account_id": account["id"],
            "destination_account_id": destination["id"],
            "amount": 50,
            "transaction_date": "2024-05-02"
        }, headers=keyed("transfer-1"))

        assert response.status_code == 201
        assert response.json()["transaction"]["destination_account_id"] == destination["id"]

    def test_upstream_rejection_is_relayed(self, income_payload):
        """A domain error from the remote procedure comes back as 400 with its message."""
        income_payload["origin_account_id"] = str(uuid.uuid4())
        response = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))

        assert response.status_code == 400
        assert response.json() == {"error": "Origin account not found or inactive"}

    def test_owner_taken_from_token(self, income_payload):
        """A matching userId in the payload is accepted."""
        income_payload["userId"] = "u1"
        response = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))

        assert response.status_code == 201
        assert response.json()["transaction"]["user_id"] == "u1"


class TestIdempotency:
    """Test idempotency key behavior over HTTP."""

    def test_replay_returns_first_response(self, income_payload):
        """Test that duplicate requests return the stored response without re-running."""
        first = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))
        second = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))

        assert first.status_code == 201
        assert second.status_code == 201
        assert second.json() == first.json()
        assert get_transaction_repository().mutation_count == 1

    def test_replay_ignores_new_payload(self, income_payload):
        """The key, not the payload, identifies the request."""
        first = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))

        income_payload["amount"] = 999
        second = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))

        assert second.json() == first.json()
        assert second.json()["transaction"]["amount_origin"] == 150.25
        assert get_transaction_repository().mutation_count == 1

    def test_different_keys_execute_separately(self, income_payload):
        first = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))
        second = client.post("/v1/transactions", json=income_payload, headers=keyed("k2"))

        assert first.status_code == second.status_code == 201
        assert first.json()["transaction"]["id"] != second.json()["transaction"]["id"]
        assert get_transaction_repository().mutation_count == 2

    def test_same_key_is_scoped_per_user(self, income_payload):
        """Two users may use the same key without seeing each other's response."""
        other_account = get_account_repository().add_account("u2")
        other_payload = {**income_payload, "origin_account_id": other_account["id"]}

        mine = client.post("/v1/transactions", json=income_payload, headers=keyed("shared"))
        theirs = client.post("/v1/transactions", json=other_payload, headers=keyed("shared", AUTH_U2))

        assert mine.status_code == theirs.status_code == 201
        assert theirs.json()["transaction"]["user_id"] == "u2"
        assert get_transaction_repository().mutation_count == 2

    def test_failed_key_is_not_retried(self, income_payload):
        """A key whose first attempt failed answers 409 RETRY_LATER."""
        income_payload["origin_account_id"] = str(uuid.uuid4())
        first = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))
        second = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))

        assert first.status_code == 400
        assert second.status_code == 409
        assert second.json() == {"error": "RETRY_LATER"}

        record = get_idempotency_store().records[("u1", "k1", "/v1/transactions")]
        assert record.status.value == "failed"
        assert record.response_status_code == 400

    def test_completed_record_is_stored(self, income_payload):
        response = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))

        record = get_idempotency_store().records[("u1", "k1", "/v1/transactions")]
        assert record.status.value == "completed"
        assert record.response_status_code == 201
        assert record.response_body == response.json()

    def test_missing_idempotency_key(self, income_payload):
        response = client.post("/v1/transactions", json=income_payload, headers=AUTH_U1)

        assert response.status_code == 400
        assert response.json() == {"error": "IDEMPOTENCY_KEY_REQUIRED"}
        assert get_transaction_repository().mutation_count == 0

    def test_legacy_ledger_replays(self, income_payload):
        """Storage without the status columns falls back to the legacy ledger."""
        reset_repositories(ledger_schema="legacy")
        account = get_account_repository().add_account("u1")
        income_payload["origin_account_id"] = account["id"]

        first = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))
        second = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))

        assert first.status_code == second.status_code == 201
        assert second.json() == first.json()
        assert get_transaction_repository().mutation_count == 1
        assert ("k1", "/v1/transactions") in get_idempotency_store().legacy_records

    def test_finalize_failure_still_returns_response(self, income_payload):
        """A ledger write failure after the mutation is logged, not surfaced."""
        store = get_idempotency_store()

        async def broken_update(*args, **kwargs):
            raise LedgerError("connection reset")

        store.update = broken_update

        with patch("idempotency.logger") as mock_logger:
            response = client.post("/v1/transactions", json=income_payload, headers=keyed("k1"))

        assert response.status_code == 201
        assert get_transaction_repository().mutation_count == 1
        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args[0][0] == "Idempotency finalize failed"

    def test_idempotency_can_be_disabled(self, income_payload):
        """With the operator switch off, the route runs without a key."""
        app.dependency_overrides[get_idempotency_gateway] = lambda: IdempotencyGateway(
            get_idempotency_store(), enabled=False
        )

        first = client.post("/v1/transactions", json=income_payload, headers=AUTH_U1)
        second = client.post("/v1/transactions", json=income_payload, headers=AUTH_U1)

        assert first.status_code == second.status_code == 201
        assert get_transaction_repository().mutation_count == 2
        assert get_idempotency_store().records == {}


class TestValidation:
    """Test payload validation; none of these may touch the ledger."""

    def assert_rejected(self, payload, error, headers=None):
        response = client.post("/v1/transactions", json=payload, headers=headers or keyed("v1"))
        assert response.status_code == 400
        assert response.json()["error"] == error
        assert get_idempotency_store().records == {}
        assert get_transaction_repository().mutation_count == 0
        return response

    def test_zero_amount(self, income_payload):
        response = self.assert_rejected({**income_payload, "amount": 0}, "INVALID_AMOUNT")
        assert response.json()["details"][0]["field"] == "amount"

    def test_negative_amount(self, income_payload):
        self.assert_rejected({**income_payload, "amount": -1}, "INVALID_AMOUNT")

    def test_transfer_without_destination(self, account):
        self.assert_rejected({
            "transaction_type": "transfer",
            "origin_account_id": account["id"],
            "amount": 10,
            "transaction_date": "2024-05-01"
        }, "DESTINATION_REQUIRED")

    def test_income_without_category(self, income_payload):
        payload = dict(income_payload)
        del payload["category_id"]
        self.assert_rejected(payload, "CATEGORY_REQUIRED")

    def test_bad_date_format(self, income_payload):
        self.assert_rejected({**income_payload, "transaction_date": "01/05/2024"}, "INVALID_DATE")

    def test_unknown_transaction_type(self, income_payload):
        response = self.assert_rejected(
            {**income_payload, "transaction_type": "refund"}, "INVALID_PAYLOAD"
        )
        assert response.json()["details"][0]["field"] == "transaction_type"

    def test_amount_given_as_string(self, income_payload):
        response = self.assert_rejected({**income_payload, "amount": "10"}, "INVALID_PAYLOAD")
        assert response.json()["details"][0]["field"] == "amount"

    def test_origin_must_be_uuid(self, income_payload):
        self.assert_rejected({**income_payload, "origin_account_id": "acc_001"}, "INVALID_PAYLOAD")

    def test_invalid_json(self):
        response = client.post(
            "/v1/transactions",
            content="{invalid json",
            headers={**keyed("v1"), "Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PAYLOAD"

    def test_missing_body(self):
        response = client.post("/v1/transactions", headers=keyed("v1"))
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PAYLOAD"

    def test_payload_naming_another_user(self, income_payload):
        """Test that a payload cannot act on behalf of someone else."""
        response = client.post(
            "/v1/transactions", json={**income_payload, "userId": "u2"}, headers=keyed("v1")
        )
        assert response.status_code == 403
        assert response.json() == {"error": "FORBIDDEN"}
        assert get_idempotency_store().records == {}


class TestAuthentication:
    """Test bearer token enforcement on transaction routes."""

    def test_missing_token(self, income_payload):
        response = client.post("/v1/transactions", json=income_payload, headers={"Idempotency-Key": "k1"})

        assert response.status_code == 401
        assert response.json() == {"error": "UNAUTHORIZED"}
        assert get_idempotency_store().records == {}

    def test_unknown_token(self, income_payload):
        response = client.post("/v1/transactions", json=income_payload, headers={
            "Authorization": "Bearer stolen",
            "Idempotency-Key": "k1"
        })

        assert response.status_code == 401

    def test_wrong_scheme(self):
        response = client.get("/v1/transactions", headers={"Authorization": "Basic dTE6cHc="})
        assert response.status_code == 401


class TestAgentTransactions:
    """Test the shared-secret agent route."""

    def test_agent_creates_for_named_user(self, income_payload):
        response = client.post(
            "/v1/transactions/agent",
            json={**income_payload, "userId": "u1"},
            headers={"X-API-Key": "test-agent-key"}
        )

        assert response.status_code == 201
        assert response.json()["transaction"]["user_id"] == "u1"
        assert get_idempotency_store().records == {}

    def test_agent_is_not_deduplicated(self, income_payload):
        headers = {"X-API-Key": "test-agent-key", "Idempotency-Key": "k1"}
        payload = {**income_payload, "userId": "u1"}

        client.post("/v1/transactions/agent", json=payload, headers=headers)
        client.post("/v1/transactions/agent", json=payload, headers=headers)

        assert get_transaction_repository().mutation_count == 2

    def test_agent_wrong_key(self, income_payload):
        response = client.post(
            "/v1/transactions/agent",
            json={**income_payload, "userId": "u1"},
            headers={"X-API-Key": "guess"}
        )

        assert response.status_code == 401
        assert response.json() == {"error": "UNAUTHORIZED"}
        assert get_transaction_repository().mutation_count == 0

    def test_agent_missing_key(self, income_payload):
        response = client.post("/v1/transactions/agent", json={**income_payload, "userId": "u1"})
        assert response.status_code == 401

    def test_agent_secret_checked_before_body(self):
        """A wrong secret is refused even when the body is not JSON."""
        response = client.post(
            "/v1/transactions/agent",
            content="{not json",
            headers={"X-API-Key": "guess", "Content-Type": "application/json"}
        )

        assert response.status_code == 401
        assert response.json() == {"error": "UNAUTHORIZED"}

    def test_agent_malformed_body(self):
        response = client.post(
            "/v1/transactions/agent",
            content="{not json",
            headers={"X-API-Key": "test-agent-key", "Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PAYLOAD"
        assert response.json()["details"][0]["field"] == "body"

    def test_agent_requires_user(self, income_payload):
        response = client.post(
            "/v1/transactions/agent",
            json=income_payload,
            headers={"X-API-Key": "test-agent-key"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "MISSING_USER"

    def test_agent_domain_rules_apply(self, income_payload):
        response = client.post(
            "/v1/transactions/agent",
            json={**income_payload, "userId": "u1", "amount": 0},
            headers={"X-API-Key": "test-agent-key"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_AMOUNT"


class TestTransactionManagement:
    """Test listing, updating and deleting transactions."""

    def create(self, payload, key):
        response = client.post("/v1/transactions", json=payload, headers=keyed(key))
        assert response.status_code == 201
        return response.json()["transaction"]

    def test_list_transactions(self, income_payload):
        self.create(income_payload, "k1")
        self.create({**income_payload, "transaction_type": "expense", "transaction_date": "2024-06-01"}, "k2")

        response = client.get("/v1/transactions", headers=AUTH_U1)
        assert response.status_code == 200
        data = response.json()
        assert data["totalCount"] == 2
        assert data["filteredCount"] == 2
        assert [t["transaction_date"] for t in data["transactions"]] == ["2024-06-01", "2024-05-01"]

        filtered = client.get("/v1/transactions", params={"type": "income"}, headers=AUTH_U1).json()
        assert filtered["filteredCount"] == 1
        assert filtered["totalCount"] == 2

    def test_list_is_scoped_to_caller(self, income_payload):
        self.create(income_payload, "k1")

        response = client.get("/v1/transactions", headers=AUTH_U2)
        assert response.json()["totalCount"] == 0

    def test_list_page_size_is_capped(self):
        data = client.get("/v1/transactions", params={"limit": 5000, "offset": -3}, headers=AUTH_U1).json()
        assert data["limit"] == 500
        assert data["offset"] == 0

    def test_update_transaction(self, income_payload):
        created = self.create(income_payload, "k1")

        response = client.put(
            f"/v1/transactions/{created['id']}",
            json={**income_payload, "amount": 75, "description": "Corrected"},
            headers=AUTH_U1
        )

        assert response.status_code == 200
        assert response.json()["transaction"]["amount_origin"] == 75
        assert response.json()["transaction"]["description"] == "Corrected"

    def test_update_unknown_transaction(self, income_payload):
        response = client.put(f"/v1/transactions/{uuid.uuid4()}", json=income_payload, headers=AUTH_U1)

        assert response.status_code == 400
        assert response.json() == {"error": "Transaction not found"}

    def test_delete_transaction(self, income_payload):
        created = self.create(income_payload, "k1")

        response = client.delete(f"/v1/transactions/{created['id']}", headers=AUTH_U1)
        assert response.status_code == 200
        assert response.json()["transaction"]["id"] == created["id"]

        again = client.delete(f"/v1/transactions/{created['id']}", headers=AUTH_U1)
        assert again.json() == {"transaction": None}


class TestConcurrency:
    """Test concurrent transaction handling."""

    @pytest.mark.asyncio
    async def test_concurrent_same_key(self, income_payload):
        """Test that concurrent requests with the same key execute exactly once."""
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            responses = await asyncio.gather(*[
                ac.post("/v1/transactions", json=income_payload, headers=keyed("concurrent"))
                for _ in range(5)
            ])

        assert get_transaction_repository().mutation_count == 1
        assert {r.status_code for r in responses} <= {201, 409}

        created = [r.json() for r in responses if r.status_code == 201]
        assert created
        assert all(body == created[0] for body in created)
        assert all(r.json() == {"error": "IN_PROGRESS"} for r in responses if r.status_code == 409)


class TestHealthAndErrors:
    """Test health check and generic error responses."""

    def test_health_check(self):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["ok"] is True
        assert data["ledger"] == "current"
        assert "timestamp" in data

    def test_health_reports_legacy_ledger(self):
        reset_repositories(ledger_schema="legacy")
        asyncio.run(configure_ledger(get_idempotency_store()))

        assert client.get("/health").json()["ledger"] == "legacy"

    def test_root_needs_no_token(self):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["docs"] == "/docs"

    def test_unknown_route(self):
        response = client.get("/v1/nothing-here", headers=AUTH_U1)

        assert response.status_code == 404
        assert response.json() == {"error": "NOT_FOUND"}

    def test_cors_preflight_skips_auth(self):
        response = client.options("/v1/transactions", headers={
            "Origin": "https://app.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Authorization, Idempotency-Key"
        })

        assert response.status_code == 200
        assert "access-control-allow-origin" in response.headers
