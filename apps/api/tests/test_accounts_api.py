"""Account, pricing and admin ledger API tests."""

from __future__ import annotations

from decimal import Decimal
import os
import unittest

from fastapi.testclient import TestClient

from app.adapters.engine import MockTranscriptionEngine
from app.core.config import get_settings
from app.main import create_app

CUSTOMER = {"Authorization": "Bearer test:user-a:customer"}
ADMIN = {"Authorization": "Bearer test:admin-1:admin"}
CALLBACK = {"X-Callback-Secret": "test-callback-secret"}


class _SettingsEnvCase(unittest.TestCase):
    _env_keys = (
        "TALKLEDGER_AUTH_PROVIDER",
        "TALKLEDGER_CALLBACK_SECRET",
        "TALKLEDGER_ENGINE_PROVIDER",
        "TALKLEDGER_DEFAULT_FREE_TRIAL_MINUTES",
    )

    def setUp(self) -> None:
        self._old_env = {k: os.environ.get(k) for k in self._env_keys}
        os.environ["TALKLEDGER_AUTH_PROVIDER"] = "mock"
        os.environ["TALKLEDGER_CALLBACK_SECRET"] = "test-callback-secret"
        os.environ["TALKLEDGER_ENGINE_PROVIDER"] = "mock"
        os.environ["TALKLEDGER_DEFAULT_FREE_TRIAL_MINUTES"] = "60"
        get_settings.cache_clear()
        self.app = create_app()
        self.app.state.engine = MockTranscriptionEngine()
        self.client = TestClient(self.app)

    def tearDown(self) -> None:
        for key, value in self._old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        get_settings.cache_clear()

    def _top_up(self, amount: str, *, event_id: str = "evt-seed") -> None:
        response = self.client.post(
            "/api/v1/internal/payments/events",
            headers=CALLBACK,
            json={"event_id": event_id, "account_id": "user-a", "kind": "topup", "amount": amount},
        )
        self.assertEqual(response.status_code, 200, response.text)


class AccountApiTests(_SettingsEnvCase):
    def test_open_account_returns_201_then_200(self) -> None:
        first = self.client.post("/api/v1/accounts", headers=CUSTOMER)
        second = self.client.post("/api/v1/accounts", headers=CUSTOMER)

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 200)
        body = first.json()
        self.assertEqual(body["id"], "user-a")
        self.assertEqual(Decimal(body["free_trial_remaining"]), Decimal("60"))
        self.assertTrue(body["free_trial_active"])
        self.assertEqual(Decimal(body["wallet_balance"]), Decimal("0"))
        self.assertEqual(self.app.state.store.account_write_count, 1)

    def test_account_is_not_found_until_opened(self) -> None:
        response = self.client.get("/api/v1/accounts/me", headers=CUSTOMER)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"code": "RESOURCE_NOT_FOUND", "message": "Resource not found"})

    def test_estimate_reports_funding_breakdown_without_writing(self) -> None:
        self.client.post("/api/v1/accounts", headers=CUSTOMER)
        self._top_up("50.00")
        writes_before = self.app.state.store.account_write_count

        response = self.client.get(
            "/api/v1/accounts/me/estimate",
            headers=CUSTOMER,
            params={"mode": "automated", "minutes": "80"},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(Decimal(body["trial_minutes"]), Decimal("60"))
        self.assertEqual(Decimal(body["wallet_minutes"]), Decimal("20"))
        self.assertEqual(Decimal(body["wallet_amount"]), Decimal("8.00"))
        self.assertTrue(body["sufficient"])
        self.assertEqual(body["credits_required"], 80)
        self.assertEqual(self.app.state.store.account_write_count, writes_before)

    def test_estimate_rejects_non_positive_minutes(self) -> None:
        self.client.post("/api/v1/accounts", headers=CUSTOMER)

        response = self.client.get(
            "/api/v1/accounts/me/estimate",
            headers=CUSTOMER,
            params={"mode": "automated", "minutes": "0"},
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["code"], "VALIDATION_ERROR")

    def test_transactions_are_listed_newest_first(self) -> None:
        self.client.post("/api/v1/accounts", headers=CUSTOMER)
        self._top_up("10.00", event_id="evt-1")
        self._top_up("20.00", event_id="evt-2")

        response = self.client.get("/api/v1/accounts/me/transactions", headers=CUSTOMER, params={"limit": 1})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["limit"], 1)
        self.assertEqual(len(body["items"]), 1)
        self.assertEqual(body["items"][0]["kind"], "topup")
        self.assertEqual(body["items"][0]["source_ref"], "payment:evt-2")

    def test_pricing_quote_rounds_credits_up(self) -> None:
        response = self.client.get(
            "/api/v1/pricing/quote",
            headers=CUSTOMER,
            params={"mode": "manual", "minutes": "30.5"},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["credits_required"], 92)
        self.assertEqual(Decimal(body["standard_rate"]), Decimal("2.50"))
        self.assertEqual(Decimal(body["standard_cost"]), Decimal("76.25"))

    def test_pricing_quote_rejects_unknown_mode(self) -> None:
        response = self.client.get(
            "/api/v1/pricing/quote",
            headers=CUSTOMER,
            params={"mode": "premium", "minutes": "10"},
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["code"], "VALIDATION_ERROR")


class AdminLedgerApiTests(_SettingsEnvCase):
    def test_admin_wallet_adjustment_and_free_trial_update(self) -> None:
        self.client.post("/api/v1/accounts", headers=CUSTOMER)

        adjustment = self.client.post(
            "/api/v1/admin/accounts/user-a/adjustments",
            headers=ADMIN,
            json={"amount": "12.50", "reason": "goodwill credit"},
        )
        self.assertEqual(adjustment.status_code, 201)
        self.assertEqual(adjustment.json()["kind"], "adjustment")
        self.assertEqual(adjustment.json()["actor_id"], "admin-1")

        overdraw = self.client.post(
            "/api/v1/admin/accounts/user-a/adjustments",
            headers=ADMIN,
            json={"amount": "-20.00", "reason": "chargeback"},
        )
        self.assertEqual(overdraw.status_code, 402)
        self.assertEqual(overdraw.json()["code"], "INSUFFICIENT_FUNDS")

        trial = self.client.put(
            "/api/v1/admin/accounts/user-a/free-trial",
            headers=ADMIN,
            json={"remaining_minutes": "0", "reason": "trial revoked"},
        )
        self.assertEqual(trial.status_code, 200)
        self.assertFalse(trial.json()["free_trial_active"])

        account = self.client.get("/api/v1/accounts/me", headers=CUSTOMER).json()
        self.assertEqual(Decimal(account["wallet_balance"]), Decimal("12.50"))
        self.assertEqual(Decimal(account["free_trial_remaining"]), Decimal("0"))

    def test_admin_endpoints_reject_customers(self) -> None:
        self.client.post("/api/v1/accounts", headers=CUSTOMER)

        response = self.client.post(
            "/api/v1/admin/accounts/user-a/adjustments",
            headers=CUSTOMER,
            json={"amount": "100.00", "reason": "free money"},
        )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "FORBIDDEN")
        self.assertEqual(self.app.state.store.transactions, [])

    def test_adjusting_unknown_account_returns_404(self) -> None:
        response = self.client.post(
            "/api/v1/admin/accounts/nobody/adjustments",
            headers=ADMIN,
            json={"amount": "1.00", "reason": "test"},
        )

        self.assertEqual(response.status_code, 404)


if __name__ == "__main__":
    unittest.main()
