"""Job API tests: creation, ownership, retry, cancel and admin reset."""

from __future__ import annotations

from decimal import Decimal
import os
import threading
import time
import unittest

from fastapi.testclient import TestClient

from app.adapters.engine import MockTranscriptionEngine
from app.core.config import get_settings
from app.main import create_app

OWNER = {"Authorization": "Bearer test:user-a:customer"}
OTHER = {"Authorization": "Bearer test:user-b:customer"}
ADMIN = {"Authorization": "Bearer test:admin-1:admin"}
CALLBACK = {"X-Callback-Secret": "test-callback-secret"}


class _SettingsEnvCase(unittest.TestCase):
    _env_keys = (
        "TALKLEDGER_AUTH_PROVIDER",
        "TALKLEDGER_CALLBACK_SECRET",
        "TALKLEDGER_ENGINE_PROVIDER",
        "TALKLEDGER_MAX_RETRIES",
        "TALKLEDGER_STATUS_POLLER_ENABLED",
    )

    def setUp(self) -> None:
        self._old_env = {k: os.environ.get(k) for k in self._env_keys}
        os.environ["TALKLEDGER_AUTH_PROVIDER"] = "mock"
        os.environ["TALKLEDGER_CALLBACK_SECRET"] = "test-callback-secret"
        os.environ["TALKLEDGER_ENGINE_PROVIDER"] = "mock"
        os.environ["TALKLEDGER_MAX_RETRIES"] = "1"
        os.environ.pop("TALKLEDGER_STATUS_POLLER_ENABLED", None)
        get_settings.cache_clear()
        self.app = create_app()
        self.engine = MockTranscriptionEngine()
        self.app.state.engine = self.engine
        self.client = TestClient(self.app)

    def tearDown(self) -> None:
        for key, value in self._old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        get_settings.cache_clear()

    def _open_funded_account(self, headers: dict[str, str], account_id: str, amount: str = "100.00") -> None:
        self.assertEqual(self.client.post("/api/v1/accounts", headers=headers).status_code, 201)
        response = self.client.post(
            "/api/v1/internal/payments/events",
            headers=CALLBACK,
            json={"event_id": f"evt-{account_id}", "account_id": account_id, "kind": "topup", "amount": amount},
        )
        self.assertEqual(response.status_code, 200, response.text)

    def _create(self, mode: str = "automated", minutes: str = "10", headers: dict[str, str] = OWNER):
        return self.client.post(
            "/api/v1/jobs",
            headers=headers,
            json={"mode": mode, "audio_ref": "gs://bucket/episode-12.wav", "duration_minutes": minutes},
        )

    def _wallet(self, headers: dict[str, str] = OWNER) -> Decimal:
        return Decimal(self.client.get("/api/v1/accounts/me", headers=headers).json()["wallet_balance"])


class JobCreationApiTests(_SettingsEnvCase):
    def test_create_job_charges_account_and_submits_to_engine(self) -> None:
        self._open_funded_account(OWNER, "user-a")

        response = self._create()

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["status"], "processing")
        self.assertEqual(body["external_ref"], "eng-0001")
        self.assertEqual(body["retry_count"], 0)
        self.assertEqual(body["max_retries"], 1)
        self.assertEqual(Decimal(body["charge"]["amount"]), Decimal("4.00"))
        self.assertEqual(self._wallet(), Decimal("96.00"))
        self.assertEqual(len(self.engine.submissions), 1)

    def test_insufficient_funds_returns_402_without_creating_job(self) -> None:
        self.client.post("/api/v1/accounts", headers=OWNER)

        response = self._create(mode="manual", minutes="30")

        self.assertEqual(response.status_code, 402)
        self.assertEqual(
            response.json(),
            {
                "code": "INSUFFICIENT_FUNDS",
                "message": "Wallet balance does not cover the remaining minutes.",
                "details": {"required": "75.00", "available": "0"},
            },
        )
        self.assertEqual(self.app.state.store.jobs, {})

    def test_create_job_validates_payload(self) -> None:
        self._open_funded_account(OWNER, "user-a")

        for payload in (
            {"mode": "automated", "audio_ref": "gs://a.wav", "duration_minutes": "0"},
            {"mode": "premium", "audio_ref": "gs://a.wav", "duration_minutes": "5"},
            {"mode": "automated", "audio_ref": "", "duration_minutes": "5"},
        ):
            with self.subTest(payload=payload):
                response = self.client.post("/api/v1/jobs", headers=OWNER, json=payload)
                self.assertEqual(response.status_code, 422)
                self.assertEqual(response.json()["code"], "VALIDATION_ERROR")
        self.assertEqual(self.app.state.store.jobs, {})

    def test_create_job_without_account_returns_404(self) -> None:
        response = self._create()

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "RESOURCE_NOT_FOUND")


class JobOwnershipApiTests(_SettingsEnvCase):
    def test_job_reads_are_scoped_to_owner(self) -> None:
        self._open_funded_account(OWNER, "user-a")
        self._open_funded_account(OTHER, "user-b")
        job_id = self._create().json()["id"]

        own = self.client.get(f"/api/v1/jobs/{job_id}", headers=OWNER)
        foreign = self.client.get(f"/api/v1/jobs/{job_id}", headers=OTHER)
        missing = self.client.get("/api/v1/jobs/job-does-not-exist", headers=OWNER)

        self.assertEqual(own.status_code, 200)
        self.assertEqual(foreign.status_code, 404)
        self.assertEqual(foreign.json(), missing.json())
        self.assertEqual(self.client.get("/api/v1/jobs", headers=OTHER).json()["items"], [])

    def test_list_jobs_filters_by_mode_and_status(self) -> None:
        self._open_funded_account(OWNER, "user-a")
        automated_id = self._create().json()["id"]
        manual_id = self._create(mode="manual", minutes="2").json()["id"]

        by_mode = self.client.get("/api/v1/jobs", headers=OWNER, params={"mode": "manual"}).json()["items"]
        by_status = self.client.get("/api/v1/jobs", headers=OWNER, params={"status": "processing"}).json()["items"]
        everything = self.client.get("/api/v1/jobs", headers=OWNER).json()["items"]

        self.assertEqual([item["id"] for item in by_mode], [manual_id])
        self.assertEqual([item["id"] for item in by_status], [automated_id])
        self.assertEqual({item["id"] for item in everything}, {automated_id, manual_id})

    def test_foreign_cancel_and_retry_have_no_side_effect(self) -> None:
        self._open_funded_account(OWNER, "user-a")
        self._open_funded_account(OTHER, "user-b")
        job_id = self._create().json()["id"]
        writes_before = self.app.state.store.job_write_count

        cancel = self.client.post(f"/api/v1/jobs/{job_id}/cancel", headers=OTHER)
        retry = self.client.post(f"/api/v1/jobs/{job_id}/retry", headers=OTHER)

        self.assertEqual(cancel.status_code, 404)
        self.assertEqual(retry.status_code, 404)
        self.assertEqual(self.app.state.store.job_write_count, writes_before)
        self.assertEqual(self.app.state.store.jobs[job_id].status.value, "processing")


class JobLifecycleApiTests(_SettingsEnvCase):
    def _reject_current_submission(self, job_id: str) -> None:
        record = self.app.state.store.jobs[job_id]
        response = self.client.post(
            f"/api/v1/internal/engine/callbacks/{record.callback_token}",
            headers=CALLBACK,
            json={"status": "rejected"},
        )
        self.assertEqual(response.status_code, 200, response.text)

    def test_cancel_refunds_and_second_cancel_conflicts(self) -> None:
        self._open_funded_account(OWNER, "user-a")
        job_id = self._create().json()["id"]

        first = self.client.post(f"/api/v1/jobs/{job_id}/cancel", headers=OWNER)
        second = self.client.post(f"/api/v1/jobs/{job_id}/cancel", headers=OWNER)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["status"], "cancelled")
        self.assertIsNotNone(first.json()["refunded_at"])
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["code"], "FSM_TERMINAL_IMMUTABLE")
        self.assertEqual(self._wallet(), Decimal("100.00"))

    def test_retry_from_error_resubmits_and_limit_is_enforced(self) -> None:
        self._open_funded_account(OWNER, "user-a")
        job_id = self._create().json()["id"]
        self._reject_current_submission(job_id)

        retry = self.client.post(f"/api/v1/jobs/{job_id}/retry", headers=OWNER)
        self.assertEqual(retry.status_code, 202)
        self.assertEqual(retry.json()["status"], "processing")
        self.assertEqual(retry.json()["external_ref"], "eng-0002")

        self._reject_current_submission(job_id)
        limited = self.client.post(f"/api/v1/jobs/{job_id}/retry", headers=OWNER)

        self.assertEqual(limited.status_code, 409)
        body = limited.json()
        self.assertEqual(body["code"], "RETRY_LIMIT_REACHED")
        self.assertEqual(body["details"]["current_status"], "error")
        self.assertEqual(body["details"]["retry_count"], 1)
        self.assertEqual(self._wallet(), Decimal("100.00"))

    def test_retry_while_processing_is_rejected(self) -> None:
        self._open_funded_account(OWNER, "user-a")
        job_id = self._create().json()["id"]

        response = self.client.post(f"/api/v1/jobs/{job_id}/retry", headers=OWNER)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "RETRY_NOT_ALLOWED_STATE")

    def test_retry_without_engine_reference_needs_resubmission(self) -> None:
        self._open_funded_account(OWNER, "user-a")
        self.engine.fail_next_submit(transient=True)
        created = self._create().json()
        self.assertEqual(created["status"], "error")

        response = self.client.post(f"/api/v1/jobs/{created['id']}/retry", headers=OWNER)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "NEEDS_RESUBMISSION")

    def test_admin_reset_grants_new_retry_budget(self) -> None:
        self._open_funded_account(OWNER, "user-a")
        job_id = self._create().json()["id"]
        self._reject_current_submission(job_id)
        self.client.post(f"/api/v1/jobs/{job_id}/retry", headers=OWNER)
        self._reject_current_submission(job_id)

        forbidden = self.client.post(
            f"/api/v1/admin/jobs/{job_id}/reset-retries",
            headers=OWNER,
            json={"reason": "please"},
        )
        reset = self.client.post(
            f"/api/v1/admin/jobs/{job_id}/reset-retries",
            headers=ADMIN,
            json={"reason": "support ticket 4411"},
        )
        retry = self.client.post(f"/api/v1/jobs/{job_id}/retry", headers=OWNER)

        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(reset.status_code, 200)
        self.assertEqual(reset.json()["retry_count"], 0)
        self.assertEqual(retry.status_code, 202)
        self.assertEqual(retry.json()["external_ref"], "eng-0003")
        self.assertEqual(self._wallet(), Decimal("96.00"))


class _SlowSubmitEngine(MockTranscriptionEngine):
    def __init__(self, delay_seconds: float) -> None:
        super().__init__()
        self.delay_seconds = delay_seconds
        self.submit_started = threading.Event()

    def submit(self, audio_ref, config):
        self.submit_started.set()
        time.sleep(self.delay_seconds)
        return super().submit(audio_ref, config)


class JobConcurrencyApiTests(_SettingsEnvCase):
    def test_slow_engine_submit_does_not_stall_other_requests(self) -> None:
        engine = _SlowSubmitEngine(delay_seconds=1.0)
        self.app.state.engine = engine
        responses = []

        with TestClient(self.app) as client:
            client.post("/api/v1/accounts", headers=OWNER)
            client.post(
                "/api/v1/internal/payments/events",
                headers=CALLBACK,
                json={"event_id": "evt-slow", "account_id": "user-a", "kind": "topup", "amount": "50.00"},
            )
            creator = threading.Thread(
                target=lambda: responses.append(
                    client.post(
                        "/api/v1/jobs",
                        headers=OWNER,
                        json={"mode": "automated", "audio_ref": "gs://bucket/long.wav", "duration_minutes": "5"},
                    )
                )
            )
            creator.start()
            self.assertTrue(engine.submit_started.wait(timeout=5))

            started = time.perf_counter()
            account = client.get("/api/v1/accounts/me", headers=OWNER)
            elapsed = time.perf_counter() - started
            creator.join(timeout=5)

        self.assertEqual(account.status_code, 200)
        self.assertLess(elapsed, 0.5)
        self.assertEqual(len(responses), 1)
        self.assertEqual(responses[0].status_code, 201)


class AppLifespanTests(_SettingsEnvCase):
    def test_status_poller_runs_by_default(self) -> None:
        with TestClient(self.app):
            poller = self.app.state.status_poller
            self.assertIsNotNone(poller)
            self.assertTrue(poller.running)

        self.assertFalse(poller.running)
        self.assertIsNone(self.app.state.status_poller)

    def test_disabled_poller_without_callback_url_is_logged(self) -> None:
        os.environ["TALKLEDGER_STATUS_POLLER_ENABLED"] = "false"
        get_settings.cache_clear()

        with self.assertLogs("app.main", level="WARNING") as captured:
            with TestClient(self.app):
                self.assertIsNone(self.app.state.status_poller)

        self.assertTrue(any("status_poller.disabled" in line for line in captured.output))


if __name__ == "__main__":
    unittest.main()
