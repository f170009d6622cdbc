"""Status synchronization and background poller tests."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
import threading
import unittest

from app.adapters.engine import MockTranscriptionEngine
from app.core.config import Settings
from app.repositories.memory import InMemoryStore
from app.schemas.account import TransactionKind, TranscriptionMode
from app.schemas.job import FailureKind, JobStatus
from app.services.jobs import JobService
from app.services.ledger import LedgerService
from app.services.status_sync import StatusPoller, StatusSyncService, SyncReport


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class StatusSyncServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock(datetime(2026, 3, 1, 9, 0, tzinfo=UTC))
        settings = Settings(
            callback_secret="test-callback-secret",
            auth_provider="mock",
            engine_provider="mock",
            poll_interval_seconds=30,
            poll_max_attempts=2,
        )
        self.store = InMemoryStore()
        self.engine = MockTranscriptionEngine()
        self.ledger = LedgerService(self.store, settings, clock=self.clock)
        self.jobs = JobService(self.store, self.ledger, self.engine, settings, clock=self.clock)
        self.sync = StatusSyncService(self.store, self.engine, self.jobs, settings, clock=self.clock)

        self.ledger.open_account(account_id="user-a")
        self.ledger.credit(
            account_id="user-a",
            kind=TransactionKind.TOPUP,
            amount=Decimal("50.00"),
            description="Wallet top-up",
            source_ref="payment:seed",
        )
        self.job = self.jobs.create_job(
            account_id="user-a",
            mode=TranscriptionMode.AUTOMATED,
            audio_ref="gs://bucket/call.wav",
            duration_minutes=Decimal("5"),
        )

    def _advance(self) -> SyncReport:
        self.clock.now += timedelta(seconds=30)
        return self.sync.run_due()

    def test_tasks_are_not_polled_before_they_are_due(self) -> None:
        report = self.sync.run_due()

        self.assertEqual(report.polled, 0)
        self.assertEqual(self.store.get_poll_task(self.job.id).attempts, 0)

    def test_transient_poll_error_counts_as_an_attempt_and_defers(self) -> None:
        self.engine.fail_next_poll(transient=True)

        with self.assertLogs("app.services.status_sync", level="WARNING") as captured:
            report = self._advance()

        self.assertEqual(report.polled, 1)
        self.assertEqual(report.deferred, 1)
        task = self.store.get_poll_task(self.job.id)
        self.assertEqual(task.attempts, 1)
        self.assertEqual(task.next_run_at, self.clock.now + timedelta(seconds=30))
        self.assertEqual(self.store.get_job(self.job.id).status, JobStatus.PROCESSING)
        self.assertTrue(any("status_sync.poll_failed" in line for line in captured.output))

    def test_polling_times_out_after_max_attempts_and_retry_rearms(self) -> None:
        self._advance()
        report = self._advance()

        self.assertEqual(report.timed_out, 1)
        record = self.store.get_job(self.job.id)
        self.assertEqual(record.status, JobStatus.ERROR)
        self.assertEqual(record.failure_kind, FailureKind.POLLING_TIMEOUT)
        self.assertIsNone(record.refunded_at)
        self.assertIsNone(self.store.get_poll_task(self.job.id))

        self.jobs.retry_job(account_id="user-a", job_id=self.job.id)
        task = self.store.get_poll_task(self.job.id)
        self.assertEqual(task.external_ref, "eng-0001")
        self.assertEqual(task.attempts, 0)
        self.assertEqual(len(self.engine.submissions), 1)

        self.engine.complete("eng-0001", "recovered transcript")
        report = self.sync.run_due()

        self.assertEqual(report.applied, 1)
        self.assertEqual(record.status, JobStatus.COMPLETED)
        self.assertEqual(record.final_transcript, "recovered transcript")

    def test_permanent_poll_error_fails_the_job_as_rejected(self) -> None:
        self.engine.fail_next_poll(transient=False)

        report = self._advance()

        self.assertEqual(report.applied, 1)
        record = self.store.get_job(self.job.id)
        self.assertEqual(record.status, JobStatus.ERROR)
        self.assertEqual(record.failure_kind, FailureKind.REJECTED)

    def test_task_for_stale_submission_is_dropped(self) -> None:
        self.store.schedule_poll(job_id=self.job.id, external_ref="eng-stale", next_run_at=self.clock.now)

        report = self.sync.run_due()

        self.assertEqual(report.dropped, 1)
        self.assertEqual(report.polled, 0)
        self.assertIsNone(self.store.get_poll_task(self.job.id))
        self.assertEqual(self.store.get_job(self.job.id).status, JobStatus.PROCESSING)

    def test_sweep_tolerates_concurrent_schedule_and_cancel(self) -> None:
        errors: list[BaseException] = []
        stop = threading.Event()

        def churn(prefix: str) -> None:
            index = 0
            while not stop.is_set():
                job_id = f"{prefix}-{index % 50}"
                self.store.schedule_poll(job_id=job_id, external_ref="eng-x", next_run_at=self.clock.now)
                self.store.cancel_poll(job_id)
                index += 1

        writers = [threading.Thread(target=churn, args=(name,)) for name in ("a", "b")]
        for writer in writers:
            writer.start()
        try:
            for _ in range(2000):
                try:
                    self.store.due_poll_tasks(self.clock.now)
                except RuntimeError as exc:
                    errors.append(exc)
                    break
        finally:
            stop.set()
            for writer in writers:
                writer.join()

        self.assertEqual(errors, [])
        self.assertIsNotNone(self.store.get_poll_task(self.job.id))


class _CountingSync:
    def __init__(self, *, fail_first: bool = False) -> None:
        self.calls = 0
        self._fail_first = fail_first

    def run_due(self) -> SyncReport:
        self.calls += 1
        if self._fail_first and self.calls == 1:
            raise RuntimeError("store unavailable")
        return SyncReport()


class StatusPollerTests(unittest.TestCase):
    @staticmethod
    async def _run_until(poller: StatusPoller, sync: _CountingSync, calls: int) -> bool:
        poller.start()
        running = poller.running
        for _ in range(200):
            if sync.calls >= calls:
                break
            await asyncio.sleep(0.01)
        await poller.stop()
        return running

    def test_poller_sweeps_repeatedly_until_stopped(self) -> None:
        sync = _CountingSync()
        poller = StatusPoller(sync, tick_seconds=0)

        was_running = asyncio.run(self._run_until(poller, sync, calls=3))

        self.assertTrue(was_running)
        self.assertGreaterEqual(sync.calls, 3)
        self.assertFalse(poller.running)

    def test_failed_sweep_is_logged_and_loop_continues(self) -> None:
        sync = _CountingSync(fail_first=True)
        poller = StatusPoller(sync, tick_seconds=0)

        with self.assertLogs("app.services.status_sync", level="ERROR") as captured:
            asyncio.run(self._run_until(poller, sync, calls=2))

        self.assertGreaterEqual(sync.calls, 2)
        self.assertTrue(any("status_poller.sweep_failed" in line for line in captured.output))


if __name__ == "__main__":
    unittest.main()
