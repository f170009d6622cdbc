"""Transcriber selection unit tests."""

from __future__ import annotations

from decimal import Decimal
import unittest

from app.domain.assignment import OpenWork, WorkerCandidate, select_transcriber, workload_by_worker
from app.schemas.assignment import AssignmentStatus, TranscriberStatus

OVERHEAD = Decimal("3.5")


class SelectTranscriberTests(unittest.TestCase):
    def test_no_active_worker_means_queue(self) -> None:
        candidates = [
            WorkerCandidate(worker_id="w1", status=TranscriberStatus.INACTIVE, rating=5.0),
            WorkerCandidate(worker_id="w2", status=TranscriberStatus.BUSY, rating=4.0),
        ]

        self.assertIsNone(select_transcriber(candidates, [], review_overhead_factor=OVERHEAD))
        self.assertIsNone(select_transcriber([], [], review_overhead_factor=OVERHEAD))

    def test_least_loaded_active_worker_wins(self) -> None:
        candidates = [
            WorkerCandidate(worker_id="w1", status=TranscriberStatus.ACTIVE, rating=5.0),
            WorkerCandidate(worker_id="w2", status=TranscriberStatus.ACTIVE, rating=3.0),
        ]
        open_work = [OpenWork(worker_id="w1", status=AssignmentStatus.IN_PROGRESS, duration_minutes=Decimal("2"))]

        self.assertEqual(select_transcriber(candidates, open_work, review_overhead_factor=OVERHEAD), "w2")

    def test_equal_workload_goes_to_higher_rating(self) -> None:
        candidates = [
            WorkerCandidate(worker_id="w1", status=TranscriberStatus.ACTIVE, rating=3.5),
            WorkerCandidate(worker_id="w2", status=TranscriberStatus.ACTIVE, rating=4.8),
        ]

        self.assertEqual(select_transcriber(candidates, [], review_overhead_factor=OVERHEAD), "w2")

    def test_completed_assignments_do_not_count_as_workload(self) -> None:
        open_work = [
            OpenWork(worker_id="w1", status=AssignmentStatus.ASSIGNED, duration_minutes=Decimal("10")),
            OpenWork(worker_id="w1", status=AssignmentStatus.IN_PROGRESS, duration_minutes=Decimal("4")),
            OpenWork(worker_id="w1", status=AssignmentStatus.COMPLETED, duration_minutes=Decimal("60")),
            OpenWork(worker_id="w2", status=AssignmentStatus.COMPLETED, duration_minutes=Decimal("60")),
        ]

        workloads = workload_by_worker(open_work, review_overhead_factor=OVERHEAD)

        self.assertEqual(workloads, {"w1": Decimal("49.0")})


if __name__ == "__main__":
    unittest.main()
