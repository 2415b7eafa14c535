"""Unit tests for the live scan state store."""
from __future__ import annotations

import uuid
from datetime import UTC, datetime

import pytest

from market_scan.schemas.scans import (
    BatchJob,
    ItemResult,
    ItemStatus,
    JobHandle,
    JobStatus,
    PriceAnalysis,
)
from market_scan.services.state_store import JobStateStore

TERMINAL = [JobStatus.COMPLETED, JobStatus.PARTIALLY_FAILED, JobStatus.FAILED]


def _success(item_id: str, avg: float) -> ItemResult:
    return ItemResult(
        item_id=item_id,
        status=ItemStatus.SUCCESS,
        analysis=PriceAnalysis(min_price=avg - 2000, avg_price=avg, max_price=avg + 2000),
    )


@pytest.fixture
def handle(vehicles) -> JobHandle:
    return JobHandle(job_id=uuid.uuid4(), vehicles=tuple(vehicles))


@pytest.fixture
def store(handle) -> JobStateStore:
    s = JobStateStore()
    s.seed(handle)
    return s


class TestSeed:
    def test_seed_starts_pending_with_vehicles_in_order(self, store, handle, vehicles):
        assert store.job_id == handle.job_id
        assert store.status == JobStatus.PENDING
        assert [v.item_id for v in store.vehicles] == [v.item_id for v in vehicles]
        assert store.results == {}

    def test_seed_clears_previous_job(self, store, vehicles):
        store.apply_item_result("inv-1", _success("inv-1", 24000))
        store.apply_job_update(JobStatus.FAILED, "boom")

        new_handle = JobHandle(job_id=uuid.uuid4(), vehicles=tuple(vehicles[:1]))
        store.seed(new_handle)

        assert store.job_id == new_handle.job_id
        assert store.status == JobStatus.PENDING
        assert store.error_message is None
        assert store.results == {}
        assert len(store.vehicles) == 1

    def test_reset_clears_everything(self, store):
        store.reset()
        assert store.job_id is None
        assert store.status is None
        assert store.snapshot() is None

    def test_listener_notified_on_change(self, store):
        calls = []
        store.add_listener(lambda s: calls.append(s.status))
        store.apply_job_update(JobStatus.PROCESSING)
        assert calls == [JobStatus.PROCESSING]


class TestJobUpdates:
    def test_forward_transition_applies(self, store):
        assert store.apply_job_update(JobStatus.PROCESSING) is True
        assert store.status == JobStatus.PROCESSING

    def test_pending_can_jump_to_terminal(self, store):
        assert store.apply_job_update(JobStatus.COMPLETED) is True
        assert store.status == JobStatus.COMPLETED

    def test_regression_is_ignored(self, store):
        store.apply_job_update(JobStatus.PROCESSING)
        assert store.apply_job_update(JobStatus.PENDING) is False
        assert store.status == JobStatus.PROCESSING

    @pytest.mark.parametrize("terminal", TERMINAL)
    @pytest.mark.parametrize("later", list(JobStatus))
    def test_terminal_status_is_final(self, store, terminal, later):
        store.apply_job_update(terminal, "first" if terminal != JobStatus.COMPLETED else None)
        store.apply_job_update(later, "second")
        assert store.status == terminal

    def test_error_message_only_kept_for_failures(self, store):
        store.apply_job_update(JobStatus.COMPLETED, "ignored")
        assert store.error_message is None

    def test_failed_records_message(self, store):
        store.apply_job_update(JobStatus.FAILED, "analysis service crashed")
        assert store.error_message == "analysis service crashed"

    def test_update_for_other_job_is_ignored(self, store):
        assert store.apply_job_update(JobStatus.PROCESSING, job_id=uuid.uuid4()) is False
        assert store.status == JobStatus.PENDING

    def test_update_without_job_is_ignored(self):
        assert JobStateStore().apply_job_update(JobStatus.PROCESSING) is False


class TestItemResults:
    def test_apply_twice_is_idempotent(self, store):
        result = _success("inv-1", 24000)
        store.apply_item_result("inv-1", result)
        once = store.snapshot()
        store.apply_item_result("inv-1", result)
        assert store.snapshot() == once

    def test_last_write_wins(self, store):
        store.apply_item_result("inv-1", ItemResult(item_id="inv-1", status=ItemStatus.PROCESSING))
        store.apply_item_result("inv-1", _success("inv-1", 24000))
        assert store.results["inv-1"].status == ItemStatus.SUCCESS

    def test_apply_order_is_irrelevant(self, vehicles, handle):
        results = [
            _success("inv-1", 24000),
            _success("inv-2", 31000),
            ItemResult(item_id="inv-3", status=ItemStatus.NO_DATA_FOUND),
        ]
        forward, backward = JobStateStore(), JobStateStore()
        forward.seed(handle)
        backward.seed(handle)
        for r in results:
            forward.apply_item_result(r.item_id, r)
        for r in reversed(results):
            backward.apply_item_result(r.item_id, r)
        assert forward.snapshot() == backward.snapshot()

    def test_unknown_vehicle_is_ignored(self, store):
        assert store.apply_item_result("inv-999", _success("inv-999", 1000)) is False
        assert "inv-999" not in store.results

    def test_result_for_other_job_is_ignored(self, store):
        assert store.apply_item_result("inv-1", _success("inv-1", 1), job_id=uuid.uuid4()) is False
        assert store.results == {}


class TestSummary:
    def test_three_vehicle_scan_ends_partially_failed(self, store):
        store.apply_job_update(JobStatus.PROCESSING)
        store.apply_item_result("inv-1", _success("inv-1", 24000))
        store.apply_item_result("inv-2", _success("inv-2", 31000))
        store.apply_item_result("inv-3", ItemResult(item_id="inv-3", status=ItemStatus.NO_DATA_FOUND))
        store.apply_job_update(JobStatus.PARTIALLY_FAILED, "1 vehicle had no market data")

        summary = store.summary()
        assert store.status == JobStatus.PARTIALLY_FAILED
        assert summary.counts["success"] == 2
        assert summary.counts["no_data_found"] == 1
        assert summary.total == 3
        assert summary.processed == 3
        assert summary.completion == pytest.approx(1.0)
        assert store.results["inv-1"].analysis.avg_price == 24000
        assert store.results["inv-2"].analysis.avg_price == 31000

    def test_vehicles_without_results_count_as_pending(self, store):
        store.apply_item_result("inv-1", ItemResult(item_id="inv-1", status=ItemStatus.ERROR))
        summary = store.summary()
        assert summary.counts["pending"] == 2
        assert summary.counts["error"] == 1
        assert summary.processed == 1
        assert summary.completion == pytest.approx(1 / 3)

    def test_empty_store_summary(self):
        summary = JobStateStore().summary()
        assert summary.total == 0
        assert summary.completion == 0.0


class TestWarningsAndRestore:
    def test_warning_set_while_running(self, store):
        assert store.report_warning("disconnected") is True
        assert store.error_message == "disconnected"
        assert store.status == JobStatus.PENDING

    def test_warning_ignored_after_terminal(self, store):
        store.apply_job_update(JobStatus.COMPLETED)
        assert store.report_warning("disconnected") is False
        assert store.error_message is None

    def test_restore_rebuilds_state(self, vehicles):
        now = datetime.now(UTC)
        job = BatchJob(
            job_id=uuid.uuid4(),
            owner_id="dealer-1",
            status=JobStatus.COMPLETED,
            vehicles=vehicles,
            created_at=now,
            updated_at=now,
        )
        results = [_success(v.item_id, 10000) for v in vehicles]
        store = JobStateStore()
        store.restore(job, results)

        assert store.status == JobStatus.COMPLETED
        assert set(store.results) == {"inv-1", "inv-2", "inv-3"}
        assert store.is_terminal

    def test_completion_clears_transport_warning(self, store):
        store.report_warning("disconnected")
        store.apply_job_update(JobStatus.COMPLETED)
        assert store.error_message is None


def _persisted(job_id, vehicles, status, error_message=None) -> BatchJob:
    now = datetime.now(UTC)
    return BatchJob(
        job_id=job_id,
        owner_id="dealer-1",
        status=status,
        vehicles=vehicles,
        error_message=error_message,
        created_at=now,
        updated_at=now,
    )


class TestMerge:
    def test_merge_catches_up_on_missed_events(self, store, handle, vehicles):
        job = _persisted(handle.job_id, vehicles, JobStatus.PARTIALLY_FAILED, "1 no data")
        results = [
            _success("inv-1", 24000),
            ItemResult(item_id="inv-3", status=ItemStatus.NO_DATA_FOUND),
        ]

        assert store.merge(job, results) is True

        assert store.status == JobStatus.PARTIALLY_FAILED
        assert store.error_message == "1 no data"
        assert set(store.results) == {"inv-1", "inv-3"}

    def test_merge_never_goes_backwards(self, store, handle, vehicles):
        store.apply_job_update(JobStatus.PROCESSING)
        store.apply_item_result("inv-1", _success("inv-1", 24000))
        # Read taken before those pushes were persisted
        job = _persisted(handle.job_id, vehicles, JobStatus.PENDING)
        stale = [ItemResult(item_id="inv-1", status=ItemStatus.PROCESSING)]

        assert store.merge(job, stale) is False

        assert store.status == JobStatus.PROCESSING
        assert store.results["inv-1"].status == ItemStatus.SUCCESS

    def test_merge_for_other_job_ignored(self, store, vehicles):
        job = _persisted(uuid.uuid4(), vehicles, JobStatus.COMPLETED)
        assert store.merge(job, []) is False
        assert store.status == JobStatus.PENDING

    def test_merge_clears_warning_when_storage_has_none(self, store, handle, vehicles):
        store.report_warning("disconnected")
        store.merge(_persisted(handle.job_id, vehicles, JobStatus.PENDING), [])
        assert store.error_message is None
