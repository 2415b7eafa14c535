from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable

from market_scan.schemas.scans import (
    RESOLVED_ITEM_STATUSES,
    BatchJob,
    ItemResult,
    ItemStatus,
    JobHandle,
    JobStatus,
    JobView,
    ScanSummary,
    VehicleDescriptor,
    can_transition,
    is_terminal,
)
from market_scan.utils.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[["JobStateStore"], None]

_ITEM_STATUS_RANK = {
    ItemStatus.PENDING: 0,
    ItemStatus.PROCESSING: 1,
    ItemStatus.SUCCESS: 2,
    ItemStatus.ERROR: 2,
    ItemStatus.NO_DATA_FOUND: 2,
}


def summarize(
    vehicles: Iterable[VehicleDescriptor], results: dict[str, ItemResult]
) -> ScanSummary:
    """Count vehicles by status; vehicles without a result count as pending."""
    counts = {status.value: 0 for status in ItemStatus}
    total = 0
    for vehicle in vehicles:
        total += 1
        result = results.get(vehicle.item_id)
        status = result.status if result is not None else ItemStatus.PENDING
        counts[status.value] += 1
    processed = sum(counts[s.value] for s in RESOLVED_ITEM_STATUSES)
    return ScanSummary(
        counts=counts,
        total=total,
        processed=processed,
        completion=processed / total if total > 0 else 0.0,
    )


class JobStateStore:
    """In-memory state of the one live scan tracked by an analysis panel."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._clear()

    def _clear(self) -> None:
        self.job_id: uuid.UUID | None = None
        self.status: JobStatus | None = None
        self.error_message: str | None = None
        self.vehicles: tuple[VehicleDescriptor, ...] = ()
        self.results: dict[str, ItemResult] = {}

    # ---------- Listeners ----------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    # ---------- Lifecycle ----------

    @property
    def has_job(self) -> bool:
        return self.job_id is not None

    @property
    def is_terminal(self) -> bool:
        return self.status is not None and is_terminal(self.status)

    def seed(self, handle: JobHandle) -> None:
        """Start tracking a freshly submitted scan, dropping any previous one."""
        self._clear()
        self.job_id = handle.job_id
        self.status = JobStatus.PENDING
        self.vehicles = tuple(handle.vehicles)
        logger.info("State store seeded", job_id=str(handle.job_id), items=len(self.vehicles))
        self._notify()

    def restore(self, job: BatchJob, results: Iterable[ItemResult]) -> None:
        """Rebuild state for a persisted job (page reload resume)."""
        self._clear()
        self.job_id = job.job_id
        self.status = job.status
        self.error_message = job.error_message
        self.vehicles = tuple(job.vehicles)
        known = {v.item_id for v in self.vehicles}
        for result in results:
            if result.item_id in known:
                self.results[result.item_id] = result
        self._notify()

    def merge(self, job: BatchJob, results: Iterable[ItemResult]) -> bool:
        """Fold persisted state into the tracked scan without going backwards.

        Used after a subscription opens to pick up events published before
        it did. Pushes applied meanwhile may be newer than the read, so a
        persisted status or result only wins when it is further along.
        """
        if not self._matches(job.job_id):
            return False
        changed = False
        if can_transition(self.status, job.status):
            self.status = job.status
            self.error_message = job.error_message
            changed = True
        elif job.status == self.status and job.error_message != self.error_message:
            self.error_message = job.error_message
            changed = True

        known = {v.item_id for v in self.vehicles}
        for result in results:
            if result.item_id not in known:
                continue
            current = self.results.get(result.item_id)
            if current is None or _ITEM_STATUS_RANK[result.status] > _ITEM_STATUS_RANK[current.status]:
                self.results[result.item_id] = result
                changed = True

        if changed:
            self._notify()
        return changed

    def reset(self) -> None:
        if self.job_id is None:
            return
        logger.info("State store reset", job_id=str(self.job_id))
        self._clear()
        self._notify()

    # ---------- Updates ----------

    def _matches(self, job_id: uuid.UUID | str | None) -> bool:
        if self.job_id is None:
            return False
        return job_id is None or str(job_id) == str(self.job_id)

    def apply_job_update(
        self,
        status: JobStatus,
        error_message: str | None = None,
        *,
        job_id: uuid.UUID | str | None = None,
    ) -> bool:
        """Advance the job status. Stale or foreign updates are ignored."""
        if not self._matches(job_id):
            logger.warning(
                "Ignoring job update for another scan",
                job_id=str(job_id),
                active_job_id=str(self.job_id),
            )
            return False
        if not can_transition(self.status, status):
            logger.warning(
                "Ignoring out-of-order job status",
                job_id=str(self.job_id),
                current=self.status.value,
                received=status.value,
            )
            return False
        self.status = status
        if status in (JobStatus.FAILED, JobStatus.PARTIALLY_FAILED):
            self.error_message = error_message
        elif status == JobStatus.COMPLETED:
            self.error_message = None
        self._notify()
        return True

    def apply_item_result(
        self,
        item_id: str,
        result: ItemResult,
        *,
        job_id: uuid.UUID | str | None = None,
    ) -> bool:
        """Upsert one vehicle's result; the latest write wins."""
        if not self._matches(job_id):
            logger.warning(
                "Ignoring item result for another scan",
                job_id=str(job_id),
                active_job_id=str(self.job_id),
            )
            return False
        if item_id not in {v.item_id for v in self.vehicles}:
            logger.warning("Ignoring result for unknown vehicle", job_id=str(self.job_id), item_id=item_id)
            return False
        if self.results.get(item_id) == result:
            return True
        self.results[item_id] = result
        self._notify()
        return True

    def report_warning(self, message: str) -> bool:
        """Surface a transport problem unless the job already finished."""
        if self.job_id is None or self.is_terminal:
            return False
        self.error_message = message
        self._notify()
        return True

    # ---------- Reads ----------

    def summary(self) -> ScanSummary:
        return summarize(self.vehicles, self.results)

    def snapshot(self) -> JobView | None:
        if self.job_id is None:
            return None
        return JobView(
            job_id=self.job_id,
            status=self.status,
            error_message=self.error_message,
            vehicles=self.vehicles,
            results=tuple(
                self.results[v.item_id] for v in self.vehicles if v.item_id in self.results
            ),
            summary=self.summary(),
        )
