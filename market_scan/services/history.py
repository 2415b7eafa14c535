from __future__ import annotations

import uuid
from collections.abc import Iterable

from market_scan.schemas.scans import BatchJobSummary, JobStatus, JobView
from market_scan.services.persistence import PersistenceAdapter
from market_scan.services.state_store import JobStateStore
from market_scan.utils.logging import get_logger

logger = get_logger(__name__)


def history_label(summary: BatchJobSummary, max_items: int = 2) -> str:
    """Short human label such as "BMW X5, Audi A4 +3 more"."""
    names = [f"{v.make} {v.model}".strip() for v in summary.vehicles[:max_items]]
    names = [n for n in names if n]
    if not names:
        return f"Scan {str(summary.job_id)[:8]}"
    label = ", ".join(names)
    remaining = summary.total_items - len(names)
    if remaining > 0:
        label += f" +{remaining} more"
    return label


class HistoryBrowser:
    """Browses finished scans without touching the live scan's state."""

    def __init__(
        self,
        persistence: PersistenceAdapter,
        limit: int = 20,
        label_items: int = 2,
    ) -> None:
        self.persistence = persistence
        self.limit = limit
        self.label_items = label_items
        self.current: JobView | None = None

    @property
    def is_open(self) -> bool:
        return self.current is not None

    async def list_recent(
        self,
        owner_id: str,
        status_filter: Iterable[JobStatus] | None = None,
        limit: int | None = None,
    ) -> list[BatchJobSummary]:
        jobs = await self.persistence.list_jobs_for_owner(
            owner_id, status_filter=status_filter, limit=limit or self.limit
        )
        labelled = []
        for job in jobs:
            try:
                label = history_label(job, self.label_items)
            except Exception as e:
                logger.warning("Could not label scan", job_id=str(job.job_id), error=str(e))
                label = None
            labelled.append(job.model_copy(update={"label": label}))
        return labelled

    async def open(self, owner_id: str, job_id: uuid.UUID | str) -> JobView:
        """Load a past scan into the read-only historical view."""
        job = await self.persistence.load_job(job_id, owner_id)
        results = await self.persistence.load_results(job.job_id)

        # Scratch store; the live store is never involved
        scratch = JobStateStore()
        scratch.restore(job, results)
        self.current = scratch.snapshot()
        logger.info("Historical scan opened", job_id=str(job.job_id), results=len(results))
        return self.current

    def return_to_live(self) -> None:
        self.current = None
