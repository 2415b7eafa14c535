from __future__ import annotations

import uuid
from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from market_scan.db.models import ScanJob, ScanResult
from market_scan.schemas.scans import JobStatus, can_transition


class ScanRepository:
    """Repository for scan jobs and their per-vehicle results."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, owner_id: str, vehicles: list[dict]) -> ScanJob:
        job = ScanJob(owner_id=owner_id, vehicles=vehicles, status=JobStatus.PENDING.value)
        self.session.add(job)
        await self.session.flush()
        return job

    async def get(self, job_id: uuid.UUID) -> ScanJob | None:
        result = await self.session.execute(select(ScanJob).where(ScanJob.id == job_id))
        return result.scalar_one_or_none()

    async def get_for_owner(self, job_id: uuid.UUID, owner_id: str) -> ScanJob | None:
        result = await self.session.execute(
            select(ScanJob).where(ScanJob.id == job_id, ScanJob.owner_id == owner_id)
        )
        return result.scalar_one_or_none()

    async def list_for_owner(
        self, owner_id: str, statuses: Iterable[str], limit: int
    ) -> list[ScanJob]:
        result = await self.session.execute(
            select(ScanJob)
            .where(ScanJob.owner_id == owner_id, ScanJob.status.in_(list(statuses)))
            .order_by(ScanJob.created_at.desc(), ScanJob.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def update_status(
        self, job_id: uuid.UUID, status: JobStatus, error_message: str | None = None
    ) -> ScanJob | None:
        """Move a job forward. Returns the job if the transition was applied."""
        job = await self.get(job_id)
        if job is None or not can_transition(JobStatus(job.status), status):
            return None
        job.status = status.value
        if status in (JobStatus.FAILED, JobStatus.PARTIALLY_FAILED):
            job.error_message = error_message
        await self.session.flush()
        return job

    async def delete(self, job_id: uuid.UUID) -> bool:
        await self.session.execute(delete(ScanResult).where(ScanResult.job_id == job_id))
        result = await self.session.execute(delete(ScanJob).where(ScanJob.id == job_id))
        await self.session.flush()
        return result.rowcount > 0

    async def list_results(self, job_id: uuid.UUID) -> list[ScanResult]:
        result = await self.session.execute(
            select(ScanResult).where(ScanResult.job_id == job_id).order_by(ScanResult.created_at)
        )
        return list(result.scalars().all())

    async def upsert_result(
        self,
        job_id: uuid.UUID,
        item_id: str,
        status: str,
        analysis: dict | None = None,
        comparables: list | dict | str | None = None,
        error_detail: str | None = None,
    ) -> tuple[ScanResult, bool]:
        """Insert or update the result row for (job, item). Returns (row, created)."""
        result = await self.session.execute(
            select(ScanResult).where(ScanResult.job_id == job_id, ScanResult.item_id == item_id)
        )
        row = result.scalar_one_or_none()
        created = row is None
        if created:
            row = ScanResult(job_id=job_id, item_id=item_id)
            self.session.add(row)
        row.status = status
        row.analysis = analysis
        row.comparables = comparables
        row.error_detail = error_detail
        await self.session.flush()
        return row, created
