from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_scan.db.models import ScanJob, ScanResult
from market_scan.db.repositories.scan_repo import ScanRepository
from market_scan.schemas.scans import (
    TERMINAL_JOB_STATUSES,
    BatchJob,
    BatchJobSummary,
    ComparableRecord,
    ItemResult,
    ItemStatus,
    JobStatus,
    PriceAnalysis,
    VehicleDescriptor,
)
from market_scan.utils.exceptions import NotFoundError, PersistenceError, ValidationError
from market_scan.utils.logging import get_logger

logger = get_logger(__name__)

# Worker payloads have used several key names for the same comparable fields
_COMPARABLE_ALIASES = {
    "name": "title",
    "listing_title": "title",
    "value": "price",
    "km": "mileage",
    "kilometers": "mileage",
    "city": "location",
    "details": "attributes",
    "description": "attributes",
    "link": "url",
    "listing_url": "url",
}
_COMPARABLE_CONTAINER_KEYS = ("comparables", "listings", "items", "results")
_ANALYSIS_ALIASES = {
    "count": "comparable_count",
    "num_comparables": "comparable_count",
    "data_source": "source",
    "timestamp": "analyzed_at",
}


def _as_uuid(job_id: str | uuid.UUID) -> uuid.UUID:
    if isinstance(job_id, uuid.UUID):
        return job_id
    try:
        return uuid.UUID(str(job_id))
    except ValueError:
        raise NotFoundError(str(job_id)) from None


def _rename(data: dict, aliases: dict[str, str]) -> dict:
    renamed = {}
    for key, value in data.items():
        target = aliases.get(key, key)
        # Canonical keys win over aliases
        if target in renamed and key != target:
            continue
        renamed[target] = value
    return renamed


def _decode_comparable(raw) -> ComparableRecord | None:
    if not isinstance(raw, dict):
        return None
    data = _rename(raw, _COMPARABLE_ALIASES)
    attributes = data.get("attributes")
    if isinstance(attributes, (dict, list)):
        data["attributes"] = json.dumps(attributes, ensure_ascii=False, sort_keys=True)
    try:
        return ComparableRecord.model_validate(
            {k: v for k, v in data.items() if k in ComparableRecord.model_fields}
        )
    except SchemaValidationError:
        return None


def decode_comparables(raw) -> list[ComparableRecord]:
    """Normalize a stored comparables value into a list of records.

    Accepts a JSON string, a single record, a wrapper object holding a list,
    or a list. Anything else decodes to an empty list.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
        if isinstance(raw, str):
            return []
        return decode_comparables(raw)
    if isinstance(raw, dict):
        for key in _COMPARABLE_CONTAINER_KEYS:
            if isinstance(raw.get(key), list):
                return decode_comparables(raw[key])
        record = _decode_comparable(raw)
        return [record] if record is not None else []
    if isinstance(raw, list):
        records = [_decode_comparable(item) for item in raw]
        return [r for r in records if r is not None]
    return []


def decode_analysis(
    raw, comparables_raw=None, default_currency: str = "EUR"
) -> PriceAnalysis:
    comparables = decode_comparables(comparables_raw)
    data = _rename(raw, _ANALYSIS_ALIASES) if isinstance(raw, dict) else {}
    data = {k: v for k, v in data.items() if k in PriceAnalysis.model_fields}
    data.setdefault("currency", default_currency)
    if data.get("currency") is None:
        data["currency"] = default_currency
    if comparables_raw is None and "comparables" in data:
        comparables = decode_comparables(data["comparables"])
    data["comparables"] = tuple(comparables)
    data.setdefault("comparable_count", len(comparables))
    try:
        return PriceAnalysis.model_validate(data)
    except SchemaValidationError:
        logger.warning("Discarding malformed analysis metrics", keys=sorted(data))
        return PriceAnalysis(
            currency=default_currency,
            comparable_count=len(comparables),
            comparables=tuple(comparables),
        )


def build_item_result(
    item_id: str,
    status: str | ItemStatus,
    analysis=None,
    comparables=None,
    error_detail: str | None = None,
    default_currency: str = "EUR",
) -> ItemResult:
    """Build an ItemResult, dropping fields the status does not allow.

    Raises ValueError for an unknown status.
    """
    item_status = ItemStatus(status)
    payload = None
    if item_status is ItemStatus.SUCCESS:
        payload = decode_analysis(analysis, comparables, default_currency)
    return ItemResult(
        item_id=str(item_id),
        status=item_status,
        analysis=payload,
        error_detail=error_detail if item_status is ItemStatus.ERROR else None,
    )


class PersistenceAdapter:
    """Durable scan job and result storage, owner-scoped on every read."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_currency: str = "EUR",
    ) -> None:
        self.session_factory = session_factory
        self.default_currency = default_currency

    @asynccontextmanager
    async def _repository(self, operation: str) -> AsyncIterator[ScanRepository]:
        try:
            async with self.session_factory() as session:
                try:
                    yield ScanRepository(session)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except SQLAlchemyError as e:
            logger.error("Scan storage operation failed", operation=operation, error=str(e))
            raise PersistenceError(f"Scan storage is unavailable ({operation})") from e

    # ---------- Writes ----------

    async def create_job(
        self, owner_id: str, vehicles: Iterable[VehicleDescriptor]
    ) -> uuid.UUID:
        async with self._repository("create_job") as repo:
            job = await repo.create(
                owner_id=owner_id,
                vehicles=[v.model_dump(mode="json") for v in vehicles],
            )
            job_id = job.id
        logger.info("Scan job created", job_id=str(job_id), owner_id=owner_id)
        return job_id

    async def delete_job(self, job_id: str | uuid.UUID) -> bool:
        async with self._repository("delete_job") as repo:
            return await repo.delete(_as_uuid(job_id))

    async def update_job_status(
        self,
        job_id: str | uuid.UUID,
        status: JobStatus,
        error_message: str | None = None,
    ) -> BatchJob | None:
        """Apply a forward status transition. Returns None when it was not applied."""
        job_uuid = _as_uuid(job_id)
        async with self._repository("update_job_status") as repo:
            if await repo.get(job_uuid) is None:
                raise NotFoundError(str(job_uuid))
            job = await repo.update_status(job_uuid, status, error_message)
            if job is None:
                logger.warning(
                    "Ignoring stale job status", job_id=str(job_uuid), status=status.value
                )
                return None
            return self._to_batch_job(job)

    async def record_item_result(
        self,
        job_id: str | uuid.UUID,
        item_id: str,
        status: ItemStatus,
        analysis: dict | None = None,
        comparables=None,
        error_detail: str | None = None,
    ) -> tuple[ItemResult, bool]:
        """Upsert one vehicle's result. Returns (result, created)."""
        job_uuid = _as_uuid(job_id)
        async with self._repository("record_item_result") as repo:
            job = await repo.get(job_uuid)
            if job is None:
                raise NotFoundError(str(job_uuid))
            if item_id not in {v.item_id for v in self._vehicles(job)}:
                raise ValidationError(f"Vehicle '{item_id}' is not part of scan '{job_uuid}'")
            row, created = await repo.upsert_result(
                job_uuid,
                item_id,
                status.value,
                analysis=analysis if status is ItemStatus.SUCCESS else None,
                comparables=comparables if status is ItemStatus.SUCCESS else None,
                error_detail=error_detail if status is ItemStatus.ERROR else None,
            )
            return self._to_item_result(row), created

    # ---------- Reads ----------

    async def load_job(self, job_id: str | uuid.UUID, owner_id: str) -> BatchJob:
        job_uuid = _as_uuid(job_id)
        async with self._repository("load_job") as repo:
            job = await repo.get_for_owner(job_uuid, owner_id)
            if job is None:
                raise NotFoundError(str(job_uuid))
            return self._to_batch_job(job)

    async def load_results(self, job_id: str | uuid.UUID) -> list[ItemResult]:
        job_uuid = _as_uuid(job_id)
        async with self._repository("load_results") as repo:
            rows = await repo.list_results(job_uuid)
        results = []
        for row in rows:
            try:
                results.append(self._to_item_result(row))
            except ValueError:
                logger.warning(
                    "Skipping result with unknown status",
                    job_id=str(job_uuid),
                    item_id=row.item_id,
                    status=row.status,
                )
        return results

    async def list_jobs_for_owner(
        self,
        owner_id: str,
        status_filter: Iterable[JobStatus] | None = None,
        limit: int = 20,
    ) -> list[BatchJobSummary]:
        """Terminal jobs for an owner, newest first."""
        statuses = set(status_filter or TERMINAL_JOB_STATUSES) & TERMINAL_JOB_STATUSES
        if not statuses or limit <= 0:
            return []
        async with self._repository("list_jobs_for_owner") as repo:
            jobs = await repo.list_for_owner(
                owner_id, sorted(s.value for s in statuses), limit
            )
            return [self._to_summary(job) for job in jobs]

    # ---------- Row mapping ----------

    @staticmethod
    def _vehicles(job: ScanJob) -> list[VehicleDescriptor]:
        return [VehicleDescriptor.model_validate(v) for v in job.vehicles or []]

    def _to_batch_job(self, job: ScanJob) -> BatchJob:
        return BatchJob(
            job_id=job.id,
            owner_id=job.owner_id,
            status=JobStatus(job.status),
            vehicles=self._vehicles(job),
            error_message=job.error_message,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    def _to_summary(self, job: ScanJob) -> BatchJobSummary:
        vehicles = self._vehicles(job)
        return BatchJobSummary(
            job_id=job.id,
            status=JobStatus(job.status),
            total_items=len(vehicles),
            vehicles=vehicles,
            error_message=job.error_message,
            created_at=job.created_at,
        )

    def _to_item_result(self, row: ScanResult) -> ItemResult:
        return build_item_result(
            row.item_id,
            row.status,
            analysis=row.analysis,
            comparables=row.comparables,
            error_detail=row.error_detail,
            default_currency=self.default_currency,
        )
