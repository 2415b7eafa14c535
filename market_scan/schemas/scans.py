from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"
    NO_DATA_FOUND = "no_data_found"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.PARTIALLY_FAILED, JobStatus.FAILED}
)
RESOLVED_ITEM_STATUSES = frozenset(
    {ItemStatus.SUCCESS, ItemStatus.ERROR, ItemStatus.NO_DATA_FOUND}
)

_JOB_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.PARTIALLY_FAILED: 2,
    JobStatus.FAILED: 2,
}


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_JOB_STATUSES


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    """Job status only moves forward; terminal statuses are final."""
    return _JOB_STATUS_RANK[new] > _JOB_STATUS_RANK[current]


class VehicleDescriptor(BaseModel):
    """One inventory vehicle to price, with what is needed to render its row."""

    model_config = ConfigDict(frozen=True)

    item_id: str = Field(min_length=1)
    make: str = Field(min_length=1)
    model: str = Field(min_length=1)
    year: int = Field(ge=0)
    mileage: int = Field(ge=0)

    @property
    def label(self) -> str:
        return f"{self.make} {self.model}"


class ComparableRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = ""
    price: float | None = None
    year: int | None = None
    mileage: int | None = None
    location: str | None = None
    attributes: str | None = None
    url: str | None = None


class PriceAnalysis(BaseModel):
    """Aggregate market metrics for one vehicle."""

    model_config = ConfigDict(frozen=True)

    min_price: float | None = None
    avg_price: float | None = None
    max_price: float | None = None
    comparable_count: int = 0
    currency: str = "EUR"
    source: str | None = None
    analyzed_at: datetime | None = None
    comparables: tuple[ComparableRecord, ...] = ()


class ItemResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    status: ItemStatus
    analysis: PriceAnalysis | None = None
    error_detail: str | None = None


class BatchJob(BaseModel):
    job_id: UUID
    owner_id: str
    status: JobStatus
    vehicles: list[VehicleDescriptor]
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


class BatchJobSummary(BaseModel):
    job_id: UUID
    status: JobStatus
    total_items: int
    vehicles: list[VehicleDescriptor]
    error_message: str | None = None
    created_at: datetime
    label: str | None = None


class JobHandle(BaseModel):
    """Returned by a successful submission; seeds the live state store."""

    model_config = ConfigDict(frozen=True)

    job_id: UUID
    vehicles: tuple[VehicleDescriptor, ...]


class ScanSummary(BaseModel):
    counts: dict[str, int]
    total: int
    processed: int
    completion: float = Field(ge=0, le=1.0)


class JobView(BaseModel):
    """Immutable snapshot of one job's status and per-vehicle results."""

    model_config = ConfigDict(frozen=True)

    job_id: UUID
    status: JobStatus
    error_message: str | None = None
    vehicles: tuple[VehicleDescriptor, ...]
    results: tuple[ItemResult, ...]
    summary: ScanSummary


# ---------- Request / response bodies ----------


class ScanCreateRequest(BaseModel):
    vehicles: list[VehicleDescriptor]


class HistoryListCommand(BaseModel):
    status: list[JobStatus] | None = None


class ScanCreateResponse(BaseModel):
    job_id: UUID
    status: JobStatus = JobStatus.PENDING
    total_items: int
    vehicles: list[VehicleDescriptor]


class JobStatusUpdate(BaseModel):
    status: JobStatus
    error_message: str | None = None


class ItemResultUpdate(BaseModel):
    """Per-vehicle report from the analysis worker.

    `comparables` is accepted in whatever shape the worker sends and is
    normalized on the persistence boundary.
    """

    status: ItemStatus
    analysis: dict | None = None
    comparables: list | dict | str | None = None
    error_detail: str | None = None


class ScanHistoryResponse(BaseModel):
    jobs: list[BatchJobSummary]
    total: int
    notice: str | None = None


class ScanDetailResponse(BaseModel):
    job: BatchJob
    results: list[ItemResult]
    summary: ScanSummary
