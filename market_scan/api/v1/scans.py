from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from market_scan.dependencies import (
    get_history,
    get_notifier,
    get_owner,
    get_persistence,
    get_submitter,
    request_id,
)
from market_scan.middleware.auth import verify_service_key
from market_scan.schemas.common import APIResponse
from market_scan.schemas.scans import (
    ItemResultUpdate,
    JobStatus,
    JobStatusUpdate,
    ScanCreateRequest,
    ScanCreateResponse,
    ScanDetailResponse,
    ScanHistoryResponse,
)
from market_scan.services.history import HistoryBrowser
from market_scan.services.notifier import ScanNotifier
from market_scan.services.persistence import PersistenceAdapter
from market_scan.services.state_store import summarize
from market_scan.services.submitter import JobRequestSubmitter
from market_scan.utils.exceptions import PersistenceError
from market_scan.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/scans", tags=["Market Scans"])


@router.post("", status_code=202)
async def submit_scan(
    request: Request,
    body: ScanCreateRequest,
    owner_id: str = Depends(get_owner),
    submitter: JobRequestSubmitter = Depends(get_submitter),
):
    """Submit vehicles for market price analysis.

    Returns the scan id immediately. Follow progress on the live socket or
    GET /api/v1/scans/{job_id}.
    """
    handle = await submitter.submit(owner_id, body.vehicles)

    data = ScanCreateResponse(
        job_id=handle.job_id,
        total_items=len(handle.vehicles),
        vehicles=list(handle.vehicles),
    )
    return JSONResponse(
        status_code=202,
        content=APIResponse(
            success=True,
            request_id=request_id(request),
            data=data.model_dump(mode="json"),
        ).model_dump(mode="json"),
    )


@router.get("/history", response_model=APIResponse)
async def list_scan_history(
    request: Request,
    status: list[JobStatus] | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=100),
    owner_id: str = Depends(get_owner),
    history: HistoryBrowser = Depends(get_history),
) -> APIResponse:
    """List finished scans for the current user, newest first."""
    try:
        jobs = await history.list_recent(owner_id, status_filter=status, limit=limit)
        data = ScanHistoryResponse(jobs=jobs, total=len(jobs))
    except PersistenceError as e:
        logger.warning("Scan history unavailable", owner_id=owner_id, error=e.message)
        data = ScanHistoryResponse(jobs=[], total=0, notice="Couldn't load scan history.")

    return APIResponse(
        success=True,
        request_id=request_id(request),
        data=data.model_dump(mode="json"),
    )


@router.get("/{job_id}", response_model=APIResponse)
async def get_scan(
    request: Request,
    job_id: uuid.UUID,
    owner_id: str = Depends(get_owner),
    persistence: PersistenceAdapter = Depends(get_persistence),
) -> APIResponse:
    """Get a scan with every result recorded so far."""
    job = await persistence.load_job(job_id, owner_id)
    results = await persistence.load_results(job.job_id)

    data = ScanDetailResponse(
        job=job,
        results=results,
        summary=summarize(job.vehicles, {r.item_id: r for r in results}),
    )
    return APIResponse(
        success=True,
        request_id=request_id(request),
        data=data.model_dump(mode="json"),
    )


# ---------- Analysis worker callbacks ----------


@router.post("/{job_id}/status", response_model=APIResponse)
async def report_scan_status(
    request: Request,
    job_id: uuid.UUID,
    body: JobStatusUpdate,
    caller: dict = Depends(verify_service_key),
    persistence: PersistenceAdapter = Depends(get_persistence),
    notifier: ScanNotifier = Depends(get_notifier),
) -> APIResponse:
    """Record a job-level status change and push it to live viewers."""
    job = await persistence.update_job_status(job_id, body.status, body.error_message)
    if job is not None:
        await notifier.publish_job_update(job)

    return APIResponse(
        success=True,
        request_id=request_id(request),
        data={
            "job_id": str(job_id),
            "applied": job is not None,
            "status": body.status.value,
        },
    )


@router.put("/{job_id}/results/{item_id}", response_model=APIResponse)
async def report_item_result(
    request: Request,
    job_id: uuid.UUID,
    item_id: str,
    body: ItemResultUpdate,
    caller: dict = Depends(verify_service_key),
    persistence: PersistenceAdapter = Depends(get_persistence),
    notifier: ScanNotifier = Depends(get_notifier),
) -> APIResponse:
    """Record one vehicle's result and push it to live viewers."""
    result, created = await persistence.record_item_result(
        job_id,
        item_id,
        body.status,
        analysis=body.analysis,
        comparables=body.comparables,
        error_detail=body.error_detail,
    )
    await notifier.publish_item_result(job_id, result, created)

    return APIResponse(
        success=True,
        request_id=request_id(request),
        data={
            "job_id": str(job_id),
            "event": "insert" if created else "update",
            "result": result.model_dump(mode="json"),
        },
    )
