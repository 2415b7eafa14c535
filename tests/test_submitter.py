"""Tests for scan submission to the analysis service."""
from __future__ import annotations

import httpx
import pytest
from sqlalchemy import func, select
from tenacity import wait_none

from market_scan.db.models import ScanJob
from market_scan.schemas.scans import JobStatus, VehicleDescriptor
from market_scan.services.submitter import JobRequestSubmitter, build_analysis_payload
from market_scan.utils.exceptions import PersistenceError, SubmissionError, ValidationError


async def _job_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(ScanJob))).scalar_one()


@pytest.fixture
def submitter(persistence, analysis_service):
    client = httpx.AsyncClient(transport=httpx.MockTransport(analysis_service))
    return JobRequestSubmitter(
        persistence,
        client,
        "http://analysis.test/",
        max_batch_size=5,
        max_attempts=3,
        wait=wait_none(),
    )


class TestValidation:
    @pytest.mark.asyncio
    async def test_empty_batch_rejected_without_job(self, submitter, session_factory, analysis_service):
        with pytest.raises(ValidationError):
            await submitter.submit("dealer-1", [])
        assert await _job_count(session_factory) == 0
        assert analysis_service.attempts == 0

    @pytest.mark.asyncio
    async def test_batch_too_large(self, submitter, session_factory):
        many = [
            VehicleDescriptor(item_id=f"inv-{i}", make="Fiat", model="Punto", year=2010, mileage=1)
            for i in range(6)
        ]
        with pytest.raises(ValidationError):
            await submitter.submit("dealer-1", many)
        assert await _job_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_duplicate_vehicles_rejected(self, submitter, vehicles):
        with pytest.raises(ValidationError):
            await submitter.submit("dealer-1", [vehicles[0], vehicles[0]])


class TestSubmit:
    @pytest.mark.asyncio
    async def test_accepted_creates_one_pending_job(
        self, submitter, persistence, session_factory, vehicles, analysis_service
    ):
        handle = await submitter.submit("dealer-1", vehicles)

        assert list(handle.vehicles) == vehicles
        assert await _job_count(session_factory) == 1
        job = await persistence.load_job(handle.job_id, "dealer-1")
        assert job.status == JobStatus.PENDING
        assert job.vehicles == vehicles

        sent = analysis_service.requests[0]
        assert sent["scan_request_id"] == str(handle.job_id)
        assert sent["user_id"] == "dealer-1"
        assert sent["vehicles"][0] == {
            "carbiz_vehicle_id": "inv-1",
            "make": "Toyota",
            "model": "Corolla",
            "year": 2019,
            "mileage": 64000,
        }

    @pytest.mark.asyncio
    async def test_rejection_surfaces_message_and_removes_job(
        self, submitter, session_factory, vehicles, analysis_service
    ):
        analysis_service.status_code = 503
        analysis_service.body = {"message": "analysis queue full"}

        with pytest.raises(SubmissionError) as exc_info:
            await submitter.submit("dealer-1", vehicles)

        assert exc_info.value.message == "analysis queue full"
        assert await _job_count(session_factory) == 0
        assert analysis_service.attempts == 1

    @pytest.mark.asyncio
    async def test_detail_field_used_when_no_message(self, submitter, vehicles, analysis_service):
        analysis_service.status_code = 422
        analysis_service.body = {"detail": "year must be positive"}
        with pytest.raises(SubmissionError, match="year must be positive"):
            await submitter.submit("dealer-1", vehicles)

    @pytest.mark.asyncio
    async def test_transport_errors_retried_then_fail(
        self, submitter, session_factory, vehicles, analysis_service
    ):
        analysis_service.error = httpx.ConnectError("connection refused")

        with pytest.raises(SubmissionError, match="unreachable"):
            await submitter.submit("dealer-1", vehicles)

        assert analysis_service.attempts == 3
        assert await _job_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_cleanup_failure_keeps_submission_error(
        self, submitter, persistence, vehicles, analysis_service, monkeypatch
    ):
        analysis_service.status_code = 503
        analysis_service.body = {"message": "analysis queue full"}

        async def storage_down(job_id):
            raise PersistenceError()

        monkeypatch.setattr(persistence, "delete_job", storage_down)

        with pytest.raises(SubmissionError, match="analysis queue full"):
            await submitter.submit("dealer-1", vehicles)


def test_payload_shape(vehicles):
    payload = build_analysis_payload("job-1", "dealer-1", vehicles[:1])
    assert payload == {
        "scan_request_id": "job-1",
        "user_id": "dealer-1",
        "vehicles": [
            {
                "carbiz_vehicle_id": "inv-1",
                "make": "Toyota",
                "model": "Corolla",
                "year": 2019,
                "mileage": 64000,
            }
        ],
    }
