from __future__ import annotations

import time
from collections.abc import Sequence

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from market_scan.schemas.scans import JobHandle, VehicleDescriptor
from market_scan.services.persistence import PersistenceAdapter
from market_scan.utils.exceptions import PersistenceError, SubmissionError, ValidationError
from market_scan.utils.logging import get_logger
from market_scan.utils.metrics import ANALYSIS_REQUEST_LATENCY, SCAN_SUBMISSIONS

logger = get_logger(__name__)

ACCEPTED_STATUS_CODES = (200, 202)


def build_analysis_payload(
    job_id: str, owner_id: str, vehicles: Sequence[VehicleDescriptor]
) -> dict:
    """Request body understood by the price analysis service."""
    return {
        "scan_request_id": job_id,
        "user_id": owner_id,
        "vehicles": [
            {
                "carbiz_vehicle_id": v.item_id,
                "make": v.make,
                "model": v.model,
                "year": v.year,
                "mileage": v.mileage,
            }
            for v in vehicles
        ],
    }


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    text = response.text.strip()
    if text:
        return text[:500]
    return f"Analysis service responded with HTTP {response.status_code}"


class JobRequestSubmitter:
    """Creates the durable scan record and hands the batch to the analysis service."""

    def __init__(
        self,
        persistence: PersistenceAdapter,
        http_client: httpx.AsyncClient,
        service_url: str,
        max_batch_size: int = 100,
        max_attempts: int = 3,
        wait: wait_base | None = None,
    ) -> None:
        self.persistence = persistence
        self.http_client = http_client
        self.service_url = service_url.rstrip("/")
        self.max_batch_size = max_batch_size
        self.max_attempts = max(1, max_attempts)
        self.wait = wait or wait_exponential(multiplier=0.5, min=0.5, max=8)

    def validate(self, vehicles: Sequence[VehicleDescriptor]) -> None:
        if not vehicles:
            raise ValidationError("At least one vehicle must be provided")
        if len(vehicles) > self.max_batch_size:
            raise ValidationError(f"Maximum {self.max_batch_size} vehicles per scan")
        ids = [v.item_id for v in vehicles]
        if len(set(ids)) != len(ids):
            raise ValidationError("Each vehicle may appear only once per scan")

    async def submit(self, owner_id: str, vehicles: Sequence[VehicleDescriptor]) -> JobHandle:
        try:
            self.validate(vehicles)
        except ValidationError:
            SCAN_SUBMISSIONS.labels(outcome="invalid").inc()
            raise

        job_id = await self.persistence.create_job(owner_id, vehicles)
        payload = build_analysis_payload(str(job_id), owner_id, vehicles)

        try:
            await self._send(payload)
        except SubmissionError as e:
            SCAN_SUBMISSIONS.labels(outcome="rejected").inc()
            logger.warning("Scan submission failed", job_id=str(job_id), error=e.message)
            try:
                await self.persistence.delete_job(job_id)
            except PersistenceError as cleanup_error:
                logger.error(
                    "Could not remove rejected scan",
                    job_id=str(job_id),
                    error=cleanup_error.message,
                )
            raise

        SCAN_SUBMISSIONS.labels(outcome="accepted").inc()
        logger.info("Scan submitted", job_id=str(job_id), owner_id=owner_id, items=len(vehicles))
        return JobHandle(job_id=job_id, vehicles=tuple(vehicles))

    async def _send(self, payload: dict) -> None:
        url = f"{self.service_url}/analyze-prices"
        start = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self.wait,
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await self.http_client.post(url, json=payload)
        except (httpx.HTTPError, RetryError) as e:
            raise SubmissionError(f"Analysis service unreachable: {e}") from e
        finally:
            ANALYSIS_REQUEST_LATENCY.observe(time.perf_counter() - start)

        if response.status_code not in ACCEPTED_STATUS_CODES:
            logger.error(
                "Analysis service rejected scan",
                status_code=response.status_code,
                scan_request_id=payload["scan_request_id"],
            )
            raise SubmissionError(_error_message(response))
