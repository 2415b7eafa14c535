"""Tests for browsing finished scans."""
from __future__ import annotations

import uuid
from datetime import UTC, datetime

import pytest

from market_scan.schemas.scans import (
    BatchJobSummary,
    ItemResult,
    ItemStatus,
    JobHandle,
    JobStatus,
    VehicleDescriptor,
)
from market_scan.services.history import HistoryBrowser, history_label
from market_scan.services.state_store import JobStateStore
from market_scan.utils.exceptions import NotFoundError


def _summary(vehicles, total=None) -> BatchJobSummary:
    return BatchJobSummary(
        job_id=uuid.UUID("12345678-1234-5678-1234-567812345678"),
        status=JobStatus.COMPLETED,
        total_items=len(vehicles) if total is None else total,
        vehicles=vehicles,
        created_at=datetime.now(UTC),
    )


class TestLabels:
    def test_single_vehicle(self, vehicles):
        assert history_label(_summary(vehicles[:1])) == "Toyota Corolla"

    def test_more_vehicles_than_shown(self, vehicles):
        assert history_label(_summary(vehicles)) == "Toyota Corolla, BMW 320d +1 more"

    def test_configurable_item_count(self, vehicles):
        assert history_label(_summary(vehicles), max_items=1) == "Toyota Corolla +2 more"

    def test_falls_back_to_id(self):
        assert history_label(_summary([])) == "Scan 12345678"


class TestBrowser:
    @pytest.mark.asyncio
    async def test_list_recent_labels_finished_scans(self, persistence, vehicles):
        finished = await persistence.create_job("dealer-1", vehicles)
        await persistence.update_job_status(finished, JobStatus.COMPLETED)
        await persistence.create_job("dealer-1", vehicles)  # in flight

        jobs = await HistoryBrowser(persistence).list_recent("dealer-1")

        assert [j.job_id for j in jobs] == [finished]
        assert jobs[0].label == "Toyota Corolla, BMW 320d +1 more"

    @pytest.mark.asyncio
    async def test_label_failure_does_not_block_listing(self, persistence, vehicles, monkeypatch):
        job_id = await persistence.create_job("dealer-1", vehicles)
        await persistence.update_job_status(job_id, JobStatus.COMPLETED)

        def explode(*args, **kwargs):
            raise RuntimeError("label lookup failed")

        monkeypatch.setattr("market_scan.services.history.history_label", explode)
        jobs = await HistoryBrowser(persistence).list_recent("dealer-1")

        assert len(jobs) == 1
        assert jobs[0].label is None

    @pytest.mark.asyncio
    async def test_open_loads_results(self, persistence, vehicles):
        job_id = await persistence.create_job("dealer-1", vehicles)
        await persistence.record_item_result(
            job_id, "inv-1", ItemStatus.SUCCESS, analysis={"avg_price": 24000}
        )
        await persistence.update_job_status(job_id, JobStatus.COMPLETED)

        browser = HistoryBrowser(persistence)
        view = await browser.open("dealer-1", job_id)

        assert browser.is_open
        assert view.status == JobStatus.COMPLETED
        assert view.results[0].analysis.avg_price == 24000
        assert view.summary.processed == 1

    @pytest.mark.asyncio
    async def test_open_other_owners_scan(self, persistence, vehicles):
        job_id = await persistence.create_job("dealer-1", vehicles)
        browser = HistoryBrowser(persistence)
        with pytest.raises(NotFoundError):
            await browser.open("dealer-2", job_id)
        assert not browser.is_open

    @pytest.mark.asyncio
    async def test_historical_view_isolated_from_live_store(self, persistence, vehicles):
        past = await persistence.create_job("dealer-1", vehicles)
        await persistence.update_job_status(past, JobStatus.COMPLETED)

        live = JobStateStore()
        live.seed(JobHandle(job_id=uuid.uuid4(), vehicles=tuple(vehicles)))

        browser = HistoryBrowser(persistence)
        opened = await browser.open("dealer-1", past)

        # A stray push for the live scan
        live.apply_job_update(JobStatus.PROCESSING)
        live.apply_item_result("inv-1", ItemResult(item_id="inv-1", status=ItemStatus.ERROR))

        assert browser.current == opened
        assert browser.current.status == JobStatus.COMPLETED
        assert browser.current.results == ()
        # And opening history left the live scan alone
        assert live.job_id != past
        assert live.status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_return_to_live_discards_view(self, persistence, vehicles):
        job_id = await persistence.create_job("dealer-1", vehicles)
        browser = HistoryBrowser(persistence)
        await browser.open("dealer-1", job_id)
        browser.return_to_live()
        assert browser.current is None


def test_vehicle_label_property():
    v = VehicleDescriptor(item_id="x", make="Audi", model="A4", year=2020, mileage=0)
    assert v.label == "Audi A4"
