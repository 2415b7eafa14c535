"""Display helpers for scan state.

Everything here is a pure function of scan data: badge labels, number and
currency formatting, progress counts, and the JSON shape pushed to the
analysis panel.
"""
from __future__ import annotations

from collections.abc import Iterable

from market_scan.schemas.scans import (
    ItemResult,
    ItemStatus,
    JobStatus,
    JobView,
    ScanSummary,
    VehicleDescriptor,
)

JOB_BADGES: dict[JobStatus, tuple[str, str]] = {
    JobStatus.PENDING: ("Queued", "neutral"),
    JobStatus.PROCESSING: ("Analyzing", "info"),
    JobStatus.COMPLETED: ("Completed", "success"),
    JobStatus.PARTIALLY_FAILED: ("Partially failed", "warning"),
    JobStatus.FAILED: ("Failed", "danger"),
}

ITEM_BADGES: dict[ItemStatus, tuple[str, str]] = {
    ItemStatus.PENDING: ("Pending", "neutral"),
    ItemStatus.PROCESSING: ("Processing", "info"),
    ItemStatus.SUCCESS: ("Priced", "success"),
    ItemStatus.ERROR: ("Error", "danger"),
    ItemStatus.NO_DATA_FOUND: ("No market data", "warning"),
}

CURRENCY_SYMBOLS = {"EUR": "€", "USD": "$", "GBP": "£"}

PLACEHOLDER = "n/a"


def job_badge(status: JobStatus | str) -> dict:
    label, tone = JOB_BADGES[JobStatus(status)]
    return {"status": JobStatus(status).value, "label": label, "tone": tone}


def item_badge(status: ItemStatus | str) -> dict:
    label, tone = ITEM_BADGES[ItemStatus(status)]
    return {"status": ItemStatus(status).value, "label": label, "tone": tone}


def format_number(value: float | int | None, decimals: int = 0) -> str:
    if value is None:
        return PLACEHOLDER
    return f"{value:,.{decimals}f}"


def format_currency(amount: float | int | None, currency: str = "EUR") -> str:
    if amount is None:
        return PLACEHOLDER
    code = (currency or "").upper()
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{symbol}{amount:,.0f}"
    return f"{amount:,.0f} {code}".strip()


def format_mileage(mileage: int | None) -> str:
    if mileage is None:
        return PLACEHOLDER
    return f"{mileage:,} km"


def status_counts(results: Iterable[ItemResult]) -> dict[str, int]:
    counts = {status.value: 0 for status in ItemStatus}
    for result in results:
        counts[result.status.value] += 1
    return counts


def progress_label(summary: ScanSummary) -> str:
    return f"{summary.processed}/{summary.total}"


def vehicle_label(vehicle: VehicleDescriptor) -> str:
    return f"{vehicle.year} {vehicle.make} {vehicle.model}"


def render_row(vehicle: VehicleDescriptor, result: ItemResult | None) -> dict:
    status = result.status if result is not None else ItemStatus.PENDING
    analysis = result.analysis if result is not None else None
    row = {
        "item_id": vehicle.item_id,
        "vehicle": vehicle_label(vehicle),
        "mileage": format_mileage(vehicle.mileage),
        "badge": item_badge(status),
        "error": result.error_detail if result is not None else None,
        "price_range": None,
        "comparables": [],
    }
    if analysis is not None:
        row["price_range"] = {
            "min": format_currency(analysis.min_price, analysis.currency),
            "avg": format_currency(analysis.avg_price, analysis.currency),
            "max": format_currency(analysis.max_price, analysis.currency),
            "count": analysis.comparable_count,
            "source": analysis.source,
        }
        row["comparables"] = [
            {
                "title": c.title,
                "price": format_currency(c.price, analysis.currency),
                "year": c.year,
                "mileage": format_mileage(c.mileage),
                "location": c.location,
                "attributes": c.attributes,
                "url": c.url,
            }
            for c in analysis.comparables
        ]
    return row


def render_job(view: JobView) -> dict:
    results = {r.item_id: r for r in view.results}
    return {
        "job_id": str(view.job_id),
        "badge": job_badge(view.status),
        "error_message": view.error_message,
        "progress": progress_label(view.summary),
        "completion": round(view.summary.completion, 4),
        "counts": dict(view.summary.counts),
        "rows": [render_row(v, results.get(v.item_id)) for v in view.vehicles],
    }
