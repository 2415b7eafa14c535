"""Seed the development database with a finished sample scan."""
from __future__ import annotations

import asyncio
import sys


async def seed(owner_id: str) -> None:
    from market_scan.config import get_settings
    from market_scan.db.session import close_db, get_session_factory, init_db
    from market_scan.schemas.scans import ItemStatus, JobStatus, VehicleDescriptor
    from market_scan.services.persistence import PersistenceAdapter

    await init_db()
    persistence = PersistenceAdapter(
        get_session_factory(), default_currency=get_settings().DEFAULT_CURRENCY
    )

    vehicles = [
        VehicleDescriptor(item_id="inv-1001", make="Toyota", model="Corolla", year=2019, mileage=64000),
        VehicleDescriptor(item_id="inv-1002", make="BMW", model="320d", year=2018, mileage=98000),
        VehicleDescriptor(item_id="inv-1003", make="Fiat", model="Panda", year=2012, mileage=151000),
    ]
    job_id = await persistence.create_job(owner_id, vehicles)
    await persistence.update_job_status(job_id, JobStatus.PROCESSING)

    await persistence.record_item_result(
        job_id,
        "inv-1001",
        ItemStatus.SUCCESS,
        analysis={"min_price": 18500, "avg_price": 24000, "max_price": 27900, "source": "seed"},
        comparables=[
            {"title": "Toyota Corolla 1.8 Hybrid", "price": 23900, "year": 2019,
             "mileage": 58000, "location": "Athens", "url": "https://example.com/a"},
            {"title": "Toyota Corolla Active", "price": 24100, "year": 2019,
             "mileage": 71000, "location": "Thessaloniki"},
        ],
    )
    await persistence.record_item_result(
        job_id,
        "inv-1002",
        ItemStatus.SUCCESS,
        analysis={"min_price": 26000, "avg_price": 31000, "max_price": 34500, "source": "seed"},
        comparables=[],
    )
    await persistence.record_item_result(job_id, "inv-1003", ItemStatus.NO_DATA_FOUND)
    await persistence.update_job_status(
        job_id, JobStatus.PARTIALLY_FAILED, "1 vehicle had no market data"
    )

    print(f"Created sample scan {job_id} for owner {owner_id}")
    await close_db()


if __name__ == "__main__":
    asyncio.run(seed(sys.argv[1] if len(sys.argv) > 1 else "dev-user"))
