from __future__ import annotations

from fastapi import APIRouter

from market_scan.api.v1.health import router as health_router
from market_scan.api.v1.live import router as live_router
from market_scan.api.v1.scans import router as scans_router

v1_router = APIRouter()

v1_router.include_router(health_router)
v1_router.include_router(live_router)
v1_router.include_router(scans_router)
