from __future__ import annotations

from fastapi import Depends, Request
from starlette.requests import HTTPConnection

from market_scan.middleware.auth import require_owner
from market_scan.services.history import HistoryBrowser
from market_scan.services.notifier import ScanNotifier
from market_scan.services.persistence import PersistenceAdapter
from market_scan.services.submitter import JobRequestSubmitter


def get_settings(conn: HTTPConnection):
    """Dependency: get application settings from app state."""
    return conn.app.state.settings


async def get_redis(conn: HTTPConnection):
    """Dependency: get the Redis client from app state."""
    return getattr(conn.app.state, "redis", None)


def get_persistence(conn: HTTPConnection) -> PersistenceAdapter:
    from market_scan.db.session import get_session_factory

    settings = conn.app.state.settings
    return PersistenceAdapter(get_session_factory(), default_currency=settings.DEFAULT_CURRENCY)


def get_submitter(
    conn: HTTPConnection, persistence: PersistenceAdapter = Depends(get_persistence)
) -> JobRequestSubmitter:
    settings = conn.app.state.settings
    return JobRequestSubmitter(
        persistence,
        conn.app.state.http_client,
        settings.ANALYSIS_SERVICE_URL,
        max_batch_size=settings.MAX_BATCH_SIZE,
        max_attempts=settings.ANALYSIS_SUBMIT_RETRIES,
    )


def get_history(
    conn: HTTPConnection, persistence: PersistenceAdapter = Depends(get_persistence)
) -> HistoryBrowser:
    settings = conn.app.state.settings
    return HistoryBrowser(
        persistence, limit=settings.HISTORY_LIMIT, label_items=settings.HISTORY_LABEL_ITEMS
    )


async def get_notifier(redis=Depends(get_redis)) -> ScanNotifier:
    return ScanNotifier(redis)


async def get_owner(owner_id: str = Depends(require_owner)) -> str:
    """Dependency: require an authenticated dealer user."""
    return owner_id


def request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")
