from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from market_scan.schemas.scans import BatchJobSummary, JobStatus, VehicleDescriptor
from market_scan.services import presenter
from market_scan.services.active_pointer import ActiveScanPointer
from market_scan.services.history import HistoryBrowser
from market_scan.services.live_bridge import LiveUpdateBridge
from market_scan.services.persistence import PersistenceAdapter
from market_scan.services.state_store import JobStateStore
from market_scan.services.submitter import JobRequestSubmitter
from market_scan.utils.exceptions import (
    NotFoundError,
    PersistenceError,
    ScanTrackerError,
    SubscriptionError,
)
from market_scan.utils.logging import get_logger

logger = get_logger(__name__)


class ViewMode(str, Enum):
    LIVE = "live"
    HISTORICAL = "historical"


@dataclass(frozen=True)
class Notice:
    level: str
    message: str
    code: str | None = None


class AnalysisPanel:
    """Owns the live scan for one browser session.

    The panel holds the state store, its live bridge, the history browser
    and the active-scan pointer, and contains every error those raise.
    Exactly one of the live and historical views is presented at a time.
    """

    def __init__(
        self,
        owner_id: str,
        submitter: JobRequestSubmitter,
        persistence: PersistenceAdapter,
        redis,
        pointer: ActiveScanPointer,
        history: HistoryBrowser | None = None,
        default_currency: str = "EUR",
    ) -> None:
        self.owner_id = owner_id
        self.submitter = submitter
        self.persistence = persistence
        self.pointer = pointer
        self.store = JobStateStore()
        self.bridge = LiveUpdateBridge(redis, self.store, default_currency=default_currency)
        self.history = history or HistoryBrowser(persistence)
        self.mode = ViewMode.LIVE
        self.loading = False
        self.notice: Notice | None = None
        self._on_change: list[Callable[[], None]] = []
        self.store.add_listener(self._store_changed)

    # ---------- Change notification ----------

    def on_change(self, callback: Callable[[], None]) -> None:
        self._on_change.append(callback)

    def _changed(self) -> None:
        for callback in list(self._on_change):
            callback()

    def _store_changed(self, store: JobStateStore) -> None:
        self._changed()

    def _set_notice(self, level: str, message: str, code: str | None = None) -> None:
        self.notice = Notice(level=level, message=message, code=code)
        self._changed()

    def pop_notice(self) -> Notice | None:
        notice, self.notice = self.notice, None
        return notice

    # ---------- Live scan lifecycle ----------

    async def _load_persisted(self, job_id: uuid.UUID):
        job = await self.persistence.load_job(job_id, self.owner_id)
        results = await self.persistence.load_results(job.job_id)
        return job, results

    async def resume(self) -> bool:
        """Restore the session's live scan after a reload. Returns True if one was resumed."""
        job_id = await self.pointer.get()
        if job_id is None:
            return False
        try:
            job, results = await self._load_persisted(job_id)
        except NotFoundError:
            # Cleaned up elsewhere or belongs to another user
            logger.info("Dropping stale active scan pointer", job_id=str(job_id))
            await self.pointer.clear()
            return False
        except PersistenceError as e:
            self._set_notice("error", "Couldn't restore your running scan.", code=type(e).__name__)
            return False

        await self.bridge.unsubscribe()
        self.store.restore(job, results)
        logger.info("Scan resumed", job_id=str(job.job_id), status=job.status.value)
        if not self.store.is_terminal:
            await self._follow()
        return True

    async def submit(self, vehicles: Sequence[VehicleDescriptor]) -> uuid.UUID | None:
        if self.loading:
            self._set_notice("warning", "A scan is already being submitted.")
            return None
        self.loading = True
        self._changed()
        try:
            handle = await self.submitter.submit(self.owner_id, vehicles)
        except ScanTrackerError as e:
            self._set_notice("error", e.message, code=type(e).__name__)
            return None
        finally:
            self.loading = False

        await self.bridge.unsubscribe()
        self.store.seed(handle)
        await self.pointer.set(handle.job_id)
        self.history.return_to_live()
        self.mode = ViewMode.LIVE
        await self._follow()
        self._changed()
        return handle.job_id

    async def _subscribe(self) -> bool:
        try:
            await self.bridge.subscribe(self.store.job_id)
        except SubscriptionError as e:
            self.store.report_warning(e.message)
            self._set_notice("warning", e.message, code=type(e).__name__)
            return False
        return True

    async def _follow(self) -> bool:
        """Subscribe to the live scan, then fold in what storage already holds.

        Pub/sub does not replay, so events published before the
        subscription opened are only recoverable from persisted state.
        """
        subscribed = await self._subscribe()
        job_id = self.store.job_id
        try:
            job, results = await self._load_persisted(job_id)
        except ScanTrackerError as e:
            logger.warning("Catch-up read failed", job_id=str(job_id), error=e.message)
            return subscribed
        self.store.merge(job, results)
        return subscribed

    async def resubscribe(self) -> bool:
        """User-triggered reconnect of the live scan's updates.

        The subscription opens before persisted state is re-read, so
        anything missed while disconnected is picked up.
        """
        if not self.store.has_job:
            return False
        job_id = self.store.job_id
        await self.bridge.unsubscribe()
        subscribed = False
        if not self.store.is_terminal:
            subscribed = await self._subscribe()
        try:
            job, results = await self._load_persisted(job_id)
        except NotFoundError:
            await self.dismiss()
            return False
        except PersistenceError as e:
            self._set_notice("error", e.message, code=type(e).__name__)
            return False
        self.store.merge(job, results)
        return subscribed or self.store.is_terminal

    async def dismiss(self) -> None:
        """Stop tracking the live scan. The remote analysis keeps running."""
        await self.bridge.unsubscribe()
        self.store.reset()
        await self.pointer.clear()
        self._changed()

    async def close(self) -> None:
        """Release the subscription; the pointer stays so a reload resumes."""
        await self.bridge.unsubscribe()
        self.store.remove_listener(self._store_changed)
        self._on_change.clear()

    # ---------- History ----------

    async def list_history(
        self, status_filter: Sequence[JobStatus] | None = None
    ) -> list[BatchJobSummary]:
        try:
            return await self.history.list_recent(self.owner_id, status_filter=status_filter)
        except PersistenceError as e:
            logger.warning("Scan history unavailable", owner_id=self.owner_id, error=e.message)
            self._set_notice("error", "Couldn't load scan history.", code=type(e).__name__)
            return []

    async def open_history(self, job_id: uuid.UUID | str) -> bool:
        try:
            await self.history.open(self.owner_id, job_id)
        except NotFoundError as e:
            self._set_notice("warning", e.message, code=type(e).__name__)
            return False
        except PersistenceError as e:
            self._set_notice("error", "Couldn't load that scan.", code=type(e).__name__)
            return False
        self.mode = ViewMode.HISTORICAL
        self._changed()
        return True

    def return_to_live(self) -> None:
        self.history.return_to_live()
        self.mode = ViewMode.LIVE
        self._changed()

    # ---------- Presentation ----------

    def view(self) -> dict:
        """The active presentation: the historical scan, the live scan, or idle."""
        if self.mode is ViewMode.HISTORICAL and self.history.current is not None:
            job = presenter.render_job(self.history.current)
        else:
            snapshot = self.store.snapshot()
            job = presenter.render_job(snapshot) if snapshot is not None else None
        return {
            "mode": self.mode.value,
            "loading": self.loading,
            "live_job_id": str(self.store.job_id) if self.store.job_id else None,
            "subscribed": self.bridge.is_subscribed,
            "job": job,
        }
