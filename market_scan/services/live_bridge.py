from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field

from pydantic import ValidationError as SchemaValidationError
from redis.exceptions import RedisError

from market_scan.schemas.scans import JobStatus
from market_scan.services.notifier import job_channel, results_channel
from market_scan.services.persistence import build_item_result
from market_scan.services.state_store import JobStateStore
from market_scan.utils.exceptions import SubscriptionError
from market_scan.utils.logging import get_logger
from market_scan.utils.metrics import ACTIVE_SUBSCRIPTIONS, PUSH_EVENTS

logger = get_logger(__name__)

DISCONNECT_WARNING = "Live updates were interrupted. Reopen the scan to resume updates."


@dataclass
class SubscriptionHandle:
    job_id: uuid.UUID
    pubsub: object
    task: asyncio.Task | None = None
    closed: bool = False
    channels: tuple[str, ...] = field(default=())


class LiveUpdateBridge:
    """Feeds job and result push events for one scan into a JobStateStore.

    Reconnection is never automatic: after a drop the owner calls
    subscribe() again.
    """

    def __init__(
        self,
        redis,
        store: JobStateStore,
        poll_timeout: float = 1.0,
        default_currency: str = "EUR",
    ) -> None:
        self.redis = redis
        self.store = store
        self.poll_timeout = poll_timeout
        self.default_currency = default_currency
        self.handle: SubscriptionHandle | None = None

    @property
    def is_subscribed(self) -> bool:
        return self.handle is not None and not self.handle.closed

    async def subscribe(self, job_id: uuid.UUID | str) -> SubscriptionHandle:
        await self.unsubscribe()
        if self.redis is None:
            raise SubscriptionError("Live updates are unavailable (no push transport)")

        job_uuid = uuid.UUID(str(job_id))
        channels = (job_channel(job_uuid), results_channel(job_uuid))
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(*channels)
        except RedisError as e:
            logger.error("Live subscription failed", job_id=str(job_uuid), error=str(e))
            await self._close_pubsub(pubsub)
            raise SubscriptionError(f"Could not open live updates: {e}") from e

        handle = SubscriptionHandle(job_id=job_uuid, pubsub=pubsub, channels=channels)
        handle.task = asyncio.create_task(self._listen(handle))
        self.handle = handle
        ACTIVE_SUBSCRIPTIONS.inc()
        logger.info("Live updates subscribed", job_id=str(job_uuid))
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle | None = None) -> None:
        handle = handle or self.handle
        if handle is None:
            return
        if handle is self.handle:
            self.handle = None
        if handle.closed:
            return
        handle.closed = True
        ACTIVE_SUBSCRIPTIONS.dec()

        task = handle.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_pubsub(handle.pubsub, handle.channels)
        logger.info("Live updates unsubscribed", job_id=str(handle.job_id))

    @staticmethod
    async def _close_pubsub(pubsub, channels: tuple[str, ...] = ()) -> None:
        try:
            if channels:
                await pubsub.unsubscribe(*channels)
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug("Ignoring error while closing pubsub", error=str(e))

    async def _listen(self, handle: SubscriptionHandle) -> None:
        try:
            while not handle.closed:
                message = await handle.pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_timeout
                )
                if message is None or message.get("type") != "message":
                    continue
                self.dispatch(handle.job_id, message["channel"], message["data"])
        except (RedisError, OSError) as e:
            if handle.closed:
                return
            logger.warning("Live updates disconnected", job_id=str(handle.job_id), error=str(e))
            self.store.report_warning(DISCONNECT_WARNING)
            await self.unsubscribe(handle)
        except Exception:
            # Store listener failures end the subscription
            if handle.closed:
                return
            await self.unsubscribe(handle)
            logger.exception("Live update listener failed", job_id=str(handle.job_id))

    def dispatch(self, job_id: uuid.UUID, channel, data) -> bool:
        """Route one raw push message to the state store."""
        if isinstance(channel, bytes):
            channel = channel.decode()
        if channel == job_channel(job_id):
            return self.handle_job_event(job_id, data)
        if channel == results_channel(job_id):
            return self.handle_result_event(job_id, data)
        PUSH_EVENTS.labels(channel="unknown", outcome="ignored").inc()
        return False

    @staticmethod
    def _decode(data) -> dict | None:
        if isinstance(data, (bytes, str)):
            try:
                data = json.loads(data)
            except ValueError:
                return None
        return data if isinstance(data, dict) else None

    def handle_job_event(self, job_id: uuid.UUID, data) -> bool:
        payload = self._decode(data)
        try:
            status = JobStatus(payload["status"])
        except (TypeError, KeyError, ValueError):
            logger.warning("Malformed job push event", job_id=str(job_id))
            PUSH_EVENTS.labels(channel="job", outcome="malformed").inc()
            return False
        applied = self.store.apply_job_update(
            status,
            payload.get("error_message"),
            job_id=payload.get("job_id") or job_id,
        )
        PUSH_EVENTS.labels(channel="job", outcome="applied" if applied else "ignored").inc()
        return applied

    def handle_result_event(self, job_id: uuid.UUID, data) -> bool:
        payload = self._decode(data)
        try:
            result = build_item_result(
                payload["item_id"],
                payload["status"],
                analysis=payload.get("result_payload"),
                error_detail=payload.get("error_detail"),
                default_currency=self.default_currency,
            )
        except (TypeError, KeyError, ValueError, SchemaValidationError):
            logger.warning("Malformed result push event", job_id=str(job_id))
            PUSH_EVENTS.labels(channel="results", outcome="malformed").inc()
            return False
        applied = self.store.apply_item_result(
            result.item_id, result, job_id=payload.get("job_id") or job_id
        )
        PUSH_EVENTS.labels(channel="results", outcome="applied" if applied else "ignored").inc()
        return applied
