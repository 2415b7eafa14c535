from __future__ import annotations

import json
import uuid

from redis.exceptions import RedisError

from market_scan.schemas.scans import BatchJob, ItemResult
from market_scan.utils.logging import get_logger

logger = get_logger(__name__)


def job_channel(job_id: str | uuid.UUID) -> str:
    return f"scan:{job_id}:job"


def results_channel(job_id: str | uuid.UUID) -> str:
    return f"scan:{job_id}:results"


class ScanNotifier:
    """Publishes job-level and result-level push events on Redis channels."""

    def __init__(self, redis) -> None:
        self.redis = redis

    async def _publish(self, channel: str, message: dict) -> int:
        if self.redis is None:
            logger.warning("Redis unavailable, push event dropped", channel=channel)
            return 0
        try:
            return await self.redis.publish(channel, json.dumps(message))
        except RedisError as e:
            logger.error("Failed to publish push event", channel=channel, error=str(e))
            return 0

    async def publish_job_update(self, job: BatchJob) -> int:
        return await self._publish(
            job_channel(job.job_id),
            {
                "job_id": str(job.job_id),
                "status": job.status.value,
                "error_message": job.error_message,
            },
        )

    async def publish_item_result(
        self, job_id: str | uuid.UUID, result: ItemResult, created: bool
    ) -> int:
        return await self._publish(
            results_channel(job_id),
            {
                "event": "insert" if created else "update",
                "job_id": str(job_id),
                "item_id": result.item_id,
                "status": result.status.value,
                "result_payload": (
                    result.analysis.model_dump(mode="json") if result.analysis else None
                ),
                "error_detail": result.error_detail,
            },
        )
