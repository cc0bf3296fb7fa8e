from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from rfqm.common import log_event

from .helpers import dump_json as _dump_json


@dataclass(slots=True, frozen=True)
class QueueMessage:
    raw: str
    payload: dict[str, Any]

    @property
    def order_hash(self) -> str:
        return str(self.payload.get("orderHash") or "")


class RedisQueueOps:
    def _processing_key(self, consumer_id: str) -> str:
        return f"{self.settings.queue_processing_prefix}:{consumer_id.lower()}"

    async def enqueue(self, group_key: str, dedupe_key: str, payload: dict[str, Any]) -> bool:
        """Push ``payload`` unless the same dedupe key was enqueued recently.

        Returns ``False`` for a duplicate, which callers treat as success.
        """
        redis_client = self._require_redis()
        acquired = await redis_client.set(
            f"{self.settings.queue_dedupe_prefix}:{dedupe_key.lower()}",
            group_key,
            ex=self.settings.queue_dedupe_ttl_seconds,
            nx=True,
        )
        if not acquired:
            log_event(
                self._logger,
                level="info",
                event="queue_duplicate_skipped",
                message="Skipping duplicate queue message",
                dedupe_key=dedupe_key,
            )
            return False

        await redis_client.rpush(self.settings.queue_key, _dump_json({**payload, "groupKey": group_key}))
        return True

    async def dequeue(self, consumer_id: str, *, timeout_seconds: float) -> QueueMessage | None:
        redis_client = self._require_redis()
        raw = await redis_client.blmove(
            self.settings.queue_key,
            self._processing_key(consumer_id),
            timeout_seconds,
            "LEFT",
            "RIGHT",
        )
        if raw is None:
            return None

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = None
        if not isinstance(payload, dict):
            log_event(
                self._logger,
                level="error",
                event="queue_message_malformed",
                message="Dropping malformed queue message",
                raw=raw,
            )
            await redis_client.lrem(self._processing_key(consumer_id), 1, raw)
            return None
        return QueueMessage(raw=raw, payload=payload)

    async def ack(self, consumer_id: str, message: QueueMessage) -> None:
        redis_client = self._require_redis()
        await redis_client.lrem(self._processing_key(consumer_id), 1, message.raw)

    async def requeue_inflight(self, consumer_id: str) -> int:
        redis_client = self._require_redis()
        processing_key = self._processing_key(consumer_id)
        moved = 0
        while await redis_client.lmove(processing_key, self.settings.queue_key, "RIGHT", "LEFT") is not None:
            moved += 1
        if moved:
            log_event(
                self._logger,
                level="warning",
                event="queue_inflight_requeued",
                message="Returned unacknowledged messages to the queue",
                count=moved,
                consumer_id=consumer_id,
            )
        return moved

    async def queue_depth(self) -> int:
        redis_client = self._require_redis()
        return int(await redis_client.llen(self.settings.queue_key))
