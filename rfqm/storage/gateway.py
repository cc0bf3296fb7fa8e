from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Any

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from rfqm.common import log_event

from .firestore_ops import FirestoreStorageOps
from .metrics_ops import RedisMetricsOps
from .queue_ops import RedisQueueOps
from .redis_ops import RedisStorageOps
from .settings import StorageSettings

# BLMOVE/LMOVE back the at-least-once job queue.
MIN_REDIS_VERSION = (6, 2)

_FIRESTORE_REFS = (
    "_service_doc_ref",
    "_run_doc_ref",
    "_events_collection_ref",
    "_jobs_collection_ref",
    "_daily_collection_ref",
    "_metrics_doc_ref",
    "_config_doc_ref",
)


def parse_redis_version(raw: str) -> tuple[int, ...]:
    parts: list[int] = []
    for piece in str(raw).split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        if not digits:
            break
        parts.append(int(digits))
    return tuple(parts)


class StorageGateway(FirestoreStorageOps, RedisStorageOps, RedisQueueOps, RedisMetricsOps):
    """Job Store, Queue Service and Metrics Sink over Redis, audit trail over Firestore."""

    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None
        self._firestore: firestore.Client | None = None
        self._watch: Any | None = None
        self._resolved_firestore_config_doc = self.settings.firestore_config_doc
        self._reset_firestore_refs()

    @property
    def service_id(self) -> str:
        return self.settings.service_id

    @property
    def run_id(self) -> str:
        return self.settings.run_id

    async def connect(self) -> None:
        await self._connect_redis()
        await self._connect_firestore()
        await self._mirror_startup_config()

    async def _connect_redis(self) -> None:
        client = redis.from_url(self.settings.redis_url, decode_responses=True)
        self._redis = client
        await client.ping()

        server_info = await client.info("server")
        version = parse_redis_version(server_info.get("redis_version", ""))
        if version < MIN_REDIS_VERSION:
            raise RuntimeError(
                f"Redis {'.'.join(map(str, MIN_REDIS_VERSION))}+ is required for the job queue, "
                f"server reports {server_info.get('redis_version')!r}"
            )

        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
            redis_version=server_info.get("redis_version"),
            queue_depth=await self.queue_depth(),
        )

    async def _connect_firestore(self) -> None:
        firebase_credentials = os.getenv("FIREBASE_CREDENTIALS")
        if firebase_credentials and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = firebase_credentials

        self._firestore = firestore.Client(project=self.settings.firestore_project_id)
        self._resolved_firestore_config_doc, was_collection_path = self._normalize_doc_path(
            self.settings.firestore_config_doc,
            self.settings.firestore_config_leaf_doc_id,
        )
        if was_collection_path:
            log_event(
                self._logger,
                level="warning",
                event="config_doc_path_normalized",
                message="FIRESTORE_CONFIG_DOC pointed at a collection, using its leaf document",
                doc_path=self._resolved_firestore_config_doc,
            )

        self._initialize_namespace_refs()
        await self._ensure_service_namespace()
        self._config_doc_ref = self._firestore.document(self._resolved_firestore_config_doc)

    async def _mirror_startup_config(self) -> None:
        if self._config_doc_ref is None:
            raise RuntimeError("Firestore config document reference is not initialized.")

        snapshot = await asyncio.to_thread(self._config_doc_ref.get)
        if snapshot.exists:
            await self.sync_config_to_redis(snapshot.to_dict() or {}, source="startup")
        else:
            # Workers still start on env maker offerings.
            await self.sync_config_to_redis({}, source="startup_missing")
            log_event(
                self._logger,
                level="warning",
                event="config_missing",
                message="Runtime config document does not exist, using env defaults",
                doc_path=self._resolved_firestore_config_doc,
            )

        log_event(
            self._logger,
            level="info",
            event="firestore_connected",
            message="Connected to Firestore",
            doc_path=self._resolved_firestore_config_doc,
            service_id=self.service_id,
            run_id=self.run_id,
        )

    async def healthcheck(self) -> None:
        """Raise unless both the job store and the config document are reachable."""
        redis_client = self._require_redis()
        await redis_client.ping()
        await redis_client.llen(self.settings.queue_key)

        if self._config_doc_ref is None:
            raise RuntimeError("Firestore config document reference is not initialized.")
        await asyncio.to_thread(self._config_doc_ref.get)

    async def close(self) -> None:
        if self._watch is not None:
            with contextlib.suppress(Exception):  # snapshot thread may already be gone
                self._watch.unsubscribe()
            self._watch = None

        if self._redis is not None:
            client, self._redis = self._redis, None
            await client.aclose()

        self._reset_firestore_refs()
        self._firestore = None

    def _reset_firestore_refs(self) -> None:
        for attribute in _FIRESTORE_REFS:
            setattr(self, attribute, None)
