from __future__ import annotations

import asyncio
import contextlib
import os
from datetime import datetime, timezone
from typing import Any, Awaitable

from google.cloud import firestore

from rfqm.common import guarded_call, log_event
from rfqm.settlement.types import RfqmJob

from .helpers import utc_day_id as _utc_day_id
from .settings import ConfigUpdateHandler


class FirestoreStorageOps:
    @staticmethod
    def _normalize_doc_path(doc_path: str, leaf_doc_id: str) -> tuple[str, bool]:
        normalized = doc_path.strip("/")
        if not normalized:
            raise ValueError("FIRESTORE_CONFIG_DOC must not be empty.")

        segments = [part for part in normalized.split("/") if part]
        if len(segments) % 2 == 0:
            return normalized, False

        return f"{normalized}/{leaf_doc_id}", True

    async def mark_run_stopped(self, *, reason: str) -> None:
        if self._run_doc_ref is None:
            return

        payload = {
            "status": "stopped",
            "stop_reason": reason,
            "stopped_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        await guarded_call(
            lambda: asyncio.to_thread(self._run_doc_ref.set, payload, merge=True),
            logger=self._logger,
            event="run_status_update_failed",
            message="Failed to update run status",
        )

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        if self._firestore is None or self._events_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="publish_skipped",
                message="Skipping Firestore event because client is not ready",
            )
            return

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc),
            "server_timestamp": firestore.SERVER_TIMESTAMP,
            "level": level,
            "event": event,
            "message": message,
            "service_id": self.settings.service_id,
            "run_id": self.settings.run_id,
            "env": self.settings.service_env,
            "schema_version": self.settings.config_schema_version,
        }
        if details:
            payload["details"] = details

        await guarded_call(
            lambda: asyncio.to_thread(self._events_collection_ref.add, payload),
            logger=self._logger,
            event="publish_failed",
            message="Failed to publish Firestore event",
            level="error",
        )

    def start_config_listener(
        self,
        loop: asyncio.AbstractEventLoop,
        on_update: ConfigUpdateHandler | None = None,
    ) -> None:
        if self._config_doc_ref is None:
            raise RuntimeError("StorageGateway is not connected.")
        if self._watch is not None:
            return

        def schedule(coro: Awaitable[None]) -> None:
            task = asyncio.create_task(coro)

            def on_done(done_task: asyncio.Task[None]) -> None:
                with contextlib.suppress(asyncio.CancelledError):
                    error = done_task.exception()
                    if error:
                        log_event(
                            self._logger,
                            level="error",
                            event="config_sync_failed",
                            message="Config sync task failed",
                            error=str(error),
                        )

            task.add_done_callback(on_done)

        def on_snapshot(doc_snapshot: list[Any], _changes: list[Any], _read_time: Any) -> None:
            if not doc_snapshot or loop.is_closed():
                return
            snapshot = doc_snapshot[0]
            data = snapshot.to_dict() if snapshot.exists else {}
            loop.call_soon_threadsafe(schedule, self._handle_config_update(data or {}, on_update))

        self._watch = self._config_doc_ref.on_snapshot(on_snapshot)
        log_event(
            self._logger,
            level="info",
            event="config_watch_started",
            message="Config watcher started",
        )

    async def _handle_config_update(
        self,
        config: dict[str, Any],
        on_update: ConfigUpdateHandler | None,
    ) -> None:
        await self.sync_config_to_redis(config, source="snapshot")
        if on_update:
            await on_update(config)

    async def record_job_outcome(self, job: RfqmJob, *, latency_seconds: float | None = None) -> None:
        if self._firestore is None or self._jobs_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="job_audit_skipped",
                message="Skipping job audit record because Firestore client is not ready",
                order_hash=job.order_hash,
            )
            return

        payload = job.to_dict()
        payload["service_id"] = self.settings.service_id
        payload["run_id"] = self.settings.run_id
        payload["env"] = self.settings.service_env
        payload["schema_version"] = self.settings.config_schema_version
        payload["recorded_at"] = firestore.SERVER_TIMESTAMP
        if latency_seconds is not None:
            payload["process_latency_seconds"] = round(latency_seconds, 3)

        job_ref = self._jobs_collection_ref.document(job.order_hash.lower())

        async def write_job() -> bool:
            await asyncio.to_thread(job_ref.set, payload, merge=True)
            return True

        written = await guarded_call(
            write_job,
            logger=self._logger,
            event="job_audit_failed",
            message="Failed to persist job audit record",
            level="error",
            default=False,
            order_hash=job.order_hash,
        )
        if not written:
            return

        await guarded_call(
            lambda: self._update_job_aggregates(job),
            logger=self._logger,
            event="job_aggregate_update_failed",
            message="Failed to update job aggregates",
            level="error",
            order_hash=job.order_hash,
        )

    async def _update_job_aggregates(self, job: RfqmJob) -> None:
        if self._metrics_doc_ref is None or self._daily_collection_ref is None:
            return

        base_payload: dict[str, Any] = {
            "updated_at": firestore.SERVER_TIMESTAMP,
            "job_count": firestore.Increment(1),
            "succeeded_job_count": firestore.Increment(1 if job.status.is_succeeded else 0),
            "failed_job_count": firestore.Increment(1 if job.status.is_failed else 0),
            f"status_counts.{job.status.value}": firestore.Increment(1),
            "service_id": self.settings.service_id,
            "env": self.settings.service_env,
            "schema_version": self.settings.config_schema_version,
        }

        runtime_payload = dict(base_payload)
        runtime_payload["run_id"] = self.settings.run_id
        runtime_payload["last_order_hash"] = job.order_hash
        runtime_payload["last_status"] = job.status.value

        day_id = _utc_day_id()
        daily_payload = dict(base_payload)
        daily_payload["day_id"] = day_id

        daily_doc_ref = self._daily_collection_ref.document(day_id)
        await asyncio.gather(
            asyncio.to_thread(self._metrics_doc_ref.set, runtime_payload, merge=True),
            asyncio.to_thread(daily_doc_ref.set, daily_payload, merge=True),
        )

    async def _ensure_service_namespace(self) -> None:
        if self._service_doc_ref is None or self._run_doc_ref is None:
            raise RuntimeError("Firestore namespace references are not initialized.")

        service_payload: dict[str, Any] = {
            "service_id": self.settings.service_id,
            "env": self.settings.service_env,
            "schema_version": self.settings.config_schema_version,
            "config_doc": self._resolved_firestore_config_doc,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        run_payload: dict[str, Any] = {
            "run_id": self.settings.run_id,
            "service_id": self.settings.service_id,
            "env": self.settings.service_env,
            "status": "running",
            "pid": os.getpid(),
            "started_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        await asyncio.gather(
            asyncio.to_thread(self._service_doc_ref.set, service_payload, merge=True),
            asyncio.to_thread(self._run_doc_ref.set, run_payload, merge=True),
        )

    def _initialize_namespace_refs(self) -> None:
        firestore_client = self._require_firestore()

        service_doc_path = f"{self.settings.service_collection}/{self.settings.service_id}"
        self._service_doc_ref = firestore_client.document(service_doc_path)
        self._run_doc_ref = self._service_doc_ref.collection(self.settings.runs_collection).document(
            self.settings.run_id
        )
        self._events_collection_ref = self._run_doc_ref.collection(self.settings.events_collection)
        self._jobs_collection_ref = self._service_doc_ref.collection(self.settings.jobs_collection)
        self._daily_collection_ref = self._service_doc_ref.collection(self.settings.daily_collection)
        self._metrics_doc_ref = self._service_doc_ref.collection(self.settings.metrics_collection).document(
            self.settings.metrics_doc_id
        )

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore
