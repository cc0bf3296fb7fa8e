from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

ConfigUpdateHandler = Callable[[dict[str, Any]], Awaitable[None]]


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or value == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _sanitize_service_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    redis_config_key: str
    firestore_project_id: str | None
    firestore_config_doc: str
    firestore_config_leaf_doc_id: str
    service_collection: str
    service_id: str
    service_env: str
    run_id: str
    runs_collection: str
    events_collection: str
    jobs_collection: str
    daily_collection: str
    metrics_collection: str
    metrics_doc_id: str
    config_schema_version: int
    job_prefix: str
    job_owner_prefix: str
    quote_prefix: str
    submission_prefix: str
    job_submissions_prefix: str
    heartbeat_prefix: str
    otc_bucket_prefix: str
    queue_key: str
    queue_processing_prefix: str
    queue_dedupe_prefix: str
    queue_dedupe_ttl_seconds: int
    metrics_counter_key: str
    metrics_gauge_key: str
    metrics_summary_key: str
    metrics_ttl_seconds: int

    @classmethod
    def from_env(cls) -> "StorageSettings":
        service_collection = os.getenv("SERVICE_COLLECTION", "services").strip("/") or "services"
        service_id = _sanitize_service_id(os.getenv("SERVICE_ID", "rfqm-worker"), "rfqm-worker")
        default_config_doc = f"{service_collection}/{service_id}/config/runtime"

        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            redis_config_key=os.getenv("REDIS_CONFIG_KEY", "rfqm:config"),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            firestore_config_doc=os.getenv("FIRESTORE_CONFIG_DOC") or default_config_doc,
            firestore_config_leaf_doc_id=os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID", "runtime"),
            service_collection=service_collection,
            service_id=service_id,
            service_env=os.getenv("SERVICE_ENV", "dev"),
            run_id=os.getenv("SERVICE_RUN_ID")
            or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ"),
            runs_collection=os.getenv("FIRESTORE_RUNS_COLLECTION", "runs"),
            events_collection=os.getenv("FIRESTORE_EVENTS_COLLECTION", "events"),
            jobs_collection=os.getenv("FIRESTORE_JOBS_COLLECTION", "jobs"),
            daily_collection=os.getenv("FIRESTORE_DAILY_COLLECTION", "jobs_daily"),
            metrics_collection=os.getenv("FIRESTORE_METRICS_COLLECTION", "metrics"),
            metrics_doc_id=os.getenv("FIRESTORE_METRICS_DOC_ID", "runtime"),
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
            job_prefix=os.getenv("REDIS_JOB_PREFIX", "rfqm:job"),
            job_owner_prefix=os.getenv("REDIS_JOB_OWNER_PREFIX", "rfqm:job_owner"),
            quote_prefix=os.getenv("REDIS_QUOTE_PREFIX", "rfqm:quote"),
            submission_prefix=os.getenv("REDIS_SUBMISSION_PREFIX", "rfqm:submission"),
            job_submissions_prefix=os.getenv("REDIS_JOB_SUBMISSIONS_PREFIX", "rfqm:job_submissions"),
            heartbeat_prefix=os.getenv("REDIS_HEARTBEAT_PREFIX", "rfqm:heartbeat"),
            otc_bucket_prefix=os.getenv("REDIS_OTC_BUCKET_PREFIX", "rfqm:otc_bucket"),
            queue_key=os.getenv("REDIS_QUEUE_KEY", "rfqm:queue"),
            queue_processing_prefix=os.getenv("REDIS_QUEUE_PROCESSING_PREFIX", "rfqm:queue:processing"),
            queue_dedupe_prefix=os.getenv("REDIS_QUEUE_DEDUPE_PREFIX", "rfqm:queue:dedupe"),
            queue_dedupe_ttl_seconds=max(1, to_int(os.getenv("REDIS_QUEUE_DEDUPE_TTL_SECONDS"), 300)),
            metrics_counter_key=os.getenv("REDIS_METRICS_COUNTER_KEY", "rfqm:metrics:counters"),
            metrics_gauge_key=os.getenv("REDIS_METRICS_GAUGE_KEY", "rfqm:metrics:gauges"),
            metrics_summary_key=os.getenv("REDIS_METRICS_SUMMARY_KEY", "rfqm:metrics:summary"),
            metrics_ttl_seconds=max(0, to_int(os.getenv("REDIS_METRICS_TTL_SECONDS"), 172800)),
        )
