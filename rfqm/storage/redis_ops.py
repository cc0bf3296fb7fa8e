from __future__ import annotations

from typing import Any

from redis.asyncio.client import Redis

from rfqm.common import log_event
from rfqm.settlement.errors import JobAlreadyExistsError
from rfqm.settlement.types import (
    UNRESOLVED_JOB_STATUSES,
    RfqmJob,
    RfqmJobStatus,
    RfqmQuote,
    TransactionSubmission,
    WorkerHeartbeat,
)

from .helpers import dump_json as _dump_json
from .helpers import load_json_object as _load_json_object
from .helpers import now_iso as _now_iso
from .helpers import serialize_for_redis as _serialize_for_redis


class RedisStorageOps:
    @staticmethod
    def _key(prefix: str, identifier: str) -> str:
        return f"{prefix}:{identifier.lower()}"

    async def sync_config_to_redis(self, config: dict[str, Any], *, source: str) -> None:
        redis_client = self._require_redis()

        mapping = {str(key): _serialize_for_redis(value) for key, value in config.items()}
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.delete(self.settings.redis_config_key)
        if mapping:
            pipeline.hset(self.settings.redis_config_key, mapping=mapping)
        await pipeline.execute()
        log_event(
            self._logger,
            level="info",
            event="config_synced",
            message="Runtime config synced to Redis",
            items=len(mapping),
            source=source,
        )

    async def get_runtime_config(self) -> dict[str, str]:
        redis_client = self._require_redis()
        return await redis_client.hgetall(self.settings.redis_config_key)

    async def write_job(self, job: RfqmJob) -> None:
        redis_client = self._require_redis()
        written = await redis_client.set(
            self._key(self.settings.job_prefix, job.order_hash),
            _dump_json(job.to_dict()),
            nx=True,
        )
        if not written:
            raise JobAlreadyExistsError(job.order_hash)

    async def update_job(self, job: RfqmJob) -> None:
        redis_client = self._require_redis()
        await redis_client.set(
            self._key(self.settings.job_prefix, job.order_hash),
            _dump_json(job.to_dict()),
        )

    async def find_job_by_hash(self, order_hash: str) -> RfqmJob | None:
        redis_client = self._require_redis()
        payload = _load_json_object(await redis_client.get(self._key(self.settings.job_prefix, order_hash)))
        return RfqmJob.from_dict(payload) if payload else None

    async def claim_job(self, order_hash: str, worker_address: str) -> bool:
        """First writer wins; a repeated claim by the current owner succeeds."""
        redis_client = self._require_redis()
        owner_key = self._key(self.settings.job_owner_prefix, order_hash)
        normalized_worker = worker_address.lower()

        acquired = await redis_client.set(owner_key, normalized_worker, nx=True)
        if acquired:
            return True

        current_owner = await redis_client.get(owner_key)
        return str(current_owner or "").lower() == normalized_worker

    async def _scan_jobs(self) -> list[RfqmJob]:
        redis_client = self._require_redis()
        jobs: list[RfqmJob] = []
        async for key in redis_client.scan_iter(match=f"{self.settings.job_prefix}:*", count=500):
            payload = _load_json_object(await redis_client.get(key))
            if payload:
                jobs.append(RfqmJob.from_dict(payload))
        jobs.sort(key=lambda job: job.created_at)
        return jobs

    async def find_jobs_with_statuses(self, statuses: set[RfqmJobStatus]) -> list[RfqmJob]:
        return [job for job in await self._scan_jobs() if job.status in statuses]

    async def find_unresolved_for_worker(self, worker_address: str) -> list[RfqmJob]:
        normalized_worker = worker_address.lower()
        return [
            job
            for job in await self._scan_jobs()
            if job.status in UNRESOLVED_JOB_STATUSES and (job.worker_address or "").lower() == normalized_worker
        ]

    async def write_quote(self, quote: RfqmQuote) -> None:
        redis_client = self._require_redis()
        await redis_client.set(
            self._key(self.settings.quote_prefix, quote.order_hash),
            _dump_json(quote.to_dict()),
        )

    async def find_quote_by_hash(self, order_hash: str) -> RfqmQuote | None:
        redis_client = self._require_redis()
        payload = _load_json_object(await redis_client.get(self._key(self.settings.quote_prefix, order_hash)))
        return RfqmQuote.from_dict(payload) if payload else None

    async def write_submission(self, submission: TransactionSubmission) -> None:
        redis_client = self._require_redis()
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.set(
            self._key(self.settings.submission_prefix, submission.transaction_hash),
            _dump_json(submission.to_dict()),
        )
        pipeline.rpush(
            self._key(self.settings.job_submissions_prefix, submission.order_hash),
            submission.transaction_hash.lower(),
        )
        await pipeline.execute()

    async def update_submissions(self, submissions: list[TransactionSubmission]) -> None:
        if not submissions:
            return
        redis_client = self._require_redis()
        pipeline = redis_client.pipeline(transaction=True)
        for submission in submissions:
            pipeline.set(
                self._key(self.settings.submission_prefix, submission.transaction_hash),
                _dump_json(submission.to_dict()),
            )
        await pipeline.execute()

    async def find_submission_by_hash(self, transaction_hash: str) -> TransactionSubmission | None:
        redis_client = self._require_redis()
        payload = _load_json_object(
            await redis_client.get(self._key(self.settings.submission_prefix, transaction_hash))
        )
        return TransactionSubmission.from_dict(payload) if payload else None

    async def find_submissions_by_order_hash(self, order_hash: str) -> list[TransactionSubmission]:
        redis_client = self._require_redis()
        hashes = await redis_client.lrange(self._key(self.settings.job_submissions_prefix, order_hash), 0, -1)
        submissions: list[TransactionSubmission] = []
        seen: set[str] = set()
        for transaction_hash in hashes:
            if transaction_hash in seen:
                continue
            seen.add(transaction_hash)
            submission = await self.find_submission_by_hash(transaction_hash)
            if submission is not None:
                submissions.append(submission)
        return submissions

    async def write_heartbeat(self, heartbeat: WorkerHeartbeat) -> None:
        redis_client = self._require_redis()
        await redis_client.hset(
            self._key(self.settings.heartbeat_prefix, f"{heartbeat.chain_id}:{heartbeat.worker_address}"),
            mapping={
                "worker_address": heartbeat.worker_address,
                "worker_index": str(heartbeat.worker_index),
                "balance": str(heartbeat.balance),
                "chain_id": str(heartbeat.chain_id),
                "timestamp": heartbeat.timestamp or _now_iso(),
            },
        )

    async def find_heartbeats(self, chain_id: int) -> list[WorkerHeartbeat]:
        redis_client = self._require_redis()
        heartbeats: list[WorkerHeartbeat] = []
        pattern = f"{self.settings.heartbeat_prefix}:{chain_id}:*"
        async for key in redis_client.scan_iter(match=pattern, count=200):
            payload = await redis_client.hgetall(key)
            if not payload:
                continue
            heartbeats.append(
                WorkerHeartbeat(
                    worker_address=str(payload.get("worker_address", "")),
                    worker_index=int(payload.get("worker_index") or 0),
                    balance=int(payload.get("balance") or 0),
                    chain_id=int(payload.get("chain_id") or chain_id),
                    timestamp=str(payload.get("timestamp", "")),
                )
            )
        return heartbeats

    async def next_otc_order_bucket(self, chain_id: int) -> int:
        redis_client = self._require_redis()
        return int(await redis_client.incr(f"{self.settings.otc_bucket_prefix}:{chain_id}"))

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
