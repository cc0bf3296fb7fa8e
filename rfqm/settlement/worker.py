from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Callable

from rfqm.common import guarded_call, log_event

from .errors import JobProcessingError, NotFoundError
from .last_look import LastLookCoordinator
from .types import JobStore, MetricsSink, RfqmJob, RfqmJobStatus, WorkerHeartbeat, now_iso
from .watcher import TransactionWatcher

HEARTBEAT_INTERVAL_SECONDS = 30.0
WEI_PER_ETHER = Decimal(10) ** 18


class RfqmWorker:
    """Job processing boundary and pre-work readiness checks for one worker address."""

    def __init__(
        self,
        *,
        store: JobStore,
        last_look: LastLookCoordinator,
        watcher: TransactionWatcher,
        blockchain: Any,
        metrics: MetricsSink,
        logger: logging.Logger,
        chain_id: int,
        worker_index: int,
        min_balance_gas_units: int,
        heartbeat_interval_seconds: float = HEARTBEAT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._last_look = last_look
        self._watcher = watcher
        self._blockchain = blockchain
        self._metrics = metrics
        self._logger = logger
        self._chain_id = chain_id
        self._worker_index = worker_index
        self._min_balance_gas_units = min_balance_gas_units
        self._heartbeat_interval_seconds = heartbeat_interval_seconds
        self._clock = clock
        self._last_heartbeat_at: float | None = None

    async def process_job(self, order_hash: str, worker_address: str) -> RfqmJobStatus | None:
        """Run one job to a final status. Never raises except on cancellation."""
        started_at = time.monotonic()
        final_status: RfqmJobStatus | None = None
        log_event(
            self._logger,
            level="info",
            event="job_processing_started",
            message="Start process job",
            order_hash=order_hash,
            worker_address=worker_address,
        )
        try:
            job = await self._store.find_job_by_hash(order_hash)
            if job is None:
                raise NotFoundError("job", order_hash)

            if job.status.is_resolved:
                log_event(
                    self._logger,
                    level="info",
                    event="job_already_resolved",
                    message="Job already reached a final status, skipping",
                    order_hash=order_hash,
                    worker_address=worker_address,
                    status=job.status.value,
                )
                return job.status

            if job.worker_address and job.worker_address.lower() != worker_address.lower():
                raise RuntimeError(
                    f"Worker {worker_address} attempted to process job {order_hash} owned by {job.worker_address}"
                )
            if not await self._store.claim_job(order_hash, worker_address):
                raise RuntimeError(f"Worker {worker_address} could not claim job {order_hash}")

            job = job.with_updates(worker_address=worker_address)
            await self._store.update_job(job)

            prepared = await self._last_look.prepare_job(job, worker_address)
            final_status = await self._watcher.submit_job_to_chain(prepared.job, worker_address, prepared.calldata)

            await self._store.update_job(prepared.job.with_updates(status=final_status))
            if final_status == RfqmJobStatus.FAILED_EXPIRED:
                raise JobProcessingError(order_hash, final_status, "Job expired")

            log_event(
                self._logger,
                level="info",
                event="job_completed",
                message="Job completed",
                order_hash=order_hash,
                worker_address=worker_address,
                status=final_status.value,
            )
            await self._metrics.increment("rfqm_job_completed", address=worker_address, chain_id=self._chain_id)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            if isinstance(error, JobProcessingError):
                final_status = error.status
            log_event(
                self._logger,
                level="error",
                event="job_completed_with_error",
                message="Job completed with error",
                order_hash=order_hash,
                worker_address=worker_address,
                error=str(error),
                error_type=type(error).__name__,
            )
            await self._metrics.increment(
                "rfqm_job_completed_with_error",
                address=worker_address,
                chain_id=self._chain_id,
            )
        finally:
            await self._metrics.observe(
                "rfqm_process_job_latency_seconds",
                time.monotonic() - started_at,
                chain_id=self._chain_id,
            )
        return final_status

    async def before_logic(self, worker_address: str) -> bool:
        """Readiness gate run before each intake: gas, balance, crash repair, heartbeat."""
        try:
            gas_price = await self._blockchain.get_gas_price_estimate()
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="error",
                event="worker_gas_price_failed",
                message="Current gas price is unable to be fetched, marking worker as not ready",
                worker_address=worker_address,
                error=str(error),
            )
            await self._metrics.increment("rfqm_worker_not_ready", address=worker_address, chain_id=self._chain_id)
            return False

        balance = await self._blockchain.get_balance(worker_address)
        balance_units = float(round(Decimal(balance) / WEI_PER_ETHER, 6))
        await self._metrics.set_gauge("rfqm_worker_balance", balance_units, address=worker_address, chain_id=self._chain_id)

        await self._repair_unresolved_jobs(worker_address)

        ready = await self._blockchain.is_worker_ready(
            worker_address,
            balance=balance,
            gas_price=gas_price,
            min_balance_gas_units=self._min_balance_gas_units,
        )
        if not ready:
            log_event(
                self._logger,
                level="warning",
                event="worker_not_ready",
                message="Worker is not ready",
                worker_address=worker_address,
                balance=str(balance),
                gas_price=str(gas_price),
            )
            await self._metrics.increment("rfqm_worker_not_ready", address=worker_address, chain_id=self._chain_id)
            return False

        await self._maybe_write_heartbeat(worker_address, balance)
        await self._metrics.increment("rfqm_worker_ready", address=worker_address, chain_id=self._chain_id)
        return True

    async def _repair_unresolved_jobs(self, worker_address: str) -> list[RfqmJob]:
        unresolved = await self._store.find_unresolved_for_worker(worker_address)
        if not unresolved:
            return unresolved

        log_event(
            self._logger,
            level="error",
            event="worker_unresolved_jobs",
            message="Worker has unresolved jobs, processing them before new work",
            worker_address=worker_address,
            order_hashes=[job.order_hash for job in unresolved],
        )
        await self._metrics.increment(
            "rfqm_job_repair",
            len(unresolved),
            address=worker_address,
            chain_id=self._chain_id,
        )
        for job in unresolved:
            await self.process_job(job.order_hash, worker_address)
        return unresolved

    async def _maybe_write_heartbeat(self, worker_address: str, balance: int) -> bool:
        now = self._clock()
        if self._last_heartbeat_at is not None and now - self._last_heartbeat_at < self._heartbeat_interval_seconds:
            return False

        heartbeat = WorkerHeartbeat(
            worker_address=worker_address,
            worker_index=self._worker_index,
            balance=balance,
            chain_id=self._chain_id,
            timestamp=now_iso(),
        )
        await guarded_call(
            lambda: self._store.write_heartbeat(heartbeat),
            logger=self._logger,
            event="worker_heartbeat_failed",
            message="Worker failed to write a heartbeat",
            worker_address=worker_address,
        )
        self._last_heartbeat_at = now
        return True
