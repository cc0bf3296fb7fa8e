from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from rfqm.common import guarded_call, log_event

from .errors import InvariantViolationError
from .gas import (
    MAX_PRIORITY_FEE_PER_GAS_CAP,
    RESUBMIT_GAS_ESTIMATE_FALLBACK,
    escalate_gas_fees,
    has_reached_priority_fee_cap,
    initial_gas_fees,
)
from .submission_context import SubmissionContext
from .submitter import TransactionSubmitter
from .types import JobStore, MetricsSink, RfqmJob, RfqmJobStatus

EXPIRED_GRACE_SECONDS = 120
NONCE_TOO_LOW_MARKER = "nonce too low"

_UNCONFIRMED_STATUSES = frozenset(
    {
        RfqmJobStatus.SUCCEEDED_UNCONFIRMED,
        RfqmJobStatus.FAILED_REVERTED_UNCONFIRMED,
    }
)
_CONFIRMED_STATUSES = frozenset(
    {
        RfqmJobStatus.SUCCEEDED_CONFIRMED,
        RfqmJobStatus.FAILED_REVERTED_CONFIRMED,
    }
)


def is_nonce_too_low_error(error: BaseException) -> bool:
    return NONCE_TOO_LOW_MARKER in str(error).lower()


class TransactionWatcher:
    """Submits a prepared job and watches its nonce until a receipt is final or the order expires."""

    def __init__(
        self,
        *,
        store: JobStore,
        blockchain: Any,
        submitter: TransactionSubmitter,
        metrics: MetricsSink,
        logger: logging.Logger,
        chain_id: int,
        poll_interval_seconds: float,
        initial_max_priority_fee_per_gas_gwei: float,
        max_priority_fee_per_gas_cap: int = MAX_PRIORITY_FEE_PER_GAS_CAP,
        expired_grace_seconds: float = EXPIRED_GRACE_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._blockchain = blockchain
        self._submitter = submitter
        self._metrics = metrics
        self._logger = logger
        self._chain_id = chain_id
        self._poll_interval_seconds = poll_interval_seconds
        self._initial_max_priority_fee_per_gas_gwei = initial_max_priority_fee_per_gas_gwei
        self._max_priority_fee_per_gas_cap = max_priority_fee_per_gas_cap
        self._expired_grace_seconds = expired_grace_seconds
        self._sleep = sleep
        self._clock = clock

    async def submit_job_to_chain(self, job: RfqmJob, worker_address: str, calldata: str) -> RfqmJobStatus:
        previous_submissions = await self._store.find_submissions_by_order_hash(job.order_hash)
        previous_submissions = await self._submitter.recover_presubmits(previous_submissions)

        if not previous_submissions:
            if job.expiry < self._clock():
                expired_job = job.with_updates(status=RfqmJobStatus.FAILED_EXPIRED)
                await self._store.update_job(expired_job)
                return expired_job.status

            job = job.with_updates(status=RfqmJobStatus.PENDING_SUBMITTED)
            await self._store.update_job(job)

            nonce = await self._blockchain.get_nonce(worker_address)
            gas_estimate = await self._blockchain.estimate_gas(calldata, worker_address)
            gas_price_estimate = await self._blockchain.get_gas_price_estimate()
            gas_fees = initial_gas_fees(gas_price_estimate, self._initial_max_priority_fee_per_gas_gwei)
            first_submission = await self._submitter.submit_transaction(
                order_hash=job.order_hash,
                worker_address=worker_address,
                calldata=calldata,
                gas_fees=gas_fees,
                nonce=nonce,
                gas_estimate=gas_estimate,
            )
            context = SubmissionContext(self._blockchain, [first_submission])
        else:
            context = SubmissionContext(self._blockchain, previous_submissions)
            nonce = context.nonce
            # Resumed jobs lost the original estimate.
            gas_estimate = RESUBMIT_GAS_ESTIMATE_FALLBACK
            log_event(
                self._logger,
                level="info",
                event="job_submission_resumed",
                message="Resuming watch loop from stored submissions",
                order_hash=job.order_hash,
                worker_address=worker_address,
                nonce=nonce,
                submission_count=len(previous_submissions),
            )

        while True:
            await self._sleep(self._poll_interval_seconds)
            status = await self._check_receipt(context, job)

            if status == RfqmJobStatus.PENDING_SUBMITTED:
                now = self._clock()
                if now > job.expiry + self._expired_grace_seconds:
                    log_event(
                        self._logger,
                        level="warning",
                        event="job_expired_unmined",
                        message="Order expired without a mined transaction",
                        order_hash=job.order_hash,
                        worker_address=worker_address,
                        nonce=nonce,
                    )
                    return RfqmJobStatus.FAILED_EXPIRED
                if now > job.expiry:
                    continue

                gas_price_estimate = await self._blockchain.get_gas_price_estimate()
                current_fees = context.max_gas_fees
                if has_reached_priority_fee_cap(current_fees, self._max_priority_fee_per_gas_cap):
                    continue

                new_fees = escalate_gas_fees(current_fees, gas_price_estimate)
                try:
                    replacement = await self._submitter.submit_transaction(
                        order_hash=job.order_hash,
                        worker_address=worker_address,
                        calldata=calldata,
                        gas_fees=new_fees,
                        nonce=nonce,
                        gas_estimate=gas_estimate,
                    )
                except Exception as error:
                    if not is_nonce_too_low_error(error):
                        raise
                    log_event(
                        self._logger,
                        level="info",
                        event="resubmit_nonce_used",
                        message="Resubmission rejected with nonce too low, an earlier submission likely mined",
                        order_hash=job.order_hash,
                        worker_address=worker_address,
                        nonce=nonce,
                    )
                    continue

                context.add_transaction(replacement)
                log_event(
                    self._logger,
                    level="info",
                    event="transaction_fee_bumped",
                    message="Resubmitted transaction with higher fees",
                    order_hash=job.order_hash,
                    worker_address=worker_address,
                    nonce=nonce,
                    max_fee_per_gas=new_fees.max_fee_per_gas,
                    max_priority_fee_per_gas=new_fees.max_priority_fee_per_gas,
                    transaction_hash=replacement.transaction_hash,
                )
                continue

            if status in _UNCONFIRMED_STATUSES:
                continue
            if status in _CONFIRMED_STATUSES:
                return status
            raise InvariantViolationError(f"Unexpected job status in watch loop: {status.value}")

    async def _check_receipt(self, context: SubmissionContext, job: RfqmJob) -> RfqmJobStatus:
        receipt = await context.get_receipt()
        if receipt is None:
            return RfqmJobStatus.PENDING_SUBMITTED

        async def observe_mining_latency() -> None:
            block = await self._blockchain.get_block(receipt.block_hash)
            latency_seconds = float(block["timestamp"]) - context.first_submission_timestamp_seconds
            await self._metrics.observe("rfqm_mining_latency_seconds", latency_seconds, chain_id=self._chain_id)

        await guarded_call(
            observe_mining_latency,
            logger=self._logger,
            event="mining_latency_failed",
            message="Failed to compute mining latency",
            order_hash=job.order_hash,
            transaction_hash=receipt.transaction_hash,
        )

        await context.update_for_receipt(receipt)
        status = context.job_status
        await self._store.update_submissions(context.transactions)
        await self._store.update_job(job.with_updates(status=status))
        log_event(
            self._logger,
            level="info",
            event="transaction_receipt",
            message="Found receipt for submitted transaction",
            order_hash=job.order_hash,
            transaction_hash=receipt.transaction_hash,
            block_number=receipt.block_number,
            status=status.value,
        )
        return status
