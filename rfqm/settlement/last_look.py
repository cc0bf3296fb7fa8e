from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any

from rfqm.common import guarded_call, log_event, retry_with_backoff

from .errors import JobProcessingError
from .maker_client import QuoteServerClient, SignRequest, make_query_parameters
from .otc_order import OtcOrder, build_fill_calldata
from .signatures import pad_signature, recover_signer
from .types import JobStore, MetricsSink, PreparedJob, RfqmJob, RfqmJobStatus
from .validation import validate_job

SIGN_RETRY_FACTOR = 2
SIGN_MAX_ATTEMPTS = 3
ETH_CALL_RETRY_FACTOR = 1
ETH_CALL_MAX_ATTEMPTS = 3
BIPS_FACTOR = 10_000


def price_difference_bps(
    *,
    original_maker_amount: int,
    price_check_maker_amount: int,
    price_check_taker_amount: int,
) -> int:
    """Drift between the signed price and the post-decline price, at one significant digit."""
    original_price = Decimal(original_maker_amount) / Decimal(price_check_taker_amount)
    price_after_reject = Decimal(price_check_maker_amount) / Decimal(price_check_taker_amount)
    difference = abs((original_price - price_after_reject) / original_price) * BIPS_FACTOR
    return int(float(f"{difference:.1g}"))


def _require_order(job: RfqmJob) -> OtcOrder:
    if job.order is None:
        raise JobProcessingError(job.order_hash, job.status, f"Job {job.order_hash} has no order")
    return job.order


def generate_calldata(job: RfqmJob) -> str:
    if job.order is None or job.maker_signature is None or job.taker_signature is None:
        raise JobProcessingError(
            job.order_hash,
            job.status,
            f"Job {job.order_hash} is missing the order or a signature",
        )
    return build_fill_calldata(
        job.order,
        job.maker_signature,
        job.taker_signature,
        is_unwrap=job.is_unwrap,
        affiliate_address=job.affiliate_address,
        attribution_id=job.created_at_epoch_seconds,
    )


class LastLookCoordinator:
    """Validates a job, collects the maker's last-look signature and checks the fill on-chain."""

    def __init__(
        self,
        *,
        store: JobStore,
        maker_client: QuoteServerClient,
        blockchain: Any,
        metrics: MetricsSink,
        logger: logging.Logger,
        chain_id: int,
        registry_address: str,
        sign_retry_delay_seconds: float = 1.0,
        eth_call_retry_delay_seconds: float = 1.0,
    ) -> None:
        self._store = store
        self._maker_client = maker_client
        self._blockchain = blockchain
        self._metrics = metrics
        self._logger = logger
        self._chain_id = chain_id
        self._registry_address = registry_address
        self._sign_retry_delay_seconds = sign_retry_delay_seconds
        self._eth_call_retry_delay_seconds = eth_call_retry_delay_seconds

    async def _fail(self, job: RfqmJob, status: RfqmJobStatus, message: str, **fields: Any) -> JobProcessingError:
        failed_job = job.with_updates(status=status, **fields)
        await self._store.update_job(failed_job)
        return JobProcessingError(job.order_hash, status, message)

    async def prepare_job(
        self,
        job: RfqmJob,
        worker_address: str,
        *,
        now_seconds: float | None = None,
    ) -> PreparedJob:
        now = time.time() if now_seconds is None else now_seconds

        existing_submissions = await self._store.find_submissions_by_order_hash(job.order_hash)
        if existing_submissions:
            if job.maker_signature is None:
                raise JobProcessingError(job.order_hash, job.status, "Job has submissions but no maker signature")
            if job.taker_signature is None:
                raise JobProcessingError(job.order_hash, job.status, "Job has submissions but no taker signature")
            return PreparedJob(job=job, calldata=generate_calldata(job))

        error_status = validate_job(job, now)
        if error_status is not None:
            if error_status == RfqmJobStatus.FAILED_EXPIRED:
                await self._metrics.increment("rfqm_signed_quote_expiry_too_soon", chain_id=self._chain_id)
            log_event(
                self._logger,
                level="error",
                event="job_validation_failed",
                message="Job failed validation",
                order_hash=job.order_hash,
                status=error_status.value,
            )
            raise await self._fail(job, error_status, "Job failed validation")

        if job.status == RfqmJobStatus.PENDING_ENQUEUED:
            job = job.with_updates(status=RfqmJobStatus.PENDING_PROCESSING)
            await self._store.update_job(job)

        if job.maker_signature is not None:
            log_event(
                self._logger,
                level="info",
                event="order_already_signed",
                message="Order already signed by maker",
                order_hash=job.order_hash,
                worker_address=worker_address,
            )
        else:
            job = await self._collect_maker_signature(job)

        order = _require_order(job)
        if job.maker_signature is None:
            raise JobProcessingError(job.order_hash, job.status, "Maker signature does not exist")

        signer_address = recover_signer(job.order_hash, job.maker_signature).lower()
        maker_address = order.maker.lower()
        if signer_address != maker_address:
            log_event(
                self._logger,
                level="info",
                event="maker_signer_mismatch",
                message="Signer differs from maker, checking signer delegation",
                order_hash=job.order_hash,
                signer_address=signer_address,
                maker_address=maker_address,
                maker_uri=job.maker_uri,
            )
            if not await self._blockchain.is_valid_order_signer(maker_address, signer_address):
                raise await self._fail(job, RfqmJobStatus.FAILED_SIGN_FAILED, "Invalid order signer address")

        calldata = generate_calldata(job)
        await self._validate_with_eth_call(job, calldata, worker_address)
        return PreparedJob(job=job, calldata=calldata)

    async def _collect_maker_signature(self, job: RfqmJob) -> RfqmJob:
        order = _require_order(job)
        if job.fee is None or job.taker_signature is None:
            raise JobProcessingError(job.order_hash, job.status, "Job is missing the fee or taker signature")
        maker_uri = job.maker_uri or ""

        maker_balance, taker_balance = await self._blockchain.get_token_balances(
            [order.maker, order.taker],
            [order.maker_token, order.taker_token],
        )
        if maker_balance < order.maker_amount or taker_balance < order.taker_amount:
            log_event(
                self._logger,
                level="error",
                event="presign_validation_failed",
                message="Order failed pre-sign balance validation",
                order_hash=job.order_hash,
                maker_balance=str(maker_balance),
                taker_balance=str(taker_balance),
                maker_amount=str(order.maker_amount),
                taker_amount=str(order.taker_amount),
            )
            raise await self._fail(
                job,
                RfqmJobStatus.FAILED_PRESIGN_VALIDATION_FAILED,
                "Order failed pre-sign validation",
            )

        sign_request = SignRequest(
            order=order,
            order_hash=job.order_hash,
            expiry=job.expiry,
            fee=job.fee,
            taker_signature=job.taker_signature,
            trader=order.taker,
        )

        def on_sign_error(error: Exception, attempt: int, remaining: int) -> None:
            log_event(
                self._logger,
                level="warning",
                event="maker_sign_attempt_failed",
                message="Error while requesting maker signature",
                order_hash=job.order_hash,
                maker_uri=maker_uri,
                attempt=attempt,
                attempts_remaining=remaining,
                error=str(error),
            )

        sign_started_at = time.monotonic()
        try:
            maker_signature = await retry_with_backoff(
                lambda: self._maker_client.sign(maker_uri, job.integrator_id or "", sign_request),
                delay_seconds=self._sign_retry_delay_seconds,
                factor=SIGN_RETRY_FACTOR,
                max_attempts=SIGN_MAX_ATTEMPTS,
                on_error=on_sign_error,
            )
        except Exception as error:
            await self._metrics.increment(
                "rfqm_job_failed_mm_signature_failed",
                maker_uri=maker_uri,
                chain_id=self._chain_id,
            )
            log_event(
                self._logger,
                level="error",
                event="maker_sign_failed",
                message="Maker sign request failed after retries",
                order_hash=job.order_hash,
                maker_uri=maker_uri,
                error=str(error),
            )
            raise await self._fail(job, RfqmJobStatus.FAILED_SIGN_FAILED, "Maker sign attempt failed") from error

        log_event(
            self._logger,
            level="info",
            event="maker_sign_response",
            message="Got signature response from maker",
            order_hash=job.order_hash,
            maker_uri=maker_uri,
            signed=maker_signature is not None,
        )

        if maker_signature is None:
            await self._metrics.increment(
                "rfqm_job_mm_rejected_last_look",
                maker_uri=maker_uri,
                chain_id=self._chain_id,
            )
            declined_job = job.with_updates(
                status=RfqmJobStatus.FAILED_LAST_LOOK_DECLINED,
                last_look_result=False,
            )
            await self._store.update_job(declined_job)
            await guarded_call(
                lambda: self._record_decline_price_check(declined_job, time.monotonic() - sign_started_at),
                logger=self._logger,
                event="decline_price_check_failed",
                message="Decline-to-sign price check failed",
                order_hash=job.order_hash,
                maker_uri=maker_uri,
            )
            raise JobProcessingError(job.order_hash, RfqmJobStatus.FAILED_LAST_LOOK_DECLINED, "Maker declined to sign")

        padded_signature = pad_signature(maker_signature)
        if padded_signature != maker_signature:
            log_event(
                self._logger,
                level="warning",
                event="maker_signature_padded",
                message="Maker signature was missing leading bytes",
                order_hash=job.order_hash,
                r=padded_signature.r,
                s=padded_signature.s,
            )

        accepted_job = job.with_updates(
            maker_signature=padded_signature,
            last_look_result=True,
            status=RfqmJobStatus.PENDING_LAST_LOOK_ACCEPTED,
        )
        await self._store.update_job(accepted_job)
        return accepted_job

    async def _record_decline_price_check(self, job: RfqmJob, price_check_delay_seconds: float) -> None:
        order = _require_order(job)
        if job.fee is None:
            raise RuntimeError("Job has no fee to quote against")
        params = make_query_parameters(
            chain_id=self._chain_id,
            tx_origin=self._registry_address,
            taker_address=order.taker,
            is_selling=True,
            buy_token=order.maker_token,
            sell_token=order.taker_token,
            asset_fill_amount=order.taker_amount,
            fee=job.fee,
        )
        price = await self._maker_client.get_price(job.maker_uri or "", job.integrator_id or "", params)
        if price is None:
            raise RuntimeError("Failed to get a price response")

        bps = price_difference_bps(
            original_maker_amount=order.maker_amount,
            price_check_maker_amount=price.maker_amount,
            price_check_taker_amount=price.taker_amount,
        )
        log_event(
            self._logger,
            level="info",
            event="decline_price_check",
            message="Decline-to-sign price check",
            order_hash=job.order_hash,
            price_check_delay_seconds=round(price_check_delay_seconds, 3),
            price_difference_bps=bps,
        )
        await self._store.update_job(job.with_updates(ll_reject_price_difference_bps=bps))

    async def _validate_with_eth_call(self, job: RfqmJob, calldata: str, worker_address: str) -> None:
        def on_eth_call_error(error: Exception, attempt: int, remaining: int) -> None:
            log_event(
                self._logger,
                level="warning",
                event="eth_call_attempt_failed",
                message="Error during eth_call validation, retrying",
                order_hash=job.order_hash,
                maker_uri=job.maker_uri,
                attempt=attempt,
                attempts_remaining=remaining,
                error=str(error),
            )

        try:
            await retry_with_backoff(
                lambda: self._blockchain.simulate_call(calldata, worker_address),
                delay_seconds=self._eth_call_retry_delay_seconds,
                factor=ETH_CALL_RETRY_FACTOR,
                max_attempts=ETH_CALL_MAX_ATTEMPTS,
                on_error=on_eth_call_error,
            )
        except Exception as error:
            log_event(
                self._logger,
                level="error",
                event="eth_call_failed",
                message="eth_call validation failed",
                order_hash=job.order_hash,
                error=str(error),
            )
            failure = await self._fail(job, RfqmJobStatus.FAILED_ETH_CALL_FAILED, "Eth call validation failed")
            await guarded_call(
                lambda: self._log_eth_call_context(job, calldata),
                logger=self._logger,
                event="eth_call_context_failed",
                message="Failed to gather context after eth_call failure",
                order_hash=job.order_hash,
            )
            raise failure from error

    async def _log_eth_call_context(self, job: RfqmJob, calldata: str) -> None:
        order = _require_order(job)
        maker_balance, taker_balance = await self._blockchain.get_token_balances(
            [order.maker, order.taker],
            [order.maker_token, order.taker_token],
        )
        block_number = await self._blockchain.get_current_block()
        log_event(
            self._logger,
            level="info",
            event="eth_call_failure_context",
            message="Extra context after eth_call validation failed",
            order_hash=job.order_hash,
            maker_balance=str(maker_balance),
            taker_balance=str(taker_balance),
            block_number=block_number,
            calldata=calldata,
            nonce_bucket=order.nonce_bucket,
            nonce=str(order.nonce),
        )
