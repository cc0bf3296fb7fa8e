from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from rfqm.common import log_event

from .errors import InternalServerError, InvariantViolationError, NotFoundError, TooManyRequestsError, ValidationError
from .maker_client import QuoteServerClient, make_query_parameters
from .makers import RuntimeConfig
from .otc_order import NULL_ADDRESS, OtcOrder, encode_expiry_and_nonce
from .quotes import (
    buy_amount_given_sell_amount,
    fill_amount_mismatch,
    get_best_quote,
    round_price,
    sell_amount_given_buy_amount,
)
from .signatures import Signature, pad_signature, recover_signer
from .types import (
    OTC_ORDER_TYPE,
    PENDING_JOB_STATUSES,
    Fee,
    FetchQuoteParams,
    FirmOtcQuote,
    FirmQuoteResponse,
    HealthCheckResult,
    IndicativeQuote,
    IndicativeQuoteResponse,
    JobStore,
    MetricsSink,
    OrderStatusResponse,
    QueueService,
    RfqmJob,
    RfqmJobStatus,
    RfqmQuote,
    SubmitOrderResponse,
    SubmissionStatus,
    TransactionSubmission,
    is_native_token,
    iso_to_epoch_seconds,
    now_iso,
)

NATIVE_TOKEN_DECIMALS = 18
TOKEN_DECIMALS_CACHE_SIZE = 1_000
FEE_TYPE_FIXED = "fixed"
HEARTBEAT_STALE_SECONDS = 300
QUEUE_DEPTH_DEGRADED_THRESHOLD = 10

_FAILED_WITH_HISTORY_STATUSES = frozenset(status for status in RfqmJobStatus if status.is_failed)
_SUCCESSFUL_SUBMISSION_STATUSES = frozenset(
    {SubmissionStatus.SUCCEEDED_UNCONFIRMED, SubmissionStatus.SUCCEEDED_CONFIRMED}
)


def _submission_summary(submission: TransactionSubmission) -> dict[str, Any] | None:
    if not submission.transaction_hash:
        return None
    return {
        "hash": submission.transaction_hash,
        "timestamp": int(submission.created_at_epoch_seconds * 1000),
    }


def _submission_summaries(submissions: list[TransactionSubmission]) -> list[dict[str, Any]]:
    return [summary for summary in map(_submission_summary, submissions) if summary is not None]


class RfqmService:
    """Quote, submit, status and health operations exposed to takers and integrators."""

    def __init__(
        self,
        *,
        store: JobStore,
        queue: QueueService,
        maker_client: QuoteServerClient,
        blockchain: Any,
        metrics: MetricsSink,
        logger: logging.Logger,
        runtime_config: RuntimeConfig,
        chain_id: int,
        registry_address: str,
        wrapped_native_token_address: str,
        min_expiry_seconds: float,
        num_otc_buckets: int,
        fee_gas_units: int,
        unwrap_gas_units: int,
        worker_min_balance_gas_units: int,
    ) -> None:
        self._store = store
        self._queue = queue
        self._maker_client = maker_client
        self._blockchain = blockchain
        self._metrics = metrics
        self._logger = logger
        self._runtime_config = runtime_config
        self._chain_id = chain_id
        self._registry_address = registry_address
        self._wrapped_native_token_address = wrapped_native_token_address
        self._min_expiry_seconds = min_expiry_seconds
        self._num_otc_buckets = max(1, num_otc_buckets)
        self._fee_gas_units = fee_gas_units
        self._unwrap_gas_units = unwrap_gas_units
        self._worker_min_balance_gas_units = worker_min_balance_gas_units
        self._token_decimals_cache: dict[str, int] = {}

    def update_runtime_config(self, runtime_config: RuntimeConfig) -> None:
        self._runtime_config = runtime_config

    async def get_token_decimals(self, token: str) -> int:
        key = token.lower()
        if is_native_token(key) or key == self._wrapped_native_token_address.lower():
            return NATIVE_TOKEN_DECIMALS

        cached = self._token_decimals_cache.get(key)
        if cached is not None:
            return cached

        decimals = await self._blockchain.get_token_decimals(token)
        if len(self._token_decimals_cache) >= TOKEN_DECIMALS_CACHE_SIZE:
            self._token_decimals_cache.pop(next(iter(self._token_decimals_cache)))
        self._token_decimals_cache[key] = decimals
        log_event(
            self._logger,
            level="info",
            event="token_decimals_fetched",
            message="Token decimals fetched from blockchain",
            token=token,
            decimals=decimals,
            cache_size=len(self._token_decimals_cache),
        )
        return decimals

    async def _calculate_fee(self, is_unwrap: bool) -> tuple[Fee, int]:
        gas_price = await self._blockchain.get_gas_price_estimate()
        gas_units = self._fee_gas_units + (self._unwrap_gas_units if is_unwrap else 0)
        fee = Fee(type=FEE_TYPE_FIXED, token=self._wrapped_native_token_address, amount=gas_price * gas_units)
        return fee, gas_price

    def _resolve_maker_token(self, buy_token: str) -> tuple[str, bool]:
        if is_native_token(buy_token):
            return self._wrapped_native_token_address, True
        return buy_token, False

    async def _fetch_indicative_quotes(
        self,
        params: FetchQuoteParams,
        maker_token: str,
        taker_address: str,
        fee: Fee,
    ) -> list[IndicativeQuote]:
        asset_fill_amount = params.sell_amount if params.is_selling else params.buy_amount
        query = make_query_parameters(
            chain_id=self._chain_id,
            tx_origin=self._registry_address,
            taker_address=taker_address,
            is_selling=params.is_selling,
            buy_token=maker_token,
            sell_token=params.sell_token,
            asset_fill_amount=int(asset_fill_amount or 0),
            fee=fee,
        )
        maker_uris = self._runtime_config.makers.maker_uris_for_pair(maker_token, params.sell_token)
        if not maker_uris:
            return []
        return await self._maker_client.batch_get_price(maker_uris, params.integrator_id, query)

    def _log_incorrect_amounts(self, quotes: list[Any], params: FetchQuoteParams) -> None:
        asset_fill_amount = int((params.sell_amount if params.is_selling else params.buy_amount) or 0)
        for quote in quotes:
            mismatch = fill_amount_mismatch(quote, is_selling=params.is_selling, asset_fill_amount=asset_fill_amount)
            if mismatch is None:
                continue
            log_event(
                self._logger,
                level="warning",
                event="maker_incorrect_amount",
                message="Maker returned an incorrect amount",
                maker_uri=quote.maker_uri,
                is_selling=params.is_selling,
                over_or_under=mismatch,
                requested_amount=str(asset_fill_amount),
                maker_amount=str(quote.maker_amount),
                taker_amount=str(quote.taker_amount),
            )

    async def fetch_indicative_quote(self, params: FetchQuoteParams) -> IndicativeQuoteResponse | None:
        maker_token, is_unwrap = self._resolve_maker_token(params.buy_token)
        fee, gas_price = await self._calculate_fee(is_unwrap)

        quotes = await self._fetch_indicative_quotes(params, maker_token, NULL_ADDRESS, fee)
        self._log_incorrect_amounts(quotes, params)

        best_quote = get_best_quote(
            quotes,
            is_selling=params.is_selling,
            taker_token=params.sell_token,
            maker_token=maker_token,
            min_expiry_seconds=self._min_expiry_seconds,
            now_seconds=time.time(),
        )
        if best_quote is None:
            return None

        price = round_price(
            maker_amount=best_quote.maker_amount,
            taker_amount=best_quote.taker_amount,
            maker_decimals=params.buy_token_decimals,
            taker_decimals=params.sell_token_decimals,
            is_selling=params.is_selling,
        )
        return IndicativeQuoteResponse(
            maker_token=params.buy_token,
            taker_token=best_quote.taker_token,
            maker_amount=best_quote.maker_amount,
            taker_amount=best_quote.taker_amount,
            price=str(price),
            gas=gas_price,
            expiry=best_quote.expiry,
        )

    def _to_firm_quote(self, quote: IndicativeQuote, taker_address: str, nonce_bucket: int, nonce: int) -> FirmOtcQuote:
        return FirmOtcQuote(
            maker_uri=quote.maker_uri,
            order=OtcOrder(
                maker=quote.maker,
                taker=taker_address,
                maker_token=quote.maker_token,
                taker_token=quote.taker_token,
                maker_amount=quote.maker_amount,
                taker_amount=quote.taker_amount,
                tx_origin=self._registry_address,
                expiry_and_nonce=encode_expiry_and_nonce(quote.expiry, nonce_bucket, nonce),
                chain_id=self._chain_id,
                verifying_contract=self._blockchain.exchange_proxy_address,
            ),
        )

    async def _fetch_firm_quotes(self, params: FetchQuoteParams, maker_token: str, fee: Fee) -> list[FirmOtcQuote]:
        quotes = await self._fetch_indicative_quotes(params, maker_token, params.taker_address, fee)
        nonce_bucket = await self._store.next_otc_order_bucket(self._chain_id) % self._num_otc_buckets
        now_seconds = int(time.time())

        firm_quotes: list[FirmOtcQuote] = []
        for quote in quotes:
            firm_quote = self._to_firm_quote(quote, params.taker_address, nonce_bucket, now_seconds)
            if firm_quote.order.chain_id != self._chain_id:
                log_event(
                    self._logger,
                    level="error",
                    event="quote_wrong_chain",
                    message="Received a quote with incorrect chain id",
                    maker_uri=quote.maker_uri,
                    chain_id=firm_quote.order.chain_id,
                )
                continue
            firm_quotes.append(firm_quote)
        return firm_quotes

    async def fetch_firm_quote(self, params: FetchQuoteParams) -> FirmQuoteResponse | None:
        maker_token, is_unwrap = self._resolve_maker_token(params.buy_token)
        fee, gas_price = await self._calculate_fee(is_unwrap)

        firm_quotes = await self._fetch_firm_quotes(params, maker_token, fee)
        self._log_incorrect_amounts(firm_quotes, params)

        best_quote = get_best_quote(
            firm_quotes,
            is_selling=params.is_selling,
            taker_token=params.sell_token,
            maker_token=maker_token,
            min_expiry_seconds=self._min_expiry_seconds,
            now_seconds=time.time(),
        )
        if best_quote is None:
            return None
        if not best_quote.maker_uri:
            raise RuntimeError(f"makerUri unknown for maker address {best_quote.order.maker}")

        price = round_price(
            maker_amount=best_quote.maker_amount,
            taker_amount=best_quote.taker_amount,
            maker_decimals=params.buy_token_decimals,
            taker_decimals=params.sell_token_decimals,
            is_selling=params.is_selling,
        )
        if params.is_selling:
            taker_amount = int(params.sell_amount or 0)
            maker_amount = buy_amount_given_sell_amount(taker_amount, best_quote.taker_amount, best_quote.maker_amount)
        else:
            maker_amount = int(params.buy_amount or 0)
            taker_amount = sell_amount_given_buy_amount(maker_amount, best_quote.taker_amount, best_quote.maker_amount)

        order_hash = best_quote.order.get_hash()
        await self._store.write_quote(
            RfqmQuote(
                order_hash=order_hash,
                chain_id=self._chain_id,
                order=best_quote.order,
                fee=fee,
                maker_uri=best_quote.maker_uri,
                integrator_id=params.integrator_id,
                affiliate_address=params.affiliate_address,
                is_unwrap=is_unwrap,
            )
        )
        await self._metrics.increment(
            "rfqm_quote_inserted",
            integrator_id=params.integrator_id,
            maker_uri=best_quote.maker_uri,
        )
        return FirmQuoteResponse(
            order_hash=order_hash,
            order=best_quote.order,
            maker_uri=best_quote.maker_uri,
            maker_amount=maker_amount,
            taker_amount=taker_amount,
            price=str(price),
            gas=gas_price,
            expiry=best_quote.expiry,
        )

    async def submit_taker_signed_otc_order(self, order: OtcOrder, taker_signature: Signature) -> SubmitOrderResponse:
        order_hash = order.get_hash()
        taker_address = order.taker.lower()
        maker_address = order.maker.lower()

        quote = await self._store.find_quote_by_hash(order_hash)
        if quote is None:
            await self._metrics.increment("rfqm_signed_quote_not_found", chain_id=self._chain_id)
            raise NotFoundError("quote", order_hash)

        if not order.expiry > time.time() + self._min_expiry_seconds:
            await self._metrics.increment("rfqm_signed_quote_expiry_too_soon", chain_id=self._chain_id)
            raise ValidationError("expiryAndNonce", "field_invalid", "order will expire too soon")

        pending_jobs = await self._store.find_jobs_with_statuses(set(PENDING_JOB_STATUSES))
        quote_taker = quote.order.taker.lower()
        quote_taker_token = quote.order.taker_token.lower()
        for pending_job in pending_jobs:
            if pending_job.order is None or pending_job.order_hash == quote.order_hash:
                continue
            if (
                pending_job.order.taker.lower() == quote_taker
                and pending_job.order.taker_token.lower() == quote_taker_token
            ):
                await self._metrics.increment("rfqm_taker_and_takertoken_trade_exists", chain_id=self._chain_id)
                raise TooManyRequestsError("a pending trade for this taker and takertoken already exists")

        padded_signature = pad_signature(taker_signature)
        if padded_signature != taker_signature:
            log_event(
                self._logger,
                level="warning",
                event="taker_signature_padded",
                message="Got taker signature with missing bytes",
                order_hash=order_hash,
                r=padded_signature.r,
                s=padded_signature.s,
            )
            taker_signature = padded_signature

        signer_address = recover_signer(order_hash, taker_signature).lower()
        if signer_address != taker_address:
            log_event(
                self._logger,
                level="warning",
                event="taker_signature_invalid",
                message="Signature is invalid",
                order_hash=order_hash,
                signer_address=signer_address,
                taker_address=taker_address,
            )
            raise ValidationError("signature", "invalid_signature_or_hash", "signature is not valid")

        maker_balance, taker_balance = await self._blockchain.get_token_balances(
            [maker_address, taker_address],
            [order.maker_token.lower(), order.taker_token.lower()],
        )
        if maker_balance < order.maker_amount or taker_balance < order.taker_amount:
            await self._metrics.increment(
                "rfqm_submit_balance_check_failed",
                maker_address=maker_address,
                chain_id=self._chain_id,
            )
            log_event(
                self._logger,
                level="warning",
                event="submit_balance_check_failed",
                message="Balance check failed while user was submitting",
                order_hash=order_hash,
                maker_address=maker_address,
                taker_address=taker_address,
                maker_balance=str(maker_balance),
                taker_balance=str(taker_balance),
            )
            raise ValidationError("n/a", "invalid_order", "order is not fillable")

        job = RfqmJob(
            order_hash=quote.order_hash,
            chain_id=self._chain_id,
            status=RfqmJobStatus.PENDING_ENQUEUED,
            expiry=order.expiry,
            created_at=now_iso(),
            order=quote.order,
            fee=quote.fee,
            maker_uri=quote.maker_uri,
            taker_signature=taker_signature,
            integrator_id=quote.integrator_id,
            affiliate_address=quote.affiliate_address,
            is_unwrap=quote.is_unwrap,
        )
        try:
            await self._store.write_job(job)
            await self._queue.enqueue(
                quote.order_hash,
                quote.order_hash,
                {"orderHash": quote.order_hash, "type": OTC_ORDER_TYPE},
            )
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="error",
                event="job_enqueue_failed",
                message="Failed to queue the quote for submission",
                order_hash=order_hash,
                error=str(error),
            )
            raise InternalServerError(
                "failed to queue the quote for submission, it may have already been submitted"
            ) from error

        return SubmitOrderResponse(order_hash=quote.order_hash)

    async def get_order_status(self, order_hash: str) -> OrderStatusResponse | None:
        job = await self._store.find_job_by_hash(order_hash)
        if job is None:
            return None

        status = job.status
        if status == RfqmJobStatus.PENDING_ENQUEUED and job.expiry < time.time():
            return OrderStatusResponse(status="failed")

        if status.is_pending and status != RfqmJobStatus.PENDING_SUBMITTED:
            return OrderStatusResponse(status="pending")

        submissions = await self._store.find_submissions_by_order_hash(order_hash)
        if status == RfqmJobStatus.PENDING_SUBMITTED:
            return OrderStatusResponse(status="submitted", transactions=_submission_summaries(submissions))
        if status in _FAILED_WITH_HISTORY_STATUSES:
            return OrderStatusResponse(status="failed", transactions=_submission_summaries(submissions))
        if status.is_succeeded:
            successful = [s for s in submissions if s.status in _SUCCESSFUL_SUBMISSION_STATUSES]
            if len(successful) != 1:
                raise InvariantViolationError(
                    f"Expected exactly one successful transmission for order {order_hash}; found {len(successful)}"
                )
            summary = _submission_summary(successful[0])
            if summary is None:
                raise InvariantViolationError("Successful transaction did not have a hash")
            return OrderStatusResponse(
                status="succeeded" if status == RfqmJobStatus.SUCCEEDED_UNCONFIRMED else "confirmed",
                transactions=[summary],
            )
        raise InvariantViolationError(f"Unhandled job status: {status.value}")

    async def run_health_check(self) -> HealthCheckResult:
        if self._runtime_config.maintenance_mode:
            return HealthCheckResult(status="maintenance", issues=["service is in maintenance mode"])

        issues: list[str] = []
        heartbeats = await self._store.find_heartbeats(self._chain_id)
        now_seconds = time.time()
        fresh = [
            heartbeat
            for heartbeat in heartbeats
            if now_seconds - iso_to_epoch_seconds(heartbeat.timestamp) <= HEARTBEAT_STALE_SECONDS
        ]
        if not fresh:
            issues.append("no worker heartbeats in the last 5 minutes")

        gas_price: int | None = None
        try:
            gas_price = await self._blockchain.get_gas_price_estimate()
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="health_gas_price_failed",
                message="Failed to get gas price for health check",
                error=str(error),
            )
            issues.append("gas price estimate unavailable")

        healthy = fresh
        if gas_price is not None:
            minimum_balance = gas_price * self._worker_min_balance_gas_units
            healthy = [heartbeat for heartbeat in fresh if heartbeat.balance >= minimum_balance]
            if fresh and not healthy:
                issues.append("no worker has a sufficient balance")

        queue_depth = await self._queue.queue_depth()
        if queue_depth > QUEUE_DEPTH_DEGRADED_THRESHOLD:
            issues.append(f"queue depth is {queue_depth}")

        maker_count = len(self._runtime_config.makers)
        if maker_count == 0:
            issues.append("no makers are registered")

        return HealthCheckResult(
            status="degraded" if issues else "operational",
            issues=issues,
            healthy_worker_count=len(healthy),
            queue_depth=queue_depth,
            maker_count=maker_count,
        )
