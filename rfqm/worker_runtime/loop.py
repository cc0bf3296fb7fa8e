from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from rfqm.common import guarded_call, log_event
from rfqm.settlement import QuoteServerClient, RfqBlockchainClient, RfqmWorker, RuntimeConfig
from rfqm.storage import ConfigUpdateHandler, StorageGateway

from .settings import AppSettings


async def wait_with_stop(stop_event: asyncio.Event, timeout_seconds: float) -> None:
    if timeout_seconds <= 0:
        return

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        pass


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    blockchain: RfqBlockchainClient,
    maker_client: QuoteServerClient,
    config_listener_loop: asyncio.AbstractEventLoop,
    on_config_update: ConfigUpdateHandler,
) -> None:
    while not stop_event.is_set():
        try:
            await storage.connect()
            storage.start_config_listener(config_listener_loop, on_update=on_config_update)
            await blockchain.connect()
            await maker_client.connect()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            await guarded_call(
                maker_client.close,
                logger=logger,
                event="bootstrap_maker_client_close_failed",
                message="Failed to close maker client during bootstrap retry",
            )
            await guarded_call(
                blockchain.close,
                logger=logger,
                event="bootstrap_blockchain_close_failed",
                message="Failed to close blockchain client during bootstrap retry",
            )
            await guarded_call(
                storage.close,
                logger=logger,
                event="bootstrap_storage_close_failed",
                message="Failed to close storage during bootstrap retry",
            )

            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def try_resume_job_intake(
    *,
    logger: logging.Logger,
    storage: StorageGateway,
    blockchain: RfqBlockchainClient,
    pause_reason: str,
) -> bool:
    try:
        await storage.healthcheck()
        await blockchain.healthcheck()
        log_event(
            logger,
            level="info",
            event="job_intake_recovered",
            message="Job intake resumed after dependency recovery",
            reason=pause_reason,
        )
        return True
    except Exception as error:
        log_event(
            logger,
            level="warning",
            event="job_intake_still_paused",
            message="Job intake remains paused",
            reason=pause_reason,
            error=str(error),
        )
        return False


async def run_worker_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    blockchain: RfqBlockchainClient,
    worker: RfqmWorker,
    worker_address: str,
    runtime_defaults: RuntimeConfig,
    on_runtime_config: Callable[[RuntimeConfig], Any] | None = None,
) -> None:
    loop = asyncio.get_running_loop()
    job_intake_paused = False
    pause_reason = ""

    await storage.requeue_inflight(worker_address)

    while not stop_event.is_set():
        delay_seconds = 0.0
        try:
            if job_intake_paused:
                if not await try_resume_job_intake(
                    logger=logger,
                    storage=storage,
                    blockchain=blockchain,
                    pause_reason=pause_reason,
                ):
                    delay_seconds = app_settings.error_backoff_seconds
                    continue
                job_intake_paused = False
                pause_reason = ""

            redis_config = await storage.get_runtime_config()
            runtime_config = RuntimeConfig.from_redis(redis_config, runtime_defaults)
            if on_runtime_config is not None:
                on_runtime_config(runtime_config)

            if runtime_config.maintenance_mode:
                log_event(
                    logger,
                    level="info",
                    event="maintenance_mode",
                    message="Maintenance mode is on, skipping job intake",
                    worker_address=worker_address,
                )
                delay_seconds = app_settings.poll_interval_seconds
                continue

            if not await worker.before_logic(worker_address):
                delay_seconds = app_settings.error_backoff_seconds
                continue

            message = await storage.dequeue(
                worker_address,
                timeout_seconds=app_settings.queue_poll_timeout_seconds,
            )
            if message is None:
                continue

            order_hash = message.order_hash
            if not order_hash:
                log_event(
                    logger,
                    level="error",
                    event="queue_message_missing_order_hash",
                    message="Queue message has no order hash",
                    payload=message.payload,
                )
                await storage.ack(worker_address, message)
                continue

            started_at = loop.time()
            await worker.process_job(order_hash, worker_address)
            latency_seconds = loop.time() - started_at

            job = await storage.find_job_by_hash(order_hash)
            if job is not None:
                await guarded_call(
                    lambda: storage.record_job_outcome(job, latency_seconds=latency_seconds),
                    logger=logger,
                    event="job_outcome_record_failed",
                    message="Failed to record job outcome",
                    order_hash=order_hash,
                )
            await storage.ack(worker_address, message)

        except Exception as error:
            pause_reason = str(error)
            job_intake_paused = True
            delay_seconds = app_settings.error_backoff_seconds

            log_event(
                logger,
                level="exception",
                event="main_loop_error",
                message="Main loop failed and job intake has been paused",
                error=str(error),
                worker_address=worker_address,
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="job_intake_paused",
                    message="Job intake paused due to dependency or runtime error",
                    details={"error": str(error), "worker_address": worker_address},
                ),
                logger=logger,
                event="main_loop_pause_publish_failed",
                message="Failed to publish job_intake_paused event",
            )
        finally:
            await wait_with_stop(stop_event, delay_seconds)
