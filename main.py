from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Any

from dotenv import load_dotenv

from rfqm.common import log_event
from rfqm.settlement import (
    LastLookCoordinator,
    QuoteServerClient,
    RfqBlockchainClient,
    RfqMakerManager,
    RfqmWorker,
    RuntimeConfig,
    TransactionSubmitter,
    TransactionWatcher,
    load_worker_account,
)
from rfqm.storage import StorageGateway, StorageSettings
from rfqm.worker_runtime import AppSettings, bootstrap_dependencies, run_worker_loop, setup_logger


async def main() -> None:
    load_dotenv()
    app_settings = AppSettings.from_env()
    logger = setup_logger(app_settings.log_level)

    storage_settings = StorageSettings.from_env()
    runtime_defaults = RuntimeConfig(
        makers=RfqMakerManager.from_env(),
        maintenance_mode=app_settings.maintenance_mode,
    )

    account = load_worker_account(
        private_key=app_settings.worker_private_key,
        mnemonic=app_settings.worker_mnemonic,
        worker_index=app_settings.worker_index,
    )
    worker_address = account.address

    storage = StorageGateway(storage_settings, logger)
    blockchain = RfqBlockchainClient(
        rpc_url=app_settings.rpc_url,
        chain_id=app_settings.chain_id,
        exchange_proxy_address=app_settings.exchange_proxy_address,
        logger=logger,
        account=account,
        request_timeout_seconds=app_settings.rpc_timeout_seconds,
    )
    maker_client = QuoteServerClient(
        logger=logger,
        price_timeout_seconds=app_settings.maker_price_timeout_seconds,
        sign_timeout_seconds=app_settings.maker_sign_timeout_seconds,
        api_key=app_settings.maker_api_key,
    )
    last_look = LastLookCoordinator(
        store=storage,
        maker_client=maker_client,
        blockchain=blockchain,
        metrics=storage,
        logger=logger,
        chain_id=app_settings.chain_id,
        registry_address=app_settings.registry_address,
    )
    watcher = TransactionWatcher(
        store=storage,
        blockchain=blockchain,
        submitter=TransactionSubmitter(store=storage, blockchain=blockchain, logger=logger),
        metrics=storage,
        logger=logger,
        chain_id=app_settings.chain_id,
        poll_interval_seconds=app_settings.poll_interval_seconds,
        initial_max_priority_fee_per_gas_gwei=app_settings.initial_max_priority_fee_per_gas_gwei,
    )
    worker = RfqmWorker(
        store=storage,
        last_look=last_look,
        watcher=watcher,
        blockchain=blockchain,
        metrics=storage,
        logger=logger,
        chain_id=app_settings.chain_id,
        worker_index=app_settings.worker_index,
        min_balance_gas_units=app_settings.worker_min_balance_gas_units,
        heartbeat_interval_seconds=app_settings.heartbeat_interval_seconds,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    async def on_config_update(config: dict[str, Any]) -> None:
        log_event(
            logger,
            level="info",
            event="runtime_config_updated",
            message="Runtime config updated",
            items=len(config),
        )

    await bootstrap_dependencies(
        logger=logger,
        stop_event=stop_event,
        app_settings=app_settings,
        storage=storage,
        blockchain=blockchain,
        maker_client=maker_client,
        config_listener_loop=loop,
        on_config_update=on_config_update,
    )

    await storage.publish_event(
        level="INFO",
        event="worker_started",
        message="Worker process started",
        details={
            "chain_id": app_settings.chain_id,
            "worker_address": worker_address,
            "worker_index": app_settings.worker_index,
        },
    )

    try:
        await run_worker_loop(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            storage=storage,
            blockchain=blockchain,
            worker=worker,
            worker_address=worker_address,
            runtime_defaults=runtime_defaults,
        )
    finally:
        with contextlib.suppress(Exception):
            await storage.publish_event(
                level="INFO",
                event="worker_stopped",
                message="Worker process stopped gracefully",
            )
        with contextlib.suppress(Exception):
            await storage.mark_run_stopped(reason="shutdown")

        with contextlib.suppress(Exception):
            await maker_client.close()
        with contextlib.suppress(Exception):
            await blockchain.close()
        with contextlib.suppress(Exception):
            await storage.close()

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    asyncio.run(main())
