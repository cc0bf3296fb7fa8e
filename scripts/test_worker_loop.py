from __future__ import annotations

import asyncio
import logging
import unittest
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from rfqm.settlement.makers import RfqMakerManager, RuntimeConfig
from rfqm.storage.queue_ops import QueueMessage
from rfqm.worker_runtime.loop import bootstrap_dependencies, run_worker_loop, wait_with_stop

WORKER = "0x7777777777777777777777777777777777777777"
ORDER_HASH = "0x" + "ab" * 32


def _app_settings() -> Any:
    return SimpleNamespace(poll_interval_seconds=0, error_backoff_seconds=0, queue_poll_timeout_seconds=1)


def _storage() -> MagicMock:
    storage = MagicMock()
    storage.requeue_inflight = AsyncMock(return_value=0)
    storage.get_runtime_config = AsyncMock(return_value={})
    storage.dequeue = AsyncMock(return_value=None)
    storage.ack = AsyncMock()
    storage.find_job_by_hash = AsyncMock(return_value=None)
    storage.record_job_outcome = AsyncMock()
    storage.publish_event = AsyncMock()
    storage.healthcheck = AsyncMock()
    storage.connect = AsyncMock()
    storage.close = AsyncMock()
    storage.start_config_listener = MagicMock()
    return storage


class RunWorkerLoopTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.stop_event = asyncio.Event()
        self.storage = _storage()
        self.blockchain = MagicMock()
        self.blockchain.healthcheck = AsyncMock()
        self.worker = MagicMock()
        self.worker.before_logic = AsyncMock(return_value=True)
        self.worker.process_job = AsyncMock()

    async def _run(self, **overrides: Any) -> None:
        options: dict[str, Any] = {
            "logger": logging.getLogger("rfqm_test_loop"),
            "stop_event": self.stop_event,
            "app_settings": _app_settings(),
            "storage": self.storage,
            "blockchain": self.blockchain,
            "worker": self.worker,
            "worker_address": WORKER,
            "runtime_defaults": RuntimeConfig(makers=RfqMakerManager()),
        }
        options.update(overrides)
        await asyncio.wait_for(run_worker_loop(**options), timeout=5)

    async def test_dequeued_job_is_processed_then_acked(self) -> None:
        message = QueueMessage(raw='{"orderHash":"x"}', payload={"orderHash": ORDER_HASH, "type": "otc"})
        self.storage.dequeue.return_value = message

        async def process(order_hash: str, worker_address: str) -> None:
            self.stop_event.set()

        self.worker.process_job.side_effect = process

        await self._run()

        self.storage.requeue_inflight.assert_awaited_once_with(WORKER)
        self.worker.process_job.assert_awaited_once_with(ORDER_HASH, WORKER)
        self.storage.ack.assert_awaited_once_with(WORKER, message)

    async def test_maintenance_mode_skips_intake(self) -> None:
        seen: list[RuntimeConfig] = []

        async def runtime_config() -> dict[str, str]:
            self.stop_event.set()
            return {"maintenance_mode": "1"}

        self.storage.get_runtime_config.side_effect = runtime_config

        await self._run(on_runtime_config=seen.append)

        self.assertTrue(seen[0].maintenance_mode)
        self.worker.before_logic.assert_not_awaited()
        self.storage.dequeue.assert_not_awaited()

    async def test_unready_worker_does_not_dequeue(self) -> None:
        async def not_ready(worker_address: str) -> bool:
            self.stop_event.set()
            return False

        self.worker.before_logic.side_effect = not_ready

        await self._run()

        self.storage.dequeue.assert_not_awaited()

    async def test_errors_pause_intake_until_dependencies_recover(self) -> None:
        self.storage.get_runtime_config.side_effect = ConnectionError("redis down")

        async def still_down() -> None:
            self.stop_event.set()
            raise ConnectionError("redis still down")

        self.storage.healthcheck.side_effect = still_down

        await self._run()

        self.assertEqual(self.storage.get_runtime_config.await_count, 1)
        self.storage.publish_event.assert_awaited_once()
        self.assertEqual(self.storage.publish_event.await_args.kwargs["event"], "job_intake_paused")


class BootstrapTests(unittest.IsolatedAsyncioTestCase):
    async def test_retries_until_dependencies_connect(self) -> None:
        storage = _storage()
        storage.connect.side_effect = [ConnectionError("not yet"), None]
        blockchain = MagicMock()
        blockchain.connect = AsyncMock()
        blockchain.close = AsyncMock()
        maker_client = MagicMock()
        maker_client.connect = AsyncMock()
        maker_client.close = AsyncMock()

        await bootstrap_dependencies(
            logger=logging.getLogger("rfqm_test_loop"),
            stop_event=asyncio.Event(),
            app_settings=_app_settings(),
            storage=storage,
            blockchain=blockchain,
            maker_client=maker_client,
            config_listener_loop=asyncio.get_running_loop(),
            on_config_update=AsyncMock(),
        )

        self.assertEqual(storage.connect.await_count, 2)
        storage.close.assert_awaited_once()
        blockchain.connect.assert_awaited_once()
        maker_client.connect.assert_awaited_once()

    async def test_stop_before_connect_raises(self) -> None:
        stop_event = asyncio.Event()
        stop_event.set()

        with self.assertRaises(RuntimeError):
            await bootstrap_dependencies(
                logger=logging.getLogger("rfqm_test_loop"),
                stop_event=stop_event,
                app_settings=_app_settings(),
                storage=_storage(),
                blockchain=MagicMock(),
                maker_client=MagicMock(),
                config_listener_loop=asyncio.get_running_loop(),
                on_config_update=AsyncMock(),
            )

    async def test_wait_with_stop_returns_when_stopped(self) -> None:
        stop_event = asyncio.Event()
        stop_event.set()

        await asyncio.wait_for(wait_with_stop(stop_event, 30), timeout=1)


if __name__ == "__main__":
    unittest.main()
