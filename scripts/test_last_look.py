from __future__ import annotations

import logging
import unittest
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

from eth_keys import keys

from rfqm.settlement.errors import JobProcessingError
from rfqm.settlement.last_look import LastLookCoordinator, generate_calldata, price_difference_bps
from rfqm.settlement.otc_order import OtcOrder, encode_expiry_and_nonce
from rfqm.settlement.signatures import Signature, SignatureType
from rfqm.settlement.types import Fee, RfqmJob, RfqmJobStatus

MAKER_KEY = keys.PrivateKey(b"\x01" * 32)
OTHER_KEY = keys.PrivateKey(b"\x02" * 32)
WORKER = "0x7777777777777777777777777777777777777777"
EXPIRY = 1_700_000_600
NOW = 1_700_000_000.0


def _make_order() -> OtcOrder:
    return OtcOrder(
        maker=MAKER_KEY.public_key.to_checksum_address(),
        taker="0x2222222222222222222222222222222222222222",
        maker_token="0x3333333333333333333333333333333333333333",
        taker_token="0x4444444444444444444444444444444444444444",
        maker_amount=1_000,
        taker_amount=10,
        tx_origin=WORKER,
        expiry_and_nonce=encode_expiry_and_nonce(EXPIRY, 3, 1_699_999_000),
        chain_id=1,
        verifying_contract="0xdef1c0ded9bec7f1a1670819833240f027b25eff",
    )


def _sign(key: keys.PrivateKey, order_hash: str) -> Signature:
    signed = key.sign_msg_hash(bytes.fromhex(order_hash[2:]))
    return Signature(
        signature_type=SignatureType.EIP712,
        v=signed.v + 27,
        r="0x" + signed.r.to_bytes(32, "big").hex(),
        s="0x" + signed.s.to_bytes(32, "big").hex(),
    )


def _make_job(**overrides: object) -> RfqmJob:
    order = _make_order()
    fields: dict[str, object] = {
        "order_hash": order.get_hash(),
        "chain_id": 1,
        "status": RfqmJobStatus.PENDING_ENQUEUED,
        "expiry": EXPIRY,
        "created_at": "2023-11-14T22:13:20+00:00",
        "order": order,
        "fee": Fee(type="fixed", token="0x6666666666666666666666666666666666666666", amount=5),
        "maker_uri": "https://maker.example",
        "taker_signature": _sign(OTHER_KEY, order.get_hash()),
        "integrator_id": "integrator-1",
    }
    fields.update(overrides)
    return RfqmJob(**fields)  # type: ignore[arg-type]


def _statuses(store: MagicMock) -> list[RfqmJobStatus]:
    return [call.args[0].status for call in store.update_job.await_args_list]


class LastLookCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = MagicMock()
        self.store.find_submissions_by_order_hash = AsyncMock(return_value=[])
        self.store.update_job = AsyncMock()

        self.maker_client = MagicMock()
        self.maker_client.sign = AsyncMock()
        self.maker_client.get_price = AsyncMock()

        self.blockchain = MagicMock()
        self.blockchain.get_token_balances = AsyncMock(return_value=[10**24, 10**24])
        self.blockchain.simulate_call = AsyncMock(return_value="0x")
        self.blockchain.is_valid_order_signer = AsyncMock(return_value=False)
        self.blockchain.get_current_block = AsyncMock(return_value=100)

        self.metrics = MagicMock()
        self.metrics.increment = AsyncMock()

        self.coordinator = LastLookCoordinator(
            store=self.store,
            maker_client=self.maker_client,
            blockchain=self.blockchain,
            metrics=self.metrics,
            logger=logging.getLogger("rfqm_test_last_look"),
            chain_id=1,
            registry_address="0x8888888888888888888888888888888888888888",
            sign_retry_delay_seconds=0,
            eth_call_retry_delay_seconds=0,
        )

    async def test_accepted_job_produces_calldata(self) -> None:
        job = _make_job()
        self.maker_client.sign.return_value = _sign(MAKER_KEY, job.order_hash)

        prepared = await self.coordinator.prepare_job(job, WORKER, now_seconds=NOW)

        self.assertEqual(prepared.job.status, RfqmJobStatus.PENDING_LAST_LOOK_ACCEPTED)
        self.assertTrue(prepared.job.last_look_result)
        self.assertEqual(prepared.calldata, generate_calldata(prepared.job))
        self.assertEqual(
            _statuses(self.store),
            [RfqmJobStatus.PENDING_PROCESSING, RfqmJobStatus.PENDING_LAST_LOOK_ACCEPTED],
        )
        self.blockchain.simulate_call.assert_awaited_once_with(prepared.calldata, WORKER)
        self.blockchain.is_valid_order_signer.assert_not_awaited()

    async def test_decline_records_status_even_when_price_check_fails(self) -> None:
        self.maker_client.sign.return_value = None
        self.maker_client.get_price.side_effect = RuntimeError("maker offline")

        with self.assertRaises(JobProcessingError) as raised:
            await self.coordinator.prepare_job(_make_job(), WORKER, now_seconds=NOW)

        self.assertEqual(raised.exception.status, RfqmJobStatus.FAILED_LAST_LOOK_DECLINED)
        self.assertEqual(_statuses(self.store)[-1], RfqmJobStatus.FAILED_LAST_LOOK_DECLINED)
        self.assertFalse(self.store.update_job.await_args_list[-1].args[0].last_look_result)
        self.blockchain.simulate_call.assert_not_awaited()

    async def test_decline_price_check_stores_drift(self) -> None:
        self.maker_client.sign.return_value = None
        self.maker_client.get_price.return_value = MagicMock(maker_amount=997, taker_amount=10)

        with self.assertRaises(JobProcessingError):
            await self.coordinator.prepare_job(_make_job(), WORKER, now_seconds=NOW)

        last_update = self.store.update_job.await_args_list[-1].args[0]
        self.assertEqual(last_update.status, RfqmJobStatus.FAILED_LAST_LOOK_DECLINED)
        self.assertEqual(last_update.ll_reject_price_difference_bps, 30)

    async def test_expired_job_never_requests_signature(self) -> None:
        with self.assertRaises(JobProcessingError) as raised:
            await self.coordinator.prepare_job(_make_job(), WORKER, now_seconds=EXPIRY + 1)

        self.assertEqual(raised.exception.status, RfqmJobStatus.FAILED_EXPIRED)
        self.assertEqual(_statuses(self.store), [RfqmJobStatus.FAILED_EXPIRED])
        self.maker_client.sign.assert_not_awaited()
        self.metrics.increment.assert_awaited_once_with("rfqm_signed_quote_expiry_too_soon", chain_id=1)

    async def test_invalid_job_fails_validation(self) -> None:
        with self.assertRaises(JobProcessingError) as raised:
            await self.coordinator.prepare_job(_make_job(maker_uri=None), WORKER, now_seconds=NOW)

        self.assertEqual(raised.exception.status, RfqmJobStatus.FAILED_VALIDATION_NO_MAKER_URI)
        self.maker_client.sign.assert_not_awaited()

    async def test_existing_submissions_reuse_signed_calldata(self) -> None:
        job = _make_job(status=RfqmJobStatus.PENDING_SUBMITTED)
        job = job.with_updates(maker_signature=_sign(MAKER_KEY, job.order_hash))
        self.store.find_submissions_by_order_hash.return_value = [MagicMock()]

        first = await self.coordinator.prepare_job(job, WORKER, now_seconds=EXPIRY + 1_000)
        second = await self.coordinator.prepare_job(job, WORKER, now_seconds=EXPIRY + 2_000)

        self.assertEqual(first.calldata, second.calldata)
        self.assertEqual(first.calldata, generate_calldata(job))
        self.maker_client.sign.assert_not_awaited()
        self.blockchain.simulate_call.assert_not_awaited()
        self.store.update_job.assert_not_awaited()

    async def test_sign_failures_exhaust_retries(self) -> None:
        self.maker_client.sign.side_effect = RuntimeError("timeout")

        with self.assertRaises(JobProcessingError) as raised:
            await self.coordinator.prepare_job(_make_job(), WORKER, now_seconds=NOW)

        self.assertEqual(raised.exception.status, RfqmJobStatus.FAILED_SIGN_FAILED)
        self.assertEqual(self.maker_client.sign.await_count, 3)
        self.metrics.increment.assert_any_await(
            "rfqm_job_failed_mm_signature_failed",
            maker_uri="https://maker.example",
            chain_id=1,
        )

    async def test_insufficient_balance_fails_before_signing(self) -> None:
        self.blockchain.get_token_balances.return_value = [999, 10]

        with self.assertRaises(JobProcessingError) as raised:
            await self.coordinator.prepare_job(_make_job(), WORKER, now_seconds=NOW)

        self.assertEqual(raised.exception.status, RfqmJobStatus.FAILED_PRESIGN_VALIDATION_FAILED)
        self.maker_client.sign.assert_not_awaited()

    async def test_truncated_maker_signature_is_padded_and_accepted(self) -> None:
        # Walk the order nonce until the maker's r component has a zero leading byte.
        for nonce in range(8192):
            order = replace(_make_order(), expiry_and_nonce=encode_expiry_and_nonce(EXPIRY, 3, nonce))
            order_hash = order.get_hash()
            signed = MAKER_KEY.sign_msg_hash(bytes.fromhex(order_hash[2:]))
            if signed.r < 1 << 248:
                break
        else:
            self.fail("no order hash gives a short r component")

        job = _make_job(order=order, order_hash=order_hash, taker_signature=_sign(OTHER_KEY, order_hash))
        self.maker_client.sign.return_value = Signature(
            signature_type=SignatureType.EIP712,
            v=signed.v + 27,
            r=hex(signed.r),
            s="0x" + signed.s.to_bytes(32, "big").hex(),
        )

        prepared = await self.coordinator.prepare_job(job, WORKER, now_seconds=NOW)

        self.assertEqual(prepared.job.status, RfqmJobStatus.PENDING_LAST_LOOK_ACCEPTED)
        self.assertEqual(prepared.job.maker_signature, _sign(MAKER_KEY, order_hash))
        self.blockchain.is_valid_order_signer.assert_not_awaited()

    async def test_unauthorized_signer_fails(self) -> None:
        job = _make_job()
        self.maker_client.sign.return_value = _sign(OTHER_KEY, job.order_hash)

        with self.assertRaises(JobProcessingError) as raised:
            await self.coordinator.prepare_job(job, WORKER, now_seconds=NOW)

        self.assertEqual(raised.exception.status, RfqmJobStatus.FAILED_SIGN_FAILED)
        self.blockchain.is_valid_order_signer.assert_awaited_once()
        self.blockchain.simulate_call.assert_not_awaited()

    async def test_delegated_signer_is_accepted(self) -> None:
        job = _make_job()
        self.maker_client.sign.return_value = _sign(OTHER_KEY, job.order_hash)
        self.blockchain.is_valid_order_signer.return_value = True

        prepared = await self.coordinator.prepare_job(job, WORKER, now_seconds=NOW)

        self.assertEqual(prepared.job.status, RfqmJobStatus.PENDING_LAST_LOOK_ACCEPTED)

    async def test_eth_call_failure_marks_job(self) -> None:
        job = _make_job()
        self.maker_client.sign.return_value = _sign(MAKER_KEY, job.order_hash)
        self.blockchain.simulate_call.side_effect = RuntimeError("execution reverted")

        with self.assertRaises(JobProcessingError) as raised:
            await self.coordinator.prepare_job(job, WORKER, now_seconds=NOW)

        self.assertEqual(raised.exception.status, RfqmJobStatus.FAILED_ETH_CALL_FAILED)
        self.assertEqual(self.blockchain.simulate_call.await_count, 3)
        self.assertEqual(_statuses(self.store)[-1], RfqmJobStatus.FAILED_ETH_CALL_FAILED)


class PriceDifferenceTests(unittest.TestCase):
    def test_rounds_to_one_significant_digit(self) -> None:
        self.assertEqual(
            price_difference_bps(original_maker_amount=1_000, price_check_maker_amount=997, price_check_taker_amount=10),
            30,
        )
        self.assertEqual(
            price_difference_bps(original_maker_amount=1_000, price_check_maker_amount=1_000, price_check_taker_amount=10),
            0,
        )
        self.assertEqual(
            price_difference_bps(original_maker_amount=1_000, price_check_maker_amount=1_046, price_check_taker_amount=10),
            500,
        )


if __name__ == "__main__":
    unittest.main()
