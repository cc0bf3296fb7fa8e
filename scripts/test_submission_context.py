from __future__ import annotations

import unittest
from unittest.mock import AsyncMock, MagicMock

from rfqm.settlement.errors import InvariantViolationError
from rfqm.settlement.submission_context import SubmissionContext
from rfqm.settlement.types import (
    RfqmJobStatus,
    SubmissionStatus,
    TransactionReceipt,
    TransactionSubmission,
)

ORDER_HASH = "0x" + "ab" * 32
WORKER = "0x7777777777777777777777777777777777777777"
PROXY = "0xdef1c0ded9bec7f1a1670819833240f027b25eff"


def _submission(tx_hash: str, *, nonce: int = 5, max_fee: int = 100, tip: int = 2, created_at: str = "2023-11-14T22:13:20+00:00") -> TransactionSubmission:
    return TransactionSubmission(
        transaction_hash=tx_hash,
        order_hash=ORDER_HASH,
        nonce=nonce,
        max_fee_per_gas=max_fee,
        max_priority_fee_per_gas=tip,
        from_address=WORKER,
        to_address=PROXY,
        status=SubmissionStatus.SUBMITTED,
        created_at=created_at,
    )


def _receipt(tx_hash: str, *, block_number: int = 100, status: int = 1) -> TransactionReceipt:
    return TransactionReceipt(
        transaction_hash=tx_hash,
        block_hash="0x" + "cd" * 32,
        block_number=block_number,
        status=status,
        gas_used=90_000,
        effective_gas_price=40,
    )


def _blockchain(receipts: list[TransactionReceipt | None], current_block: int = 100) -> MagicMock:
    blockchain = MagicMock()
    blockchain.get_receipts = AsyncMock(return_value=receipts)
    blockchain.get_current_block = AsyncMock(return_value=current_block)
    return blockchain


class SubmissionContextTests(unittest.IsolatedAsyncioTestCase):
    def test_requires_submissions_sharing_a_nonce(self) -> None:
        with self.assertRaises(ValueError):
            SubmissionContext(_blockchain([]), [])
        with self.assertRaises(InvariantViolationError):
            SubmissionContext(_blockchain([]), [_submission("0x01", nonce=1), _submission("0x02", nonce=2)])

    def test_add_transaction_rejects_other_nonce(self) -> None:
        context = SubmissionContext(_blockchain([]), [_submission("0x01")])

        with self.assertRaises(InvariantViolationError):
            context.add_transaction(_submission("0x02", nonce=6))
        self.assertEqual(len(context.transactions), 1)

    def test_max_gas_fees_and_first_timestamp(self) -> None:
        context = SubmissionContext(
            _blockchain([]),
            [
                _submission("0x01", max_fee=100, tip=3, created_at="2023-11-14T22:13:30+00:00"),
                _submission("0x02", max_fee=120, tip=2, created_at="2023-11-14T22:13:20+00:00"),
            ],
        )

        self.assertEqual(context.max_gas_fees.max_fee_per_gas, 120)
        self.assertEqual(context.max_gas_fees.max_priority_fee_per_gas, 3)
        self.assertEqual(context.first_submission_timestamp_seconds, 1_700_000_000.0)
        self.assertEqual(context.nonce, 5)

    async def test_no_receipt_means_still_submitted(self) -> None:
        context = SubmissionContext(_blockchain([None, None]), [_submission("0x01"), _submission("0x02")])

        self.assertIsNone(await context.get_receipt())
        self.assertEqual(context.job_status, RfqmJobStatus.PENDING_SUBMITTED)

    async def test_multiple_receipts_violate_invariant(self) -> None:
        context = SubmissionContext(
            _blockchain([_receipt("0x01"), _receipt("0x02")]),
            [_submission("0x01"), _submission("0x02")],
        )

        with self.assertRaises(InvariantViolationError):
            await context.get_receipt()

    async def test_receipt_marks_winner_and_drops_others(self) -> None:
        context = SubmissionContext(
            _blockchain([None, _receipt("0x02")], current_block=101),
            [_submission("0x01"), _submission("0x02")],
        )

        receipt = await context.get_receipt()
        self.assertIsNotNone(receipt)
        await context.update_for_receipt(receipt)

        statuses = {submission.transaction_hash: submission.status for submission in context.transactions}
        self.assertEqual(statuses["0x01"], SubmissionStatus.DROPPED_AND_REPLACED)
        self.assertEqual(statuses["0x02"], SubmissionStatus.SUCCEEDED_UNCONFIRMED)
        self.assertEqual(context.job_status, RfqmJobStatus.SUCCEEDED_UNCONFIRMED)
        mined = context.transactions[1]
        self.assertEqual((mined.block_mined, mined.gas_used, mined.gas_price), (100, 90_000, 40))

    async def test_receipt_confirms_after_finality_depth(self) -> None:
        context = SubmissionContext(_blockchain([_receipt("0x01")], current_block=103), [_submission("0x01")])

        await context.update_for_receipt(_receipt("0x01"))

        self.assertEqual(context.job_status, RfqmJobStatus.SUCCEEDED_CONFIRMED)

    async def test_reverted_receipt(self) -> None:
        unconfirmed = SubmissionContext(_blockchain([], current_block=102), [_submission("0x01")])
        confirmed = SubmissionContext(_blockchain([], current_block=200), [_submission("0x01")])

        await unconfirmed.update_for_receipt(_receipt("0x01", status=0))
        await confirmed.update_for_receipt(_receipt("0x01", status=0))

        self.assertEqual(unconfirmed.job_status, RfqmJobStatus.FAILED_REVERTED_UNCONFIRMED)
        self.assertEqual(confirmed.job_status, RfqmJobStatus.FAILED_REVERTED_CONFIRMED)


if __name__ == "__main__":
    unittest.main()
