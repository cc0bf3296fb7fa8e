from __future__ import annotations

from typing import Protocol

from .errors import InvariantViolationError
from .types import (
    GasFees,
    RfqmJobStatus,
    SubmissionStatus,
    TransactionReceipt,
    TransactionSubmission,
)

BLOCK_FINALITY_THRESHOLD = 3

_JOB_STATUS_BY_SUBMISSION_STATUS = {
    SubmissionStatus.SUCCEEDED_UNCONFIRMED: RfqmJobStatus.SUCCEEDED_UNCONFIRMED,
    SubmissionStatus.SUCCEEDED_CONFIRMED: RfqmJobStatus.SUCCEEDED_CONFIRMED,
    SubmissionStatus.REVERTED_UNCONFIRMED: RfqmJobStatus.FAILED_REVERTED_UNCONFIRMED,
    SubmissionStatus.REVERTED_CONFIRMED: RfqmJobStatus.FAILED_REVERTED_CONFIRMED,
}


class ReceiptSource(Protocol):
    async def get_receipts(self, transaction_hashes: list[str]) -> list[TransactionReceipt | None]:
        ...

    async def get_current_block(self) -> int:
        ...


class SubmissionContext:
    """Working set of fee-bump submissions that share one nonce."""

    def __init__(self, blockchain: ReceiptSource, submissions: list[TransactionSubmission]) -> None:
        if not submissions:
            raise ValueError("SubmissionContext requires at least one submission")
        self._ensure_consistent(submissions)
        self._blockchain = blockchain
        self._submissions = list(submissions)

    @staticmethod
    def _ensure_consistent(submissions: list[TransactionSubmission]) -> None:
        nonces = {submission.nonce for submission in submissions}
        if len(nonces) > 1:
            raise InvariantViolationError(f"Submissions must share a nonce, found {sorted(nonces)}")
        transaction_types = {submission.transaction_type for submission in submissions}
        if len(transaction_types) > 1:
            raise InvariantViolationError(
                f"Submissions must share a transaction type, found {sorted(transaction_types)}"
            )

    @property
    def transactions(self) -> list[TransactionSubmission]:
        return list(self._submissions)

    @property
    def nonce(self) -> int:
        return self._submissions[0].nonce

    @property
    def transaction_type(self) -> int:
        return self._submissions[0].transaction_type

    @property
    def max_gas_fees(self) -> GasFees:
        return GasFees(
            max_fee_per_gas=max(submission.max_fee_per_gas for submission in self._submissions),
            max_priority_fee_per_gas=max(
                submission.max_priority_fee_per_gas for submission in self._submissions
            ),
        )

    @property
    def first_submission_timestamp_seconds(self) -> float:
        return min(submission.created_at_epoch_seconds for submission in self._submissions)

    def add_transaction(self, submission: TransactionSubmission) -> None:
        self._ensure_consistent([*self._submissions, submission])
        self._submissions.append(submission)

    async def get_receipt(self) -> TransactionReceipt | None:
        hashes = [submission.transaction_hash for submission in self._submissions]
        receipts = [receipt for receipt in await self._blockchain.get_receipts(hashes) if receipt is not None]
        if len(receipts) > 1:
            raise InvariantViolationError(
                f"Found {len(receipts)} mined receipts for nonce {self.nonce}: "
                f"{[receipt.transaction_hash for receipt in receipts]}"
            )
        return receipts[0] if receipts else None

    async def update_for_receipt(self, receipt: TransactionReceipt) -> None:
        current_block = await self._blockchain.get_current_block()
        is_final = current_block - receipt.block_number >= BLOCK_FINALITY_THRESHOLD
        if receipt.succeeded:
            mined_status = SubmissionStatus.SUCCEEDED_CONFIRMED if is_final else SubmissionStatus.SUCCEEDED_UNCONFIRMED
        else:
            mined_status = SubmissionStatus.REVERTED_CONFIRMED if is_final else SubmissionStatus.REVERTED_UNCONFIRMED

        updated: list[TransactionSubmission] = []
        for submission in self._submissions:
            if submission.transaction_hash.lower() == receipt.transaction_hash.lower():
                updated.append(
                    submission.with_updates(
                        status=mined_status,
                        block_mined=receipt.block_number,
                        gas_used=receipt.gas_used,
                        gas_price=receipt.effective_gas_price,
                    )
                )
            else:
                updated.append(submission.with_updates(status=SubmissionStatus.DROPPED_AND_REPLACED))
        self._submissions = updated

    @property
    def job_status(self) -> RfqmJobStatus:
        mined = [submission for submission in self._submissions if submission.status.is_mined]
        if len(mined) > 1:
            raise InvariantViolationError(
                f"More than one mined submission for nonce {self.nonce}: "
                f"{[submission.transaction_hash for submission in mined]}"
            )
        if not mined:
            return RfqmJobStatus.PENDING_SUBMITTED
        return _JOB_STATUS_BY_SUBMISSION_STATUS[mined[0].status]
