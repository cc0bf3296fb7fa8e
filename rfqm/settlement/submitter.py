from __future__ import annotations

import asyncio
import logging
from typing import Any

from rfqm.common import log_event

from .errors import InvariantViolationError
from .types import GasFees, JobStore, SubmissionStatus, TransactionSubmission, now_iso


class TransactionSubmitter:
    """Signs and broadcasts settlement transactions, recording each attempt before broadcast."""

    def __init__(self, *, store: JobStore, blockchain: Any, logger: logging.Logger) -> None:
        self._store = store
        self._blockchain = blockchain
        self._logger = logger

    async def submit_transaction(
        self,
        *,
        order_hash: str,
        worker_address: str,
        calldata: str,
        gas_fees: GasFees,
        nonce: int,
        gas_estimate: int,
    ) -> TransactionSubmission:
        transaction = self._blockchain.build_transaction(
            calldata=calldata,
            gas_fees=gas_fees,
            nonce=nonce,
            gas_estimate=gas_estimate,
        )
        signed = await self._blockchain.sign_transaction(transaction)

        presubmit = TransactionSubmission(
            transaction_hash=signed.transaction_hash,
            order_hash=order_hash,
            nonce=nonce,
            max_fee_per_gas=gas_fees.max_fee_per_gas,
            max_priority_fee_per_gas=gas_fees.max_priority_fee_per_gas,
            from_address=worker_address,
            to_address=self._blockchain.exchange_proxy_address,
            status=SubmissionStatus.PRESUBMIT,
            created_at=now_iso(),
        )
        await self._store.write_submission(presubmit)

        broadcast_hash = await self._blockchain.broadcast(signed.raw_transaction)
        log_event(
            self._logger,
            level="info",
            event="transaction_broadcast",
            message="Transaction submitted to exchange proxy",
            order_hash=order_hash,
            worker_address=worker_address,
            transaction_hash=broadcast_hash,
            nonce=nonce,
        )
        if broadcast_hash.lower() != signed.transaction_hash.lower():
            raise InvariantViolationError(
                f"Node returned hash {broadcast_hash} for signed transaction {signed.transaction_hash}"
            )

        await self._store.update_submissions([presubmit.with_updates(status=SubmissionStatus.SUBMITTED)])
        stored = await self._store.find_submission_by_hash(signed.transaction_hash)
        if stored is None:
            raise RuntimeError(f"Could not find submission {signed.transaction_hash} after saving it")
        return stored

    async def recover_presubmits(self, submissions: list[TransactionSubmission]) -> list[TransactionSubmission]:
        """Resolve submissions left in Presubmit by a crash.

        Presubmits found on the network become Submitted. The rest are dropped from
        the returned working set but stay in storage for later forensic recovery.
        """

        async def recover(submission: TransactionSubmission) -> TransactionSubmission | None:
            if submission.status != SubmissionStatus.PRESUBMIT:
                return submission

            transaction = await self._blockchain.get_transaction(submission.transaction_hash)
            if transaction is None:
                log_event(
                    self._logger,
                    level="warning",
                    event="presubmit_not_found",
                    message="Presubmit transaction not found on the network, excluding it",
                    order_hash=submission.order_hash,
                    transaction_hash=submission.transaction_hash,
                )
                return None

            promoted = submission.with_updates(status=SubmissionStatus.SUBMITTED)
            await self._store.update_submissions([promoted])
            log_event(
                self._logger,
                level="info",
                event="presubmit_recovered",
                message="Presubmit transaction found on the network",
                order_hash=submission.order_hash,
                transaction_hash=submission.transaction_hash,
            )
            return promoted

        recovered = await asyncio.gather(*(recover(submission) for submission in submissions))
        return [submission for submission in recovered if submission is not None]
