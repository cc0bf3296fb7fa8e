from __future__ import annotations

import unittest

from rfqm.settlement.otc_order import OtcOrder, encode_expiry_and_nonce
from rfqm.settlement.signatures import Signature, SignatureType
from rfqm.settlement.types import Fee, RfqmJob, RfqmJobStatus
from rfqm.settlement.validation import validate_job

EXPIRY = 1_700_000_000


def _make_job(**overrides: object) -> RfqmJob:
    order = OtcOrder(
        maker="0x1111111111111111111111111111111111111111",
        taker="0x2222222222222222222222222222222222222222",
        maker_token="0x3333333333333333333333333333333333333333",
        taker_token="0x4444444444444444444444444444444444444444",
        maker_amount=100,
        taker_amount=200,
        tx_origin="0x5555555555555555555555555555555555555555",
        expiry_and_nonce=encode_expiry_and_nonce(EXPIRY, 1, 1),
        chain_id=1,
        verifying_contract="0xdef1c0ded9bec7f1a1670819833240f027b25eff",
    )
    fields: dict[str, object] = {
        "order_hash": order.get_hash(),
        "chain_id": 1,
        "status": RfqmJobStatus.PENDING_ENQUEUED,
        "expiry": EXPIRY,
        "created_at": "2023-11-14T22:00:00+00:00",
        "order": order,
        "fee": Fee(type="fixed", token="0x6666666666666666666666666666666666666666", amount=10),
        "maker_uri": "https://maker.example",
        "taker_signature": Signature(signature_type=SignatureType.EIP712, v=27, r="0x1", s="0x2"),
    }
    fields.update(overrides)
    return RfqmJob(**fields)  # type: ignore[arg-type]


class ValidateJobTests(unittest.TestCase):
    def test_complete_unexpired_job_passes(self) -> None:
        self.assertIsNone(validate_job(_make_job(), EXPIRY - 60))

    def test_missing_maker_uri(self) -> None:
        self.assertEqual(
            validate_job(_make_job(maker_uri=None), EXPIRY - 60),
            RfqmJobStatus.FAILED_VALIDATION_NO_MAKER_URI,
        )

    def test_missing_order(self) -> None:
        self.assertEqual(
            validate_job(_make_job(order=None), EXPIRY - 60),
            RfqmJobStatus.FAILED_VALIDATION_NO_ORDER,
        )

    def test_missing_fee(self) -> None:
        self.assertEqual(
            validate_job(_make_job(fee=None), EXPIRY - 60),
            RfqmJobStatus.FAILED_VALIDATION_NO_FEE,
        )

    def test_expiry_at_now_is_expired(self) -> None:
        self.assertEqual(validate_job(_make_job(), EXPIRY), RfqmJobStatus.FAILED_EXPIRED)

    def test_missing_taker_signature(self) -> None:
        self.assertEqual(
            validate_job(_make_job(taker_signature=None), EXPIRY - 60),
            RfqmJobStatus.FAILED_VALIDATION_NO_TAKER_SIGNATURE,
        )

    def test_first_failing_check_wins(self) -> None:
        job = _make_job(maker_uri=None, fee=None, taker_signature=None)

        self.assertEqual(validate_job(job, EXPIRY + 60), RfqmJobStatus.FAILED_VALIDATION_NO_MAKER_URI)


class JobStatusTests(unittest.TestCase):
    def test_status_families(self) -> None:
        self.assertTrue(RfqmJobStatus.PENDING_SUBMITTED.is_pending)
        self.assertFalse(RfqmJobStatus.PENDING_SUBMITTED.is_resolved)
        self.assertFalse(RfqmJobStatus.SUCCEEDED_UNCONFIRMED.is_resolved)
        self.assertFalse(RfqmJobStatus.FAILED_REVERTED_UNCONFIRMED.is_resolved)
        self.assertTrue(RfqmJobStatus.SUCCEEDED_CONFIRMED.is_resolved)
        self.assertTrue(RfqmJobStatus.FAILED_LAST_LOOK_DECLINED.is_failed)
        self.assertTrue(RfqmJobStatus.FAILED_LAST_LOOK_DECLINED.is_resolved)

    def test_job_round_trips_through_stored_form(self) -> None:
        job = _make_job(worker_address="0x7777777777777777777777777777777777777777", last_look_result=True)

        self.assertEqual(RfqmJob.from_dict(job.to_dict()), job)


if __name__ == "__main__":
    unittest.main()
