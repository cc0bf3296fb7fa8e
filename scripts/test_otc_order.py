from __future__ import annotations

import unittest

from rfqm.settlement.otc_order import (
    AFFILIATE_DATA_SELECTOR,
    OtcOrder,
    build_fill_calldata,
    encode_expiry_and_nonce,
    parse_expiry_and_nonce,
)
from rfqm.settlement.signatures import Signature, SignatureType

MAKER = "0x1111111111111111111111111111111111111111"
TAKER = "0x2222222222222222222222222222222222222222"
MAKER_TOKEN = "0x3333333333333333333333333333333333333333"
TAKER_TOKEN = "0x4444444444444444444444444444444444444444"
TX_ORIGIN = "0x5555555555555555555555555555555555555555"
EXCHANGE_PROXY = "0xdef1c0ded9bec7f1a1670819833240f027b25eff"


def _make_order(**overrides: object) -> OtcOrder:
    fields: dict[str, object] = {
        "maker": MAKER,
        "taker": TAKER,
        "maker_token": MAKER_TOKEN,
        "taker_token": TAKER_TOKEN,
        "maker_amount": 1_000_000,
        "taker_amount": 500_000_000_000_000_000,
        "tx_origin": TX_ORIGIN,
        "expiry_and_nonce": encode_expiry_and_nonce(1_700_000_000, 7, 1_699_999_000),
        "chain_id": 1,
        "verifying_contract": EXCHANGE_PROXY,
    }
    fields.update(overrides)
    return OtcOrder(**fields)  # type: ignore[arg-type]


def _make_signature(fill: str) -> Signature:
    return Signature(
        signature_type=SignatureType.EIP712,
        v=27,
        r="0x" + fill * 64,
        s="0x" + fill * 64,
    )


class ExpiryAndNonceTests(unittest.TestCase):
    def test_round_trip_preserves_all_fields(self) -> None:
        packed = encode_expiry_and_nonce(1_700_000_123, 42, 1_699_999_999)
        parsed = parse_expiry_and_nonce(packed)

        self.assertEqual(parsed.expiry, 1_700_000_123)
        self.assertEqual(parsed.nonce_bucket, 42)
        self.assertEqual(parsed.nonce, 1_699_999_999)

    def test_round_trip_at_field_limits(self) -> None:
        expiry = (1 << 64) - 1
        bucket = (1 << 64) - 1
        nonce = (1 << 128) - 1
        parsed = parse_expiry_and_nonce(encode_expiry_and_nonce(expiry, bucket, nonce))

        self.assertEqual((parsed.expiry, parsed.nonce_bucket, parsed.nonce), (expiry, bucket, nonce))

    def test_out_of_range_fields_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            encode_expiry_and_nonce(1 << 64, 0, 0)
        with self.assertRaises(ValueError):
            encode_expiry_and_nonce(1, -1, 0)
        with self.assertRaises(ValueError):
            parse_expiry_and_nonce(-1)

    def test_order_exposes_decoded_expiry(self) -> None:
        order = _make_order()

        self.assertEqual(order.expiry, 1_700_000_000)
        self.assertEqual(order.nonce_bucket, 7)
        self.assertEqual(order.nonce, 1_699_999_000)


class OtcOrderHashTests(unittest.TestCase):
    def test_hash_is_stable_and_field_sensitive(self) -> None:
        order = _make_order()

        self.assertEqual(order.get_hash(), _make_order().get_hash())
        self.assertTrue(order.get_hash().startswith("0x"))
        self.assertEqual(len(order.get_hash()), 66)
        self.assertNotEqual(order.get_hash(), _make_order(maker_amount=1_000_001).get_hash())
        self.assertNotEqual(order.get_hash(), _make_order(chain_id=137).get_hash())

    def test_wire_and_stored_forms_parse_back_to_same_order(self) -> None:
        order = _make_order()

        self.assertEqual(OtcOrder.from_dict(order.to_wire()), order)
        self.assertEqual(OtcOrder.from_dict(order.to_dict()), order)

    def test_missing_field_is_rejected(self) -> None:
        payload = _make_order().to_dict()
        del payload["taker"]

        with self.assertRaises(ValueError):
            OtcOrder.from_dict(payload)


class FillCalldataTests(unittest.TestCase):
    def test_calldata_is_deterministic_for_same_attribution(self) -> None:
        order = _make_order()
        first = build_fill_calldata(
            order,
            _make_signature("a"),
            _make_signature("b"),
            is_unwrap=False,
            affiliate_address=None,
            attribution_id=1_700_000_000,
        )
        second = build_fill_calldata(
            order,
            _make_signature("a"),
            _make_signature("b"),
            is_unwrap=False,
            affiliate_address=None,
            attribution_id=1_700_000_000,
        )

        self.assertEqual(first, second)

    def test_unwrap_uses_a_different_selector(self) -> None:
        order = _make_order()
        plain = build_fill_calldata(
            order,
            _make_signature("a"),
            _make_signature("b"),
            is_unwrap=False,
            affiliate_address=None,
            attribution_id=1,
        )
        unwrap = build_fill_calldata(
            order,
            _make_signature("a"),
            _make_signature("b"),
            is_unwrap=True,
            affiliate_address=None,
            attribution_id=1,
        )

        self.assertNotEqual(plain[:10], unwrap[:10])
        self.assertEqual(plain[10:], unwrap[10:])

    def test_affiliate_suffix_is_appended(self) -> None:
        affiliate = "0x6666666666666666666666666666666666666666"
        calldata = build_fill_calldata(
            _make_order(),
            _make_signature("a"),
            _make_signature("b"),
            is_unwrap=False,
            affiliate_address=affiliate,
            attribution_id=255,
        )

        suffix = calldata[-(8 + 128):]
        self.assertTrue(suffix.startswith(AFFILIATE_DATA_SELECTOR.hex()))
        self.assertIn("6666666666666666666666666666666666666666", suffix)
        self.assertTrue(suffix.endswith("ff"))

    def test_unpadded_signature_is_rejected(self) -> None:
        short = Signature(signature_type=SignatureType.EIP712, v=27, r="0x" + "a" * 62, s="0x" + "b" * 64)

        with self.assertRaises(ValueError):
            build_fill_calldata(
                _make_order(),
                short,
                _make_signature("b"),
                is_unwrap=False,
                affiliate_address=None,
                attribution_id=1,
            )


if __name__ == "__main__":
    unittest.main()
