from __future__ import annotations

import unittest

from eth_keys import keys
from eth_utils import keccak

from rfqm.settlement.signatures import (
    ETH_SIGN_PREFIX,
    Signature,
    SignatureType,
    is_padded,
    pad_signature,
    recover_signer,
)

PRIVATE_KEY = keys.PrivateKey(bytes.fromhex("4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"))
ORDER_HASH = "0x" + keccak(text="rfqm order").hex()


def _sign(message_hash: bytes, signature_type: SignatureType, *, v_offset: int = 27) -> Signature:
    signed = PRIVATE_KEY.sign_msg_hash(message_hash)
    return Signature(
        signature_type=signature_type,
        v=signed.v + v_offset,
        r=hex(signed.r),
        s=hex(signed.s),
    )


class PadSignatureTests(unittest.TestCase):
    def test_short_components_are_left_padded(self) -> None:
        signature = Signature(signature_type=2, v=27, r="0xABC", s="1f")

        padded = pad_signature(signature)

        self.assertEqual(padded.r, "0x" + "0" * 61 + "abc")
        self.assertEqual(padded.s, "0x" + "0" * 62 + "1f")
        self.assertTrue(is_padded(padded))
        self.assertFalse(is_padded(signature))

    def test_already_padded_signature_is_unchanged(self) -> None:
        signature = Signature(signature_type=2, v=28, r="0x" + "1" * 64, s="0x" + "2" * 64)

        self.assertEqual(pad_signature(signature), signature)

    def test_overlong_component_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            pad_signature(Signature(signature_type=2, v=27, r="0x" + "1" * 66, s="0x1"))

    def test_from_dict_requires_type_and_v(self) -> None:
        parsed = Signature.from_dict({"signatureType": 3, "v": 28, "r": "0x1", "s": "0x2"})

        self.assertEqual(parsed.signature_type, SignatureType.ETH_SIGN)
        with self.assertRaises(ValueError):
            Signature.from_dict({"r": "0x1", "s": "0x2"})


class RecoverSignerTests(unittest.TestCase):
    def test_recovers_eip712_signer(self) -> None:
        signature = pad_signature(_sign(bytes.fromhex(ORDER_HASH[2:]), SignatureType.EIP712))

        self.assertEqual(recover_signer(ORDER_HASH, signature), PRIVATE_KEY.public_key.to_checksum_address())

    def test_recovers_eth_sign_signer(self) -> None:
        prefixed = keccak(ETH_SIGN_PREFIX + bytes.fromhex(ORDER_HASH[2:]))
        signature = pad_signature(_sign(prefixed, SignatureType.ETH_SIGN))

        self.assertEqual(recover_signer(ORDER_HASH, signature), PRIVATE_KEY.public_key.to_checksum_address())

    def test_accepts_raw_recovery_id(self) -> None:
        signature = pad_signature(_sign(bytes.fromhex(ORDER_HASH[2:]), SignatureType.EIP712, v_offset=0))

        self.assertEqual(recover_signer(ORDER_HASH, signature), PRIVATE_KEY.public_key.to_checksum_address())

    def test_truncated_component_recovers_after_padding(self) -> None:
        # Deterministic signing: the first hash whose r has a zero leading byte.
        for counter in range(8192):
            order_hash = "0x" + keccak(text=f"rfqm order {counter}").hex()
            signed = PRIVATE_KEY.sign_msg_hash(bytes.fromhex(order_hash[2:]))
            if signed.r < 1 << 248:
                break
        else:
            self.fail("no signature with a short r component")

        full = Signature(
            signature_type=SignatureType.EIP712,
            v=signed.v + 27,
            r="0x" + signed.r.to_bytes(32, "big").hex(),
            s="0x" + signed.s.to_bytes(32, "big").hex(),
        )
        truncated = Signature(
            signature_type=SignatureType.EIP712,
            v=full.v,
            r="0x" + signed.r.to_bytes(32, "big")[1:].hex(),
            s=full.s,
        )

        padded = pad_signature(truncated)

        self.assertFalse(is_padded(truncated))
        self.assertEqual(padded, full)
        self.assertEqual(recover_signer(order_hash, padded), recover_signer(order_hash, full))
        self.assertEqual(recover_signer(order_hash, padded), PRIVATE_KEY.public_key.to_checksum_address())

    def test_unsupported_signature_type_is_rejected(self) -> None:
        signature = pad_signature(_sign(bytes.fromhex(ORDER_HASH[2:]), SignatureType.EIP712))

        with self.assertRaises(ValueError):
            recover_signer(ORDER_HASH, Signature(signature_type=SignatureType.INVALID, v=signature.v, r=signature.r, s=signature.s))

    def test_short_order_hash_is_rejected(self) -> None:
        signature = pad_signature(_sign(bytes.fromhex(ORDER_HASH[2:]), SignatureType.EIP712))

        with self.assertRaises(ValueError):
            recover_signer("0x1234", signature)


if __name__ == "__main__":
    unittest.main()
