from __future__ import annotations

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any

from eth_keys import keys
from eth_utils import keccak, to_bytes

ETH_SIGN_PREFIX = b"\x19Ethereum Signed Message:\n32"
SIGNATURE_COMPONENT_HEX_LENGTH = 64


class SignatureType(IntEnum):
    ILLEGAL = 0
    INVALID = 1
    EIP712 = 2
    ETH_SIGN = 3


@dataclass(slots=True, frozen=True)
class Signature:
    signature_type: int
    v: int
    r: str
    s: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "signatureType": int(self.signature_type),
            "v": int(self.v),
            "r": self.r,
            "s": self.s,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Signature":
        signature_type = payload.get("signatureType", payload.get("signature_type"))
        if signature_type is None or payload.get("v") is None:
            raise ValueError(f"Malformed signature payload: {payload}")
        return cls(
            signature_type=int(signature_type),
            v=int(payload["v"]),
            r=str(payload.get("r") or ""),
            s=str(payload.get("s") or ""),
        )


def _strip_hex_prefix(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


def _pad_component(value: str) -> str:
    raw = _strip_hex_prefix(value.strip())
    if len(raw) > SIGNATURE_COMPONENT_HEX_LENGTH:
        raise ValueError(f"Signature component is longer than 32 bytes: {value}")
    return "0x" + raw.rjust(SIGNATURE_COMPONENT_HEX_LENGTH, "0").lower()


def pad_signature(signature: Signature) -> Signature:
    """Left-pad ``r`` and ``s`` to 32 bytes.

    Some makers serialize components as plain integers, which loses leading
    zero bytes and breaks signer recovery.
    """
    return replace(signature, r=_pad_component(signature.r), s=_pad_component(signature.s))


def is_padded(signature: Signature) -> bool:
    return all(
        len(_strip_hex_prefix(component)) == SIGNATURE_COMPONENT_HEX_LENGTH
        for component in (signature.r, signature.s)
    )


def recover_signer(order_hash: str, signature: Signature) -> str:
    message_hash = to_bytes(hexstr=order_hash)
    if len(message_hash) != 32:
        raise ValueError(f"Order hash must be 32 bytes: {order_hash}")

    if signature.signature_type == SignatureType.ETH_SIGN:
        message_hash = keccak(ETH_SIGN_PREFIX + message_hash)
    elif signature.signature_type != SignatureType.EIP712:
        raise ValueError(f"Unsupported signature type: {signature.signature_type}")

    recovery_id = signature.v - 27 if signature.v >= 27 else signature.v
    key_signature = keys.Signature(
        vrs=(
            recovery_id,
            int(_strip_hex_prefix(signature.r) or "0", 16),
            int(_strip_hex_prefix(signature.s) or "0", 16),
        )
    )
    public_key = key_signature.recover_public_key_from_msg_hash(message_hash)
    return public_key.to_checksum_address()
