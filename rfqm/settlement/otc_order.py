from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from eth_abi import encode as abi_encode
from eth_utils import keccak, to_bytes, to_checksum_address

from .signatures import Signature

NULL_ADDRESS = "0x0000000000000000000000000000000000000000"

UINT64_MAX = (1 << 64) - 1
UINT128_MAX = (1 << 128) - 1
EXPIRY_SHIFT = 192
NONCE_BUCKET_SHIFT = 128

EIP712_DOMAIN_NAME = "ZeroEx"
EIP712_DOMAIN_VERSION = "1.0.0"
EIP712_DOMAIN_TYPEHASH = keccak(
    text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)
OTC_ORDER_TYPEHASH = keccak(
    text=(
        "OtcOrder(address makerToken,address takerToken,uint128 makerAmount,uint128 takerAmount,"
        "address maker,address taker,address txOrigin,uint256 expiryAndNonce)"
    )
)

OTC_ORDER_TUPLE = "(address,address,uint128,uint128,address,address,address,uint256)"
SIGNATURE_TUPLE = "(uint8,uint8,bytes32,bytes32)"
FILL_TAKER_SIGNED_OTC_ORDER = f"fillTakerSignedOtcOrder({OTC_ORDER_TUPLE},{SIGNATURE_TUPLE},{SIGNATURE_TUPLE})"
FILL_TAKER_SIGNED_OTC_ORDER_FOR_ETH = (
    f"fillTakerSignedOtcOrderForEth({OTC_ORDER_TUPLE},{SIGNATURE_TUPLE},{SIGNATURE_TUPLE})"
)
AFFILIATE_DATA_SELECTOR = bytes.fromhex("869584cd")


@dataclass(slots=True, frozen=True)
class ExpiryAndNonce:
    expiry: int
    nonce_bucket: int
    nonce: int


def encode_expiry_and_nonce(expiry: int, nonce_bucket: int, nonce: int) -> int:
    """Pack expiry (high 64 bits), nonce bucket (next 64) and nonce (low 128)."""
    if not 0 <= expiry <= UINT64_MAX:
        raise ValueError(f"expiry out of range: {expiry}")
    if not 0 <= nonce_bucket <= UINT64_MAX:
        raise ValueError(f"nonce bucket out of range: {nonce_bucket}")
    if not 0 <= nonce <= UINT128_MAX:
        raise ValueError(f"nonce out of range: {nonce}")
    return (expiry << EXPIRY_SHIFT) | (nonce_bucket << NONCE_BUCKET_SHIFT) | nonce


def parse_expiry_and_nonce(expiry_and_nonce: int) -> ExpiryAndNonce:
    value = int(expiry_and_nonce)
    if value < 0 or value >> 256:
        raise ValueError(f"expiryAndNonce out of range: {expiry_and_nonce}")
    return ExpiryAndNonce(
        expiry=value >> EXPIRY_SHIFT,
        nonce_bucket=(value >> NONCE_BUCKET_SHIFT) & UINT64_MAX,
        nonce=value & UINT128_MAX,
    )


@dataclass(slots=True, frozen=True)
class OtcOrder:
    maker: str
    taker: str
    maker_token: str
    taker_token: str
    maker_amount: int
    taker_amount: int
    tx_origin: str
    expiry_and_nonce: int
    chain_id: int
    verifying_contract: str

    @property
    def expiry(self) -> int:
        return parse_expiry_and_nonce(self.expiry_and_nonce).expiry

    @property
    def nonce_bucket(self) -> int:
        return parse_expiry_and_nonce(self.expiry_and_nonce).nonce_bucket

    @property
    def nonce(self) -> int:
        return parse_expiry_and_nonce(self.expiry_and_nonce).nonce

    def _struct_values(self) -> list[Any]:
        return [
            to_checksum_address(self.maker_token),
            to_checksum_address(self.taker_token),
            int(self.maker_amount),
            int(self.taker_amount),
            to_checksum_address(self.maker),
            to_checksum_address(self.taker),
            to_checksum_address(self.tx_origin),
            int(self.expiry_and_nonce),
        ]

    def domain_separator(self) -> bytes:
        return keccak(
            abi_encode(
                ["bytes32", "bytes32", "bytes32", "uint256", "address"],
                [
                    EIP712_DOMAIN_TYPEHASH,
                    keccak(text=EIP712_DOMAIN_NAME),
                    keccak(text=EIP712_DOMAIN_VERSION),
                    int(self.chain_id),
                    to_checksum_address(self.verifying_contract),
                ],
            )
        )

    def struct_hash(self) -> bytes:
        return keccak(
            abi_encode(
                [
                    "bytes32",
                    "address",
                    "address",
                    "uint128",
                    "uint128",
                    "address",
                    "address",
                    "address",
                    "uint256",
                ],
                [OTC_ORDER_TYPEHASH, *self._struct_values()],
            )
        )

    def get_hash(self) -> str:
        digest = keccak(b"\x19\x01" + self.domain_separator() + self.struct_hash())
        return "0x" + digest.hex()

    def to_dict(self) -> dict[str, Any]:
        return {
            "maker": self.maker,
            "taker": self.taker,
            "maker_token": self.maker_token,
            "taker_token": self.taker_token,
            "maker_amount": str(self.maker_amount),
            "taker_amount": str(self.taker_amount),
            "tx_origin": self.tx_origin,
            "expiry_and_nonce": str(self.expiry_and_nonce),
            "chain_id": int(self.chain_id),
            "verifying_contract": self.verifying_contract,
        }

    def to_wire(self) -> dict[str, Any]:
        return {
            "maker": self.maker,
            "taker": self.taker,
            "makerToken": self.maker_token,
            "takerToken": self.taker_token,
            "makerAmount": str(self.maker_amount),
            "takerAmount": str(self.taker_amount),
            "txOrigin": self.tx_origin,
            "expiryAndNonce": str(self.expiry_and_nonce),
            "chainId": int(self.chain_id),
            "verifyingContract": self.verifying_contract,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "OtcOrder":
        def pick(snake: str, camel: str) -> Any:
            value = payload.get(snake, payload.get(camel))
            if value is None:
                raise ValueError(f"OTC order is missing '{snake}'")
            return value

        return cls(
            maker=str(pick("maker", "maker")),
            taker=str(pick("taker", "taker")),
            maker_token=str(pick("maker_token", "makerToken")),
            taker_token=str(pick("taker_token", "takerToken")),
            maker_amount=int(pick("maker_amount", "makerAmount")),
            taker_amount=int(pick("taker_amount", "takerAmount")),
            tx_origin=str(pick("tx_origin", "txOrigin")),
            expiry_and_nonce=int(pick("expiry_and_nonce", "expiryAndNonce")),
            chain_id=int(pick("chain_id", "chainId")),
            verifying_contract=str(pick("verifying_contract", "verifyingContract")),
        )


def _signature_values(signature: Signature) -> tuple[int, int, bytes, bytes]:
    r = to_bytes(hexstr=signature.r)
    s = to_bytes(hexstr=signature.s)
    if len(r) != 32 or len(s) != 32:
        raise ValueError("Signature components must be padded to 32 bytes before encoding")
    return (int(signature.signature_type), int(signature.v), r, s)


def _function_selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def build_fill_calldata(
    order: OtcOrder,
    maker_signature: Signature,
    taker_signature: Signature,
    *,
    is_unwrap: bool,
    affiliate_address: str | None,
    attribution_id: int,
) -> str:
    """Encode the settlement call for a fully signed order.

    The affiliate suffix uses ``attribution_id`` instead of a random value so
    that every fee-bump resubmission of a job carries identical calldata.
    """
    function_signature = FILL_TAKER_SIGNED_OTC_ORDER_FOR_ETH if is_unwrap else FILL_TAKER_SIGNED_OTC_ORDER
    encoded_args = abi_encode(
        [OTC_ORDER_TUPLE, SIGNATURE_TUPLE, SIGNATURE_TUPLE],
        [
            tuple(order._struct_values()),
            _signature_values(maker_signature),
            _signature_values(taker_signature),
        ],
    )
    affiliate = to_checksum_address(affiliate_address or NULL_ADDRESS)
    attribution = AFFILIATE_DATA_SELECTOR + abi_encode(
        ["address", "uint256"],
        [affiliate, max(0, int(attribution_id))],
    )
    return "0x" + (_function_selector(function_signature) + encoded_args + attribution).hex()
