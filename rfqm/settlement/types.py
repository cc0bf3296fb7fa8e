from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from .otc_order import NULL_ADDRESS, OtcOrder
from .signatures import Signature

NATIVE_TOKEN_SENTINEL = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"
ONE_GWEI = 1_000_000_000
OTC_ORDER_TYPE = "otc"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def iso_to_epoch_seconds(value: str | None, default: float = 0.0) -> float:
    if not value:
        return default
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


class RfqmJobStatus(str, Enum):
    PENDING_ENQUEUED = "pending_enqueued"
    PENDING_PROCESSING = "pending_processing"
    PENDING_LAST_LOOK_ACCEPTED = "pending_last_look_accepted"
    PENDING_SUBMITTED = "pending_submitted"

    SUCCEEDED_UNCONFIRMED = "succeeded_unconfirmed"
    SUCCEEDED_CONFIRMED = "succeeded_confirmed"

    FAILED_REVERTED_UNCONFIRMED = "failed_reverted_unconfirmed"
    FAILED_REVERTED_CONFIRMED = "failed_reverted_confirmed"
    FAILED_EXPIRED = "failed_expired"
    FAILED_VALIDATION_NO_MAKER_URI = "failed_validation_no_maker_uri"
    FAILED_VALIDATION_NO_ORDER = "failed_validation_no_order"
    FAILED_VALIDATION_NO_FEE = "failed_validation_no_fee"
    FAILED_VALIDATION_NO_TAKER_SIGNATURE = "failed_validation_no_taker_signature"
    FAILED_PRESIGN_VALIDATION_FAILED = "failed_presign_validation_failed"
    FAILED_LAST_LOOK_DECLINED = "failed_last_look_declined"
    FAILED_SIGN_FAILED = "failed_sign_failed"
    FAILED_ETH_CALL_FAILED = "failed_eth_call_failed"
    FAILED_SUBMIT_FAILED = "failed_submit_failed"

    @property
    def is_pending(self) -> bool:
        return self in PENDING_JOB_STATUSES

    @property
    def is_failed(self) -> bool:
        return self.value.startswith("failed_")

    @property
    def is_succeeded(self) -> bool:
        return self in {RfqmJobStatus.SUCCEEDED_UNCONFIRMED, RfqmJobStatus.SUCCEEDED_CONFIRMED}

    @property
    def is_resolved(self) -> bool:
        return self not in UNRESOLVED_JOB_STATUSES


PENDING_JOB_STATUSES = frozenset(
    {
        RfqmJobStatus.PENDING_ENQUEUED,
        RfqmJobStatus.PENDING_PROCESSING,
        RfqmJobStatus.PENDING_LAST_LOOK_ACCEPTED,
        RfqmJobStatus.PENDING_SUBMITTED,
    }
)
UNRESOLVED_JOB_STATUSES = PENDING_JOB_STATUSES | frozenset(
    {RfqmJobStatus.SUCCEEDED_UNCONFIRMED, RfqmJobStatus.FAILED_REVERTED_UNCONFIRMED}
)


class SubmissionStatus(str, Enum):
    PRESUBMIT = "presubmit"
    SUBMITTED = "submitted"
    SUCCEEDED_UNCONFIRMED = "succeeded_unconfirmed"
    SUCCEEDED_CONFIRMED = "succeeded_confirmed"
    REVERTED_UNCONFIRMED = "reverted_unconfirmed"
    REVERTED_CONFIRMED = "reverted_confirmed"
    DROPPED_AND_REPLACED = "dropped_and_replaced"

    @property
    def is_mined(self) -> bool:
        return self in MINED_SUBMISSION_STATUSES


MINED_SUBMISSION_STATUSES = frozenset(
    {
        SubmissionStatus.SUCCEEDED_UNCONFIRMED,
        SubmissionStatus.SUCCEEDED_CONFIRMED,
        SubmissionStatus.REVERTED_UNCONFIRMED,
        SubmissionStatus.REVERTED_CONFIRMED,
    }
)


@dataclass(slots=True, frozen=True)
class GasFees:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


@dataclass(slots=True, frozen=True)
class Fee:
    type: str
    token: str
    amount: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "token": self.token, "amount": str(self.amount)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Fee":
        return cls(
            type=str(payload.get("type") or "fixed"),
            token=str(payload.get("token") or ""),
            amount=int(payload.get("amount") or 0),
        )


@dataclass(slots=True, frozen=True)
class RfqmJob:
    order_hash: str
    chain_id: int
    status: RfqmJobStatus
    expiry: int
    created_at: str
    order: OtcOrder | None
    fee: Fee | None
    maker_uri: str | None
    taker_signature: Signature | None = None
    maker_signature: Signature | None = None
    worker_address: str | None = None
    updated_at: str | None = None
    integrator_id: str | None = None
    affiliate_address: str | None = None
    is_unwrap: bool = False
    last_look_result: bool | None = None
    ll_reject_price_difference_bps: float | None = None

    def with_updates(self, **changes: Any) -> "RfqmJob":
        changes.setdefault("updated_at", now_iso())
        return replace(self, **changes)

    @property
    def created_at_epoch_seconds(self) -> int:
        return int(iso_to_epoch_seconds(self.created_at))

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_hash": self.order_hash,
            "chain_id": self.chain_id,
            "status": self.status.value,
            "expiry": str(self.expiry),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "order": self.order.to_dict() if self.order else None,
            "fee": self.fee.to_dict() if self.fee else None,
            "maker_uri": self.maker_uri,
            "taker_signature": self.taker_signature.to_dict() if self.taker_signature else None,
            "maker_signature": self.maker_signature.to_dict() if self.maker_signature else None,
            "worker_address": self.worker_address,
            "integrator_id": self.integrator_id,
            "affiliate_address": self.affiliate_address,
            "is_unwrap": self.is_unwrap,
            "last_look_result": self.last_look_result,
            "ll_reject_price_difference_bps": self.ll_reject_price_difference_bps,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RfqmJob":
        order = payload.get("order")
        fee = payload.get("fee")
        taker_signature = payload.get("taker_signature")
        maker_signature = payload.get("maker_signature")
        bps = payload.get("ll_reject_price_difference_bps")
        return cls(
            order_hash=str(payload["order_hash"]),
            chain_id=int(payload.get("chain_id") or 0),
            status=RfqmJobStatus(payload["status"]),
            expiry=int(payload.get("expiry") or 0),
            created_at=str(payload.get("created_at") or now_iso()),
            updated_at=payload.get("updated_at"),
            order=OtcOrder.from_dict(order) if order else None,
            fee=Fee.from_dict(fee) if fee else None,
            maker_uri=payload.get("maker_uri") or None,
            taker_signature=Signature.from_dict(taker_signature) if taker_signature else None,
            maker_signature=Signature.from_dict(maker_signature) if maker_signature else None,
            worker_address=payload.get("worker_address") or None,
            integrator_id=payload.get("integrator_id") or None,
            affiliate_address=payload.get("affiliate_address") or None,
            is_unwrap=bool(payload.get("is_unwrap", False)),
            last_look_result=payload.get("last_look_result"),
            ll_reject_price_difference_bps=None if bps is None else float(bps),
        )


@dataclass(slots=True, frozen=True)
class TransactionSubmission:
    transaction_hash: str
    order_hash: str
    nonce: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    from_address: str
    to_address: str
    status: SubmissionStatus
    created_at: str
    transaction_type: int = 2
    updated_at: str | None = None
    block_mined: int | None = None
    gas_used: int | None = None
    gas_price: int | None = None

    @property
    def gas_fees(self) -> GasFees:
        return GasFees(
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
        )

    @property
    def created_at_epoch_seconds(self) -> float:
        return iso_to_epoch_seconds(self.created_at)

    def with_updates(self, **changes: Any) -> "TransactionSubmission":
        changes.setdefault("updated_at", now_iso())
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_hash": self.transaction_hash,
            "order_hash": self.order_hash,
            "nonce": self.nonce,
            "max_fee_per_gas": str(self.max_fee_per_gas),
            "max_priority_fee_per_gas": str(self.max_priority_fee_per_gas),
            "from_address": self.from_address,
            "to_address": self.to_address,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "transaction_type": self.transaction_type,
            "block_mined": self.block_mined,
            "gas_used": None if self.gas_used is None else str(self.gas_used),
            "gas_price": None if self.gas_price is None else str(self.gas_price),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TransactionSubmission":
        return cls(
            transaction_hash=str(payload["transaction_hash"]),
            order_hash=str(payload["order_hash"]),
            nonce=int(payload["nonce"]),
            max_fee_per_gas=int(payload["max_fee_per_gas"]),
            max_priority_fee_per_gas=int(payload["max_priority_fee_per_gas"]),
            from_address=str(payload["from_address"]),
            to_address=str(payload["to_address"]),
            status=SubmissionStatus(payload["status"]),
            created_at=str(payload.get("created_at") or now_iso()),
            updated_at=payload.get("updated_at"),
            transaction_type=int(payload.get("transaction_type") or 2),
            block_mined=_optional_int(payload.get("block_mined")),
            gas_used=_optional_int(payload.get("gas_used")),
            gas_price=_optional_int(payload.get("gas_price")),
        )


@dataclass(slots=True, frozen=True)
class TransactionReceipt:
    transaction_hash: str
    block_hash: str
    block_number: int
    status: int
    gas_used: int
    effective_gas_price: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(slots=True, frozen=True)
class RfqmQuote:
    order_hash: str
    chain_id: int
    order: OtcOrder
    fee: Fee
    maker_uri: str
    integrator_id: str | None = None
    affiliate_address: str | None = None
    is_unwrap: bool = False
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_hash": self.order_hash,
            "chain_id": self.chain_id,
            "order": self.order.to_dict(),
            "fee": self.fee.to_dict(),
            "maker_uri": self.maker_uri,
            "integrator_id": self.integrator_id,
            "affiliate_address": self.affiliate_address,
            "is_unwrap": self.is_unwrap,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RfqmQuote":
        return cls(
            order_hash=str(payload["order_hash"]),
            chain_id=int(payload.get("chain_id") or 0),
            order=OtcOrder.from_dict(payload["order"]),
            fee=Fee.from_dict(payload.get("fee") or {}),
            maker_uri=str(payload.get("maker_uri") or ""),
            integrator_id=payload.get("integrator_id") or None,
            affiliate_address=payload.get("affiliate_address") or None,
            is_unwrap=bool(payload.get("is_unwrap", False)),
            created_at=str(payload.get("created_at") or now_iso()),
        )


@dataclass(slots=True, frozen=True)
class IndicativeQuote:
    maker: str
    maker_uri: str
    maker_token: str
    taker_token: str
    maker_amount: int
    taker_amount: int
    expiry: int


@dataclass(slots=True, frozen=True)
class FirmOtcQuote:
    maker_uri: str
    order: OtcOrder

    @property
    def maker_token(self) -> str:
        return self.order.maker_token

    @property
    def taker_token(self) -> str:
        return self.order.taker_token

    @property
    def maker_amount(self) -> int:
        return self.order.maker_amount

    @property
    def taker_amount(self) -> int:
        return self.order.taker_amount

    @property
    def expiry(self) -> int:
        return self.order.expiry


@dataclass(slots=True, frozen=True)
class FetchQuoteParams:
    sell_token: str
    buy_token: str
    sell_token_decimals: int
    buy_token_decimals: int
    taker_address: str
    integrator_id: str
    sell_amount: int | None = None
    buy_amount: int | None = None
    affiliate_address: str | None = None

    def __post_init__(self) -> None:
        if (self.sell_amount is None) == (self.buy_amount is None):
            raise ValueError("Exactly one of sell_amount or buy_amount must be provided")

    @property
    def is_selling(self) -> bool:
        return self.sell_amount is not None


@dataclass(slots=True, frozen=True)
class IndicativeQuoteResponse:
    maker_token: str
    taker_token: str
    maker_amount: int
    taker_amount: int
    price: str
    gas: int
    expiry: int


@dataclass(slots=True, frozen=True)
class FirmQuoteResponse:
    order_hash: str
    order: OtcOrder
    maker_uri: str
    maker_amount: int
    taker_amount: int
    price: str
    gas: int
    expiry: int


@dataclass(slots=True, frozen=True)
class SubmitOrderResponse:
    order_hash: str
    type: str = OTC_ORDER_TYPE


@dataclass(slots=True, frozen=True)
class OrderStatusResponse:
    status: str
    transactions: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class WorkerHeartbeat:
    worker_address: str
    worker_index: int
    balance: int
    chain_id: int
    timestamp: str


@dataclass(slots=True, frozen=True)
class HealthCheckResult:
    status: str
    issues: list[str] = field(default_factory=list)
    healthy_worker_count: int = 0
    queue_depth: int = 0
    maker_count: int = 0


@dataclass(slots=True, frozen=True)
class PreparedJob:
    job: RfqmJob
    calldata: str


def is_native_token(token: str) -> bool:
    return token.lower() == NATIVE_TOKEN_SENTINEL


def is_null_address(address: str | None) -> bool:
    return not address or address.lower() == NULL_ADDRESS


class JobStore(Protocol):
    async def find_job_by_hash(self, order_hash: str) -> RfqmJob | None:
        ...

    async def find_unresolved_for_worker(self, worker_address: str) -> list[RfqmJob]:
        ...

    async def find_jobs_with_statuses(self, statuses: set[RfqmJobStatus]) -> list[RfqmJob]:
        ...

    async def write_job(self, job: RfqmJob) -> None:
        ...

    async def update_job(self, job: RfqmJob) -> None:
        ...

    async def claim_job(self, order_hash: str, worker_address: str) -> bool:
        ...

    async def find_quote_by_hash(self, order_hash: str) -> RfqmQuote | None:
        ...

    async def write_quote(self, quote: RfqmQuote) -> None:
        ...

    async def find_submissions_by_order_hash(self, order_hash: str) -> list[TransactionSubmission]:
        ...

    async def find_submission_by_hash(self, transaction_hash: str) -> TransactionSubmission | None:
        ...

    async def write_submission(self, submission: TransactionSubmission) -> None:
        ...

    async def update_submissions(self, submissions: list[TransactionSubmission]) -> None:
        ...

    async def write_heartbeat(self, heartbeat: WorkerHeartbeat) -> None:
        ...

    async def find_heartbeats(self, chain_id: int) -> list[WorkerHeartbeat]:
        ...

    async def next_otc_order_bucket(self, chain_id: int) -> int:
        ...


class QueueService(Protocol):
    async def enqueue(self, group_key: str, dedupe_key: str, payload: dict[str, Any]) -> bool:
        ...

    async def queue_depth(self) -> int:
        ...


class MetricsSink(Protocol):
    async def increment(self, name: str, value: float = 1, **labels: Any) -> None:
        ...

    async def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        ...

    async def observe(self, name: str, value: float, **labels: Any) -> None:
        ...
