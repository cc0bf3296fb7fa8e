from __future__ import annotations

import os
from dataclasses import dataclass

from rfqm.storage.settings import to_bool, to_float, to_int

DEFAULT_WRAPPED_NATIVE_TOKEN = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
DEFAULT_EXCHANGE_PROXY = "0xdef1c0ded9bec7f1a1670819833240f027b25eff"


@dataclass(slots=True)
class AppSettings:
    chain_id: int
    rpc_url: str
    rpc_timeout_seconds: float
    worker_private_key: str
    worker_mnemonic: str
    worker_index: int
    exchange_proxy_address: str
    registry_address: str
    wrapped_native_token_address: str
    poll_interval_seconds: float
    initial_max_priority_fee_per_gas_gwei: float
    min_expiry_seconds: float
    maker_price_timeout_seconds: float
    maker_sign_timeout_seconds: float
    maker_api_key: str
    worker_min_balance_gas_units: int
    heartbeat_interval_seconds: float
    queue_poll_timeout_seconds: float
    error_backoff_seconds: float
    num_otc_buckets: int
    maintenance_mode: bool
    fee_gas_units: int
    unwrap_gas_units: int
    log_level: str

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            chain_id=max(1, to_int(os.getenv("CHAIN_ID"), 1)),
            rpc_url=os.getenv("RPC_URL", "").strip(),
            rpc_timeout_seconds=max(1.0, to_float(os.getenv("RPC_TIMEOUT_SECONDS"), 10.0)),
            worker_private_key=os.getenv("WORKER_PRIVATE_KEY", "").strip(),
            worker_mnemonic=os.getenv("WORKER_MNEMONIC", "").strip(),
            worker_index=max(0, to_int(os.getenv("WORKER_INDEX"), 0)),
            exchange_proxy_address=os.getenv("EXCHANGE_PROXY_ADDRESS", DEFAULT_EXCHANGE_PROXY).strip(),
            registry_address=os.getenv("RFQM_REGISTRY_ADDRESS", "").strip(),
            wrapped_native_token_address=os.getenv(
                "WRAPPED_NATIVE_TOKEN_ADDRESS",
                DEFAULT_WRAPPED_NATIVE_TOKEN,
            ).strip().lower(),
            poll_interval_seconds=max(0.5, to_float(os.getenv("RFQM_TRANSACTION_WATCHER_SLEEP_SECONDS"), 5.0)),
            initial_max_priority_fee_per_gas_gwei=max(
                0.0,
                to_float(os.getenv("INITIAL_MAX_PRIORITY_FEE_PER_GAS_GWEI"), 2.0),
            ),
            min_expiry_seconds=max(0.0, to_float(os.getenv("RFQM_MINIMUM_EXPIRY_SECONDS"), 60.0)),
            maker_price_timeout_seconds=max(
                0.1,
                to_float(os.getenv("MAKER_PRICE_TIMEOUT_SECONDS"), 1.0),
            ),
            maker_sign_timeout_seconds=max(
                0.1,
                to_float(os.getenv("MAKER_SIGN_TIMEOUT_SECONDS"), 2.0),
            ),
            maker_api_key=os.getenv("MAKER_API_KEY", "").strip(),
            worker_min_balance_gas_units=max(
                0,
                to_int(os.getenv("RFQM_WORKER_MIN_BALANCE_GAS_UNITS"), 400_000),
            ),
            heartbeat_interval_seconds=max(
                1.0,
                to_float(os.getenv("RFQM_WORKER_HEARTBEAT_SECONDS"), 30.0),
            ),
            queue_poll_timeout_seconds=max(
                1.0,
                to_float(os.getenv("QUEUE_POLL_TIMEOUT_SECONDS"), 5.0),
            ),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
            num_otc_buckets=max(1, to_int(os.getenv("RFQM_NUM_BUCKETS"), 1000)),
            maintenance_mode=to_bool(os.getenv("RFQM_MAINTENANCE_MODE"), False),
            fee_gas_units=max(0, to_int(os.getenv("RFQM_FEE_GAS_UNITS"), 100_000)),
            unwrap_gas_units=max(0, to_int(os.getenv("RFQM_UNWRAP_GAS_UNITS"), 25_000)),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip() or "INFO",
        )
