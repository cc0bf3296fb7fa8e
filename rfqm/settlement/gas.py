from __future__ import annotations

from .types import ONE_GWEI, GasFees

MAX_PRIORITY_FEE_PER_GAS_CAP = 128 * ONE_GWEI
PRIORITY_FEE_MULTIPLIER = (3, 2)
MAX_FEE_MULTIPLIER = (11, 10)
BASE_FEE_HEADROOM_MULTIPLIER = 2
GAS_ESTIMATE_MULTIPLIER = (3, 2)
RESUBMIT_GAS_ESTIMATE_FALLBACK = 500_000


def _scale_up(value: int, ratio: tuple[int, int]) -> int:
    numerator, denominator = ratio
    return -(-value * numerator // denominator)


def gwei_to_wei(gwei: float) -> int:
    return int(round(float(gwei) * ONE_GWEI))


def initial_gas_fees(gas_price_estimate: int, initial_max_priority_fee_per_gas_gwei: float) -> GasFees:
    max_priority_fee_per_gas = gwei_to_wei(initial_max_priority_fee_per_gas_gwei)
    return GasFees(
        max_fee_per_gas=BASE_FEE_HEADROOM_MULTIPLIER * int(gas_price_estimate) + max_priority_fee_per_gas,
        max_priority_fee_per_gas=max_priority_fee_per_gas,
    )


def escalate_gas_fees(previous: GasFees, gas_price_estimate: int) -> GasFees:
    """Bump both fee fields enough for the node to accept a replacement transaction."""
    max_priority_fee_per_gas = _scale_up(previous.max_priority_fee_per_gas, PRIORITY_FEE_MULTIPLIER)
    max_fee_per_gas = max(
        _scale_up(previous.max_fee_per_gas, MAX_FEE_MULTIPLIER),
        BASE_FEE_HEADROOM_MULTIPLIER * int(gas_price_estimate) + max_priority_fee_per_gas,
    )
    return GasFees(max_fee_per_gas=max_fee_per_gas, max_priority_fee_per_gas=max_priority_fee_per_gas)


def has_reached_priority_fee_cap(
    gas_fees: GasFees,
    cap: int = MAX_PRIORITY_FEE_PER_GAS_CAP,
) -> bool:
    return gas_fees.max_priority_fee_per_gas >= cap


def should_resubmit_transaction(gas_fees: GasFees, gas_price_estimate: int) -> bool:
    numerator, denominator = MAX_FEE_MULTIPLIER
    return int(gas_price_estimate) * denominator >= gas_fees.max_fee_per_gas * numerator


def submission_gas_estimate(raw_gas_estimate: int) -> int:
    return _scale_up(int(raw_gas_estimate), GAS_ESTIMATE_MULTIPLIER)
