from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, localcontext
from fractions import Fraction
from typing import Iterable, TypeVar

from .types import FirmOtcQuote, IndicativeQuote

PRICE_DECIMAL_PLACES = 6

QuoteT = TypeVar("QuoteT", IndicativeQuote, FirmOtcQuote)


def _effective_price(quote: IndicativeQuote | FirmOtcQuote, is_selling: bool) -> Fraction:
    if is_selling:
        return Fraction(quote.maker_amount, quote.taker_amount)
    return Fraction(quote.taker_amount, quote.maker_amount)


def get_best_quote(
    quotes: Iterable[QuoteT],
    *,
    is_selling: bool,
    taker_token: str,
    maker_token: str,
    min_expiry_seconds: float,
    now_seconds: float,
) -> QuoteT | None:
    """Pick the best-priced quote for the taker that outlives the expiry buffer.

    Selling ranks by maker amount per taker amount (higher wins); buying ranks
    by taker amount per maker amount (lower wins). The first best quote wins ties.
    """
    expiry_floor = now_seconds + min_expiry_seconds
    best_quote: QuoteT | None = None
    best_price: Fraction | None = None

    for quote in quotes:
        if quote.taker_token.lower() != taker_token.lower() or quote.maker_token.lower() != maker_token.lower():
            continue
        if quote.expiry <= expiry_floor:
            continue
        if quote.maker_amount <= 0 or quote.taker_amount <= 0:
            continue

        price = _effective_price(quote, is_selling)
        if best_price is None or (price > best_price if is_selling else price < best_price):
            best_quote = quote
            best_price = price

    return best_quote


def fill_amount_mismatch(
    quote: IndicativeQuote | FirmOtcQuote,
    *,
    is_selling: bool,
    asset_fill_amount: int,
) -> str | None:
    quoted_amount = quote.taker_amount if is_selling else quote.maker_amount
    if quoted_amount == asset_fill_amount:
        return None
    return "overfill" if quoted_amount > asset_fill_amount else "underfill"


def round_price(
    *,
    maker_amount: int,
    taker_amount: int,
    maker_decimals: int,
    taker_decimals: int,
    is_selling: bool,
) -> Decimal:
    """Unit price truncated to one digit past ``PRICE_DECIMAL_PLACES``."""
    with localcontext() as context:
        context.prec = 80
        maker_units = Decimal(maker_amount).scaleb(-maker_decimals)
        taker_units = Decimal(taker_amount).scaleb(-taker_decimals)
        price = maker_units / taker_units if is_selling else taker_units / maker_units
        return price.quantize(Decimal(1).scaleb(-(PRICE_DECIMAL_PLACES + 1)), rounding=ROUND_DOWN)


def _round_half_up(value: Fraction) -> int:
    return (2 * value.numerator + value.denominator) // (2 * value.denominator)


def sell_amount_given_buy_amount(buy_amount: int, quoted_taker_amount: int, quoted_maker_amount: int) -> int:
    return _round_half_up(Fraction(quoted_taker_amount, quoted_maker_amount) * buy_amount)


def buy_amount_given_sell_amount(sell_amount: int, quoted_taker_amount: int, quoted_maker_amount: int) -> int:
    return _round_half_up(Fraction(quoted_maker_amount, quoted_taker_amount) * sell_amount)
