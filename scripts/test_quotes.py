from __future__ import annotations

import unittest
from decimal import Decimal

from rfqm.settlement.quotes import (
    buy_amount_given_sell_amount,
    fill_amount_mismatch,
    get_best_quote,
    round_price,
    sell_amount_given_buy_amount,
)
from rfqm.settlement.types import IndicativeQuote

MAKER_TOKEN = "0x3333333333333333333333333333333333333333"
TAKER_TOKEN = "0x4444444444444444444444444444444444444444"
NOW = 1_700_000_000.0


def _quote(maker_uri: str, maker_amount: int, taker_amount: int, *, expiry: int = 1_700_000_600, taker_token: str = TAKER_TOKEN) -> IndicativeQuote:
    return IndicativeQuote(
        maker="0x1111111111111111111111111111111111111111",
        maker_uri=maker_uri,
        maker_token=MAKER_TOKEN,
        taker_token=taker_token,
        maker_amount=maker_amount,
        taker_amount=taker_amount,
        expiry=expiry,
    )


def _best(quotes: list[IndicativeQuote], *, is_selling: bool) -> IndicativeQuote | None:
    return get_best_quote(
        quotes,
        is_selling=is_selling,
        taker_token=TAKER_TOKEN,
        maker_token=MAKER_TOKEN,
        min_expiry_seconds=60,
        now_seconds=NOW,
    )


class BestQuoteTests(unittest.TestCase):
    def test_selling_prefers_more_maker_tokens(self) -> None:
        quotes = [_quote("a", 100, 10), _quote("b", 120, 10), _quote("c", 110, 10)]

        best = _best(quotes, is_selling=True)

        self.assertIsNotNone(best)
        self.assertEqual(best.maker_uri, "b")

    def test_buying_prefers_fewer_taker_tokens(self) -> None:
        quotes = [_quote("a", 100, 12), _quote("b", 100, 10), _quote("c", 100, 11)]

        best = _best(quotes, is_selling=False)

        self.assertIsNotNone(best)
        self.assertEqual(best.maker_uri, "b")

    def test_first_quote_wins_ties(self) -> None:
        quotes = [_quote("a", 200, 20), _quote("b", 100, 10)]

        best = _best(quotes, is_selling=True)

        self.assertIsNotNone(best)
        self.assertEqual(best.maker_uri, "a")

    def test_filters_expiring_and_mismatched_quotes(self) -> None:
        quotes = [
            _quote("expiring", 500, 10, expiry=int(NOW) + 60),
            _quote("wrong-pair", 500, 10, taker_token="0x9999999999999999999999999999999999999999"),
            _quote("zero", 0, 10),
            _quote("ok", 100, 10),
        ]

        best = _best(quotes, is_selling=True)

        self.assertIsNotNone(best)
        self.assertEqual(best.maker_uri, "ok")

    def test_no_eligible_quote(self) -> None:
        self.assertIsNone(_best([], is_selling=True))
        self.assertIsNone(_best([_quote("late", 100, 10, expiry=int(NOW))], is_selling=True))


class QuoteAmountTests(unittest.TestCase):
    def test_fill_amount_mismatch(self) -> None:
        quote = _quote("a", 100, 10)

        self.assertIsNone(fill_amount_mismatch(quote, is_selling=True, asset_fill_amount=10))
        self.assertEqual(fill_amount_mismatch(quote, is_selling=True, asset_fill_amount=9), "overfill")
        self.assertEqual(fill_amount_mismatch(quote, is_selling=False, asset_fill_amount=101), "underfill")

    def test_round_price_truncates_to_seven_places(self) -> None:
        price = round_price(
            maker_amount=2_000_000,
            taker_amount=3 * 10**18,
            maker_decimals=6,
            taker_decimals=18,
            is_selling=True,
        )

        self.assertEqual(price, Decimal("0.6666666"))

    def test_round_price_when_buying_inverts(self) -> None:
        price = round_price(
            maker_amount=2 * 10**18,
            taker_amount=5_000_000,
            maker_decimals=18,
            taker_decimals=6,
            is_selling=False,
        )

        self.assertEqual(price, Decimal("2.5000000"))

    def test_proportional_amounts_round_half_up(self) -> None:
        self.assertEqual(buy_amount_given_sell_amount(5, 2, 1), 3)
        self.assertEqual(buy_amount_given_sell_amount(4, 3, 1), 1)
        self.assertEqual(sell_amount_given_buy_amount(3, 1, 2), 2)
        self.assertEqual(sell_amount_given_buy_amount(1_000, 500, 1_000), 500)


if __name__ == "__main__":
    unittest.main()
