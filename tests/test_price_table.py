import itertools
import random
import unittest

from quotestream.schemas.quote import Currency, Quote
from quotestream.services.price_table import PriceTable


def _quote(symbol, price, ts):
    return Quote(symbol=symbol, price=price, currency=Currency.USD, ts=ts)


class TestPriceTable(unittest.TestCase):
    def test_newer_quote_supersedes_older(self):
        table = PriceTable()

        self.assertTrue(table.apply(_quote("MSFT", 300.0, 1)))
        self.assertTrue(table.apply(_quote("MSFT", 305.0, 2)))

        self.assertEqual(table.get("MSFT").price, 305.0)
        self.assertEqual(table.get("MSFT").ts, 2)

    def test_older_quote_is_discarded(self):
        table = PriceTable()
        table.apply(_quote("MSFT", 305.0, 2))

        self.assertFalse(table.apply(_quote("MSFT", 300.0, 1)))
        self.assertEqual(table.get("MSFT").price, 305.0)

    def test_replay_is_idempotent(self):
        table = PriceTable()
        quote = _quote("MSFT", 300.0, 5)
        table.apply(quote)
        before = table.as_mapping()

        self.assertFalse(table.apply(quote))
        self.assertFalse(table.apply(_quote("MSFT", 999.0, 5)))
        self.assertEqual(table.as_mapping(), before)

    def test_any_delivery_order_keeps_max_timestamp(self):
        quotes = [
            _quote("MSFT", 300.0, 1),
            _quote("MSFT", 302.0, 3),
            _quote("AMZN", 150.0, 2),
            _quote("MSFT", 301.0, 2),
            _quote("AMZN", 149.0, 1),
        ]

        for order in itertools.permutations(quotes):
            table = PriceTable()
            for quote in order:
                table.apply(quote)
            self.assertEqual(table.get("MSFT").price, 302.0)
            self.assertEqual(table.get("AMZN").price, 150.0)

    def test_random_interleavings_with_duplicates(self):
        rng = random.Random(7)
        quotes = [_quote(s, float(ts), ts) for s in ("A", "B", "C") for ts in range(1, 20)]

        for _ in range(50):
            stream = quotes + rng.sample(quotes, 20)
            rng.shuffle(stream)
            table = PriceTable()
            for quote in stream:
                table.apply(quote)
            for symbol in ("A", "B", "C"):
                self.assertEqual(table.get(symbol).ts, 19)

    def test_unknown_symbol_returns_none(self):
        self.assertIsNone(PriceTable().get("MSFT"))
        self.assertEqual(len(PriceTable()), 0)


if __name__ == "__main__":
    unittest.main()
