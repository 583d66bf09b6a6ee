from __future__ import annotations

from quotestream.schemas.quote import LastPrice, Quote


class PriceTable:
    """Last known price per symbol. Only moves forward in time per symbol."""

    def __init__(self) -> None:
        self._rows: dict[str, LastPrice] = {}

    def apply(self, quote: Quote) -> bool:
        """Store the quote unless an equal-or-newer one is already held."""
        current = self._rows.get(quote.symbol)
        if current is not None and current.ts >= quote.ts:
            return False
        self._rows[quote.symbol] = LastPrice(price=quote.price, currency=quote.currency, ts=quote.ts)
        return True

    def get(self, symbol: str) -> LastPrice | None:
        return self._rows.get(symbol)

    def as_mapping(self) -> dict[str, LastPrice]:
        return dict(self._rows)

    def __len__(self) -> int:
        return len(self._rows)
