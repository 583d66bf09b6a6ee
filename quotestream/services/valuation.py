from __future__ import annotations

import math
import time
from typing import Iterable, Mapping

from quotestream.errors import ConfigError
from quotestream.schemas.portfolio import Portfolio, Position, PositionValuation, ValuationSnapshot
from quotestream.schemas.quote import Currency, LastPrice, QuoteMeta

SUPPORTED_HOME_CURRENCY = Currency.EUR


class ConversionTable:
    """Home-currency amount per one unit of each foreign currency."""

    def __init__(self, home_currency: Currency, rates: Mapping[Currency, float]) -> None:
        if home_currency != SUPPORTED_HOME_CURRENCY:
            raise ConfigError(
                f"UNSUPPORTED_HOME_CURRENCY: {home_currency.value} (only {SUPPORTED_HOME_CURRENCY.value})"
            )
        self.home_currency = home_currency
        self._rates: dict[Currency, float] = {}
        for currency, rate in rates.items():
            currency = Currency(currency)
            if not math.isfinite(rate) or rate <= 0:
                raise ConfigError(f"INVALID_RATE: {currency.value}={rate!r}")
            self._rates[currency] = float(rate)
        self._rates[home_currency] = 1.0

    def rate(self, currency: Currency) -> float | None:
        return self._rates.get(currency)

    def covers(self, currency: Currency) -> bool:
        return currency in self._rates


def build_portfolio(
    home_currency: Currency,
    positions: Iterable[tuple[str, float]],
    quote_meta: Mapping[str, QuoteMeta],
) -> Portfolio:
    """Validate the configured positions against resolved meta. Raises ConfigError."""
    rows: list[Position] = []
    seen: set[str] = set()
    for symbol, quantity in positions:
        symbol = str(symbol).strip()
        if not symbol:
            raise ConfigError("EMPTY_SYMBOL")
        if symbol in seen:
            raise ConfigError(f"DUPLICATE_POSITION: {symbol}")
        if not math.isfinite(quantity):
            raise ConfigError(f"INVALID_QUANTITY: {symbol}={quantity!r}")
        if symbol not in quote_meta:
            raise ConfigError(f"UNKNOWN_SYMBOL: {symbol}")
        seen.add(symbol)
        rows.append(Position(symbol=symbol, quantity=float(quantity)))
    if not rows:
        raise ConfigError("EMPTY_PORTFOLIO")
    return Portfolio(home_currency=home_currency, positions=tuple(rows))


def value(
    portfolio: Portfolio,
    last_prices: Mapping[str, LastPrice],
    rates: ConversionTable,
    *,
    as_of: int | None = None,
) -> ValuationSnapshot:
    per_position: dict[str, PositionValuation] = {}
    total = 0.0
    for position in portfolio.positions:
        last = last_prices.get(position.symbol)
        rate = rates.rate(last.currency) if last is not None else None
        if last is None or rate is None:
            row = PositionValuation(
                symbol=position.symbol,
                quantity=position.quantity,
                last_price=last.price if last is not None else None,
                currency=last.currency if last is not None else None,
            )
        else:
            row = PositionValuation(
                symbol=position.symbol,
                quantity=position.quantity,
                last_price=last.price,
                currency=last.currency,
                converted_value=last.price * rate * position.quantity,
                priced=True,
            )
        per_position[position.symbol] = row
        total += row.converted_value

    return ValuationSnapshot(
        home_currency=portfolio.home_currency,
        per_position=per_position,
        total=total,
        as_of=int(time.time() * 1000) if as_of is None else as_of,
    )
