from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Currency(str, Enum):
    EUR = "EUR"
    USD = "USD"
    CHF = "CHF"
    GBP = "GBP"


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: float
    currency: Currency
    ts: int
    exchange: str | None = None
    change: float | None = None
    change_percent: float | None = None
    day_volume: int | None = None
    short_name: str | None = None


class QuoteMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    name: str
    currency: Currency


class LastPrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float
    currency: Currency
    ts: int


QuoteBatch = list[Quote]
