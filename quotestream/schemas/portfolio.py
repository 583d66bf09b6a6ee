from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from quotestream.schemas.quote import Currency


class Position(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    quantity: float


class Portfolio(BaseModel):
    model_config = ConfigDict(frozen=True)

    home_currency: Currency
    positions: tuple[Position, ...]

    @property
    def symbols(self) -> list[str]:
        return [p.symbol for p in self.positions]


class PositionValuation(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    quantity: float
    last_price: float | None = None
    currency: Currency | None = None
    converted_value: float = 0.0
    priced: bool = False


class ValuationSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    home_currency: Currency
    per_position: dict[str, PositionValuation]
    total: float
    as_of: int

    @property
    def unpriced(self) -> list[str]:
        return [s for s, row in self.per_position.items() if not row.priced]
