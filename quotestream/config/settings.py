import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ValidationError

from quotestream.errors import ConfigError
from quotestream.integrations.influxdb import InfluxDBConfig
from quotestream.schemas.quote import Currency

DEFAULT_PORTFOLIO: list[tuple[str, float]] = [
    ("BTC-USD", 10.0),
    ("AETH-USD.SW", 450.0),
    ("AMZN", 1.0),
    ("DE000A27Z304.SG", 500.0),
    ("CSNDX.SW", 10.0),
    ("EXS2.DE", 10.0),
    ("IBCL.DE", 10.0),
    ("ITEK.MI", 2000.0),
    ("IUIT.SW", 2000.0),
    ("IUSE.SW", 100.0),
    ("MSFT", 25.0),
    ("TSM", 100.0),
    ("XDWT.DE", 1000.0),
]

DEFAULT_FX_RATES: dict[Currency, float] = {
    Currency.USD: 0.92,
    Currency.CHF: 1.05,
    Currency.GBP: 1.17,
}


class QuoteMetaConfig(BaseModel):
    name: str
    currency: Currency


class Settings(BaseModel):
    home_currency: Currency = Currency.EUR
    portfolio: list[tuple[str, float]] = DEFAULT_PORTFOLIO
    db: InfluxDBConfig | None = None
    print_portfolio: bool = True
    fx_rates: dict[Currency, float] = DEFAULT_FX_RATES
    quote_meta: dict[str, QuoteMetaConfig] = {}

    feed_url: str | None = None
    meta_url: str | None = None
    channel_capacity: int = 32
    coalesce_window_sec: float = 0.0
    max_batch_size: int = 64
    idle_timeout_sec: float = 30.0
    poll_interval_sec: float = 1.0
    reconnect_backoff_base_sec: float = 1.0
    reconnect_backoff_cap_sec: float = 30.0
    sink_retry_attempts: int = 3
    sink_retry_backoff_base_sec: float = 0.5
    sink_retry_backoff_cap_sec: float = 5.0
    max_consecutive_sink_failures: int | None = None
    status_api_port: int | None = None

    @classmethod
    def from_file(cls, path: str | Path) -> "Settings":
        try:
            raw = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"CONFIG_UNREADABLE: {path}: {exc}") from exc
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise ConfigError(f"CONFIG_INVALID: {path}: {exc}") from exc

    @classmethod
    def from_env(cls) -> "Settings":
        path = os.getenv("QUOTESTREAM_CONFIG", "").strip()
        if path:
            return cls.from_file(path)
        return cls()


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
