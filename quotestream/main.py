from __future__ import annotations

import argparse
import signal
import sys
import threading
import time
from typing import Any, Callable, Optional, TextIO

from fastapi import FastAPI

from quotestream.api.routes import router
from quotestream.config.settings import Settings, get_settings
from quotestream.errors import ConfigError
from quotestream.integrations.influxdb import InfluxDB
from quotestream.integrations.yahoo_rest import YahooRestClient
from quotestream.integrations.yahoo_ws import YahooFeedClient
from quotestream.schemas.quote import QuoteMeta
from quotestream.services.channel import QuoteChannel
from quotestream.services.pipeline import QuotePipeline
from quotestream.services.quote_producer import QuoteProducer
from quotestream.services.quote_receiver import QuoteReceiver
from quotestream.services.sinks import ConsoleSink, MetricsSink, SnapshotSink, SnapshotStore
from quotestream.services.valuation import ConversionTable, build_portfolio


def resolve_quote_meta(settings: Settings, meta_client: Optional[Any] = None) -> dict[str, QuoteMeta]:
    """Static meta from the config first; the rest is looked up once over REST."""
    meta = {
        symbol: QuoteMeta(symbol=symbol, name=row.name, currency=row.currency)
        for symbol, row in settings.quote_meta.items()
    }
    missing = [symbol for symbol, _ in settings.portfolio if symbol not in meta]
    if missing:
        client = meta_client or YahooRestClient(base_url=settings.meta_url)
        fetched = client.get_quote_meta(missing)
        for symbol in missing:
            if symbol in fetched:
                meta[symbol] = fetched[symbol]
    return meta


def build_pipeline(
    settings: Settings,
    *,
    meta_client: Optional[Any] = None,
    connection_factory: Optional[Callable[..., Any]] = None,
    influx_client: Optional[Any] = None,
    console_stream: Optional[TextIO] = None,
    feed_sleep_fn: Optional[Callable[[float], Any]] = None,
    sink_sleep_fn: Callable[[float], None] = time.sleep,
) -> QuotePipeline:
    """Validate the configuration and wire every component. Raises ConfigError."""
    rates = ConversionTable(settings.home_currency, settings.fx_rates)
    quote_meta = resolve_quote_meta(settings, meta_client)
    portfolio = build_portfolio(settings.home_currency, settings.portfolio, quote_meta)
    for position in portfolio.positions:
        currency = quote_meta[position.symbol].currency
        if not rates.covers(currency):
            raise ConfigError(f"MISSING_RATE: {currency.value} for {position.symbol}")

    try:
        channel = QuoteChannel(settings.channel_capacity)
        feed_client = YahooFeedClient(
            url=settings.feed_url,
            connection_factory=connection_factory,
            idle_timeout_sec=settings.idle_timeout_sec,
            poll_interval_sec=settings.poll_interval_sec,
            backoff_base_sec=settings.reconnect_backoff_base_sec,
            backoff_cap_sec=settings.reconnect_backoff_cap_sec,
            sleep_fn=feed_sleep_fn,
        )
        producer = QuoteProducer(
            feed_client=feed_client,
            symbols=portfolio.symbols,
            channel=channel,
            coalesce_window_sec=settings.coalesce_window_sec,
            max_batch_size=settings.max_batch_size,
        )

        sinks: list[SnapshotSink] = []
        if settings.db is not None:
            sinks.append(MetricsSink(InfluxDB(settings.db, client=influx_client), settings.db.measurement))
        if settings.print_portfolio:
            sinks.append(ConsoleSink(quote_meta, stream=console_stream))

        store = SnapshotStore()
        receiver = QuoteReceiver(
            portfolio=portfolio,
            rates=rates,
            channel=channel,
            sinks=sinks,
            store=store,
            retry_attempts=settings.sink_retry_attempts,
            retry_backoff_base_sec=settings.sink_retry_backoff_base_sec,
            retry_backoff_cap_sec=settings.sink_retry_backoff_cap_sec,
            max_consecutive_sink_failures=settings.max_consecutive_sink_failures,
            sleep_fn=sink_sleep_fn,
        )
    except ValueError as exc:
        raise ConfigError(f"CONFIG_INVALID: {exc}") from exc

    print(
        f"[MAIN][pipeline_ready] positions={len(portfolio.positions)} "
        f"home={portfolio.home_currency.value} sinks={','.join(s.name for s in sinks) or '-'}",
        flush=True,
    )
    return QuotePipeline(
        feed_client=feed_client,
        channel=channel,
        producer=producer,
        receiver=receiver,
        store=store,
    )


app = FastAPI(title="quotestream", version="0.1.0")
app.include_router(router, prefix="/v1")
app.state.pipeline = None


def _start_status_api(port: int) -> threading.Thread:
    import uvicorn

    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port, log_level="warning"))
    worker = threading.Thread(target=server.run, daemon=True, name="status-api")
    print(f"[MAIN][status_api_start] port={port}", flush=True)
    worker.start()
    return worker


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="quotestream", description="Stream quotes and value a portfolio.")
    parser.add_argument("-f", "--file", help="JSON configuration file")
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_file(args.file) if args.file else get_settings()
        pipeline = build_pipeline(settings)
    except ConfigError as exc:
        print(f"[MAIN][config_error] {exc}", flush=True)
        return 2

    app.state.pipeline = pipeline
    if settings.status_api_port:
        _start_status_api(settings.status_api_port)
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda *_: pipeline.stop())

    code = pipeline.run()
    print(f"[MAIN][exit] code={code}", flush=True)
    return code


if __name__ == "__main__":
    sys.exit(main())
