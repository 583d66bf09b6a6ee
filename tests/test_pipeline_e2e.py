import base64
import io
import json
import time
import unittest
from unittest.mock import MagicMock

from websocket import WebSocketConnectionClosedException, WebSocketTimeoutException

from quotestream.config.settings import Settings
from quotestream.errors import ConfigError, SinkError
from quotestream.integrations.wire_quote import encode
from quotestream.main import build_pipeline
from quotestream.schemas.quote import Currency, Quote, QuoteMeta

T1 = 1700000000000
T2 = 1700000005000


def _frame(symbol, price, ts, currency=Currency.USD):
    payload = encode(Quote(symbol=symbol, price=price, currency=currency, ts=ts))
    return base64.b64encode(payload).decode("ascii")


class _ScriptedConnection:
    def __init__(self, frames, idle_forever):
        self.frames = list(frames)
        self.idle_forever = idle_forever
        self.sent = []

    def send(self, payload):
        self.sent.append(payload)

    def recv(self):
        if self.frames:
            return self.frames.pop(0)
        if self.idle_forever:
            time.sleep(0.01)
            raise WebSocketTimeoutException("timed out")
        raise WebSocketConnectionClosedException("Connection to remote host was lost.")

    def close(self):
        pass


class _ScriptedFeed:
    """Each entry is one connection; only the last one stays open (idle) forever."""

    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.connections = []

    def __call__(self, url, *, timeout):
        frames = self.scripts.pop(0) if self.scripts else []
        connection = _ScriptedConnection(frames, idle_forever=not self.scripts)
        self.connections.append(connection)
        return connection


def _wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _settings(**overrides):
    base = {
        "portfolio": [("MSFT", 25.0)],
        "fx_rates": {Currency.USD: 0.9},
        "quote_meta": {"MSFT": {"name": "Microsoft", "currency": "USD"}},
        "print_portfolio": False,
        "poll_interval_sec": 0.05,
    }
    base.update(overrides)
    return Settings(**base)


class PipelineE2ETest(unittest.TestCase):
    def test_reconnect_resumes_stream_and_latest_price_wins(self):
        feed = _ScriptedFeed([[_frame("MSFT", 300.0, T1)], [_frame("MSFT", 305.0, T2)]])
        console = io.StringIO()
        pipeline = build_pipeline(
            _settings(print_portfolio=True),
            connection_factory=feed,
            console_stream=console,
            feed_sleep_fn=lambda _sec: None,
        )

        pipeline.start()
        try:
            reached = _wait_until(
                lambda: pipeline.store.latest() is not None
                and pipeline.store.latest().per_position["MSFT"].last_price == 305.0
            )
        finally:
            pipeline.stop()
        code = pipeline.join(poll_sec=0.05)

        self.assertTrue(reached)
        self.assertEqual(code, 0)
        snapshot = pipeline.store.latest()
        self.assertAlmostEqual(snapshot.total, 305.0 * 0.9 * 25)
        self.assertEqual(pipeline.feed_client.reconnect_count, 1)
        self.assertEqual(len(feed.connections), 2)
        for connection in feed.connections:
            self.assertEqual(json.loads(connection.sent[0]), {"subscribe": ["MSFT"]})
        self.assertIn("Microsoft", console.getvalue())
        self.assertIn("\x1b[2J", console.getvalue())
        self.assertFalse(pipeline.health()["producer_alive"])
        self.assertFalse(pipeline.health()["receiver_alive"])

    def test_duplicate_delivery_across_reconnect_is_not_reapplied(self):
        feed = _ScriptedFeed(
            [
                [_frame("MSFT", 305.0, T2)],
                [_frame("MSFT", 305.0, T2), _frame("MSFT", 300.0, T1)],
            ]
        )
        pipeline = build_pipeline(_settings(), connection_factory=feed, feed_sleep_fn=lambda _sec: None)

        pipeline.start()
        try:
            reached = _wait_until(lambda: pipeline.receiver.batches == 3)
        finally:
            pipeline.stop()
        pipeline.join(poll_sec=0.05)

        self.assertTrue(reached)
        self.assertEqual(pipeline.receiver.applied, 1)
        self.assertEqual(pipeline.receiver.discarded, 2)
        self.assertEqual(pipeline.store.latest().per_position["MSFT"].last_price, 305.0)

    def test_fatal_sink_failure_stops_both_workers_with_nonzero_code(self):
        influx_client = MagicMock()
        influx_client.write.side_effect = ConnectionRefusedError("influx down")
        feed = _ScriptedFeed([[_frame("MSFT", 300.0, T1)]])
        pipeline = build_pipeline(
            _settings(
                db={"url": "http://influx.test", "org": "o", "bucket": "b", "token": "t"},
                sink_retry_attempts=1,
                max_consecutive_sink_failures=1,
            ),
            connection_factory=feed,
            influx_client=influx_client,
            feed_sleep_fn=lambda _sec: None,
        )

        code = pipeline.run()

        self.assertEqual(code, 1)
        self.assertEqual(len(pipeline.errors), 1)
        self.assertIsInstance(pipeline.errors[0], SinkError)
        self.assertTrue(pipeline.channel.closed)
        self.assertFalse(pipeline.feed_client.running)

    def test_metrics_merge_all_components(self):
        pipeline = build_pipeline(_settings(), connection_factory=_ScriptedFeed([]))

        metrics = pipeline.metrics()

        for key in ("ws_connected", "producer_batches", "channel_capacity", "receiver_state"):
            self.assertIn(key, metrics)
        self.assertEqual(metrics["channel_capacity"], 32)


class BuildPipelineValidationTest(unittest.TestCase):
    def test_non_eur_home_currency_is_rejected_before_lookup(self):
        meta_client = MagicMock()

        with self.assertRaises(ConfigError):
            build_pipeline(_settings(home_currency="USD"), meta_client=meta_client)
        meta_client.get_quote_meta.assert_not_called()

    def test_unresolved_symbol_is_rejected(self):
        meta_client = MagicMock()
        meta_client.get_quote_meta.return_value = {}

        with self.assertRaises(ConfigError) as ctx:
            build_pipeline(_settings(quote_meta={}), meta_client=meta_client)
        self.assertIn("UNKNOWN_SYMBOL", str(ctx.exception))
        meta_client.get_quote_meta.assert_called_once_with(["MSFT"])

    def test_meta_lookup_fills_symbols_missing_from_config(self):
        meta_client = MagicMock()
        meta_client.get_quote_meta.return_value = {
            "EXS2.DE": QuoteMeta(symbol="EXS2.DE", name="iShares TecDAX", currency=Currency.EUR)
        }

        pipeline = build_pipeline(
            _settings(portfolio=[("MSFT", 25.0), ("EXS2.DE", 10.0)]),
            meta_client=meta_client,
        )

        meta_client.get_quote_meta.assert_called_once_with(["EXS2.DE"])
        self.assertEqual(pipeline.producer.symbols, ["MSFT", "EXS2.DE"])

    def test_meta_currency_without_rate_is_rejected(self):
        with self.assertRaises(ConfigError) as ctx:
            build_pipeline(
                _settings(
                    portfolio=[("CSNDX.SW", 10.0)],
                    quote_meta={"CSNDX.SW": {"name": "iShares NASDAQ 100", "currency": "CHF"}},
                )
            )
        self.assertIn("MISSING_RATE", str(ctx.exception))

    def test_invalid_channel_capacity_is_config_error(self):
        with self.assertRaises(ConfigError):
            build_pipeline(_settings(channel_capacity=0))


if __name__ == "__main__":
    unittest.main()
