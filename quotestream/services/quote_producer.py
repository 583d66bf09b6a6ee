from __future__ import annotations

import threading
import time
from typing import Callable, Iterable

from quotestream.errors import ChannelClosedError
from quotestream.integrations.yahoo_ws import YahooFeedClient
from quotestream.schemas.quote import Quote
from quotestream.services.channel import QuoteChannel


class QuoteProducer:
    """Feed client -> coalesced batches -> bounded channel.

    A batch is flushed once ``coalesce_window_sec`` has passed since its first
    quote, or when it reaches ``max_batch_size``. With the default window of 0
    every decoded quote is sent as its own batch.
    """

    def __init__(
        self,
        *,
        feed_client: YahooFeedClient,
        symbols: Iterable[str],
        channel: QuoteChannel,
        coalesce_window_sec: float = 0.0,
        max_batch_size: int = 64,
        send_poll_sec: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if coalesce_window_sec < 0:
            raise ValueError("coalesce_window_sec must be >= 0")
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self.feed_client = feed_client
        self.symbols = list(symbols)
        self.channel = channel
        self.coalesce_window_sec = coalesce_window_sec
        self.max_batch_size = max_batch_size
        self.send_poll_sec = send_poll_sec
        self._clock = clock

        self._pending: list[Quote] = []
        self._pending_since = 0.0
        self.quotes = 0
        self.batches = 0
        self.blocked_sends = 0

    def _flush_due(self) -> bool:
        if not self._pending:
            return False
        if len(self._pending) >= self.max_batch_size:
            return True
        return self._clock() - self._pending_since >= self.coalesce_window_sec

    def _send(self, stop_event: threading.Event) -> bool:
        batch = list(self._pending)
        if self.channel.depth() >= self.channel.capacity:
            self.blocked_sends += 1
        while not stop_event.is_set():
            try:
                sent = self.channel.send(batch, timeout=self.send_poll_sec)
            except ChannelClosedError:
                # closed by the supervisor on abort
                print(f"[PRODUCER][channel_closed] dropped={len(batch)}", flush=True)
                return False
            if sent:
                self._pending.clear()
                self.batches += 1
                return True
        return False

    def run(self, stop_event: threading.Event | None = None) -> None:
        stop_event = stop_event or threading.Event()
        print(f"[PRODUCER][start] symbols={len(self.symbols)} capacity={self.channel.capacity}", flush=True)
        try:
            for item in self.feed_client.subscribe(self.symbols):
                if stop_event.is_set():
                    break
                if item is not None:
                    if not self._pending:
                        self._pending_since = self._clock()
                    self._pending.append(item)
                    self.quotes += 1
                if self._flush_due() and not self._send(stop_event):
                    break
            if self._pending and not stop_event.is_set():
                self._send(stop_event)
        finally:
            self.channel.close()
            print(f"[PRODUCER][stop] quotes={self.quotes} batches={self.batches}", flush=True)

    def metrics(self) -> dict:
        return {
            "producer_quotes": self.quotes,
            "producer_batches": self.batches,
            "producer_pending": len(self._pending),
            "producer_blocked_sends": self.blocked_sends,
        }
