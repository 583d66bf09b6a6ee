from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, Iterable

from quotestream.errors import ChannelClosedError, SinkError
from quotestream.schemas.portfolio import Portfolio, ValuationSnapshot
from quotestream.schemas.quote import QuoteBatch
from quotestream.services.channel import QuoteChannel
from quotestream.services.price_table import PriceTable
from quotestream.services.sinks import SnapshotSink, SnapshotStore
from quotestream.services.valuation import ConversionTable, value


class ReceiverState(str, Enum):
    IDLE = "IDLE"
    UPDATING = "UPDATING"
    DISPATCHING = "DISPATCHING"
    STOPPED = "STOPPED"


class QuoteReceiver:
    """Channel -> price table -> valuation -> sinks.

    Sink writes are retried with capped exponential backoff; an exhausted sink
    is skipped for that snapshot. If ``max_consecutive_sink_failures`` is set,
    that many snapshots in a row with every sink failing is fatal.
    """

    def __init__(
        self,
        *,
        portfolio: Portfolio,
        rates: ConversionTable,
        channel: QuoteChannel,
        sinks: Iterable[SnapshotSink] = (),
        store: SnapshotStore | None = None,
        retry_attempts: int = 3,
        retry_backoff_base_sec: float = 0.5,
        retry_backoff_cap_sec: float = 5.0,
        max_consecutive_sink_failures: int | None = None,
        poll_interval_sec: float = 0.5,
        sleep_fn: Callable[[float], None] = time.sleep,
        now_ms: Callable[[], int] | None = None,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        if max_consecutive_sink_failures is not None and max_consecutive_sink_failures < 1:
            raise ValueError("max_consecutive_sink_failures must be >= 1 or None")
        self.portfolio = portfolio
        self.rates = rates
        self.channel = channel
        self.sinks = list(sinks)
        self.store = store
        self.retry_attempts = retry_attempts
        self.retry_backoff_base_sec = retry_backoff_base_sec
        self.retry_backoff_cap_sec = retry_backoff_cap_sec
        self.max_consecutive_sink_failures = max_consecutive_sink_failures
        self.poll_interval_sec = poll_interval_sec
        self._sleep = sleep_fn
        self._now_ms = now_ms or (lambda: int(time.time() * 1000))

        self.price_table = PriceTable()
        self.state = ReceiverState.IDLE
        self.last_snapshot: ValuationSnapshot | None = None
        self.batches = 0
        self.applied = 0
        self.discarded = 0
        self.sink_failures = 0
        self.consecutive_all_sink_failures = 0

    def apply_batch(self, batch: QuoteBatch) -> None:
        self.state = ReceiverState.UPDATING
        for quote in batch:
            if self.price_table.apply(quote):
                self.applied += 1
            else:
                self.discarded += 1

    def _write_with_retry(self, sink: SnapshotSink, snapshot: ValuationSnapshot) -> bool:
        name = getattr(sink, "name", type(sink).__name__)
        for attempt in range(self.retry_attempts):
            try:
                sink.write(snapshot)
                return True
            except Exception as exc:
                print(
                    f"[SINK][write_error] sink={name} attempt={attempt + 1}/{self.retry_attempts} error={exc}",
                    flush=True,
                )
                if attempt == self.retry_attempts - 1:
                    break
                self._sleep(min(self.retry_backoff_base_sec * (2**attempt), self.retry_backoff_cap_sec))
        self.sink_failures += 1
        print(f"[SINK][skip] sink={name} as_of={snapshot.as_of}", flush=True)
        return False

    def dispatch(self, snapshot: ValuationSnapshot) -> None:
        self.state = ReceiverState.DISPATCHING
        results = [self._write_with_retry(sink, snapshot) for sink in self.sinks]
        if self.store is not None:
            self.store.write(snapshot)

        if not self.sinks or any(results):
            self.consecutive_all_sink_failures = 0
            return
        self.consecutive_all_sink_failures += 1
        limit = self.max_consecutive_sink_failures
        if limit is not None and self.consecutive_all_sink_failures >= limit:
            raise SinkError(f"ALL_SINKS_FAILED: {self.consecutive_all_sink_failures} consecutive snapshots")

    def process_batch(self, batch: QuoteBatch) -> ValuationSnapshot:
        self.apply_batch(batch)
        snapshot = value(
            self.portfolio,
            self.price_table.as_mapping(),
            self.rates,
            as_of=self._now_ms(),
        )
        self.last_snapshot = snapshot
        self.batches += 1
        self.dispatch(snapshot)
        self.state = ReceiverState.IDLE
        return snapshot

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Consume until the channel is closed and drained, or until cancelled."""
        stop_event = stop_event or threading.Event()
        print(f"[RECEIVER][start] positions={len(self.portfolio.positions)} sinks={len(self.sinks)}", flush=True)
        try:
            while not stop_event.is_set():
                try:
                    batch = self.channel.receive(timeout=self.poll_interval_sec)
                except ChannelClosedError:
                    print("[RECEIVER][channel_closed] drained=1", flush=True)
                    return
                if batch is not None:
                    self.process_batch(batch)
        finally:
            self.state = ReceiverState.STOPPED
            print(f"[RECEIVER][stop] batches={self.batches} applied={self.applied}", flush=True)

    def metrics(self) -> dict:
        last = self.last_snapshot
        return {
            "receiver_state": self.state.value,
            "receiver_batches": self.batches,
            "quotes_applied": self.applied,
            "quotes_discarded": self.discarded,
            "priced_symbols": len(self.price_table),
            "sink_failures": self.sink_failures,
            "consecutive_all_sink_failures": self.consecutive_all_sink_failures,
            "last_snapshot_total": last.total if last is not None else None,
            "last_snapshot_as_of": last.as_of if last is not None else None,
        }
