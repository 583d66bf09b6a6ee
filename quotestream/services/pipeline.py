from __future__ import annotations

import threading
from typing import Any, Callable

from quotestream.integrations.yahoo_ws import YahooFeedClient
from quotestream.services.channel import QuoteChannel
from quotestream.services.quote_producer import QuoteProducer
from quotestream.services.quote_receiver import QuoteReceiver
from quotestream.services.sinks import SnapshotStore


class QuotePipeline:
    """Runs producer and receiver as two worker threads joined by the channel.

    The first worker to fail cancels the other: the stop event is set, the feed
    client is stopped and the channel is closed. ``run`` then returns 1.
    """

    def __init__(
        self,
        *,
        feed_client: YahooFeedClient,
        channel: QuoteChannel,
        producer: QuoteProducer,
        receiver: QuoteReceiver,
        store: SnapshotStore | None = None,
    ) -> None:
        self.feed_client = feed_client
        self.channel = channel
        self.producer = producer
        self.receiver = receiver
        self.store = store
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._threads: dict[str, threading.Thread] = {}
        self.errors: list[Exception] = []

    def _abort(self) -> None:
        self._cancel.set()
        self.feed_client.stop()
        self.channel.close()

    def _run_worker(self, name: str, target: Callable[[threading.Event], Any]) -> None:
        try:
            target(self._cancel)
        except Exception as exc:
            print(f"[PIPELINE][fatal] worker={name} error={type(exc).__name__}: {exc}", flush=True)
            with self._lock:
                self.errors.append(exc)
            self._abort()
        else:
            print(f"[PIPELINE][worker_stop] worker={name}", flush=True)

    def start(self) -> None:
        for name, target in (("quote-producer", self.producer.run), ("quote-receiver", self.receiver.run)):
            worker = threading.Thread(
                target=self._run_worker,
                args=(name, target),
                daemon=True,
                name=name,
            )
            self._threads[name] = worker
            print(f"[PIPELINE][worker_start] thread={name}", flush=True)
            worker.start()

    def join(self, poll_sec: float = 0.5) -> int:
        try:
            while any(t.is_alive() for t in self._threads.values()):
                for worker in self._threads.values():
                    worker.join(timeout=poll_sec)
        except KeyboardInterrupt:
            print("[PIPELINE][interrupt] stopping", flush=True)
            self.stop()
            return self.join(poll_sec)
        return 1 if self.errors else 0

    def run(self) -> int:
        self.start()
        return self.join()

    def stop(self) -> None:
        """Graceful: the feed ends, the producer flushes and closes, the receiver drains."""
        self.feed_client.stop()

    def cancel(self) -> None:
        self._abort()

    def is_alive(self, name: str) -> bool:
        worker = self._threads.get(name)
        return worker is not None and worker.is_alive()

    def health(self) -> dict:
        return {
            "status": "ok" if not self.errors else "failed",
            "producer_alive": self.is_alive("quote-producer"),
            "receiver_alive": self.is_alive("quote-receiver"),
        }

    def metrics(self) -> dict:
        return {
            **self.feed_client.metrics(),
            **self.producer.metrics(),
            **self.channel.metrics(),
            **self.receiver.metrics(),
        }
