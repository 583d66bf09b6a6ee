from __future__ import annotations

import threading
from collections import deque

from quotestream.errors import ChannelClosedError
from quotestream.schemas.quote import QuoteBatch


class QuoteChannel:
    """Bounded FIFO between the producer and receiver threads.

    ``send`` blocks while the channel is full; nothing is ever dropped.
    ``close`` lets the receiver drain what is queued and then raises
    ChannelClosedError from ``receive``.
    """

    def __init__(self, capacity: int = 32) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._items: deque[QuoteBatch] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.sent = 0
        self.waiting_senders = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def depth(self) -> int:
        with self._cond:
            return len(self._items)

    def send(self, batch: QuoteBatch, timeout: float | None = None) -> bool:
        """Enqueue a batch. Returns False if the timeout passed while full."""
        with self._cond:
            self.waiting_senders += 1
            try:
                self._cond.wait_for(
                    lambda: self._closed or len(self._items) < self.capacity,
                    timeout=timeout,
                )
            finally:
                self.waiting_senders -= 1
            if self._closed:
                raise ChannelClosedError("CHANNEL_CLOSED")
            if len(self._items) >= self.capacity:
                return False
            self._items.append(list(batch))
            self.sent += 1
            self._cond.notify_all()
            return True

    def receive(self, timeout: float | None = None) -> QuoteBatch | None:
        """Dequeue the oldest batch, or None on timeout."""
        with self._cond:
            self._cond.wait_for(lambda: self._closed or bool(self._items), timeout=timeout)
            if self._items:
                batch = self._items.popleft()
                self._cond.notify_all()
                return batch
            if self._closed:
                raise ChannelClosedError("CHANNEL_CLOSED")
            return None

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def metrics(self) -> dict:
        return {
            "channel_capacity": self.capacity,
            "channel_depth": self.depth(),
            "channel_sent": self.sent,
            "channel_waiting_senders": self.waiting_senders,
        }
