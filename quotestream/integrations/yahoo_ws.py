from __future__ import annotations

import os
import threading
import time
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from websocket import WebSocketException, WebSocketTimeoutException

from quotestream.errors import DecodeError, FeedConfigError, FeedError
from quotestream.integrations.wire_quote import decode, encode_subscribe, unwrap_frame
from quotestream.schemas.quote import Quote


class YahooFeedClient:
    """Streamer client holding one logical subscription across reconnects.

    ``subscribe`` yields decoded quotes, plus ``None`` whenever a poll interval
    passes without a frame so the consumer can flush time-based work.
    """

    _WS_URL = "wss://streamer.finance.yahoo.com/?version=2"

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        connection_factory: Optional[Callable[..., Any]] = None,
        idle_timeout_sec: float = 30.0,
        poll_interval_sec: float = 1.0,
        backoff_base_sec: float = 1.0,
        backoff_cap_sec: float = 30.0,
        sleep_fn: Optional[Callable[[float], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[Callable[..., None]] = None,
    ) -> None:
        if poll_interval_sec <= 0 or idle_timeout_sec <= 0:
            raise ValueError("poll_interval_sec and idle_timeout_sec must be positive")
        self._url = url
        self._connection_factory = connection_factory or self._default_connection_factory
        self.idle_timeout_sec = idle_timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self.backoff_base_sec = backoff_base_sec
        self.backoff_cap_sec = backoff_cap_sec
        self._stop_requested = threading.Event()
        self._sleep = sleep_fn or self._stop_requested.wait
        self._clock = clock
        self._on_state_change = on_state_change

        self._subscribed = False
        self.connected = False
        self.last_error: str | None = None
        self.reconnect_count = 0
        self.messages = 0
        self.skipped = 0
        self.last_message_ts: int | None = None
        self._connection: Any = None

    @property
    def running(self) -> bool:
        return self._subscribed and not self._stop_requested.is_set()

    @property
    def ws_url(self) -> str:
        return self._url or os.getenv("YAHOO_WS_URL", self._WS_URL)

    def _default_connection_factory(self, url: str, *, timeout: float) -> Any:
        from websocket import create_connection

        return create_connection(url, timeout=timeout)

    def _emit_state(self, *, connected: bool, heartbeat_ts: int | None = None) -> None:
        self.connected = connected
        if self._on_state_change is None:
            return
        self._on_state_change(
            connected=connected,
            reconnect_count=self.reconnect_count,
            last_error=self.last_error,
            heartbeat_ts=heartbeat_ts,
        )

    def stop(self) -> None:
        """Ends the stream. Sticky: a stop that lands before subscribe still counts."""
        self._stop_requested.set()
        self._close()
        self._emit_state(connected=False)

    def _close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            connection.close()
        except (WebSocketException, OSError) as exc:
            print(f"[FEED][ws_close_error] {exc}", flush=True)

    def _connect(self, symbols: list[str]) -> Any:
        print(f"[FEED][ws_connect] url={self.ws_url} symbols={','.join(symbols)}", flush=True)
        connection = self._connection_factory(self.ws_url, timeout=self.poll_interval_sec)
        self._connection = connection
        connection.send(encode_subscribe(symbols))
        print(f"[FEED][ws_subscribe] count={len(symbols)}", flush=True)
        self._emit_state(connected=True, heartbeat_ts=int(time.time()))
        return connection

    def handle_frame(self, frame: str | bytes) -> Quote | None:
        self.messages += 1
        try:
            quote = decode(unwrap_frame(frame))
        except DecodeError as exc:
            self.skipped += 1
            print(f"[FEED][ws_message_skip] reason={exc}", flush=True)
            return None
        self.last_message_ts = quote.ts
        return quote

    def subscribe(self, symbols: Iterable[str]) -> Iterator[Quote | None]:
        wanted = sorted({str(s).strip() for s in symbols if str(s).strip()})
        if not wanted:
            raise FeedConfigError("EMPTY_SYMBOL_SET")
        self._subscribed = True
        return self._stream(wanted)

    def _stream(self, symbols: list[str]) -> Iterator[Quote | None]:
        attempt = 0
        try:
            while self.running:
                try:
                    connection = self._connect(symbols)
                    last_frame_at = self._clock()
                    while self.running:
                        try:
                            frame = connection.recv()
                        except WebSocketTimeoutException:
                            if self._clock() - last_frame_at >= self.idle_timeout_sec:
                                raise FeedError(f"IDLE_TIMEOUT: {self.idle_timeout_sec}s")
                            yield None
                            continue
                        if frame is None or len(frame) == 0:
                            raise FeedError("CONNECTION_CLOSED")
                        last_frame_at = self._clock()
                        attempt = 0
                        quote = self.handle_frame(frame)
                        if quote is not None:
                            yield quote
                except (FeedError, WebSocketException, OSError) as exc:
                    self._close()
                    if not self.running:
                        break
                    self.last_error = str(exc) or type(exc).__name__
                    self.reconnect_count += 1
                    self._emit_state(connected=False)
                    backoff = min(self.backoff_base_sec * (2**attempt), self.backoff_cap_sec)
                    print(
                        f"[FEED][ws_reconnect] attempt={attempt + 1} backoff={backoff} error={self.last_error}",
                        flush=True,
                    )
                    self._sleep(backoff)
                    attempt += 1
        finally:
            self._close()

    def metrics(self) -> Dict[str, Any]:
        return {
            "ws_connected": self.connected,
            "ws_messages": self.messages,
            "ws_skipped": self.skipped,
            "ws_reconnect_count": self.reconnect_count,
            "ws_last_error": self.last_error,
            "last_ws_message_ts": self.last_message_ts,
        }
