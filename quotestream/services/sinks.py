from __future__ import annotations

import sys
import threading
from typing import Mapping, Protocol, TextIO

from quotestream.errors import SinkError
from quotestream.integrations.influxdb import InfluxDB, Measurement
from quotestream.schemas.portfolio import ValuationSnapshot
from quotestream.schemas.quote import QuoteMeta

CLEAR_SCREEN = "\x1b[2J\x1b[1;1H"


class SnapshotSink(Protocol):
    name: str

    def write(self, snapshot: ValuationSnapshot) -> None: ...


class MetricsSink:
    """One measurement per snapshot: a field per position value plus the total."""

    name = "influxdb"

    def __init__(self, client: InfluxDB, measurement: str = "portfolio") -> None:
        self.client = client
        self.measurement = measurement

    def to_measurement(self, snapshot: ValuationSnapshot) -> Measurement:
        fields = {symbol: row.converted_value for symbol, row in snapshot.per_position.items()}
        fields["total"] = snapshot.total
        return Measurement(
            name=self.measurement,
            fields=fields,
            tags={"currency": snapshot.home_currency.value},
            ts=snapshot.as_of,
        )

    def write(self, snapshot: ValuationSnapshot) -> None:
        self.client.write(self.to_measurement(snapshot))


class ConsoleSink:
    name = "console"

    def __init__(
        self,
        quote_meta: Mapping[str, QuoteMeta] | None = None,
        stream: TextIO | None = None,
        clear: bool = True,
    ) -> None:
        self.quote_meta = dict(quote_meta or {})
        self.stream = stream
        self.clear = clear

    def render(self, snapshot: ValuationSnapshot) -> str:
        home = snapshot.home_currency.value
        lines = [f"{'Name':<32} {'Qty':>10} {'Last':>12} {'Value (' + home + ')':>16}"]
        for symbol, row in snapshot.per_position.items():
            meta = self.quote_meta.get(symbol)
            name = meta.name if meta is not None else symbol
            if row.last_price is None:
                last = "-"
            else:
                last = f"{row.last_price:.2f} {row.currency.value if row.currency else ''}".strip()
            worth = f"{row.converted_value:.2f}" if row.priced else "-"
            lines.append(f"{name[:32]:<32} {row.quantity:>10g} {last:>12} {worth:>16}")
        lines.append(f"{'Total':<32} {'':>10} {'':>12} {snapshot.total:>16.2f}")
        return "\n".join(lines)

    def write(self, snapshot: ValuationSnapshot) -> None:
        stream = self.stream or sys.stdout
        try:
            if self.clear:
                stream.write(CLEAR_SCREEN)
            stream.write(self.render(snapshot) + "\n")
            stream.flush()
        except OSError as exc:
            raise SinkError(f"CONSOLE_WRITE_FAILED: {exc}") from exc


class SnapshotStore:
    """Keeps the latest snapshot for readers on other threads (status API)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest: ValuationSnapshot | None = None
        self.writes = 0

    def write(self, snapshot: ValuationSnapshot) -> None:
        with self._lock:
            self._latest = snapshot
            self.writes += 1

    def latest(self) -> ValuationSnapshot | None:
        with self._lock:
            return self._latest
