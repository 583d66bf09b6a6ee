from __future__ import annotations

import math
from typing import Any, Optional

from influxdb_client_3 import InfluxDBClient3, InfluxDBError, Point
from pydantic import BaseModel, Field
from urllib3.exceptions import HTTPError

from quotestream.errors import SinkError

WRITE_PRECISION = "ms"


class InfluxDBConfig(BaseModel):
    url: str
    org: str
    bucket: str
    token: str
    measurement: str = "portfolio"


class Measurement(BaseModel):
    name: str
    fields: dict[str, float]
    tags: dict[str, str] = Field(default_factory=dict)
    ts: int

    def to_point(self) -> Point:
        """Build one point with millisecond precision. Non-finite fields are left out."""
        point = Point(self.name)
        for key, value in self.tags.items():
            point = point.tag(key, value)
        written = 0
        for key, value in self.fields.items():
            if math.isfinite(value):
                point = point.field(key, float(value))
                written += 1
        if not written:
            raise ValueError("measurement needs at least one finite field")
        return point.time(self.ts, WRITE_PRECISION)


class InfluxDB:
    """Append-only writer for one bucket."""

    def __init__(self, config: InfluxDBConfig, client: Optional[Any] = None) -> None:
        self.config = config
        self.client = client or InfluxDBClient3(
            host=config.url,
            org=config.org,
            database=config.bucket,
            token=config.token,
        )

    def write(self, measurement: Measurement) -> None:
        point = measurement.to_point()
        try:
            self.client.write(record=point, write_precision=WRITE_PRECISION)
        except (InfluxDBError, HTTPError, OSError) as exc:
            raise SinkError(f"INFLUX_WRITE_FAILED: {exc}") from exc

    def close(self) -> None:
        self.client.close()
