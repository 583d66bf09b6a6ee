import unittest
from unittest.mock import MagicMock

from influxdb_client_3 import InfluxDBError
from urllib3.exceptions import ProtocolError

from quotestream.errors import SinkError
from quotestream.integrations.influxdb import InfluxDB, InfluxDBConfig, Measurement


class TestInfluxDB(unittest.TestCase):
    def setUp(self):
        self.config = InfluxDBConfig(
            url="http://influx.test:8086",
            org="home",
            bucket="stocks",
            token="secret-token",
        )

    def test_point_carries_tags_fields_and_millisecond_time(self):
        measurement = Measurement(
            name="portfolio",
            fields={"BTC USD": 1.5, "NAN": float("nan"), "total": 2.5},
            tags={"currency": "EUR"},
            ts=1700000000000,
        )

        line = measurement.to_point().to_line_protocol()

        self.assertTrue(line.startswith("portfolio,currency=EUR "))
        self.assertIn("BTC\\ USD=1.5", line)
        self.assertIn("total=2.5", line)
        self.assertNotIn("NAN", line)
        self.assertTrue(line.endswith(" 1700000000000"))

    def test_measurement_without_finite_fields_is_rejected(self):
        with self.assertRaises(ValueError):
            Measurement(name="portfolio", fields={"total": float("inf")}, ts=1).to_point()

    def test_write_hands_point_to_client(self):
        client = MagicMock()
        influx = InfluxDB(self.config, client=client)

        influx.write(Measurement(name="portfolio", fields={"total": 10.5}, ts=1))

        kwargs = client.write.call_args.kwargs
        self.assertEqual(kwargs["write_precision"], "ms")
        self.assertEqual(kwargs["record"].to_line_protocol(), "portfolio total=10.5 1")

    def test_client_errors_become_sink_errors(self):
        for error in (
            InfluxDBError(message="bucket not found"),
            ProtocolError("connection aborted"),
            ConnectionRefusedError("refused"),
        ):
            client = MagicMock()
            client.write.side_effect = error
            influx = InfluxDB(self.config, client=client)

            with self.assertRaises(SinkError) as ctx:
                influx.write(Measurement(name="portfolio", fields={"total": 1.5}, ts=1))
            self.assertIn("INFLUX_WRITE_FAILED", str(ctx.exception))

    def test_close_closes_client(self):
        client = MagicMock()

        InfluxDB(self.config, client=client).close()

        client.close.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
