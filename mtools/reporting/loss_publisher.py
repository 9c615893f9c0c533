"""
Loss report publishing for mdump.
Writes each computed loss report to InfluxDB and/or posts it to a webhook.
"""

import logging
import socket
from typing import Optional

import requests
from influxdb_client import InfluxDBClient, Point
from influxdb_client.client.write_api import SYNCHRONOUS

from ..core.config import Config, TransportEndpoint
from ..protocol.stats import LossReport


class LossPublisher:
    """Ships loss reports to the exporters enabled in the configuration.

    Exporter failures are logged; they never stop the receive loop.
    """

    def __init__(self, config: Config):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.host_name = socket.gethostname()

        # InfluxDB client
        self._influx_client: Optional[InfluxDBClient] = None
        self._write_api = None

        if config.influxdb.enabled:
            self._init_influxdb()

    @property
    def enabled(self) -> bool:
        return self._write_api is not None or self.config.monitoring.webhook_enabled

    def _init_influxdb(self) -> None:
        """Initialize InfluxDB connection."""
        try:
            self._influx_client = InfluxDBClient(
                url=self.config.influxdb.url,
                token=self.config.influxdb.token,
                org=self.config.influxdb.organization
            )

            # Test connection
            self._influx_client.ping()

            self._write_api = self._influx_client.write_api(write_options=SYNCHRONOUS)

            self.logger.info("InfluxDB connection established")

        except Exception as e:
            self.logger.error(f"Failed to connect to InfluxDB: {e}")
            self._influx_client = None
            self._write_api = None

    def publish(self, report: LossReport, endpoint: TransportEndpoint) -> None:
        """Send one loss report to every enabled exporter."""
        if self._write_api is not None:
            self._send_to_influxdb(report, endpoint)

        if self.config.monitoring.webhook_enabled:
            self._send_to_webhook(report, endpoint)

    def _send_to_influxdb(self, report: LossReport, endpoint: TransportEndpoint) -> None:
        try:
            point = Point("multicast_loss") \
                .field("sent", report.sent) \
                .field("received", report.received) \
                .field("loss_percent", report.loss_percent) \
                .tag("group", endpoint.address) \
                .tag("port", str(endpoint.port)) \
                .tag("transport", endpoint.kind.value) \
                .tag("host", self.host_name)

            self._write_api.write(
                bucket=self.config.influxdb.database,
                record=point
            )

        except Exception as e:
            self.logger.error(f"Failed to send data to InfluxDB: {e}")

    def _send_to_webhook(self, report: LossReport, endpoint: TransportEndpoint) -> None:
        payload = {
            'host': self.host_name,
            'group': endpoint.address,
            'port': endpoint.port,
            'transport': endpoint.kind.value,
            'sent': report.sent,
            'received': report.received,
            'loss_percent': report.loss_percent
        }

        try:
            response = requests.post(
                self.config.monitoring.webhook_url,
                json=payload,
                timeout=10
            )

            if response.status_code >= 300:
                self.logger.error(f"Webhook rejected loss report: {response.status_code}")

        except requests.RequestException as e:
            self.logger.error(f"Failed to post loss report to webhook: {e}")

    def close(self) -> None:
        if self._influx_client:
            self._influx_client.close()
            self._influx_client = None
            self._write_api = None
