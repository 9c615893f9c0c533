"""
Tests for loss report publishing.
"""

import logging

import pytest
import requests

from mtools.core.config import Config, ReceiverConfig
from mtools.protocol.stats import compute_loss
from mtools.reporting import loss_publisher
from mtools.reporting.loss_publisher import LossPublisher


class FakeWriteApi:
    def __init__(self, fail=False):
        self.fail = fail
        self.writes = []

    def write(self, bucket, record):
        if self.fail:
            raise RuntimeError("write refused")
        self.writes.append((bucket, record))


class FakeInfluxClient:
    instances = []

    def __init__(self, url, token, org, ping_fails=False, write_fails=False):
        self.url = url
        self.ping_fails = ping_fails
        self.write_api_instance = FakeWriteApi(write_fails)
        self.closed = False
        FakeInfluxClient.instances.append(self)

    def ping(self):
        if self.ping_fails:
            raise ConnectionError("no route to influx")
        return True

    def write_api(self, write_options=None):
        return self.write_api_instance

    def close(self):
        self.closed = True


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


@pytest.fixture
def endpoint():
    return ReceiverConfig.create('239.101.3.1', 12965).endpoint


@pytest.fixture
def fake_influx(monkeypatch):
    FakeInfluxClient.instances = []

    def install(**kwargs):
        monkeypatch.setattr(loss_publisher, 'InfluxDBClient',
                            lambda url, token, org: FakeInfluxClient(url, token, org, **kwargs))
    install()
    return install


def influx_settings():
    config = Config.default()
    config.influxdb.enabled = True
    config.influxdb.url = "http://influx:8086"
    config.influxdb.database = "mtools"
    return config


def webhook_settings():
    config = Config.default()
    config.monitoring.webhook_enabled = True
    config.monitoring.webhook_url = "http://hooks/loss"
    return config


def test_disabled_by_default():
    publisher = LossPublisher(Config.default())
    assert not publisher.enabled
    publisher.close()


def test_writes_point_to_influxdb(fake_influx, endpoint):
    publisher = LossPublisher(influx_settings())
    assert publisher.enabled

    publisher.publish(compute_loss(6, 4), endpoint)

    client = FakeInfluxClient.instances[0]
    bucket, point = client.write_api_instance.writes[0]
    assert bucket == "mtools"
    line = point.to_line_protocol()
    assert line.startswith("multicast_loss,")
    assert "group=239.101.3.1" in line
    assert "sent=6i" in line
    assert "received=4i" in line

    publisher.close()
    assert client.closed


def test_unreachable_influxdb_disables_exporter(fake_influx, caplog):
    fake_influx(ping_fails=True)
    with caplog.at_level(logging.ERROR):
        publisher = LossPublisher(influx_settings())
    assert not publisher.enabled
    assert "Failed to connect to InfluxDB" in caplog.text


def test_failed_write_is_logged(fake_influx, endpoint, caplog):
    fake_influx(write_fails=True)
    publisher = LossPublisher(influx_settings())

    with caplog.at_level(logging.ERROR):
        publisher.publish(compute_loss(1, 1), endpoint)

    assert "Failed to send data to InfluxDB" in caplog.text


def test_posts_to_webhook(monkeypatch, endpoint):
    posts = []

    def fake_post(url, json, timeout):
        posts.append((url, json))
        return FakeResponse(204)

    monkeypatch.setattr(loss_publisher.requests, 'post', fake_post)
    publisher = LossPublisher(webhook_settings())
    assert publisher.enabled

    publisher.publish(compute_loss(4, 3), endpoint)

    url, payload = posts[0]
    assert url == "http://hooks/loss"
    assert payload['sent'] == 4
    assert payload['received'] == 3
    assert payload['loss_percent'] == 25.0
    assert payload['transport'] == 'multicast'


def test_webhook_failures_are_logged(monkeypatch, endpoint, caplog):
    def refused(url, json, timeout):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(loss_publisher.requests, 'post', refused)
    publisher = LossPublisher(webhook_settings())

    with caplog.at_level(logging.ERROR):
        publisher.publish(compute_loss(4, 3), endpoint)

    assert "Failed to post loss report to webhook" in caplog.text


def test_webhook_rejection_is_logged(monkeypatch, endpoint, caplog):
    monkeypatch.setattr(loss_publisher.requests, 'post',
                        lambda url, json, timeout: FakeResponse(500))
    publisher = LossPublisher(webhook_settings())

    with caplog.at_level(logging.ERROR):
        publisher.publish(compute_loss(4, 3), endpoint)

    assert "Webhook rejected loss report: 500" in caplog.text
