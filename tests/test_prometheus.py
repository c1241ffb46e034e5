"""Tests for the Prometheus server."""

from __future__ import annotations

import configparser
import http.client
import threading
from collections.abc import Generator

import pytest

from ircevent import IRCClient
from ircevent.prometheus import PrometheusServer


@pytest.fixture(name="config")
def fixture_config() -> configparser.SectionProxy:
    """Fixture representing an example configuration."""
    config = configparser.ConfigParser()
    config.read_string(
        """
        [prometheus]
        listen_address = 127.0.0.1
        # pick a random free port
        listen_port = 0
        """
    )
    return config["prometheus"]


@pytest.fixture(name="prometheus_server")
def fixture_prometheus_server(config: configparser.SectionProxy) -> Generator[PrometheusServer, None, None]:
    """Fixture for an instance of a PrometheusServer, exposing a client's metrics.

    This spawns a thread to run the server. It yields the instance.
    """
    client = IRCClient("bob", "bob")
    server = PrometheusServer(config, client.metrics_registry)
    thread = threading.Thread(name="prometheus", target=server.serve_forever)
    thread.start()

    yield server

    server.shutdown()
    thread.join()
    server.server_close()


def test_prometheus_server(prometheus_server: PrometheusServer) -> None:
    """Test that the Prometheus server works, and exposes the client metrics."""
    conn = http.client.HTTPConnection(prometheus_server.address, prometheus_server.port)
    conn.request("GET", "/metrics")
    response = conn.getresponse()
    assert response.status == 200
    body = response.read().decode("utf8")
    assert "ircevent_messages_received_total 0.0" in body
    assert "ircevent_outbound_queue 0.0" in body
