"""Prometheus instrumentation component.

Exposes a client's metrics (lines received and sent, handler invocations,
errors, outbound queue depth) on a Prometheus/OpenMetrics-compatible /metrics
HTTP endpoint.

Note that there is a terminology clash: Prometheus calls this a "client", and
the Python module is called "prometheus_client", but this is an HTTP server,
and as such we call the class here PrometheusServer.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import configparser
import http.server
import socket

import prometheus_client
import structlog


class PrometheusServer(http.server.ThreadingHTTPServer):
    """An HTTP server exposing the metrics of a registry."""

    log = structlog.get_logger("ircevent.prometheus")
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, config: configparser.SectionProxy, registry: prometheus_client.CollectorRegistry) -> None:
        listen_address = config.get("listen_address", fallback="::")
        listen_port = config.getint("listen_port", fallback=9200)
        if ":" in listen_address:
            self.address_family = socket.AF_INET6

        handler = prometheus_client.MetricsHandler.factory(registry)
        super().__init__((listen_address, listen_port), handler)
        # bind() may have picked the port
        self.address, self.port = str(self.server_address[0]), self.server_address[1]
        self.log.info("Serving metrics over HTTP", listen_address=self.address, listen_port=self.port)

    def server_bind(self) -> None:
        """Bind to an IP address, accepting both IPv4 and IPv6 on IPv6 sockets."""
        if self.address_family == socket.AF_INET6:
            self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        super().server_bind()
