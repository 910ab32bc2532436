"""Prometheus metrics module."""

import logging

from prometheus_client import start_http_server

logger = logging.getLogger(__name__)


def start_exporter(port: int) -> None:
    """Expose the default registry on ``port`` (watch mode only)."""
    start_http_server(port)
    logger.info("Metrics exporter listening", extra={"port": port})
