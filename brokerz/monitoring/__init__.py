"""
Broker monitoring and observability utilities

Quick Start:
    >>> from brokerz.core.logger import configure_default_logging
    >>> configure_default_logging(json_format=True)

    # Enable Prometheus metrics (requires prometheus-client)
    >>> from brokerz.monitoring import PrometheusMetrics, start_metrics_server
    >>> start_metrics_server(port=8000)
    >>> manager = BrokerManager(config, metrics=PrometheusMetrics())
"""

from .logging import BrokerJsonFormatter, broker_context, handler_context
from .prometheus import PrometheusMetrics, is_prometheus_available, start_metrics_server

__all__ = [
    "BrokerJsonFormatter",
    "PrometheusMetrics",
    "broker_context",
    "handler_context",
    "is_prometheus_available",
    "start_metrics_server",
]
