"""
Observability Module

Structured logging, OpenTelemetry tracing and metrics for the replication
workers.
"""

from typing import Optional

from ..config import ReplicationConfig, get_config
from .logging import StructuredFormatter, configure_logging
from .metrics import (
    get_meter,
    init_metrics,
    record_counter,
    record_histogram,
)
from .tracing import (
    create_span,
    get_current_span,
    get_trace_id,
    get_tracer,
    init_tracing,
    traced,
)


def setup_observability(config: Optional[ReplicationConfig] = None) -> None:
    """Configure logging, tracing and metrics for one service process."""
    config = config or get_config()
    configure_logging(
        level=config.log_level,
        structured=config.log_structured,
        service_name=config.service_name,
    )
    init_tracing(service_name=config.service_name, otlp_endpoint=config.otlp_endpoint)
    init_metrics(service_name=config.service_name, otlp_endpoint=config.otlp_endpoint)


__all__ = [
    # Tracing
    "init_tracing",
    "get_tracer",
    "get_current_span",
    "get_trace_id",
    "create_span",
    "traced",
    # Metrics
    "init_metrics",
    "get_meter",
    "record_counter",
    "record_histogram",
    # Logging
    "configure_logging",
    "StructuredFormatter",
    "setup_observability",
]
