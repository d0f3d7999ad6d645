"""Observability infrastructure module.

This module provides monitoring utilities:
- Structured logging via structlog
- Prometheus metrics helpers
"""

from resumable_agent.platform.observability.logging import configure_logging, get_logger
from resumable_agent.platform.observability.metrics import BUCKETS, metrics

__all__ = [
    "BUCKETS",
    "configure_logging",
    "get_logger",
    "metrics",
]
