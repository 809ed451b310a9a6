"""
Observability module.

Structured logging, metrics, tracing, health checks and the recent-events
buffer, with clinical free text kept out of every sink.
"""
from .metrics import metrics
from .events import log_domain_event
from .logging import get_sanitized_logger

__all__ = ['metrics', 'log_domain_event', 'get_sanitized_logger']
