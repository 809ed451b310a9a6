"""
Post-commit notification dispatch.

Events are handed to the sinks only after the surrounding transaction
commits. A failing sink is logged and counted; it never reaches the
caller and never affects the other sinks.
"""
from django.conf import settings
from django.db import transaction
from django.utils.module_loading import import_string

from apps.core.observability import metrics
from apps.core.observability.logging import get_sanitized_logger

logger = get_sanitized_logger(__name__)

_sinks = None


class UnavailableSink:
    """Placeholder for a configured sink that could not be loaded; every delivery fails."""

    def __init__(self, path, error):
        self.name = path.rsplit('.', 1)[-1]
        self.path = path
        self.error = error

    def deliver(self, event_name, payload):
        raise RuntimeError(f'Sink {self.path} is unavailable: {self.error}')


def _load_sink(path):
    try:
        return import_string(path)()
    except Exception as e:
        logger.error(
            f'Notification sink could not be loaded: {path}',
            exc_info=True,
            extra={
                'event': 'notification_sink_load_failed',
                'sink_path': path,
                'error_type': e.__class__.__name__,
            }
        )
        return UnavailableSink(path, e)


def get_sinks():
    """Instantiate the sinks named in settings.NOTIFICATION_SINKS once per process."""
    global _sinks
    if _sinks is None:
        _sinks = [_load_sink(path) for path in getattr(settings, 'NOTIFICATION_SINKS', [])]
    return _sinks


def reset_sinks():
    global _sinks
    _sinks = None


def is_enabled(event_name):
    enabled = getattr(settings, 'NOTIFICATION_ENABLED_EVENTS', None)
    return not enabled or event_name in enabled


def dispatch(event_name, payload, sinks=None):
    """
    Deliver one event to every sink.

    Returns {sink_name: 'delivered' | 'skipped' | 'failed'}.
    """
    results = {}
    if not is_enabled(event_name):
        return results

    for sink in (get_sinks() if sinks is None else sinks):
        try:
            delivered = sink.deliver(event_name, payload)
        except Exception as e:
            results[sink.name] = 'failed'
            metrics.notification_deliveries_total.labels(
                sink=sink.name, event=event_name, result='failed'
            ).inc()
            logger.warning(
                f'Notification delivery failed: {sink.name}',
                exc_info=True,
                extra={
                    'event': 'notification_delivery_failed',
                    'sink': sink.name,
                    'notification_event': event_name,
                    'error_type': e.__class__.__name__,
                }
            )
            continue

        result = 'delivered' if delivered else 'skipped'
        results[sink.name] = result
        metrics.notification_deliveries_total.labels(
            sink=sink.name, event=event_name, result=result
        ).inc()

    return results


def notify_on_commit(event_name, payload):
    """Queue ``event_name`` for dispatch once the current transaction commits."""
    transaction.on_commit(lambda: dispatch(event_name, payload), robust=True)
