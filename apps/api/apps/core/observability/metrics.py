"""
Prometheus metrics for the sync engine.

All collectors register on the default prometheus_client registry at import
time; ``metrics`` is the single instance the rest of the code uses.
"""
import time
from functools import wraps

from prometheus_client import Counter, Histogram

COORDINATOR_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)


class MetricsRegistry:

    def __init__(self):
        self.exceptions_total = Counter(
            'exceptions_total', 'Domain errors returned to callers',
            ['exception_type', 'location'],
        )

        # state machines
        self.case_transitions_total = Counter(
            'case_transitions_total', 'Referral case status transitions',
            ['from_status', 'to_status', 'result'],
        )
        self.booking_transitions_total = Counter(
            'booking_transitions_total', 'Booking status transitions',
            ['from_status', 'to_status', 'result'],
        )
        self.booking_conflicts_total = Counter(
            'booking_conflicts_total', 'Booking requests rejected for overlapping an existing slot',
        )
        self.sync_coordinator_duration_seconds = Histogram(
            'sync_coordinator_duration_seconds', 'Duration of coordinator entry points',
            ['operation'], buckets=COORDINATOR_BUCKETS,
        )

        # ledger; result is applied, idempotent or insufficient
        self.session_ledger_operations_total = Counter(
            'session_ledger_operations_total', 'Session ledger Use/Return operations',
            ['action', 'result'],
        )
        self.session_ledger_inconsistencies_total = Counter(
            'session_ledger_inconsistencies_total', 'Bundles failing a conservation or journal check',
            ['check'],
        )

        # result is delivered, skipped or failed
        self.notification_deliveries_total = Counter(
            'notification_deliveries_total', 'Post-commit notification deliveries',
            ['sink', 'event', 'result'],
        )

    def track_duration(self, histogram, **labels):
        """
        Decorator observing wall time of each call, including failed ones::

            @metrics.track_duration(metrics.sync_coordinator_duration_seconds, operation='cancel_booking')
        """
        child = histogram.labels(**labels) if labels else histogram

        def decorator(func):
            @wraps(func)
            def wrapper(*args, **kwargs):
                started = time.perf_counter()
                try:
                    return func(*args, **kwargs)
                finally:
                    child.observe(time.perf_counter() - started)
            return wrapper
        return decorator


metrics = MetricsRegistry()
