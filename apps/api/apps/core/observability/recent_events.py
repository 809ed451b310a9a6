"""
Bounded buffer of recent inbound events for operational debugging.
"""
import threading
from collections import deque

from django.utils import timezone

from .logging import sanitize_dict


class RecentEventBuffer:
    """
    Fixed-capacity FIFO of recent events.

    When full, recording a new event evicts the oldest one. ``evicted``
    counts how many entries have been dropped since creation or the last
    clear(). Safe to share between request threads.
    """

    def __init__(self, capacity):
        if capacity <= 0:
            raise ValueError('capacity must be positive')
        self._events = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self.evicted = 0

    @property
    def capacity(self):
        return self._events.maxlen

    def __len__(self):
        with self._lock:
            return len(self._events)

    def record(self, event_type, **fields):
        entry = {
            'timestamp': timezone.now().isoformat(),
            'event': event_type,
        }
        entry.update(sanitize_dict(fields))
        with self._lock:
            if len(self._events) == self._events.maxlen:
                self.evicted += 1
            self._events.append(entry)
        return entry

    def snapshot(self, limit=None):
        """Newest first."""
        if limit is not None and limit < 0:
            raise ValueError('limit must not be negative')
        with self._lock:
            events = list(reversed(self._events))
        if limit is not None:
            events = events[:limit]
        return events

    def clear(self):
        with self._lock:
            self._events.clear()
            self.evicted = 0
