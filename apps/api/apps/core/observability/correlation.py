"""
Request correlation.

Every request gets an X-Request-ID (taken from the caller or generated),
which is echoed on the response and made available to log records through
a thread-local context. Mutating requests are also written to the
recent-events buffer so operators can see the last writes without a log
pipeline.
"""
import logging
import time
import uuid
from threading import local

_context = local()

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({'POST', 'PUT', 'PATCH', 'DELETE'})
_CONTEXT_DEFAULTS = {
    'request_id': None,
    'trace_id': None,
    'user_id': None,
    'user_roles': (),
}


def _get(name):
    return getattr(_context, name, _CONTEXT_DEFAULTS[name])


def get_request_id():
    return _get('request_id')


def get_trace_id():
    return _get('trace_id')


def get_user_id():
    return _get('user_id')


def get_user_roles():
    return list(_get('user_roles'))


def bind_request_context(**values):
    for name, value in values.items():
        if name not in _CONTEXT_DEFAULTS:
            raise KeyError(name)
        setattr(_context, name, value)


def clear_request_context():
    for name in _CONTEXT_DEFAULTS:
        _context.__dict__.pop(name, None)


def _actor(request):
    user = getattr(request, 'user', None)
    if user is None or not user.is_authenticated:
        return None, ()
    roles = tuple(user.user_roles.values_list('role__name', flat=True))
    return str(user.id), roles


class RequestCorrelationMiddleware:
    """
    Binds request_id / trace_id / actor to the log context and records
    mutating requests in the recent-events buffer.

    ``recent_events`` may be injected; otherwise the process-wide buffer
    owned by the core app is used.
    """

    request_id_header = 'HTTP_X_REQUEST_ID'
    trace_id_header = 'HTTP_X_TRACE_ID'

    def __init__(self, get_response, recent_events=None):
        self.get_response = get_response
        self._recent_events = recent_events

    @property
    def recent_events(self):
        if self._recent_events is None:
            from apps.core.apps import get_recent_events
            self._recent_events = get_recent_events()
        return self._recent_events

    def __call__(self, request):
        self.process_request(request)
        try:
            try:
                response = self.get_response(request)
            except Exception as exc:
                self.process_exception(request, exc)
                raise
            return self.process_response(request, response)
        finally:
            clear_request_context()

    def process_request(self, request):
        request.request_id = request.META.get(self.request_id_header) or uuid.uuid4().hex
        request.trace_id = request.META.get(self.trace_id_header)
        request.started_at = time.monotonic()

        # JWT users are only known after DRF authenticates, so this sees session users only
        user_id, roles = _actor(request)
        bind_request_context(
            request_id=request.request_id,
            trace_id=request.trace_id,
            user_id=user_id,
            user_roles=roles,
        )

    def _elapsed_ms(self, request):
        started = getattr(request, 'started_at', None)
        if started is None:
            return 0.0
        return round((time.monotonic() - started) * 1000, 2)

    def process_response(self, request, response):
        request_id = getattr(request, 'request_id', None)
        if request_id:
            response['X-Request-ID'] = request_id
        if getattr(request, 'trace_id', None):
            response['X-Trace-ID'] = request.trace_id

        summary = {
            'method': request.method,
            'path': request.path,
            'status_code': response.status_code,
            'duration_ms': self._elapsed_ms(request),
            'request_id': request_id,
            'user_id': get_user_id(),
        }
        logger.info('%s %s -> %s', request.method, request.path, response.status_code,
                    extra=dict(summary, event='http_request_completed'))

        if request.method in MUTATING_METHODS:
            self.recent_events.record('http_request', **summary)
        return response

    def process_exception(self, request, exception):
        logger.error(
            'Unhandled %s on %s %s', type(exception).__name__, request.method, request.path,
            exc_info=True,
            extra={
                'event': 'http_request_exception',
                'exception_type': type(exception).__name__,
                'duration_ms': self._elapsed_ms(request),
                'request_id': getattr(request, 'request_id', None),
                'user_id': get_user_id(),
            },
        )
