"""
JSON log output with correlation fields and redaction.

Patient identifiers and clinical free text must never reach the log
stream. Anything whose key appears in SENSITIVE_FIELDS is replaced with
REDACTED, at any nesting depth, both in ``extra={...}`` payloads and in
dicts passed through :func:`sanitize_dict`.
"""
import json
import logging
from datetime import datetime, timezone

from .correlation import get_request_id, get_trace_id, get_user_id, get_user_roles

REDACTED = '[REDACTED]'

SENSITIVE_FIELDS = frozenset({
    # credentials
    'password', 'token', 'access_token', 'secret', 'api_key', 'authorization',
    # people
    'patient_reference', 'first_name', 'last_name', 'email', 'phone',
    # clinical text
    'diagnosis', 'chief_complaint', 'present_history', 'pain_score',
    'subjective', 'objective', 'assessment', 'plan', 'notes', 'note',
    # free-text reasons
    'reason', 'cancellation_reason', 'last_reversal_reason',
})

# Attributes every LogRecord carries; everything else came in through extra=
_RECORD_BUILTINS = frozenset(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


def _is_sensitive(key):
    return str(key).lower() in SENSITIVE_FIELDS


def _redact(value):
    if isinstance(value, dict):
        return {k: REDACTED if _is_sensitive(k) else _redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


def sanitize_dict(data):
    """Copy of ``data`` with sensitive keys redacted. Non-dicts pass through."""
    if not isinstance(data, dict):
        return data
    return _redact(data)


class CorrelationFilter(logging.Filter):
    """Stamps request_id, trace_id and actor onto each record."""

    def filter(self, record):
        record.request_id = get_request_id() or '-'
        record.trace_id = get_trace_id() or '-'
        record.user_id = get_user_id() or '-'
        record.user_roles = ','.join(get_user_roles()) or '-'
        return True


class SanitizedJSONFormatter(logging.Formatter):

    correlation_fields = ('request_id', 'trace_id', 'user_id', 'user_roles')

    def format(self, record):
        payload = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for field in self.correlation_fields:
            payload[field] = getattr(record, field, '-')

        extras = {
            key: value for key, value in vars(record).items()
            if key not in _RECORD_BUILTINS and key not in payload and not key.startswith('_')
        }
        payload.update(_redact(extras))

        if record.exc_info:
            payload['exception'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def get_sanitized_logger(name):
    """
    ``logging.getLogger(name)`` with a CorrelationFilter attached once.

        logger = get_sanitized_logger(__name__)
        logger.info('Bundle opened', extra={'event': 'bundle_opened', 'bundle_code': code})
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, CorrelationFilter) for f in logger.filters):
        logger.addFilter(CorrelationFilter())
    return logger
