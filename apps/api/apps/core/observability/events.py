"""
Structured domain events for bookings, cases and the session ledger.

Each helper emits one log line whose ``extra`` carries ``event``,
``result`` and the ids of every entity involved, so a single request can
be followed across the coordinator, both state machines and the ledger.
"""
from typing import Dict, Optional

from .logging import get_sanitized_logger, sanitize_dict

logger = get_sanitized_logger(__name__)

_WARNING_RESULTS = frozenset({'warning', 'blocked', 'conflict'})
_ERROR_RESULTS = frozenset({'failure', 'error'})


def _emit(message, payload):
    result = payload.get('result')
    if result in _ERROR_RESULTS:
        logger.error(message, extra=payload)
    elif result in _WARNING_RESULTS:
        logger.warning(message, extra=payload)
    else:
        logger.info(message, extra=payload)


def log_domain_event(
    event_name: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    entity_ids: Optional[Dict[str, str]] = None,
    result: str = 'success',
    **fields
):
    """
    Log ``event_name`` for one entity.

    ``result`` is one of success, idempotent, blocked, conflict or failure
    and picks the log level. ``fields`` go through :func:`sanitize_dict`
    so free-text reasons and clinical data are redacted.
    """
    payload = {'event': event_name, 'result': result}
    if entity_type:
        payload['entity_type'] = entity_type
    if entity_id:
        payload['entity_id'] = entity_id
    payload.update(entity_ids or {})
    payload.update(sanitize_dict(fields))
    _emit(f'{event_name} ({result})', payload)


def log_consistency_checkpoint(checkpoint_name, entity_ids, checks_passed, **fields):
    passed = all(checks_passed.values())
    payload = dict(
        entity_ids,
        event='consistency_checkpoint',
        checkpoint=checkpoint_name,
        status='passed' if passed else 'failed',
        checks=checks_passed,
        result='success' if passed else 'failure',
    )
    payload.update(sanitize_dict(fields))
    _emit(f'checkpoint {checkpoint_name}: {payload["status"]}', payload)


def log_case_transition(case, from_status, to_status, result='success', **extra):
    log_domain_event(
        'case_transition',
        entity_type='ReferralCase',
        entity_id=str(case.id),
        entity_ids={'case_id': str(case.id), 'case_code': case.code},
        result=result,
        from_status=from_status,
        to_status=to_status,
        **extra
    )


def log_booking_transition(booking, from_status, to_status, result='success', **extra):
    log_domain_event(
        'booking_transition',
        entity_type='Booking',
        entity_id=str(booking.id),
        entity_ids={
            'booking_id': str(booking.id),
            'case_id': str(booking.case_id) if booking.case_id else None,
        },
        result=result,
        from_status=from_status,
        to_status=to_status,
        **extra
    )


def log_booking_conflict(provider_id, booking_date, start_time, end_time, conflicting_ids):
    log_domain_event(
        'booking_conflict',
        entity_type='Practitioner',
        entity_id=str(provider_id),
        result='conflict',
        booking_date=str(booking_date),
        start_time=str(start_time),
        end_time=str(end_time),
        conflicting_booking_ids=[str(pk) for pk in conflicting_ids],
    )


def log_ledger_operation(event_name, bundle, case_id, result='success', **extra):
    """Use/Return outcome with the bundle balance after the operation."""
    log_domain_event(
        event_name,
        entity_type='SessionBundle',
        entity_id=str(bundle.id),
        entity_ids={
            'bundle_id': str(bundle.id),
            'bundle_code': bundle.code,
            'case_id': str(case_id) if case_id else None,
        },
        result=result,
        used_sessions=bundle.used_sessions,
        remaining_sessions=bundle.remaining_sessions,
        bundle_status=bundle.status,
        **extra
    )
