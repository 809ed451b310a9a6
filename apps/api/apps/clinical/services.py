"""
Sync coordinator: the entry points that keep bookings, referral cases and
session bundles consistent.

Every entry point runs in one transaction.atomic unit. The first error
(conflict, missing fields, insufficient sessions, invalid transition,
permission) aborts the whole unit. Notifications are queued with
transaction.on_commit and only leave the process after a successful
commit.

LOCK ORDER: practitioner -> booking -> case -> bundle. Every path takes
the locks it needs in this order.

MIRROR: when a booking is linked to a case,
- booking COMPLETED <=> case ACCEPTED or COMPLETED
- booking CANCELLED <=> case CANCELLED
"""
from django.db import transaction

from apps.authz.models import Practitioner
from apps.authz.permissions import ensure_can_schedule, ensure_can_transition
from apps.core.exceptions import InvalidTransitionError, TransitionValidationError
from apps.core.observability import metrics
from apps.core.observability.events import log_domain_event
from apps.core.observability.logging import get_sanitized_logger
from apps.core.observability.tracing import trace_span
from apps.notifications.dispatcher import notify_on_commit
from .booking_transitions import BookingStateMachine
from .case_transitions import REVERSE_TARGETS, ReferralCaseStateMachine
from .models import (
    Booking,
    BookingStatusChoices,
    CaseStatusChoices,
    ReferralCase,
)
from .scheduling import ensure_no_conflict

logger = get_sanitized_logger(__name__)

case_machine = ReferralCaseStateMachine()
booking_machine = BookingStateMachine(case_machine=case_machine)

SCHEDULE_FIELDS = ('booking_date', 'start_time', 'end_time', 'provider')

CASE_EVENTS = {
    CaseStatusChoices.ACCEPTED: 'case_accepted',
    CaseStatusChoices.COMPLETED: 'case_completed',
    CaseStatusChoices.CANCELLED: 'case_cancelled',
}

BOOKING_EVENTS = {
    BookingStatusChoices.COMPLETED: 'booking_completed',
    BookingStatusChoices.CANCELLED: 'booking_cancelled',
    BookingStatusChoices.SCHEDULED: 'booking_reopened',
}


# ============================================================================
# Helpers
# ============================================================================

def _lock_practitioner(provider_id):
    return Practitioner.objects.select_for_update().get(pk=provider_id)


def _lock_booking(booking_id):
    return Booking.objects.select_for_update().get(pk=booking_id)


def _lock_case(case_id):
    return ReferralCase.objects.select_for_update().select_related(
        'source_clinic', 'target_clinic'
    ).get(pk=case_id)


def _validate_slot(start_time, end_time):
    if start_time is None or end_time is None:
        missing = [name for name, value in (('start_time', start_time), ('end_time', end_time)) if value is None]
        raise TransitionValidationError(missing_fields=missing)
    if end_time <= start_time:
        raise TransitionValidationError(
            invalid_fields=['end_time'],
            message='end_time must be after start_time',
        )


def _booking_payload(booking):
    return {
        'booking_id': str(booking.id),
        'booking_date': booking.booking_date.isoformat(),
        'start_time': booking.start_time.strftime('%H:%M'),
        'end_time': booking.end_time.strftime('%H:%M'),
        'status': booking.status,
        'provider_id': str(booking.provider_id),
        'clinic_id': str(booking.clinic_id),
        'case_id': str(booking.case_id) if booking.case_id else None,
    }


def _case_payload(case):
    return {
        'case_id': str(case.id),
        'case_code': case.code,
        'status': case.status,
        'source_clinic_id': str(case.source_clinic_id),
        'target_clinic_id': str(case.target_clinic_id),
    }


def _queue_case_events(case_result):
    """Notifications implied by a case transition (and its ledger side effect)."""
    if case_result is None:
        return
    case = case_result.case
    if case_result.rule.is_reversal:
        notify_on_commit('case_reversed', dict(_case_payload(case), from_status=case_result.old_status))
    else:
        notify_on_commit(CASE_EVENTS[case_result.new_status], _case_payload(case))

    ledger_result = case_result.ledger_result
    if ledger_result is not None and ledger_result.applied:
        entry = ledger_result.entry
        bundle = ledger_result.bundle
        notify_on_commit(
            'session_used' if entry.action == 'use' else 'session_returned',
            {
                'bundle_id': str(bundle.id),
                'bundle_code': bundle.code,
                'case_id': str(case.id),
                'sessions': entry.sessions,
                'remaining_sessions': bundle.remaining_sessions,
                'bundle_status': bundle.status,
            },
        )


# ============================================================================
# Bookings
# ============================================================================

@metrics.track_duration(metrics.sync_coordinator_duration_seconds, operation='create_booking')
def create_booking(actor, provider, clinic, booking_date, start_time, end_time,
                   patient_reference=None, bundle=None, case=None, create_case=False,
                   diagnosis=None, purpose=None, notes=None):
    """
    Schedule a booking after the overlap check passes.

    Either links an existing PENDING case without a booking (``case``) or,
    with ``create_case=True``, creates a new PENDING case referred to the
    booking clinic. The case inherits the booking bundle when it has none.

    Raises:
        ConflictError: slot overlaps an active booking of the provider
        TransitionValidationError: invalid slot, or ``bundle`` differs from the
            bundle already on ``case``
        InvalidTransitionError: ``case`` is not PENDING or already booked
        TransitionPermissionError: actor may not schedule at ``clinic``
    """
    ensure_can_schedule(actor, clinic)
    _validate_slot(start_time, end_time)
    if case is not None and create_case:
        raise TransitionValidationError(
            invalid_fields=['case', 'create_case'],
            message='Pass either an existing case or create_case, not both',
        )

    with trace_span('sync.create_booking', attributes={
        'provider_id': str(provider.id),
        'booking_date': booking_date.isoformat(),
    }):
        with transaction.atomic():
            _lock_practitioner(provider.id)
            ensure_no_conflict(provider.id, booking_date, start_time, end_time)

            if case is not None:
                case = _lock_case(case.id)
                if case.status != CaseStatusChoices.PENDING:
                    raise InvalidTransitionError(
                        'case', case.status, 'booked',
                        message='Only pending cases can be linked to a new booking',
                    )
                if Booking.objects.filter(case=case).exists():
                    raise InvalidTransitionError(
                        'case', case.status, 'booked',
                        message='Case already has a booking',
                    )
            elif create_case:
                case = ReferralCase.objects.create(
                    source_clinic=clinic,
                    target_clinic=clinic,
                    patient_reference=patient_reference,
                    bundle=bundle,
                    diagnosis=diagnosis,
                    purpose=purpose,
                    created_by=actor,
                )

            if case is not None:
                if case.bundle_id is None and bundle is not None:
                    case.bundle = bundle
                    case.save(update_fields=['bundle', 'updated_at'])
                elif bundle is not None and case.bundle_id != bundle.id:
                    raise TransitionValidationError(
                        invalid_fields=['bundle'],
                        message='Booking bundle must match the bundle of the linked case',
                    )
                bundle = case.bundle

            booking = Booking.objects.create(
                provider=provider,
                clinic=clinic,
                patient_reference=patient_reference,
                booking_date=booking_date,
                start_time=start_time,
                end_time=end_time,
                case=case,
                bundle=bundle,
                notes=notes,
                created_by=actor,
            )

            log_domain_event(
                'booking_created',
                entity_type='Booking',
                entity_id=str(booking.id),
                entity_ids={
                    'booking_id': str(booking.id),
                    'case_id': str(case.id) if case else None,
                },
                case_created=bool(create_case),
            )
            notify_on_commit('booking_created', _booking_payload(booking))

    return booking


@metrics.track_duration(metrics.sync_coordinator_duration_seconds, operation='update_booking')
def update_booking(booking_id, patch, actor, fields=None, reason=None):
    """
    Reschedule and/or transition a booking.

    ``patch`` may hold booking_date, start_time, end_time, provider (a
    Practitioner), notes and status. Schedule changes are only allowed
    while SCHEDULED and re-run the overlap check excluding this booking.
    A status change goes through BookingStateMachine, which drives the
    linked case (``fields`` carries assessment or completion inputs).
    """
    ensure_can_transition(actor, action='update booking')

    with trace_span('sync.update_booking', attributes={'booking_id': str(booking_id)}):
        with transaction.atomic():
            booking = Booking.objects.get(pk=booking_id)

            new_provider = patch.get('provider')
            rescheduling = any(
                name in patch and patch[name] is not None and patch[name] != getattr(booking, name)
                for name in SCHEDULE_FIELDS
            )
            if rescheduling:
                # practitioner locks come before the booking lock
                provider_ids = {booking.provider_id}
                if new_provider is not None:
                    provider_ids.add(new_provider.id)
                for provider_id in sorted(provider_ids, key=str):
                    _lock_practitioner(provider_id)

            booking = _lock_booking(booking_id)

            if rescheduling:
                if booking.status != BookingStatusChoices.SCHEDULED:
                    raise InvalidTransitionError(
                        'booking', booking.status, 'rescheduled',
                        message='Only scheduled bookings can be rescheduled',
                    )
                booking_date = patch.get('booking_date') or booking.booking_date
                start_time = patch.get('start_time') or booking.start_time
                end_time = patch.get('end_time') or booking.end_time
                provider = new_provider or booking.provider
                _validate_slot(start_time, end_time)
                ensure_no_conflict(
                    provider.id, booking_date, start_time, end_time,
                    exclude_booking_id=booking.id,
                )
                booking.booking_date = booking_date
                booking.start_time = start_time
                booking.end_time = end_time
                booking.provider = provider

            if 'notes' in patch:
                booking.notes = patch['notes']
            booking.save()

            new_status = patch.get('status')
            if new_status and new_status != booking.status:
                case = _lock_case(booking.case_id) if booking.case_id else None
                result = booking_machine.transition(
                    booking, new_status, actor, case=case, fields=fields, reason=reason
                )
                notify_on_commit(BOOKING_EVENTS[new_status], _booking_payload(booking))
                _queue_case_events(result.case_result)
            elif new_status == booking.status and not rescheduling and 'notes' not in patch:
                raise InvalidTransitionError('booking', booking.status, new_status)

    return booking


@metrics.track_duration(metrics.sync_coordinator_duration_seconds, operation='cancel_booking')
def cancel_booking(booking_id, reason, actor):
    """
    Cancel a booking and, through the case machine, its linked case.

    The booking's own reason and timestamp are recorded next to the
    case's. Sessions deducted for the case are returned.
    """
    with trace_span('sync.cancel_booking', attributes={'booking_id': str(booking_id)}):
        with transaction.atomic():
            booking = _lock_booking(booking_id)
            case = _lock_case(booking.case_id) if booking.case_id else None
            result = booking_machine.transition(
                booking, BookingStatusChoices.CANCELLED, actor, case=case, reason=reason
            )
            notify_on_commit('booking_cancelled', _booking_payload(booking))
            _queue_case_events(result.case_result)

    return result


# ============================================================================
# Referral cases
# ============================================================================

def create_case(actor, source_clinic, target_clinic, patient_reference=None,
                diagnosis=None, purpose=None, bundle=None):
    """
    Create a standalone PENDING case.

    Without a booking its acceptance never deducts sessions, even with a
    bundle attached.
    """
    ensure_can_schedule(actor, source_clinic, action='create referral case')
    case = ReferralCase.objects.create(
        source_clinic=source_clinic,
        target_clinic=target_clinic,
        patient_reference=patient_reference,
        diagnosis=diagnosis,
        purpose=purpose,
        bundle=bundle,
        created_by=actor,
    )
    log_domain_event(
        'case_created',
        entity_type='ReferralCase',
        entity_id=str(case.id),
        entity_ids={'case_id': str(case.id), 'case_code': case.code},
    )
    return case


def _transition_case(case_id, actor, resolve_target, fields=None, reason=None):
    """Lock booking then case, apply the case transition, mirror the booking."""
    booking_id = Booking.objects.filter(case_id=case_id).values_list('id', flat=True).first()
    booking = _lock_booking(booking_id) if booking_id else None
    if booking is not None and booking.case_id != case_id:
        booking = None
    case = _lock_case(case_id)

    new_status = resolve_target(case)
    result = case_machine.transition(
        case, new_status, actor, fields=fields, reason=reason,
        has_booking=booking is not None,
    )

    if booking is not None:
        old_booking_status = booking_machine.mirror_case_status(
            booking, result.new_status, actor, reason=reason
        )
        if old_booking_status is not None:
            notify_on_commit(BOOKING_EVENTS[booking.status], _booking_payload(booking))

    _queue_case_events(result)
    return result


@metrics.track_duration(metrics.sync_coordinator_duration_seconds, operation='update_case_status')
def update_case_status(case_id, new_status, actor, fields=None, reason=None):
    """
    Move a case to ``new_status`` and mirror its booking.

    ``fields`` carries assessment fields (accept) or the completion note
    (complete). Backward moves are allowed here too, subject to the same
    admin-only rules as reverse_case_status().
    """
    with trace_span('sync.update_case_status', attributes={
        'case_id': str(case_id),
        'requested_status': new_status,
    }):
        with transaction.atomic():
            return _transition_case(
                case_id, actor, lambda case: new_status, fields=fields, reason=reason
            )


@metrics.track_duration(metrics.sync_coordinator_duration_seconds, operation='reverse_case_status')
def reverse_case_status(case_id, reason, actor):
    """
    Step a case one state back (admin only, reason required).

    COMPLETED -> ACCEPTED: drops the completion note, no ledger action.
    ACCEPTED -> PENDING: clears the assessment, returns the session when a
    booking is linked, and puts that booking back to SCHEDULED.
    """
    def previous_status(case):
        target = REVERSE_TARGETS.get(case.status)
        if target is None:
            raise InvalidTransitionError(
                'case', case.status, 'reversed',
                message=f'A {case.status} case cannot be reversed',
            )
        return target

    with trace_span('sync.reverse_case_status', attributes={'case_id': str(case_id)}):
        with transaction.atomic():
            return _transition_case(case_id, actor, previous_status, reason=reason)
