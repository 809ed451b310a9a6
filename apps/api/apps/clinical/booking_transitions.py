"""
Booking state machine.

    SCHEDULED --complete--> COMPLETED
        |                     |  ^
        |                     |  +-- (admin) reverse back to SCHEDULED
        +----> CANCELLED <----+

Bookings are the usual trigger for case transitions. Each rule names the
case status the linked case has to reach; the case side effects (and the
ledger action they imply) go through ReferralCaseStateMachine before the
booking row itself changes.
"""
from dataclasses import dataclass
from typing import Optional

from django.utils import timezone

from apps.authz.permissions import ensure_can_reverse, ensure_can_transition
from apps.core.exceptions import InvalidTransitionError, TransitionValidationError
from apps.core.observability import metrics
from apps.core.observability.events import log_booking_transition
from .case_transitions import CaseTransitionResult, ReferralCaseStateMachine
from .models import BookingStatusChoices, CaseStatusChoices


@dataclass(frozen=True)
class BookingTransitionRule:
    source: str
    target: str
    case_target: str
    admin_only: bool = False
    requires_reason: bool = False


_S = BookingStatusChoices.SCHEDULED
_D = BookingStatusChoices.COMPLETED
_X = BookingStatusChoices.CANCELLED

BOOKING_TRANSITIONS = {
    (_S, _D): BookingTransitionRule(_S, _D, case_target=CaseStatusChoices.ACCEPTED),
    (_D, _S): BookingTransitionRule(_D, _S, case_target=CaseStatusChoices.PENDING,
                                    admin_only=True, requires_reason=True),
    (_S, _X): BookingTransitionRule(_S, _X, case_target=CaseStatusChoices.CANCELLED, requires_reason=True),
    (_D, _X): BookingTransitionRule(_D, _X, case_target=CaseStatusChoices.CANCELLED, requires_reason=True),
}

# Booking status that mirrors a case status reached from the case side
BOOKING_STATUS_FOR_CASE = {
    CaseStatusChoices.PENDING: _S,
    CaseStatusChoices.ACCEPTED: _D,
    CaseStatusChoices.COMPLETED: _D,
    CaseStatusChoices.CANCELLED: _X,
}


@dataclass
class BookingTransitionResult:
    booking: object
    old_status: str
    new_status: str
    case_result: Optional[CaseTransitionResult] = None


class BookingStateMachine:
    """
    Validates and applies booking transitions, driving the linked case.

    The caller holds row locks on the booking and its case and runs inside
    transaction.atomic.
    """

    def __init__(self, case_machine=None):
        self.case_machine = case_machine or ReferralCaseStateMachine()

    def rule_for(self, current_status, requested_status):
        rule = BOOKING_TRANSITIONS.get((current_status, requested_status))
        if rule is None:
            raise InvalidTransitionError('booking', current_status, requested_status)
        return rule

    def transition(self, booking, new_status, actor, case=None, fields=None,
                   reason=None, now=None) -> BookingTransitionResult:
        now = now or timezone.now()
        old_status = booking.status

        ensure_can_transition(actor, action=f'move booking to {new_status}')
        try:
            rule = self.rule_for(old_status, new_status)
        except InvalidTransitionError:
            metrics.booking_transitions_total.labels(
                from_status=old_status, to_status=new_status, result='invalid'
            ).inc()
            raise
        if rule.admin_only:
            ensure_can_reverse(actor, action='reverse a completed booking')
        if rule.requires_reason and (reason is None or not str(reason).strip()):
            raise TransitionValidationError(missing_fields=['reason'])

        case_result = None
        if case is not None:
            case_result = self._drive_case(case, rule, actor, fields, reason, now)

        booking.status = new_status
        if new_status == _X:
            booking.cancellation_reason = reason
            booking.cancelled_at = now
            booking.cancelled_by = actor
        booking.save()

        metrics.booking_transitions_total.labels(
            from_status=old_status, to_status=new_status, result='success'
        ).inc()
        log_booking_transition(booking, old_status, new_status)
        return BookingTransitionResult(
            booking=booking,
            old_status=old_status,
            new_status=new_status,
            case_result=case_result,
        )

    def _drive_case(self, case, rule, actor, fields, reason, now):
        """Bring the linked case to the status this booking transition implies."""
        target = rule.case_target

        if target == CaseStatusChoices.ACCEPTED:
            if case.status == CaseStatusChoices.PENDING:
                return self.case_machine.transition(
                    case, target, actor, fields=fields, reason=reason, has_booking=True, now=now
                )
            if case.status in (CaseStatusChoices.ACCEPTED, CaseStatusChoices.COMPLETED):
                return None
            raise InvalidTransitionError('case', case.status, target)

        if target == CaseStatusChoices.PENDING:
            if case.status == CaseStatusChoices.ACCEPTED:
                return self.case_machine.transition(
                    case, target, actor, fields=fields, reason=reason, has_booking=True, now=now
                )
            if case.status == CaseStatusChoices.PENDING:
                return None
            raise InvalidTransitionError(
                'case', case.status, target,
                message=f'Linked case is {case.status}; reverse the case before the booking',
            )

        # Cancellation
        if case.status == CaseStatusChoices.CANCELLED:
            return None
        return self.case_machine.transition(
            case, target, actor, fields=fields, reason=reason, has_booking=True, now=now
        )

    def mirror_case_status(self, booking, case_status, actor, reason=None, now=None):
        """
        Align ``booking`` after its case changed status from the case side.

        Does not drive the case again. Returns the old booking status when
        the booking changed, otherwise None.
        """
        target = BOOKING_STATUS_FOR_CASE[case_status]
        old_status = booking.status
        if old_status == target:
            return None
        if old_status == _X:
            raise InvalidTransitionError('booking', old_status, target)

        now = now or timezone.now()
        booking.status = target
        if target == _X:
            booking.cancellation_reason = reason
            booking.cancelled_at = now
            booking.cancelled_by = actor
        booking.save()

        metrics.booking_transitions_total.labels(
            from_status=old_status, to_status=target, result='mirrored'
        ).inc()
        log_booking_transition(booking, old_status, target, mirrored=True)
        return old_status
