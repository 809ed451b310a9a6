"""
Referral case state machine.

    PENDING --accept--> ACCEPTED --complete--> COMPLETED
       |                  |   ^                    |
       |                  |   +---- reverse -------+   (admin)
       |                  +--- reverse --> PENDING     (admin)
       +--> CANCELLED <---+

Each rule declares the inputs it requires and the ledger action it
implies. Ledger actions only apply when the case has a bundle AND a
linked booking: sessions are pre-authorized by bookings, so cases created
without one never deduct (and therefore never return).
"""
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.utils import timezone

from apps.authz.permissions import ensure_can_reverse, ensure_can_transition
from apps.core.exceptions import InvalidTransitionError, TransitionValidationError
from apps.core.observability import metrics
from apps.core.observability.events import log_case_transition
from apps.ledger import services as ledger
from .models import CaseCompletionNote, CaseStatusChoices, CaseStatusHistory

LEDGER_USE = 'use'
LEDGER_RETURN = 'return'

ASSESSMENT_FIELDS = ('diagnosis', 'chief_complaint', 'present_history', 'pain_score')
COMPLETION_NOTE_FIELDS = ('subjective', 'objective', 'assessment', 'plan')


@dataclass(frozen=True)
class CaseTransitionRule:
    source: str
    target: str
    admin_only: bool = False
    is_reversal: bool = False
    requires_reason: bool = False
    ledger_action: Optional[str] = None


_P = CaseStatusChoices.PENDING
_A = CaseStatusChoices.ACCEPTED
_C = CaseStatusChoices.COMPLETED
_X = CaseStatusChoices.CANCELLED

CASE_TRANSITIONS = {
    (_P, _A): CaseTransitionRule(_P, _A, ledger_action=LEDGER_USE),
    (_A, _P): CaseTransitionRule(_A, _P, admin_only=True, is_reversal=True,
                                 requires_reason=True, ledger_action=LEDGER_RETURN),
    (_A, _C): CaseTransitionRule(_A, _C),
    (_C, _A): CaseTransitionRule(_C, _A, admin_only=True, is_reversal=True, requires_reason=True),
    (_P, _X): CaseTransitionRule(_P, _X, requires_reason=True),
    (_A, _X): CaseTransitionRule(_A, _X, requires_reason=True, ledger_action=LEDGER_RETURN),
}

REVERSE_TARGETS = {
    _C: _A,
    _A: _P,
}


@dataclass
class CaseTransitionResult:
    case: object
    old_status: str
    new_status: str
    rule: CaseTransitionRule
    ledger_result: Optional[ledger.LedgerResult] = None

    @property
    def sessions_moved(self):
        return bool(self.ledger_result and self.ledger_result.applied)


def _is_blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


class ReferralCaseStateMachine:
    """
    Validates and applies case transitions.

    The caller must hold row locks on the case (and its booking) and run
    inside transaction.atomic; every error raised here aborts that unit.
    """

    def __init__(self, in_house_clinic_code=None):
        self._in_house_clinic_code = in_house_clinic_code

    @property
    def in_house_clinic_code(self):
        return self._in_house_clinic_code or settings.IN_HOUSE_CLINIC_CODE

    def rule_for(self, current_status, requested_status):
        rule = CASE_TRANSITIONS.get((current_status, requested_status))
        if rule is None:
            raise InvalidTransitionError('case', current_status, requested_status)
        return rule

    def requires_assessment(self, case):
        """Assessment is mandatory unless the referral touches the in-house clinic."""
        return self.in_house_clinic_code not in (case.source_clinic.code, case.target_clinic.code)

    def missing_fields(self, case, rule, fields, reason):
        missing = []
        if rule.requires_reason and _is_blank(reason):
            missing.append('reason')
        if rule.target == _A and rule.source == _P and self.requires_assessment(case):
            missing.extend(name for name in ASSESSMENT_FIELDS if _is_blank(fields.get(name)))
        if rule.target == _C:
            missing.extend(name for name in COMPLETION_NOTE_FIELDS if _is_blank(fields.get(name)))
        return missing

    def _validate_pain_score(self, fields):
        score = fields.get('pain_score')
        if score is None or score == '':
            return
        try:
            score = int(score)
        except (TypeError, ValueError):
            raise TransitionValidationError(invalid_fields=['pain_score'])
        if not 0 <= score <= 10:
            raise TransitionValidationError(invalid_fields=['pain_score'])

    def transition(self, case, new_status, actor, fields=None, reason=None,
                   has_booking=False, now=None) -> CaseTransitionResult:
        """
        Move ``case`` to ``new_status``.

        Order of checks: role, reachability, admin-only, required inputs,
        ledger. Nothing is written before all checks pass except the ledger
        call, which runs last and rolls back with the transaction.
        """
        fields = fields or {}
        now = now or timezone.now()
        old_status = case.status

        ensure_can_transition(actor, action=f'move case to {new_status}')
        try:
            rule = self.rule_for(old_status, new_status)
        except InvalidTransitionError:
            metrics.case_transitions_total.labels(
                from_status=old_status, to_status=new_status, result='invalid'
            ).inc()
            raise
        if rule.admin_only:
            ensure_can_reverse(actor, action=f'reverse case from {old_status} to {new_status}')

        missing = self.missing_fields(case, rule, fields, reason)
        if missing:
            metrics.case_transitions_total.labels(
                from_status=old_status, to_status=new_status, result='missing_fields'
            ).inc()
            raise TransitionValidationError(missing_fields=missing)
        self._validate_pain_score(fields)

        self._apply_fields(case, rule, actor, fields, reason, now)

        ledger_result = None
        if rule.ledger_action and case.bundle_id and has_booking:
            note = f'{rule.source} -> {rule.target} for case {case.code}'
            if rule.ledger_action == LEDGER_USE:
                ledger_result = ledger.use_sessions(case.bundle_id, case.id, actor=actor, note=note)
            else:
                ledger_result = ledger.return_sessions(case.bundle_id, case.id, actor=actor, note=note)

        case.status = new_status
        case.save()

        CaseStatusHistory.objects.create(
            case=case,
            old_status=old_status,
            new_status=new_status,
            changed_by=actor,
            is_reversal=rule.is_reversal,
            reason=reason or None,
        )

        metrics.case_transitions_total.labels(
            from_status=old_status, to_status=new_status, result='success'
        ).inc()
        log_case_transition(
            case, old_status, new_status,
            is_reversal=rule.is_reversal,
            ledger_action=rule.ledger_action if ledger_result else None,
            sessions_moved=bool(ledger_result and ledger_result.applied),
        )
        return CaseTransitionResult(
            case=case,
            old_status=old_status,
            new_status=new_status,
            rule=rule,
            ledger_result=ledger_result,
        )

    def _apply_fields(self, case, rule, actor, fields, reason, now):
        if (rule.source, rule.target) == (_P, _A):
            case.accepted_at = now
            if any(not _is_blank(fields.get(name)) for name in ASSESSMENT_FIELDS):
                case.assessment_diagnosis = fields.get('diagnosis')
                case.assessment_chief_complaint = fields.get('chief_complaint')
                case.assessment_present_history = fields.get('present_history')
                pain_score = fields.get('pain_score')
                case.assessment_pain_score = None if _is_blank(pain_score) else int(pain_score)
                case.assessed_by = actor
                case.assessed_at = now

        elif (rule.source, rule.target) == (_A, _P):
            case.accepted_at = None
            case.assessment_diagnosis = None
            case.assessment_chief_complaint = None
            case.assessment_present_history = None
            case.assessment_pain_score = None
            case.assessed_by = None
            case.assessed_at = None

        elif (rule.source, rule.target) == (_A, _C):
            case.completed_at = now
            CaseCompletionNote.objects.create(
                case=case,
                subjective=fields['subjective'],
                objective=fields['objective'],
                assessment=fields['assessment'],
                plan=fields['plan'],
                notes=fields.get('notes'),
                created_by=actor,
            )

        elif (rule.source, rule.target) == (_C, _A):
            case.completed_at = None
            CaseCompletionNote.objects.filter(case=case).delete()

        elif rule.target == _X:
            case.cancelled_at = now
            case.cancellation_reason = reason

        if rule.is_reversal:
            case.is_reversed = True
            case.last_reversal_reason = reason
            case.last_reversed_at = now
