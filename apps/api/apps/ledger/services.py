"""
Session ledger services.

The only code allowed to move session counters. Both operations lock the
bundle row and consult the usage journal inside the caller's transaction,
so the check-then-act sequence cannot interleave with another request
touching the same bundle.
"""
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Q, Sum
from django.utils import timezone

from apps.core.exceptions import InsufficientSessionsError, TransitionValidationError
from apps.core.observability import metrics
from apps.core.observability.events import log_consistency_checkpoint, log_ledger_operation
from apps.core.observability.logging import get_sanitized_logger
from apps.core.observability.tracing import trace_span
from apps.ledger.models import (
    BundleStatusChoices,
    SessionBundle,
    SessionUsage,
    UsageActionChoices,
)

logger = get_sanitized_logger(__name__)

UNUSABLE_BUNDLE_STATUSES = (BundleStatusChoices.CANCELLED, BundleStatusChoices.EXPIRED)


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a Use/Return. ``applied`` is False for idempotent no-ops."""
    bundle: SessionBundle
    applied: bool
    entry: Optional[SessionUsage] = None


def default_sessions_per_visit():
    return getattr(settings, 'SESSIONS_PER_VISIT', 1)


@transaction.atomic
def open_bundle(code, name, clinic, total_sessions, created_by=None,
                expiry_date=None, patient_reference=None, purchase_date=None):
    """Create a bundle on purchase with every session still available."""
    if total_sessions <= 0:
        raise TransitionValidationError(invalid_fields=['total_sessions'])

    bundle = SessionBundle.objects.create(
        code=code,
        name=name,
        clinic=clinic,
        total_sessions=total_sessions,
        used_sessions=0,
        remaining_sessions=total_sessions,
        expiry_date=expiry_date,
        patient_reference=patient_reference,
        purchase_date=purchase_date or timezone.localdate(),
        created_by=created_by,
    )
    log_ledger_operation('session_bundle_opened', bundle, None, total_sessions=total_sessions)
    return bundle


def outstanding_uses(bundle, case_id):
    """USE entries minus RETURN entries for (bundle, case_id)."""
    counts = SessionUsage.objects.filter(bundle=bundle, case_id=case_id).aggregate(
        uses=Count('id', filter=Q(action=UsageActionChoices.USE)),
        returns=Count('id', filter=Q(action=UsageActionChoices.RETURN)),
    )
    return counts['uses'] - counts['returns']


def _lock_bundle(bundle_id):
    return SessionBundle.objects.select_for_update().get(pk=bundle_id)


def _check_conservation(bundle):
    checks = {
        'used_plus_remaining_is_total': (
            bundle.used_sessions + bundle.remaining_sessions == bundle.total_sessions
        ),
        'remaining_not_negative': bundle.remaining_sessions >= 0,
        'completed_iff_exhausted': (
            bundle.status != BundleStatusChoices.COMPLETED or bundle.remaining_sessions == 0
        ),
    }
    log_consistency_checkpoint(
        'session_bundle_conservation',
        entity_ids={'bundle_id': str(bundle.id)},
        checks_passed=checks,
        used_sessions=bundle.used_sessions,
        remaining_sessions=bundle.remaining_sessions,
    )
    return checks


@transaction.atomic
def use_sessions(bundle_id, case_id, sessions=None, actor=None, note=None) -> LedgerResult:
    """
    Deduct sessions from a bundle on behalf of a referral case.

    IDEMPOTENT: while (bundle, case) has an outstanding USE entry nothing
    is changed and the call succeeds.
    TRANSACTION: joins the caller's unit of work; the bundle row stays
    locked until it commits or rolls back.

    Raises:
        InsufficientSessionsError: remaining < sessions, or the bundle is
            cancelled / expired
    """
    sessions = sessions or default_sessions_per_visit()

    with trace_span('session_ledger.use', attributes={
        'bundle_id': str(bundle_id),
        'case_id': str(case_id) if case_id else None,
        'sessions': sessions,
    }):
        bundle = _lock_bundle(bundle_id)

        if outstanding_uses(bundle, case_id) > 0:
            metrics.session_ledger_operations_total.labels(action='use', result='idempotent').inc()
            log_ledger_operation('session_used', bundle, case_id, result='idempotent')
            return LedgerResult(bundle=bundle, applied=False)

        if bundle.status in UNUSABLE_BUNDLE_STATUSES or bundle.is_expired():
            metrics.session_ledger_operations_total.labels(action='use', result='insufficient').inc()
            log_ledger_operation('session_used', bundle, case_id, result='blocked', reason_code='bundle_unusable')
            raise InsufficientSessionsError(
                bundle.code, remaining=0, requested=sessions,
                reason='expired' if bundle.is_expired() else bundle.status,
            )

        if bundle.remaining_sessions < sessions:
            metrics.session_ledger_operations_total.labels(action='use', result='insufficient').inc()
            log_ledger_operation('session_used', bundle, case_id, result='blocked', reason_code='insufficient')
            raise InsufficientSessionsError(
                bundle.code, remaining=bundle.remaining_sessions, requested=sessions,
            )

        bundle.used_sessions += sessions
        bundle.remaining_sessions -= sessions
        if bundle.remaining_sessions == 0:
            bundle.status = BundleStatusChoices.COMPLETED
        bundle.save(update_fields=['used_sessions', 'remaining_sessions', 'status', 'updated_at'])

        entry = SessionUsage.objects.create(
            bundle=bundle,
            case_id=case_id,
            action=UsageActionChoices.USE,
            sessions=sessions,
            note=note,
            actor=actor,
        )

        metrics.session_ledger_operations_total.labels(action='use', result='applied').inc()
        log_ledger_operation('session_used', bundle, case_id, sessions=sessions)
        _check_conservation(bundle)
        return LedgerResult(bundle=bundle, applied=True, entry=entry)


@transaction.atomic
def return_sessions(bundle_id, case_id, sessions=None, actor=None, note=None) -> LedgerResult:
    """
    Give back the sessions deducted for a referral case.

    IDEMPOTENT: only acts while (bundle, case) has more USE entries than
    RETURN entries, so one deduction is returned at most once.
    TRANSACTION: joins the caller's unit of work.

    ``sessions`` defaults to the amount of the outstanding USE entry.
    used_sessions never drops below zero.
    """
    with trace_span('session_ledger.return', attributes={
        'bundle_id': str(bundle_id),
        'case_id': str(case_id) if case_id else None,
    }):
        bundle = _lock_bundle(bundle_id)

        if outstanding_uses(bundle, case_id) <= 0:
            metrics.session_ledger_operations_total.labels(action='return', result='idempotent').inc()
            log_ledger_operation('session_returned', bundle, case_id, result='idempotent')
            return LedgerResult(bundle=bundle, applied=False)

        if sessions is None:
            last_use = SessionUsage.objects.filter(
                bundle=bundle, case_id=case_id, action=UsageActionChoices.USE
            ).order_by('-created_at').first()
            sessions = last_use.sessions

        bundle.used_sessions = max(0, bundle.used_sessions - sessions)
        bundle.remaining_sessions = bundle.total_sessions - bundle.used_sessions
        if bundle.status == BundleStatusChoices.COMPLETED and bundle.remaining_sessions > 0:
            bundle.status = BundleStatusChoices.ACTIVE
        bundle.save(update_fields=['used_sessions', 'remaining_sessions', 'status', 'updated_at'])

        entry = SessionUsage.objects.create(
            bundle=bundle,
            case_id=case_id,
            action=UsageActionChoices.RETURN,
            sessions=sessions,
            note=note,
            actor=actor,
        )

        metrics.session_ledger_operations_total.labels(action='return', result='applied').inc()
        log_ledger_operation('session_returned', bundle, case_id, sessions=sessions)
        _check_conservation(bundle)
        return LedgerResult(bundle=bundle, applied=True, entry=entry)


def reconcile_bundle(bundle):
    """
    Compare a bundle's counters with its journal.

    Returns a dict of named checks; every value is True for a healthy
    bundle. Read-only.
    """
    totals = bundle.usages.aggregate(
        used=Sum('sessions', filter=Q(action=UsageActionChoices.USE)),
        returned=Sum('sessions', filter=Q(action=UsageActionChoices.RETURN)),
    )
    journal_used = (totals['used'] or 0) - (totals['returned'] or 0)

    per_case = bundle.usages.values('case_id').annotate(
        uses=Count('id', filter=Q(action=UsageActionChoices.USE)),
        returns=Count('id', filter=Q(action=UsageActionChoices.RETURN)),
    )
    checks = {
        'used_plus_remaining_is_total': (
            bundle.used_sessions + bundle.remaining_sessions == bundle.total_sessions
        ),
        'journal_matches_used': journal_used == bundle.used_sessions,
        'no_double_use': all(row['uses'] - row['returns'] in (0, 1) for row in per_case),
        'completed_iff_exhausted': (
            (bundle.status == BundleStatusChoices.COMPLETED) == (bundle.remaining_sessions == 0)
            or bundle.status in UNUSABLE_BUNDLE_STATUSES
        ),
    }

    for name, passed in checks.items():
        if not passed:
            metrics.session_ledger_inconsistencies_total.labels(check=name).inc()
    log_consistency_checkpoint(
        'session_bundle_reconcile',
        entity_ids={'bundle_id': str(bundle.id)},
        checks_passed=checks,
        journal_used=journal_used,
        used_sessions=bundle.used_sessions,
    )
    return checks
