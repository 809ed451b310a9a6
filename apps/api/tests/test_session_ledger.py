"""
Tests for the session ledger.

Covers conservation (used + remaining == total), idempotent Use/Return per
(bundle, case), bundle completion at zero and journal reconciliation.
"""
import uuid
from datetime import timedelta
from io import StringIO
from unittest.mock import patch

import pytest
from django.core.management import call_command
from django.db import connection
from django.test.utils import CaptureQueriesContext
from django.utils import timezone

from apps.core.exceptions import InsufficientSessionsError, TransitionValidationError
from apps.ledger import services as ledger_services
from apps.ledger.models import BundleStatusChoices, SessionUsage, UsageActionChoices
from apps.ledger.services import (
    open_bundle,
    outstanding_uses,
    reconcile_bundle,
    return_sessions,
    use_sessions,
)


def _assert_conserved(bundle):
    bundle.refresh_from_db()
    assert bundle.used_sessions + bundle.remaining_sessions == bundle.total_sessions


@pytest.mark.django_db
class TestOpenBundle:

    def test_new_bundle_has_every_session_available(self, bundle):
        assert bundle.used_sessions == 0
        assert bundle.remaining_sessions == 10
        assert bundle.status == BundleStatusChoices.ACTIVE

    def test_zero_sessions_rejected(self, in_house_clinic):
        with pytest.raises(TransitionValidationError):
            open_bundle(code='PKG-EMPTY', name='Empty', clinic=in_house_clinic, total_sessions=0)


@pytest.mark.django_db
class TestUseSessions:

    def test_use_deducts_and_journals(self, bundle, admin_user):
        case_id = uuid.uuid4()

        result = use_sessions(bundle.id, case_id, actor=admin_user)

        assert result.applied is True
        assert result.entry.action == UsageActionChoices.USE
        assert result.entry.sessions == 1
        bundle.refresh_from_db()
        assert bundle.used_sessions == 1
        assert bundle.remaining_sessions == 9
        _assert_conserved(bundle)

    def test_second_use_for_same_case_is_noop(self, bundle):
        case_id = uuid.uuid4()
        use_sessions(bundle.id, case_id)

        result = use_sessions(bundle.id, case_id)

        assert result.applied is False
        bundle.refresh_from_db()
        assert bundle.remaining_sessions == 9
        assert SessionUsage.objects.filter(bundle=bundle, case_id=case_id).count() == 1

    def test_different_cases_each_deduct(self, bundle):
        use_sessions(bundle.id, uuid.uuid4())
        use_sessions(bundle.id, uuid.uuid4())

        bundle.refresh_from_db()
        assert bundle.used_sessions == 2
        assert bundle.remaining_sessions == 8

    def test_last_session_completes_bundle(self, make_bundle):
        bundle = make_bundle(total_sessions=1)

        use_sessions(bundle.id, uuid.uuid4())

        bundle.refresh_from_db()
        assert bundle.remaining_sessions == 0
        assert bundle.status == BundleStatusChoices.COMPLETED

    def test_insufficient_sessions(self, make_bundle):
        bundle = make_bundle(total_sessions=1)
        use_sessions(bundle.id, uuid.uuid4())

        with pytest.raises(InsufficientSessionsError) as exc_info:
            use_sessions(bundle.id, uuid.uuid4())

        assert exc_info.value.remaining == 0
        assert exc_info.value.requested == 1
        bundle.refresh_from_db()
        assert bundle.used_sessions == 1
        _assert_conserved(bundle)

    def test_expired_bundle_refuses_use(self, make_bundle):
        bundle = make_bundle(expiry_date=timezone.localdate() - timedelta(days=1))

        with pytest.raises(InsufficientSessionsError) as exc_info:
            use_sessions(bundle.id, uuid.uuid4())

        assert exc_info.value.details['reason'] == 'expired'

    def test_cancelled_bundle_refuses_use(self, bundle):
        bundle.status = BundleStatusChoices.CANCELLED
        bundle.save()

        with pytest.raises(InsufficientSessionsError):
            use_sessions(bundle.id, uuid.uuid4())


@pytest.mark.django_db
class TestReturnSessions:

    def test_return_restores_counters(self, bundle):
        case_id = uuid.uuid4()
        use_sessions(bundle.id, case_id)

        result = return_sessions(bundle.id, case_id)

        assert result.applied is True
        assert result.entry.action == UsageActionChoices.RETURN
        bundle.refresh_from_db()
        assert bundle.used_sessions == 0
        assert bundle.remaining_sessions == 10
        assert outstanding_uses(bundle, case_id) == 0

    def test_return_without_use_is_noop(self, bundle):
        result = return_sessions(bundle.id, uuid.uuid4())

        assert result.applied is False
        assert not SessionUsage.objects.filter(bundle=bundle).exists()

    def test_double_return_is_noop(self, bundle):
        case_id = uuid.uuid4()
        use_sessions(bundle.id, case_id)
        return_sessions(bundle.id, case_id)

        result = return_sessions(bundle.id, case_id)

        assert result.applied is False
        bundle.refresh_from_db()
        assert bundle.used_sessions == 0
        assert bundle.remaining_sessions == 10

    def test_return_reopens_completed_bundle(self, make_bundle):
        bundle = make_bundle(total_sessions=1)
        case_id = uuid.uuid4()
        use_sessions(bundle.id, case_id)

        return_sessions(bundle.id, case_id)

        bundle.refresh_from_db()
        assert bundle.status == BundleStatusChoices.ACTIVE
        assert bundle.remaining_sessions == 1

    def test_use_after_return_deducts_again(self, bundle):
        case_id = uuid.uuid4()
        use_sessions(bundle.id, case_id)
        return_sessions(bundle.id, case_id)

        result = use_sessions(bundle.id, case_id)

        assert result.applied is True
        bundle.refresh_from_db()
        assert bundle.used_sessions == 1
        assert outstanding_uses(bundle, case_id) == 1


@pytest.mark.django_db
class TestJournal:

    def test_entries_are_append_only(self, bundle):
        entry = use_sessions(bundle.id, uuid.uuid4()).entry

        entry.sessions = 5
        with pytest.raises(ValueError):
            entry.save()
        with pytest.raises(ValueError):
            entry.delete()

    def test_reconcile_healthy_bundle(self, bundle):
        case_id = uuid.uuid4()
        use_sessions(bundle.id, case_id)
        use_sessions(bundle.id, uuid.uuid4())
        return_sessions(bundle.id, case_id)
        bundle.refresh_from_db()

        checks = reconcile_bundle(bundle)

        assert all(checks.values()), checks

    def test_reconcile_detects_counter_drift(self, bundle):
        use_sessions(bundle.id, uuid.uuid4())
        # counters edited behind the ledger's back
        type(bundle).objects.filter(pk=bundle.pk).update(used_sessions=0, remaining_sessions=10)
        bundle.refresh_from_db()

        checks = reconcile_bundle(bundle)

        assert checks['journal_matches_used'] is False
        assert checks['used_plus_remaining_is_total'] is True

    def test_check_session_ledger_command(self, bundle):
        use_sessions(bundle.id, uuid.uuid4())
        out = StringIO()

        call_command('check_session_ledger', code=bundle.code, stdout=out)

        assert 'Checked: 1, all consistent' in out.getvalue()


@pytest.mark.django_db
class TestRowLocking:
    """Use and Return read the bundle through a row lock before touching counters."""

    def test_use_and_return_lock_the_bundle(self, bundle):
        case_id = uuid.uuid4()

        with patch('apps.ledger.services._lock_bundle', wraps=ledger_services._lock_bundle) as lock:
            use_sessions(bundle.id, case_id)
            return_sessions(bundle.id, case_id)

        assert [c.args for c in lock.call_args_list] == [(bundle.id,), (bundle.id,)]

    @pytest.mark.skipif(
        not connection.features.has_select_for_update,
        reason='database has no row-level locks',
    )
    def test_lock_is_select_for_update(self, bundle):
        case_id = uuid.uuid4()

        with CaptureQueriesContext(connection) as ctx:
            use_sessions(bundle.id, case_id)
            return_sessions(bundle.id, case_id)

        locking = [
            q['sql'] for q in ctx.captured_queries
            if 'FOR UPDATE' in q['sql'] and 'session_bundle' in q['sql']
        ]
        assert len(locking) == 2
