"""
Tests for observability layer.

Validates that metrics, logs, spans and recent events are emitted
correctly without logging patient or clinical free text.
"""
import uuid
from unittest.mock import MagicMock, patch

import pytest
from django.contrib.auth.models import AnonymousUser
from django.db.utils import DatabaseError
from django.http import HttpResponse
from django.test import RequestFactory
from prometheus_client import REGISTRY

from apps.clinical.models import BookingStatusChoices
from apps.clinical.services import cancel_booking, update_booking
from apps.core.observability.correlation import (
    RequestCorrelationMiddleware,
    clear_request_context,
    get_request_id,
)
from apps.core.observability.events import log_domain_event, log_ledger_operation
from apps.core.observability.logging import sanitize_dict
from apps.core.observability.metrics import metrics
from apps.core.observability.recent_events import RecentEventBuffer
from apps.ledger.services import use_sessions


def _sample(name, labels):
    return REGISTRY.get_sample_value(name, labels) or 0


@pytest.fixture
def rf():
    return RequestFactory()


class TestRequestCorrelation:
    """Test request correlation middleware."""

    def teardown_method(self):
        clear_request_context()

    def _middleware(self, buffer, status=200):
        return RequestCorrelationMiddleware(
            get_response=lambda request: HttpResponse(status=status),
            recent_events=buffer,
        )

    def test_generates_request_id_if_missing(self, rf):
        request = rf.get('/api/v1/clinical/bookings/')
        request.user = AnonymousUser()
        seen = {}

        def view(req):
            seen['request_id'] = get_request_id()
            return HttpResponse()

        response = RequestCorrelationMiddleware(view, recent_events=RecentEventBuffer(5))(request)

        assert request.request_id
        assert response['X-Request-ID'] == request.request_id
        assert seen['request_id'] == request.request_id

    def test_context_cleared_after_response(self, rf):
        request = rf.get('/api/v1/clinical/bookings/', HTTP_X_REQUEST_ID='req-77')
        request.user = AnonymousUser()

        self._middleware(RecentEventBuffer(5))(request)

        assert get_request_id() is None

    def test_context_cleared_when_view_raises(self, rf):
        request = rf.post('/api/v1/clinical/bookings/', HTTP_X_REQUEST_ID='req-78')
        request.user = AnonymousUser()

        def view(req):
            raise RuntimeError('boom')

        with pytest.raises(RuntimeError):
            RequestCorrelationMiddleware(view, recent_events=RecentEventBuffer(5))(request)

        assert get_request_id() is None

    def test_propagates_existing_request_id(self, rf):
        request = rf.get('/api/v1/clinical/bookings/', HTTP_X_REQUEST_ID='req-123')
        request.user = AnonymousUser()

        response = self._middleware(RecentEventBuffer(5))(request)

        assert response['X-Request-ID'] == 'req-123'

    def test_mutating_requests_recorded(self, rf):
        buffer = RecentEventBuffer(5)
        get_request = rf.get('/api/v1/clinical/bookings/')
        get_request.user = AnonymousUser()
        post_request = rf.post('/api/v1/clinical/bookings/', HTTP_X_REQUEST_ID='req-9')
        post_request.user = AnonymousUser()

        self._middleware(buffer)(get_request)
        self._middleware(buffer, status=201)(post_request)

        events = buffer.snapshot()
        assert len(events) == 1
        assert events[0]['event'] == 'http_request'
        assert events[0]['method'] == 'POST'
        assert events[0]['status_code'] == 201
        assert events[0]['request_id'] == 'req-9'


class TestRecentEventBuffer:

    def test_newest_first(self):
        buffer = RecentEventBuffer(3)
        buffer.record('a')
        buffer.record('b')

        assert [e['event'] for e in buffer.snapshot()] == ['b', 'a']

    def test_oldest_evicted_when_full(self):
        buffer = RecentEventBuffer(3)
        for name in ['a', 'b', 'c', 'd', 'e']:
            buffer.record(name)

        assert len(buffer) == 3
        assert buffer.evicted == 2
        assert [e['event'] for e in buffer.snapshot()] == ['e', 'd', 'c']
        assert [e['event'] for e in buffer.snapshot(limit=1)] == ['e']

    def test_fields_are_sanitized(self):
        buffer = RecentEventBuffer(3)

        entry = buffer.record('case_cancelled', case_id='c-1', reason='Patient deceased')

        assert entry['case_id'] == 'c-1'
        assert entry['reason'] == '[REDACTED]'

    def test_clear_resets_eviction_count(self):
        buffer = RecentEventBuffer(1)
        buffer.record('a')
        buffer.record('b')

        buffer.clear()

        assert len(buffer) == 0
        assert buffer.evicted == 0

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            RecentEventBuffer(0)

    def test_negative_snapshot_limit_rejected(self):
        buffer = RecentEventBuffer(3)
        buffer.record('a')

        with pytest.raises(ValueError):
            buffer.snapshot(limit=-1)


@pytest.mark.django_db
class TestRecentEventsEndpoint:

    def test_admin_sees_recorded_requests(self, admin_client, make_case):
        case = make_case()
        admin_client.post(
            f'/api/v1/clinical/cases/{case.id}/status/', {'status': 'accepted'}, format='json'
        )

        response = admin_client.get('/api/v1/ops/recent-events/')

        assert response.status_code == 200
        data = response.json()
        assert data['capacity'] == 50
        assert data['events'][0]['path'] == f'/api/v1/clinical/cases/{case.id}/status/'
        assert data['events'][0]['status_code'] == 200

    def test_clinician_forbidden(self, clinician_client):
        response = clinician_client.get('/api/v1/ops/recent-events/')

        assert response.status_code == 403

    def test_invalid_limit(self, admin_client):
        response = admin_client.get('/api/v1/ops/recent-events/', {'limit': 'ten'})

        assert response.status_code == 400

    def test_negative_limit_rejected(self, admin_client, make_case):
        case = make_case()
        admin_client.post(
            f'/api/v1/clinical/cases/{case.id}/status/', {'status': 'accepted'}, format='json'
        )

        response = admin_client.get('/api/v1/ops/recent-events/', {'limit': '-1'})

        assert response.status_code == 400


class TestSanitization:
    """Test patient and clinical text redaction."""

    def test_sanitize_dict_redacts_sensitive_fields(self):
        data = {
            'case_id': 'case-1',
            'patient_reference': 'HN-000123',
            'diagnosis': 'Lumbar strain',
            'cancellation_reason': 'Patient moved away',
            'subjective': 'Pain 3/10',
            'email': 'someone@example.com',
            'status': 'accepted',
        }

        sanitized = sanitize_dict(data)

        assert sanitized['case_id'] == 'case-1'
        assert sanitized['status'] == 'accepted'
        for field in ['patient_reference', 'diagnosis', 'cancellation_reason', 'subjective', 'email']:
            assert sanitized[field] == '[REDACTED]'

    def test_sanitize_dict_handles_nested_objects(self):
        data = {'case': {'id': 'case-1', 'assessment': {'pain_score': 7}}, 'status': 'accepted'}

        sanitized = sanitize_dict(data)

        assert sanitized['case']['id'] == 'case-1'
        assert sanitized['case']['assessment'] == '[REDACTED]'

    def test_allowed_fields_not_redacted(self):
        data = {
            'bundle_id': 'b-1',
            'bundle_code': 'PKG-0001',
            'remaining_sessions': 4,
            'from_status': 'pending',
            'to_status': 'accepted',
        }

        assert sanitize_dict(data) == data


class TestDomainEvents:

    @patch('apps.core.observability.events.logger')
    def test_log_domain_event_structure(self, mock_logger):
        log_domain_event(
            'case_transition',
            entity_type='ReferralCase',
            entity_id='case-123',
            custom_field='value',
            diagnosis='Lumbar strain',
        )

        mock_logger.info.assert_called_once()
        extra = mock_logger.info.call_args[1]['extra']
        assert extra['event'] == 'case_transition'
        assert extra['entity_type'] == 'ReferralCase'
        assert extra['entity_id'] == 'case-123'
        assert extra['result'] == 'success'
        assert extra['custom_field'] == 'value'
        assert extra['diagnosis'] == '[REDACTED]'

    @patch('apps.core.observability.events.logger')
    def test_blocked_ledger_operation_logs_warning(self, mock_logger):
        bundle = MagicMock(id='b-1', code='PKG-0001', used_sessions=1, remaining_sessions=0, status='completed')

        log_ledger_operation('session_used', bundle, 'case-1', result='blocked', reason_code='insufficient')

        mock_logger.warning.assert_called_once()
        extra = mock_logger.warning.call_args[1]['extra']
        assert extra['bundle_code'] == 'PKG-0001'
        assert extra['case_id'] == 'case-1'
        assert extra['remaining_sessions'] == 0
        assert extra['reason_code'] == 'insufficient'


@pytest.mark.django_db
class TestMetricsEmission:

    def test_metrics_registry_has_all_metrics(self):
        for name in [
            'exceptions_total',
            'case_transitions_total',
            'booking_transitions_total',
            'booking_conflicts_total',
            'sync_coordinator_duration_seconds',
            'session_ledger_operations_total',
            'session_ledger_inconsistencies_total',
            'notification_deliveries_total',
        ]:
            assert hasattr(metrics, name), name

    def test_booking_completion_counts_transitions(self, make_booking, bundle, admin_user):
        booking = make_booking(bundle=bundle, create_case=True)
        case_labels = {'from_status': 'pending', 'to_status': 'accepted', 'result': 'success'}
        booking_labels = {'from_status': 'scheduled', 'to_status': 'completed', 'result': 'success'}
        use_labels = {'action': 'use', 'result': 'applied'}
        before = (
            _sample('case_transitions_total', case_labels),
            _sample('booking_transitions_total', booking_labels),
            _sample('session_ledger_operations_total', use_labels),
        )

        update_booking(booking.id, {'status': BookingStatusChoices.COMPLETED}, admin_user)

        assert _sample('case_transitions_total', case_labels) == before[0] + 1
        assert _sample('booking_transitions_total', booking_labels) == before[1] + 1
        assert _sample('session_ledger_operations_total', use_labels) == before[2] + 1

    def test_idempotent_use_counted(self, bundle):
        labels = {'action': 'use', 'result': 'idempotent'}
        case_id = uuid.uuid4()
        use_sessions(bundle.id, case_id)
        before = _sample('session_ledger_operations_total', labels)

        use_sessions(bundle.id, case_id)

        assert _sample('session_ledger_operations_total', labels) == before + 1

    def test_coordinator_duration_observed(self, make_booking, admin_user):
        labels = {'operation': 'cancel_booking'}
        before = _sample('sync_coordinator_duration_seconds_count', labels)
        booking = make_booking()

        cancel_booking(booking.id, 'Clinic closed', admin_user)

        assert _sample('sync_coordinator_duration_seconds_count', labels) == before + 1


@pytest.mark.django_db
class TestHealthChecks:

    def test_healthz_returns_200(self, client):
        response = client.get('/healthz')

        assert response.status_code == 200
        data = response.json()
        assert data['status'] == 'ok'
        assert 'version' in data

    def test_readyz_checks_database(self, client):
        response = client.get('/readyz')

        assert response.status_code == 200
        data = response.json()
        assert data['status'] == 'ready'
        assert data['checks'] == {'database': True, 'migrations': True}

    @patch('apps.core.observability.health.connections')
    def test_readyz_fails_on_db_error(self, mock_connections, client):
        mock_connections.__getitem__.return_value.cursor.side_effect = DatabaseError('DB connection failed')

        response = client.get('/readyz')

        assert response.status_code == 503
        data = response.json()
        assert data['status'] == 'not_ready'
        assert data['checks'] == {'database': False, 'migrations': False}


class TestTracingIntegration:

    def test_trace_span_works_without_sdk(self):
        from apps.core.observability.tracing import trace_span

        with trace_span('sync.update_booking', attributes={'booking_id': '123'}):
            pass

    @patch('apps.core.observability.tracing.tracer')
    def test_trace_span_sets_attributes(self, mock_tracer):
        from apps.core.observability.tracing import trace_span

        mock_span = MagicMock()
        mock_tracer.start_as_current_span.return_value.__enter__.return_value = mock_span

        with trace_span('session_ledger.use', attributes={'bundle_id': 'b-1', 'case_id': None}):
            pass

        mock_tracer.start_as_current_span.assert_called_once()
        mock_span.set_attribute.assert_called_once_with('bundle_id', 'b-1')
