"""
Tests for post-commit notifications.

Events leave the process only after the coordinator's transaction commits.
A failing sink is logged and counted; the transition it reports on stays
committed and the caller still gets a success.
"""
from datetime import time
from unittest.mock import Mock, patch

import pytest
import requests
from django.core import mail

from apps.clinical.models import BookingStatusChoices, CaseStatusChoices
from apps.clinical.services import cancel_booking, update_booking
from apps.core.exceptions import InsufficientSessionsError
from apps.notifications import dispatcher
from apps.notifications.sinks import ChatWebhookSink, EmailSink, render_message


class RecordingSink:
    name = 'recording'

    def __init__(self):
        self.events = []

    def deliver(self, event_name, payload):
        self.events.append((event_name, payload))
        return True


class BrokenSink:
    name = 'broken'

    def deliver(self, event_name, payload):
        raise requests.ConnectionError('chat gateway unreachable')


class TestDispatch:

    def test_failing_sink_does_not_stop_the_others(self):
        recording = RecordingSink()

        results = dispatcher.dispatch(
            'case_accepted', {'case_code': 'PN-1'}, sinks=[BrokenSink(), recording]
        )

        assert results == {'broken': 'failed', 'recording': 'delivered'}
        assert recording.events == [('case_accepted', {'case_code': 'PN-1'})]

    def test_disabled_event_is_not_delivered(self, settings):
        settings.NOTIFICATION_ENABLED_EVENTS = ['case_accepted']
        recording = RecordingSink()

        results = dispatcher.dispatch('booking_created', {}, sinks=[recording])

        assert results == {}
        assert recording.events == []

    def test_sinks_loaded_from_settings(self, settings):
        settings.NOTIFICATION_SINKS = ['apps.notifications.sinks.EmailSink']
        dispatcher.reset_sinks()

        sinks = dispatcher.get_sinks()

        assert [sink.name for sink in sinks] == ['email']

    def test_unloadable_sink_counts_as_failed(self, settings):
        settings.NOTIFICATION_SINKS = [
            'apps.notifications.sinks.MissingSink',
            'apps.notifications.sinks.EmailSink',
        ]
        settings.NOTIFICATION_EMAIL_RECIPIENTS = []
        dispatcher.reset_sinks()

        results = dispatcher.dispatch('booking_cancelled', {'booking_id': 'abc'})

        assert results == {'MissingSink': 'failed', 'email': 'skipped'}


@pytest.mark.django_db
class TestCoordinatorNotifications:

    def test_events_sent_after_commit(
        self, make_booking, bundle, admin_user, django_capture_on_commit_callbacks
    ):
        recording = RecordingSink()
        booking = make_booking(bundle=bundle, create_case=True)

        with patch.object(dispatcher, 'get_sinks', return_value=[recording]):
            with django_capture_on_commit_callbacks(execute=True):
                update_booking(booking.id, {'status': BookingStatusChoices.COMPLETED}, admin_user)

        events = [name for name, _ in recording.events]
        assert events == ['booking_completed', 'case_accepted', 'session_used']
        session_payload = recording.events[2][1]
        assert session_payload['bundle_code'] == bundle.code
        assert session_payload['remaining_sessions'] == 9

    def test_nothing_queued_when_transaction_rolls_back(
        self, make_booking, make_bundle, admin_user, django_capture_on_commit_callbacks
    ):
        bundle = make_bundle(total_sessions=1)
        first = make_booking(bundle=bundle, create_case=True)
        update_booking(first.id, {'status': BookingStatusChoices.COMPLETED}, admin_user)
        second = make_booking(start=time(11, 0), end=time(12, 0), bundle=bundle, create_case=True)

        with django_capture_on_commit_callbacks() as callbacks:
            with pytest.raises(InsufficientSessionsError):
                update_booking(second.id, {'status': BookingStatusChoices.COMPLETED}, admin_user)

        assert callbacks == []

    def test_sink_failure_keeps_transition(
        self, make_booking, admin_user, django_capture_on_commit_callbacks
    ):
        booking = make_booking(create_case=True)

        with patch.object(dispatcher, 'get_sinks', return_value=[BrokenSink()]):
            with django_capture_on_commit_callbacks(execute=True):
                result = update_booking(
                    booking.id, {'status': BookingStatusChoices.COMPLETED}, admin_user
                )

        assert result.status == BookingStatusChoices.COMPLETED
        booking.refresh_from_db()
        assert booking.case.status == CaseStatusChoices.ACCEPTED

    def test_misconfigured_sink_keeps_cancellation(
        self, settings, make_booking, admin_user, django_capture_on_commit_callbacks
    ):
        settings.NOTIFICATION_SINKS = ['apps.notifications.sinks.MissingSink']
        dispatcher.reset_sinks()
        booking = make_booking(create_case=True)

        with django_capture_on_commit_callbacks(execute=True) as callbacks:
            cancel_booking(booking.id, 'Patient moved away', admin_user)

        assert callbacks
        booking.refresh_from_db()
        assert booking.status == BookingStatusChoices.CANCELLED
        assert booking.case.status == CaseStatusChoices.CANCELLED


@pytest.mark.django_db
class TestEmailSink:

    def test_sends_plain_text_mail(self, settings):
        settings.NOTIFICATION_EMAIL_RECIPIENTS = ['frontdesk@clinic.test']

        delivered = EmailSink().deliver('booking_cancelled', {'booking_id': 'abc', 'status': 'cancelled'})

        assert delivered is True
        assert len(mail.outbox) == 1
        assert mail.outbox[0].subject == 'Booking cancelled'
        assert 'booking_id: abc' in mail.outbox[0].body
        assert mail.outbox[0].to == ['frontdesk@clinic.test']

    def test_skips_without_recipients(self, settings):
        settings.NOTIFICATION_EMAIL_RECIPIENTS = []

        assert EmailSink().deliver('booking_cancelled', {}) is False
        assert mail.outbox == []


class TestChatWebhookSink:

    def test_pushes_text_message(self):
        sink = ChatWebhookSink(
            api_url='https://chat.example/push', access_token='token-1', target_id='group-1', timeout=3
        )

        with patch('apps.notifications.sinks.requests.post') as post:
            post.return_value = Mock(status_code=200)
            delivered = sink.deliver('case_accepted', {'case_code': 'PN-1'})

        assert delivered is True
        post.assert_called_once()
        kwargs = post.call_args.kwargs
        assert post.call_args.args == ('https://chat.example/push',)
        assert kwargs['headers'] == {'Authorization': 'Bearer token-1'}
        assert kwargs['json']['to'] == 'group-1'
        assert kwargs['json']['messages'][0]['text'] == render_message('case_accepted', {'case_code': 'PN-1'})
        assert kwargs['timeout'] == 3

    def test_http_error_propagates_to_dispatcher(self):
        sink = ChatWebhookSink(
            api_url='https://chat.example/push', access_token='token-1', target_id='group-1', timeout=3
        )

        with patch('apps.notifications.sinks.requests.post') as post:
            post.return_value.raise_for_status.side_effect = requests.HTTPError('500')
            results = dispatcher.dispatch('case_accepted', {}, sinks=[sink])

        assert results == {'chat': 'failed'}

    def test_unconfigured_sink_skips(self):
        sink = ChatWebhookSink(api_url='https://chat.example/push', access_token='', target_id='')

        with patch('apps.notifications.sinks.requests.post') as post:
            assert sink.deliver('case_accepted', {}) is False

        post.assert_not_called()
