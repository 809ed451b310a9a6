"""
Notification sinks.

A sink is any object with a ``name`` and a ``deliver(event_name, payload)``
method. deliver() returns True when it sent something and False when it
had nothing to do (e.g. not configured); it raises on delivery failure.
The dispatcher contains those failures.
"""
import requests
from django.conf import settings
from django.core.mail import send_mail

EVENT_TITLES = {
    'booking_created': 'New booking',
    'booking_completed': 'Booking completed',
    'booking_cancelled': 'Booking cancelled',
    'booking_reopened': 'Booking reopened',
    'case_accepted': 'Referral case accepted',
    'case_completed': 'Referral case completed',
    'case_cancelled': 'Referral case cancelled',
    'case_reversed': 'Referral case reversed',
    'session_used': 'Session used',
    'session_returned': 'Session returned',
}


def render_message(event_name, payload):
    title = EVENT_TITLES.get(event_name, event_name)
    lines = [title]
    for key in sorted(payload):
        value = payload[key]
        if value is not None:
            lines.append(f'{key}: {value}')
    return '\n'.join(lines)


class EmailSink:
    """Plain-text email through the configured Django email backend."""
    name = 'email'

    def __init__(self, recipients=None, from_email=None):
        self.recipients = recipients
        self.from_email = from_email

    def deliver(self, event_name, payload):
        recipients = self.recipients
        if recipients is None:
            recipients = getattr(settings, 'NOTIFICATION_EMAIL_RECIPIENTS', [])
        if not recipients:
            return False

        send_mail(
            subject=EVENT_TITLES.get(event_name, event_name),
            message=render_message(event_name, payload),
            from_email=self.from_email or settings.DEFAULT_FROM_EMAIL,
            recipient_list=list(recipients),
            fail_silently=False,
        )
        return True


class ChatWebhookSink:
    """Push a text message to a chat channel (LINE Messaging API format)."""
    name = 'chat'

    def __init__(self, api_url=None, access_token=None, target_id=None, timeout=None):
        self.api_url = api_url or settings.NOTIFICATION_CHAT_API_URL
        self.access_token = access_token if access_token is not None else settings.NOTIFICATION_CHAT_ACCESS_TOKEN
        self.target_id = target_id if target_id is not None else settings.NOTIFICATION_CHAT_TARGET_ID
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS

    def deliver(self, event_name, payload):
        if not self.access_token or not self.target_id:
            return False

        response = requests.post(
            self.api_url,
            json={
                'to': self.target_id,
                'messages': [{'type': 'text', 'text': render_message(event_name, payload)}],
            },
            headers={'Authorization': f'Bearer {self.access_token}'},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return True
