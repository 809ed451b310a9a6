"""
Slot overlap checks for bookings.

Two half-open intervals [s1, e1) and [s2, e2) overlap iff s1 < e2 and
e1 > s2, so back-to-back slots never conflict. Only non-cancelled bookings
of the same provider on the same date are compared. Everything here is a
pure read.
"""
from apps.core.exceptions import ConflictError
from apps.core.observability import metrics
from apps.core.observability.events import log_booking_conflict
from .models import Booking, BookingStatusChoices

MAX_REPORTED_CONFLICTS = 5


def intervals_overlap(start_a, end_a, start_b, end_b):
    return start_a < end_b and end_a > start_b


def find_conflicts(provider_id, booking_date, start_time, end_time, exclude_booking_id=None):
    """Active bookings of ``provider_id`` on ``booking_date`` overlapping [start_time, end_time)."""
    queryset = Booking.objects.filter(
        provider_id=provider_id,
        booking_date=booking_date,
        start_time__lt=end_time,
        end_time__gt=start_time,
    ).exclude(status=BookingStatusChoices.CANCELLED)

    if exclude_booking_id is not None:
        queryset = queryset.exclude(pk=exclude_booking_id)

    return queryset.order_by('start_time')


def has_conflict(provider_id, booking_date, start_time, end_time, exclude_booking_id=None):
    return find_conflicts(
        provider_id, booking_date, start_time, end_time, exclude_booking_id
    ).exists()


def describe_conflict(booking):
    return {
        'booking_id': str(booking.id),
        'booking_date': booking.booking_date.isoformat(),
        'start_time': booking.start_time.strftime('%H:%M'),
        'end_time': booking.end_time.strftime('%H:%M'),
    }


def ensure_no_conflict(provider_id, booking_date, start_time, end_time, exclude_booking_id=None):
    """
    Raise ConflictError carrying the bounds of the conflicting slots.

    Call before a booking is created or has its date, time or provider
    changed.
    """
    conflicts = list(find_conflicts(
        provider_id, booking_date, start_time, end_time, exclude_booking_id
    )[:MAX_REPORTED_CONFLICTS])
    if not conflicts:
        return

    metrics.booking_conflicts_total.inc()
    log_booking_conflict(
        provider_id, booking_date, start_time, end_time,
        [booking.id for booking in conflicts],
    )
    raise ConflictError([describe_conflict(booking) for booking in conflicts])
