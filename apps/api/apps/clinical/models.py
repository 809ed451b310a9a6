"""
Clinical models: booking, referral_case, case_completion_note, case_status_history
"""
import secrets
import uuid
from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import IntegrityError, models, transaction
from django.db.models import F, Q
from django.utils import timezone


# ============================================================================
# Enums
# ============================================================================

class BookingStatusChoices(models.TextChoices):
    SCHEDULED = 'scheduled', 'Scheduled'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'


class CaseStatusChoices(models.TextChoices):
    PENDING = 'pending', 'Pending'
    ACCEPTED = 'accepted', 'Accepted'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'


def generate_case_code(now=None):
    """PN-YYYYMMDDHHMMSS-NNNN"""
    now = now or timezone.now()
    return f"PN-{now:%Y%m%d%H%M%S}-{secrets.randbelow(10000):04d}"


CASE_CODE_ATTEMPTS = 5


# ============================================================================
# Referral cases
# ============================================================================

class ReferralCase(models.Model):
    """
    Clinical case tracked from intake through acceptance and completion.

    Status is changed only through ReferralCaseStateMachine, driven by the
    coordinator in apps.clinical.services. The linked booking, if any, is
    reachable as ``booking`` (reverse one-to-one from Booking.case).
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=30, unique=True, default=generate_case_code, editable=False)
    status = models.CharField(
        max_length=20,
        choices=CaseStatusChoices.choices,
        default=CaseStatusChoices.PENDING
    )
    patient_reference = models.CharField(
        max_length=100,
        blank=True,
        null=True,
        help_text='Opaque reference to the patient record'
    )
    source_clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.PROTECT,
        related_name='referred_cases'
    )
    target_clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.PROTECT,
        related_name='received_cases'
    )
    bundle = models.ForeignKey(
        'ledger.SessionBundle',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='cases'
    )
    diagnosis = models.TextField(blank=True, null=True, help_text='Referral diagnosis')
    purpose = models.TextField(blank=True, null=True)

    # Clinical assessment (filled on acceptance)
    assessment_diagnosis = models.TextField(blank=True, null=True)
    assessment_chief_complaint = models.TextField(blank=True, null=True)
    assessment_present_history = models.TextField(blank=True, null=True)
    assessment_pain_score = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(0), MaxValueValidator(10)]
    )
    assessed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='assessed_cases'
    )
    assessed_at = models.DateTimeField(null=True, blank=True)

    accepted_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True, null=True)

    is_reversed = models.BooleanField(default=False)
    last_reversal_reason = models.TextField(blank=True, null=True)
    last_reversed_at = models.DateTimeField(null=True, blank=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='created_cases'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'referral_case'
        verbose_name = 'Referral Case'
        verbose_name_plural = 'Referral Cases'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status'], name='idx_case_status'),
            models.Index(fields=['source_clinic', 'status'], name='idx_case_source_status'),
            models.Index(fields=['target_clinic', 'status'], name='idx_case_target_status'),
        ]

    def __str__(self):
        return f"{self.code} ({self.status})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            return super().save(*args, **kwargs)
        # A new case whose code is already taken gets a fresh one
        for attempt in range(1, CASE_CODE_ATTEMPTS + 1):
            try:
                with transaction.atomic():
                    return super().save(*args, **kwargs)
            except IntegrityError:
                taken = ReferralCase.objects.filter(code=self.code).exists()
                if not taken or attempt == CASE_CODE_ATTEMPTS:
                    raise
                self.code = generate_case_code()

    @property
    def linked_booking(self):
        try:
            return self.booking
        except Booking.DoesNotExist:
            return None


class CaseCompletionNote(models.Model):
    """
    Structured (SOAP) note required to complete a case.

    Removed again when an admin reverses Completed -> Accepted.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    case = models.OneToOneField(
        ReferralCase,
        on_delete=models.CASCADE,
        related_name='completion_note'
    )
    subjective = models.TextField()
    objective = models.TextField()
    assessment = models.TextField()
    plan = models.TextField()
    notes = models.TextField(blank=True, null=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='case_completion_notes'
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'case_completion_note'
        verbose_name = 'Case Completion Note'
        verbose_name_plural = 'Case Completion Notes'

    def __str__(self):
        return f"Completion note for {self.case_id}"


class CaseStatusHistory(models.Model):
    """Append-only audit trail of case status changes. Not used for control flow."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    case = models.ForeignKey(
        ReferralCase,
        on_delete=models.CASCADE,
        related_name='status_history'
    )
    old_status = models.CharField(max_length=20, choices=CaseStatusChoices.choices)
    new_status = models.CharField(max_length=20, choices=CaseStatusChoices.choices)
    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='case_status_changes'
    )
    is_reversal = models.BooleanField(default=False)
    reason = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'case_status_history'
        verbose_name = 'Case Status History'
        verbose_name_plural = 'Case Status History'
        ordering = ['created_at']
        indexes = [
            models.Index(fields=['case', 'created_at'], name='idx_case_history_case'),
        ]

    def __str__(self):
        return f"{self.case_id}: {self.old_status} -> {self.new_status}"


# ============================================================================
# Bookings
# ============================================================================

class Booking(models.Model):
    """
    Scheduled [start_time, end_time) slot for a provider on one date.

    INVARIANT: non-cancelled bookings of the same provider and date never
    overlap (apps.clinical.scheduling). Status is changed only through
    BookingStateMachine.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    provider = models.ForeignKey(
        'authz.Practitioner',
        on_delete=models.PROTECT,
        related_name='bookings'
    )
    clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.PROTECT,
        related_name='bookings'
    )
    patient_reference = models.CharField(
        max_length=100,
        blank=True,
        null=True,
        help_text='Opaque reference to the patient record'
    )
    booking_date = models.DateField()
    start_time = models.TimeField()
    end_time = models.TimeField()
    status = models.CharField(
        max_length=20,
        choices=BookingStatusChoices.choices,
        default=BookingStatusChoices.SCHEDULED
    )
    case = models.OneToOneField(
        ReferralCase,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='booking'
    )
    bundle = models.ForeignKey(
        'ledger.SessionBundle',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='bookings'
    )
    notes = models.TextField(blank=True, null=True)
    cancellation_reason = models.TextField(blank=True, null=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='cancelled_bookings'
    )
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='created_bookings'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'booking'
        verbose_name = 'Booking'
        verbose_name_plural = 'Bookings'
        ordering = ['-booking_date', '-start_time']
        indexes = [
            models.Index(fields=['provider', 'booking_date', 'status'], name='idx_booking_provider_day'),
            models.Index(fields=['clinic', 'booking_date'], name='idx_booking_clinic_day'),
            models.Index(fields=['status'], name='idx_booking_status'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(end_time__gt=F('start_time')),
                name='ck_booking_end_after_start',
            ),
        ]

    def __str__(self):
        return f"Booking {self.booking_date} {self.start_time}-{self.end_time} ({self.status})"
