"""
Session ledger models: session_bundle, session_usage
"""
import uuid
from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone


# ============================================================================
# Enums
# ============================================================================

class BundleStatusChoices(models.TextChoices):
    ACTIVE = 'active', 'Active'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'
    EXPIRED = 'expired', 'Expired'


class UsageActionChoices(models.TextChoices):
    USE = 'use', 'Use'
    RETURN = 'return', 'Return'


# ============================================================================
# Models
# ============================================================================

class SessionBundle(models.Model):
    """
    Prepaid pool of treatment sessions.

    INVARIANTS (enforced by the database and apps.ledger.services):
    - used_sessions + remaining_sessions == total_sessions
    - remaining_sessions >= 0
    - status is COMPLETED exactly when remaining reached 0 through a Use,
      and goes back to ACTIVE when a Return makes it positive again

    Counters are only changed by use_sessions() / return_sessions().
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=200)
    patient_reference = models.CharField(
        max_length=100,
        blank=True,
        null=True,
        help_text='Opaque reference to the patient record'
    )
    clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.PROTECT,
        related_name='session_bundles'
    )
    total_sessions = models.PositiveIntegerField()
    used_sessions = models.PositiveIntegerField(default=0)
    remaining_sessions = models.PositiveIntegerField(default=0)
    status = models.CharField(
        max_length=20,
        choices=BundleStatusChoices.choices,
        default=BundleStatusChoices.ACTIVE
    )
    purchase_date = models.DateField(default=timezone.localdate)
    expiry_date = models.DateField(null=True, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='created_session_bundles'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'session_bundle'
        verbose_name = 'Session Bundle'
        verbose_name_plural = 'Session Bundles'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status'], name='idx_bundle_status'),
            models.Index(fields=['clinic', 'status'], name='idx_bundle_clinic_status'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(total_sessions=F('used_sessions') + F('remaining_sessions')),
                name='ck_bundle_conservation',
            ),
        ]

    def __str__(self):
        return f"{self.code} ({self.remaining_sessions}/{self.total_sessions})"

    def is_expired(self, on_date=None):
        if self.status == BundleStatusChoices.EXPIRED:
            return True
        if self.expiry_date is None:
            return False
        return self.expiry_date < (on_date or timezone.localdate())


class SessionUsage(models.Model):
    """
    Append-only journal of session deductions and returns.

    Rows for one (bundle, case_id) pair are the idempotency guard: the
    number of USE rows minus RETURN rows is the outstanding deduction for
    that case, and it is always 0 or 1.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    bundle = models.ForeignKey(
        SessionBundle,
        on_delete=models.PROTECT,
        related_name='usages'
    )
    case_id = models.UUIDField(
        null=True,
        blank=True,
        help_text='Referral case the sessions were used for'
    )
    action = models.CharField(max_length=10, choices=UsageActionChoices.choices)
    sessions = models.PositiveIntegerField(default=1)
    usage_date = models.DateField(default=timezone.localdate)
    note = models.TextField(blank=True, null=True)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='session_usages'
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'session_usage'
        verbose_name = 'Session Usage'
        verbose_name_plural = 'Session Usages'
        ordering = ['created_at']
        indexes = [
            models.Index(fields=['bundle', 'case_id', 'action'], name='idx_usage_bundle_case_action'),
        ]

    def __str__(self):
        return f"{self.get_action_display()} {self.sessions} on {self.bundle_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError('Session usage entries are append-only')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError('Session usage entries are append-only')
