"""
Core models: clinic
"""
import uuid
from django.conf import settings
from django.db import models


class Clinic(models.Model):
    """
    Organization a booking, case or bundle belongs to.

    The clinic whose code matches settings.IN_HOUSE_CLINIC_CODE is the
    designated in-house organization. Referrals touching it skip the
    clinical-assessment requirement on acceptance.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=20, unique=True, help_text='Short clinic code, e.g. CL001')
    name = models.CharField(max_length=255)
    city = models.CharField(max_length=100, blank=True, null=True)
    timezone = models.CharField(max_length=64, default='UTC')
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'clinic'
        verbose_name = 'Clinic'
        verbose_name_plural = 'Clinics'
        ordering = ['code']
        indexes = [
            models.Index(fields=['is_active'], name='idx_clinic_active'),
        ]

    def __str__(self):
        return f"{self.code} - {self.name}"

    @property
    def is_in_house(self):
        return self.code == settings.IN_HOUSE_CLINIC_CODE
