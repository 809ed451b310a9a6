# Generated migration for clinical app

import uuid
import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

import apps.clinical.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('core', '0001_initial'),
        ('authz', '0001_initial'),
        ('ledger', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='ReferralCase',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('code', models.CharField(default=apps.clinical.models.generate_case_code, editable=False, max_length=30, unique=True)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('accepted', 'Accepted'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], default='pending', max_length=20)),
                ('patient_reference', models.CharField(blank=True, help_text='Opaque reference to the patient record', max_length=100, null=True)),
                ('diagnosis', models.TextField(blank=True, help_text='Referral diagnosis', null=True)),
                ('purpose', models.TextField(blank=True, null=True)),
                ('assessment_diagnosis', models.TextField(blank=True, null=True)),
                ('assessment_chief_complaint', models.TextField(blank=True, null=True)),
                ('assessment_present_history', models.TextField(blank=True, null=True)),
                ('assessment_pain_score', models.PositiveSmallIntegerField(blank=True, null=True, validators=[django.core.validators.MinValueValidator(0), django.core.validators.MaxValueValidator(10)])),
                ('assessed_at', models.DateTimeField(blank=True, null=True)),
                ('accepted_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('cancellation_reason', models.TextField(blank=True, null=True)),
                ('is_reversed', models.BooleanField(default=False)),
                ('last_reversal_reason', models.TextField(blank=True, null=True)),
                ('last_reversed_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('assessed_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='assessed_cases', to=settings.AUTH_USER_MODEL)),
                ('bundle', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='cases', to='ledger.sessionbundle')),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_cases', to=settings.AUTH_USER_MODEL)),
                ('source_clinic', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='referred_cases', to='core.clinic')),
                ('target_clinic', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='received_cases', to='core.clinic')),
            ],
            options={
                'verbose_name': 'Referral Case',
                'verbose_name_plural': 'Referral Cases',
                'db_table': 'referral_case',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status'], name='idx_case_status'),
                    models.Index(fields=['source_clinic', 'status'], name='idx_case_source_status'),
                    models.Index(fields=['target_clinic', 'status'], name='idx_case_target_status'),
                ],
            },
        ),
        migrations.CreateModel(
            name='CaseCompletionNote',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('subjective', models.TextField()),
                ('objective', models.TextField()),
                ('assessment', models.TextField()),
                ('plan', models.TextField()),
                ('notes', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('case', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='completion_note', to='clinical.referralcase')),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='case_completion_notes', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Case Completion Note',
                'verbose_name_plural': 'Case Completion Notes',
                'db_table': 'case_completion_note',
            },
        ),
        migrations.CreateModel(
            name='CaseStatusHistory',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('old_status', models.CharField(choices=[('pending', 'Pending'), ('accepted', 'Accepted'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], max_length=20)),
                ('new_status', models.CharField(choices=[('pending', 'Pending'), ('accepted', 'Accepted'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], max_length=20)),
                ('is_reversal', models.BooleanField(default=False)),
                ('reason', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('case', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='status_history', to='clinical.referralcase')),
                ('changed_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='case_status_changes', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Case Status History',
                'verbose_name_plural': 'Case Status History',
                'db_table': 'case_status_history',
                'ordering': ['created_at'],
                'indexes': [
                    models.Index(fields=['case', 'created_at'], name='idx_case_history_case'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Booking',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('patient_reference', models.CharField(blank=True, help_text='Opaque reference to the patient record', max_length=100, null=True)),
                ('booking_date', models.DateField()),
                ('start_time', models.TimeField()),
                ('end_time', models.TimeField()),
                ('status', models.CharField(choices=[('scheduled', 'Scheduled'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], default='scheduled', max_length=20)),
                ('notes', models.TextField(blank=True, null=True)),
                ('cancellation_reason', models.TextField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('bundle', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='bookings', to='ledger.sessionbundle')),
                ('cancelled_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='cancelled_bookings', to=settings.AUTH_USER_MODEL)),
                ('case', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='booking', to='clinical.referralcase')),
                ('clinic', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='bookings', to='core.clinic')),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_bookings', to=settings.AUTH_USER_MODEL)),
                ('provider', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='bookings', to='authz.practitioner')),
            ],
            options={
                'verbose_name': 'Booking',
                'verbose_name_plural': 'Bookings',
                'db_table': 'booking',
                'ordering': ['-booking_date', '-start_time'],
                'indexes': [
                    models.Index(fields=['provider', 'booking_date', 'status'], name='idx_booking_provider_day'),
                    models.Index(fields=['clinic', 'booking_date'], name='idx_booking_clinic_day'),
                    models.Index(fields=['status'], name='idx_booking_status'),
                ],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(end_time__gt=models.F('start_time')),
                        name='ck_booking_end_after_start',
                    ),
                ],
            },
        ),
    ]
