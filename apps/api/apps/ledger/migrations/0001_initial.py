# Generated migration for ledger app

import uuid
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('core', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='SessionBundle',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('code', models.CharField(max_length=50, unique=True)),
                ('name', models.CharField(max_length=200)),
                ('patient_reference', models.CharField(blank=True, help_text='Opaque reference to the patient record', max_length=100, null=True)),
                ('total_sessions', models.PositiveIntegerField()),
                ('used_sessions', models.PositiveIntegerField(default=0)),
                ('remaining_sessions', models.PositiveIntegerField(default=0)),
                ('status', models.CharField(choices=[('active', 'Active'), ('completed', 'Completed'), ('cancelled', 'Cancelled'), ('expired', 'Expired')], default='active', max_length=20)),
                ('purchase_date', models.DateField(default=django.utils.timezone.localdate)),
                ('expiry_date', models.DateField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('clinic', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='session_bundles', to='core.clinic')),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_session_bundles', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Session Bundle',
                'verbose_name_plural': 'Session Bundles',
                'db_table': 'session_bundle',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status'], name='idx_bundle_status'),
                    models.Index(fields=['clinic', 'status'], name='idx_bundle_clinic_status'),
                ],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(total_sessions=models.F('used_sessions') + models.F('remaining_sessions')),
                        name='ck_bundle_conservation',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='SessionUsage',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('case_id', models.UUIDField(blank=True, help_text='Referral case the sessions were used for', null=True)),
                ('action', models.CharField(choices=[('use', 'Use'), ('return', 'Return')], max_length=10)),
                ('sessions', models.PositiveIntegerField(default=1)),
                ('usage_date', models.DateField(default=django.utils.timezone.localdate)),
                ('note', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('actor', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='session_usages', to=settings.AUTH_USER_MODEL)),
                ('bundle', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='usages', to='ledger.sessionbundle')),
            ],
            options={
                'verbose_name': 'Session Usage',
                'verbose_name_plural': 'Session Usages',
                'db_table': 'session_usage',
                'ordering': ['created_at'],
                'indexes': [
                    models.Index(fields=['bundle', 'case_id', 'action'], name='idx_usage_bundle_case_action'),
                ],
            },
        ),
    ]
