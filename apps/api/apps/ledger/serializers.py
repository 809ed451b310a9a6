"""
Session ledger serializers.
"""
from rest_framework import serializers

from apps.core.models import Clinic
from .models import SessionBundle, SessionUsage


class SessionBundleSerializer(serializers.ModelSerializer):
    """Read-only bundle representation; counters change only through the ledger."""
    clinic_code = serializers.CharField(source='clinic.code', read_only=True)

    class Meta:
        model = SessionBundle
        fields = [
            'id', 'code', 'name', 'clinic', 'clinic_code',
            'total_sessions', 'used_sessions', 'remaining_sessions',
            'status', 'purchase_date', 'expiry_date',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields


class SessionBundleCreateSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=50)
    name = serializers.CharField(max_length=200)
    clinic = serializers.PrimaryKeyRelatedField(queryset=Clinic.objects.filter(is_active=True))
    total_sessions = serializers.IntegerField(min_value=1)
    expiry_date = serializers.DateField(required=False, allow_null=True)
    purchase_date = serializers.DateField(required=False)
    patient_reference = serializers.CharField(max_length=100, required=False, allow_blank=True, allow_null=True)

    def validate_code(self, value):
        if SessionBundle.objects.filter(code=value).exists():
            raise serializers.ValidationError('A bundle with this code already exists.')
        return value


class SessionUsageSerializer(serializers.ModelSerializer):
    actor_email = serializers.EmailField(source='actor.email', read_only=True, default=None)

    class Meta:
        model = SessionUsage
        fields = [
            'id', 'bundle', 'case_id', 'action', 'sessions',
            'usage_date', 'note', 'actor', 'actor_email', 'created_at',
        ]
        read_only_fields = fields
