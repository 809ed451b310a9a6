"""
Clinical serializers for bookings and referral cases.

Write serializers only check shape. Which fields a transition requires is
decided by the state machines, so they can report every missing field at
once.
"""
from rest_framework import serializers

from apps.authz.models import Practitioner
from apps.core.models import Clinic
from apps.ledger.models import SessionBundle
from .models import (
    Booking,
    BookingStatusChoices,
    CaseCompletionNote,
    CaseStatusChoices,
    CaseStatusHistory,
    ReferralCase,
)


# ============================================================================
# Transition inputs
# ============================================================================

class AssessmentSerializer(serializers.Serializer):
    diagnosis = serializers.CharField(required=False, allow_blank=True)
    chief_complaint = serializers.CharField(required=False, allow_blank=True)
    present_history = serializers.CharField(required=False, allow_blank=True)
    pain_score = serializers.IntegerField(required=False, allow_null=True, min_value=0, max_value=10)


class CompletionNoteInputSerializer(serializers.Serializer):
    subjective = serializers.CharField(required=False, allow_blank=True)
    objective = serializers.CharField(required=False, allow_blank=True)
    assessment = serializers.CharField(required=False, allow_blank=True)
    plan = serializers.CharField(required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class TransitionFieldsMixin(serializers.Serializer):
    assessment = AssessmentSerializer(required=False)
    completion_note = CompletionNoteInputSerializer(required=False)
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def transition_fields(self):
        """Flatten assessment and completion-note inputs into one dict."""
        data = self.validated_data
        fields = {}
        fields.update(data.get('assessment') or {})
        fields.update(data.get('completion_note') or {})
        return fields


# ============================================================================
# Bookings
# ============================================================================

class BookingSerializer(serializers.ModelSerializer):
    provider_name = serializers.CharField(source='provider.display_name', read_only=True)
    clinic_code = serializers.CharField(source='clinic.code', read_only=True)
    case_code = serializers.CharField(source='case.code', read_only=True, default=None)
    case_status = serializers.CharField(source='case.status', read_only=True, default=None)

    class Meta:
        model = Booking
        fields = [
            'id', 'provider', 'provider_name', 'clinic', 'clinic_code',
            'booking_date', 'start_time', 'end_time', 'status',
            'case', 'case_code', 'case_status', 'bundle',
            'notes', 'cancellation_reason', 'cancelled_at',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields


class BookingCreateSerializer(serializers.Serializer):
    provider = serializers.PrimaryKeyRelatedField(queryset=Practitioner.objects.filter(is_active=True))
    clinic = serializers.PrimaryKeyRelatedField(queryset=Clinic.objects.filter(is_active=True))
    booking_date = serializers.DateField()
    start_time = serializers.TimeField()
    end_time = serializers.TimeField()
    patient_reference = serializers.CharField(max_length=100, required=False, allow_blank=True, allow_null=True)
    bundle = serializers.PrimaryKeyRelatedField(queryset=SessionBundle.objects.all(), required=False, allow_null=True)
    case = serializers.PrimaryKeyRelatedField(queryset=ReferralCase.objects.all(), required=False, allow_null=True)
    create_case = serializers.BooleanField(required=False, default=False)
    diagnosis = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    purpose = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def validate(self, attrs):
        if attrs['end_time'] <= attrs['start_time']:
            raise serializers.ValidationError({'end_time': 'end_time must be after start_time'})
        return attrs


class BookingUpdateSerializer(TransitionFieldsMixin):
    provider = serializers.PrimaryKeyRelatedField(
        queryset=Practitioner.objects.filter(is_active=True), required=False
    )
    booking_date = serializers.DateField(required=False)
    start_time = serializers.TimeField(required=False)
    end_time = serializers.TimeField(required=False)
    status = serializers.ChoiceField(choices=BookingStatusChoices.choices, required=False)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    PATCH_FIELDS = ('provider', 'booking_date', 'start_time', 'end_time', 'status', 'notes')

    def patch(self):
        return {
            name: self.validated_data[name]
            for name in self.PATCH_FIELDS
            if name in self.validated_data
        }


class BookingCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class ConflictCheckSerializer(serializers.Serializer):
    provider = serializers.PrimaryKeyRelatedField(queryset=Practitioner.objects.all())
    booking_date = serializers.DateField()
    start_time = serializers.TimeField()
    end_time = serializers.TimeField()
    exclude_booking_id = serializers.UUIDField(required=False, allow_null=True)

    def validate(self, attrs):
        if attrs['end_time'] <= attrs['start_time']:
            raise serializers.ValidationError({'end_time': 'end_time must be after start_time'})
        return attrs


# ============================================================================
# Referral cases
# ============================================================================

class CaseCompletionNoteSerializer(serializers.ModelSerializer):
    class Meta:
        model = CaseCompletionNote
        fields = ['subjective', 'objective', 'assessment', 'plan', 'notes', 'created_by', 'created_at']
        read_only_fields = fields


class ReferralCaseSerializer(serializers.ModelSerializer):
    booking = serializers.SerializerMethodField()
    source_clinic_code = serializers.CharField(source='source_clinic.code', read_only=True)
    target_clinic_code = serializers.CharField(source='target_clinic.code', read_only=True)

    class Meta:
        model = ReferralCase
        fields = [
            'id', 'code', 'status',
            'source_clinic', 'source_clinic_code', 'target_clinic', 'target_clinic_code',
            'bundle', 'booking', 'diagnosis', 'purpose',
            'assessment_diagnosis', 'assessment_chief_complaint',
            'assessment_present_history', 'assessment_pain_score', 'assessed_at',
            'accepted_at', 'completed_at', 'cancelled_at', 'cancellation_reason',
            'is_reversed', 'last_reversal_reason', 'last_reversed_at',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields

    def get_booking(self, obj):
        booking = obj.linked_booking
        return str(booking.id) if booking else None


class ReferralCaseDetailSerializer(ReferralCaseSerializer):
    completion_note = serializers.SerializerMethodField()

    class Meta(ReferralCaseSerializer.Meta):
        fields = ReferralCaseSerializer.Meta.fields + ['completion_note']
        read_only_fields = fields

    def get_completion_note(self, obj):
        note = CaseCompletionNote.objects.filter(case=obj).first()
        return CaseCompletionNoteSerializer(note).data if note else None


class ReferralCaseCreateSerializer(serializers.Serializer):
    source_clinic = serializers.PrimaryKeyRelatedField(queryset=Clinic.objects.filter(is_active=True))
    target_clinic = serializers.PrimaryKeyRelatedField(queryset=Clinic.objects.filter(is_active=True))
    patient_reference = serializers.CharField(max_length=100, required=False, allow_blank=True, allow_null=True)
    diagnosis = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    purpose = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    bundle = serializers.PrimaryKeyRelatedField(queryset=SessionBundle.objects.all(), required=False, allow_null=True)


class CaseStatusUpdateSerializer(TransitionFieldsMixin):
    status = serializers.ChoiceField(choices=CaseStatusChoices.choices)


class CaseReverseSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class CaseStatusHistorySerializer(serializers.ModelSerializer):
    changed_by_email = serializers.EmailField(source='changed_by.email', read_only=True, default=None)

    class Meta:
        model = CaseStatusHistory
        fields = [
            'id', 'old_status', 'new_status', 'changed_by', 'changed_by_email',
            'is_reversal', 'reason', 'created_at',
        ]
        read_only_fields = fields
