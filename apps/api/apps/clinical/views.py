"""
Clinical views - bookings and referral cases.

Business rules live in apps.clinical.services; views validate payload
shape, call one coordinator entry point and map domain errors to HTTP.
"""
from django.db.models import Q
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from apps.authz.permissions import TRANSITION_ROLES, IsSyncStaff, get_user_roles
from apps.core.exceptions import SyncError
from apps.core.observability import metrics
from apps.core.observability.logging import get_sanitized_logger
from . import services
from .models import Booking, ReferralCase
from .scheduling import describe_conflict, find_conflicts
from .serializers import (
    BookingCancelSerializer,
    BookingCreateSerializer,
    BookingSerializer,
    BookingUpdateSerializer,
    CaseReverseSerializer,
    CaseStatusHistorySerializer,
    CaseStatusUpdateSerializer,
    ConflictCheckSerializer,
    ReferralCaseCreateSerializer,
    ReferralCaseDetailSerializer,
    ReferralCaseSerializer,
)

logger = get_sanitized_logger(__name__)


def _error_response(exc):
    logger.info(
        f'Request rejected: {exc.code}',
        extra={'event': 'sync_request_rejected', 'error_code': exc.code},
    )
    metrics.exceptions_total.labels(exception_type=type(exc).__name__, location='clinical_api').inc()
    return Response(exc.as_dict(), status=exc.status_code)


class BookingViewSet(viewsets.ModelViewSet):
    """
    ViewSet for Booking endpoints.

    Endpoints:
    - GET   /api/v1/clinical/bookings/
    - POST  /api/v1/clinical/bookings/
    - GET   /api/v1/clinical/bookings/{id}/
    - PATCH /api/v1/clinical/bookings/{id}/
    - POST  /api/v1/clinical/bookings/{id}/cancel/
    - POST  /api/v1/clinical/bookings/check-conflict/
    """
    permission_classes = [IsSyncStaff]
    serializer_class = BookingSerializer
    http_method_names = ['get', 'post', 'patch', 'head', 'options']

    def get_queryset(self):
        """
        Filters:
        - status
        - booking_date, date_from, date_to
        - provider_id
        - clinic_id

        Org staff only see bookings of their own clinic.
        """
        queryset = Booking.objects.select_related('provider', 'clinic', 'case')

        if not get_user_roles(self.request.user) & TRANSITION_ROLES:
            queryset = queryset.filter(clinic_id=self.request.user.clinic_id)

        params = self.request.query_params
        if params.get('status'):
            queryset = queryset.filter(status=params['status'])
        if params.get('booking_date'):
            queryset = queryset.filter(booking_date=params['booking_date'])
        if params.get('date_from'):
            queryset = queryset.filter(booking_date__gte=params['date_from'])
        if params.get('date_to'):
            queryset = queryset.filter(booking_date__lte=params['date_to'])
        if params.get('provider_id'):
            queryset = queryset.filter(provider_id=params['provider_id'])
        if params.get('clinic_id'):
            queryset = queryset.filter(clinic_id=params['clinic_id'])

        return queryset.order_by('-booking_date', '-start_time')

    def create(self, request, *args, **kwargs):
        """POST /api/v1/clinical/bookings/ - CreateBooking."""
        serializer = BookingCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            booking = services.create_booking(actor=request.user, **serializer.validated_data)
        except SyncError as e:
            return _error_response(e)

        return Response(BookingSerializer(booking).data, status=status.HTTP_201_CREATED)

    def partial_update(self, request, *args, **kwargs):
        """
        PATCH /api/v1/clinical/bookings/{id}/ - UpdateBooking.

        Request body (all optional):
        {
            "booking_date": "2026-03-02", "start_time": "09:30", "end_time": "10:00",
            "provider": "<uuid>", "notes": "...",
            "status": "completed",
            "assessment": {"diagnosis": "...", "chief_complaint": "...", "present_history": "...", "pain_score": 4},
            "reason": "..."
        }
        """
        booking = self.get_object()
        serializer = BookingUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            booking = services.update_booking(
                booking.id,
                serializer.patch(),
                request.user,
                fields=serializer.transition_fields(),
                reason=serializer.validated_data.get('reason'),
            )
        except SyncError as e:
            return _error_response(e)

        return Response(BookingSerializer(booking).data)

    @action(detail=True, methods=['post'], url_path='cancel')
    def cancel(self, request, pk=None):
        """POST /api/v1/clinical/bookings/{id}/cancel/ - CancelBooking. Body: {"reason": "..."}"""
        booking = self.get_object()
        serializer = BookingCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = services.cancel_booking(
                booking.id, serializer.validated_data.get('reason'), request.user
            )
        except SyncError as e:
            return _error_response(e)

        return Response(BookingSerializer(result.booking).data)

    @action(detail=False, methods=['post'], url_path='check-conflict')
    def check_conflict(self, request):
        """POST /api/v1/clinical/bookings/check-conflict/ - read-only overlap check."""
        serializer = ConflictCheckSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        conflicts = find_conflicts(
            data['provider'].id,
            data['booking_date'],
            data['start_time'],
            data['end_time'],
            exclude_booking_id=data.get('exclude_booking_id'),
        )
        described = [describe_conflict(booking) for booking in conflicts]
        return Response({'has_conflict': bool(described), 'conflicts': described})


class ReferralCaseViewSet(viewsets.ReadOnlyModelViewSet):
    """
    ViewSet for ReferralCase endpoints.

    Endpoints:
    - GET  /api/v1/clinical/cases/
    - POST /api/v1/clinical/cases/
    - GET  /api/v1/clinical/cases/{id}/
    - POST /api/v1/clinical/cases/{id}/status/
    - POST /api/v1/clinical/cases/{id}/reverse/ (Admin only)
    - GET  /api/v1/clinical/cases/{id}/history/
    """
    permission_classes = [IsSyncStaff]

    def get_serializer_class(self):
        if self.action == 'list':
            return ReferralCaseSerializer
        return ReferralCaseDetailSerializer

    def get_queryset(self):
        """
        Filters:
        - status
        - code
        - clinic_id (source or target)

        Org staff only see cases their clinic referred or received.
        """
        queryset = ReferralCase.objects.select_related('source_clinic', 'target_clinic', 'booking')

        user = self.request.user
        if not get_user_roles(user) & TRANSITION_ROLES:
            queryset = queryset.filter(
                Q(source_clinic_id=user.clinic_id) | Q(target_clinic_id=user.clinic_id)
            )

        params = self.request.query_params
        if params.get('status'):
            queryset = queryset.filter(status=params['status'])
        if params.get('code'):
            queryset = queryset.filter(code=params['code'])
        if params.get('clinic_id'):
            queryset = queryset.filter(
                Q(source_clinic_id=params['clinic_id']) | Q(target_clinic_id=params['clinic_id'])
            )

        return queryset.order_by('-created_at')

    def create(self, request, *args, **kwargs):
        """POST /api/v1/clinical/cases/ - standalone case (never deducts sessions)."""
        serializer = ReferralCaseCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            case = services.create_case(actor=request.user, **serializer.validated_data)
        except SyncError as e:
            return _error_response(e)

        return Response(ReferralCaseDetailSerializer(case).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'], url_path='status')
    def update_status(self, request, pk=None):
        """
        POST /api/v1/clinical/cases/{id}/status/ - UpdateCaseStatus.

        Request body:
        {
            "status": "accepted" | "completed" | "cancelled" | "pending",
            "assessment": {...},          # accept, non in-house referrals
            "completion_note": {...},     # complete: subjective, objective, assessment, plan
            "reason": "..."               # cancel and reversals
        }
        """
        case = self.get_object()
        serializer = CaseStatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = services.update_case_status(
                case.id,
                serializer.validated_data['status'],
                request.user,
                fields=serializer.transition_fields(),
                reason=serializer.validated_data.get('reason'),
            )
        except SyncError as e:
            return _error_response(e)

        return Response(ReferralCaseDetailSerializer(result.case).data)

    @action(detail=True, methods=['post'], url_path='reverse')
    def reverse(self, request, pk=None):
        """POST /api/v1/clinical/cases/{id}/reverse/ - ReverseCaseStatus. Body: {"reason": "..."}"""
        case = self.get_object()
        serializer = CaseReverseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = services.reverse_case_status(
                case.id, serializer.validated_data.get('reason'), request.user
            )
        except SyncError as e:
            return _error_response(e)

        return Response(ReferralCaseDetailSerializer(result.case).data)

    @action(detail=True, methods=['get'], url_path='history')
    def history(self, request, pk=None):
        """GET /api/v1/clinical/cases/{id}/history/ - status history, oldest first."""
        case = self.get_object()
        entries = case.status_history.select_related('changed_by').order_by('created_at')
        return Response(CaseStatusHistorySerializer(entries, many=True).data)
