"""
Session ledger views.
"""
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from apps.authz.models import RoleChoices
from apps.authz.permissions import IsAdmin, IsSyncStaff, get_user_roles
from apps.core.exceptions import SyncError
from .models import SessionBundle
from .serializers import (
    SessionBundleCreateSerializer,
    SessionBundleSerializer,
    SessionUsageSerializer,
)
from .services import open_bundle


class SessionBundleViewSet(viewsets.ReadOnlyModelViewSet):
    """
    ViewSet for session bundles.

    Endpoints:
    - GET  /api/v1/ledger/bundles/
    - POST /api/v1/ledger/bundles/ (Admin only, bundle purchase)
    - GET  /api/v1/ledger/bundles/{id}/
    - GET  /api/v1/ledger/bundles/{id}/journal/
    """
    serializer_class = SessionBundleSerializer
    permission_classes = [IsSyncStaff]

    def get_permissions(self):
        if self.action == 'create':
            return [IsAdmin()]
        return super().get_permissions()

    def get_queryset(self):
        """
        Filters:
        - status
        - clinic_id
        - code

        Org staff only see bundles of their own clinic.
        """
        queryset = SessionBundle.objects.select_related('clinic')
        user = self.request.user

        roles = get_user_roles(user)
        if not roles & {RoleChoices.ADMIN, RoleChoices.CLINICIAN}:
            queryset = queryset.filter(clinic_id=user.clinic_id)

        status_filter = self.request.query_params.get('status')
        if status_filter:
            queryset = queryset.filter(status=status_filter)

        clinic_id = self.request.query_params.get('clinic_id')
        if clinic_id:
            queryset = queryset.filter(clinic_id=clinic_id)

        code = self.request.query_params.get('code')
        if code:
            queryset = queryset.filter(code=code)

        return queryset.order_by('-created_at')

    def create(self, request, *args, **kwargs):
        serializer = SessionBundleCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            bundle = open_bundle(created_by=request.user, **serializer.validated_data)
        except SyncError as e:
            return Response(e.as_dict(), status=e.status_code)

        return Response(SessionBundleSerializer(bundle).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['get'], url_path='journal')
    def journal(self, request, pk=None):
        """GET /api/v1/ledger/bundles/{id}/journal/ - usage entries, oldest first."""
        bundle = self.get_object()
        usages = bundle.usages.select_related('actor').order_by('created_at')
        return Response(SessionUsageSerializer(usages, many=True).data)
