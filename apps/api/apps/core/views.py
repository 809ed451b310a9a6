"""
Core views - operational diagnostics.
"""
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.authz.permissions import IsAdmin
from apps.core.apps import get_recent_events


class RecentEventsView(APIView):
    """
    Snapshot of the recent-events buffer - ADMIN ONLY.

    Query params:
    - limit: return at most this many events (newest first)
    """
    permission_classes = [IsAdmin]

    def get(self, request):
        buffer = get_recent_events()
        limit = request.query_params.get('limit')
        try:
            limit = int(limit) if limit is not None else None
        except ValueError:
            return Response({'error': 'limit must be an integer'}, status=status.HTTP_400_BAD_REQUEST)
        if limit is not None and limit < 0:
            return Response({'error': 'limit must not be negative'}, status=status.HTTP_400_BAD_REQUEST)

        return Response({
            'capacity': buffer.capacity,
            'evicted': buffer.evicted,
            'events': buffer.snapshot(limit=limit),
        }, status=status.HTTP_200_OK)
