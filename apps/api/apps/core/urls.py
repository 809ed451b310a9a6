"""
Core API URLs - Authentication, Diagnostics.
"""
from django.urls import path
from rest_framework_simplejwt.views import (
    TokenObtainPairView,
    TokenRefreshView,
    TokenVerifyView,
)

from .views import RecentEventsView

urlpatterns = [
    # Operational debugging (admin only)
    path('v1/ops/recent-events/', RecentEventsView.as_view(), name='recent-events'),

    # JWT Authentication
    path('auth/token/', TokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('auth/token/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
    path('auth/token/verify/', TokenVerifyView.as_view(), name='token_verify'),
]
