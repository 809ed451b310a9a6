"""
Clinical URLs - Bookings, Referral Cases.
"""
from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import BookingViewSet, ReferralCaseViewSet

router = DefaultRouter()
router.register(r'bookings', BookingViewSet, basename='booking')
router.register(r'cases', ReferralCaseViewSet, basename='referral-case')

urlpatterns = [
    path('', include(router.urls)),
]
