"""
Session ledger URLs.
"""
from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import SessionBundleViewSet

router = DefaultRouter()
router.register(r'bundles', SessionBundleViewSet, basename='session-bundle')

urlpatterns = [
    path('', include(router.urls)),
]
