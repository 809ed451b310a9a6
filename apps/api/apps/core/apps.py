"""Core app configuration."""
from django.apps import AppConfig, apps
from django.conf import settings

from apps.core.observability.recent_events import RecentEventBuffer


class CoreConfig(AppConfig):
    """
    Configuration for core app.

    Owns the process-wide recent-events buffer. There is exactly one per
    process; everything else reaches it through get_recent_events().
    """
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core'
    verbose_name = 'Core'

    def ready(self):
        self.recent_events = RecentEventBuffer(
            capacity=getattr(settings, 'RECENT_EVENTS_CAPACITY', 200)
        )


def get_recent_events():
    """Return the RecentEventBuffer owned by the core app."""
    return apps.get_app_config('core').recent_events
