"""
Liveness and readiness probes.

/healthz answers as long as the process serves requests. /readyz also
requires a reachable database with every migration applied, since the
sync engine relies on the ledger constraints being in place.
"""
import logging

from django.conf import settings
from django.db import DEFAULT_DB_ALIAS, connections
from django.db.migrations.executor import MigrationExecutor
from django.db.utils import DatabaseError
from django.http import JsonResponse
from django.views import View

logger = logging.getLogger(__name__)


def _version_info():
    info = {'version': getattr(settings, 'VERSION', 'unknown')}
    commit_hash = getattr(settings, 'COMMIT_HASH', None)
    if commit_hash:
        info['commit'] = commit_hash
    return info


def check_database(alias=DEFAULT_DB_ALIAS):
    try:
        with connections[alias].cursor() as cursor:
            cursor.execute('SELECT 1')
    except DatabaseError as e:
        logger.error(
            'Readiness check failed: database',
            extra={'event': 'readiness_database_failed', 'error_type': e.__class__.__name__},
        )
        return False
    return True


def check_migrations(alias=DEFAULT_DB_ALIAS):
    """True when no migration is left to apply."""
    try:
        executor = MigrationExecutor(connections[alias])
        plan = executor.migration_plan(executor.loader.graph.leaf_nodes())
    except DatabaseError as e:
        logger.error(
            'Readiness check failed: migrations',
            extra={'event': 'readiness_migrations_failed', 'error_type': e.__class__.__name__},
        )
        return False
    if plan:
        logger.warning(
            'Readiness check failed: unapplied migrations',
            extra={'event': 'readiness_migrations_pending', 'pending': len(plan)},
        )
    return not plan


class HealthzView(View):
    """Liveness probe. Never touches a dependency."""

    def get(self, request):
        return JsonResponse(dict(status='ok', **_version_info()))


class ReadyzView(View):
    """Readiness probe: database reachable and schema up to date."""

    def get(self, request):
        checks = {'database': check_database()}
        checks['migrations'] = check_migrations() if checks['database'] else False

        ready = all(checks.values())
        return JsonResponse(
            {'status': 'ready' if ready else 'not_ready', 'checks': checks},
            status=200 if ready else 503,
        )
