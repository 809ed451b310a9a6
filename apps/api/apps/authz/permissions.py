"""
Role gates.

The helpers are called by the services at every transition boundary; the
DRF permission classes only mirror them for the HTTP surface.
"""
from rest_framework import permissions

from apps.authz.models import RoleChoices
from apps.core.exceptions import TransitionPermissionError

TRANSITION_ROLES = frozenset({RoleChoices.ADMIN, RoleChoices.CLINICIAN})
REVERSAL_ROLES = frozenset({RoleChoices.ADMIN})
SCHEDULING_ROLES = frozenset({RoleChoices.ADMIN, RoleChoices.CLINICIAN, RoleChoices.ORG_STAFF})


def get_user_roles(user):
    """Return the set of role names assigned to ``user``."""
    if user is None or not user.is_authenticated:
        return set()
    return set(user.user_roles.values_list('role__name', flat=True))


def has_any_role(user, roles):
    return bool(get_user_roles(user) & set(roles))


def is_admin(user):
    return RoleChoices.ADMIN in get_user_roles(user)


def ensure_can_transition(actor, action='change status'):
    """Only admins and clinicians drive booking and case transitions."""
    if not has_any_role(actor, TRANSITION_ROLES):
        raise TransitionPermissionError(action, TRANSITION_ROLES)


def ensure_can_reverse(actor, action='reverse status'):
    if not has_any_role(actor, REVERSAL_ROLES):
        raise TransitionPermissionError(action, REVERSAL_ROLES)


def ensure_can_schedule(actor, clinic, action='create booking'):
    """
    Admins and clinicians schedule anywhere. Org staff only for the clinic
    they are affiliated with.
    """
    roles = get_user_roles(actor)
    if roles & TRANSITION_ROLES:
        return
    if RoleChoices.ORG_STAFF in roles and clinic is not None and actor.clinic_id == clinic.id:
        return
    raise TransitionPermissionError(action, SCHEDULING_ROLES)


class IsAdmin(permissions.BasePermission):
    """Only users with the Admin role."""

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False
        return is_admin(request.user)


class IsSyncStaff(permissions.BasePermission):
    """
    Read and create access for every operational role.

    - Admin, Clinician: everything
    - OrgStaff: safe methods and POST to create; status changes are refused
      by the services with a 403
    """

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False
        return has_any_role(request.user, SCHEDULING_ROLES)
