"""
Tests for role bootstrap and the role gates used at transition boundaries.
"""
import pytest

from apps.authz.models import Role, RoleChoices, UserRole
from apps.authz.permissions import (
    ensure_can_reverse,
    ensure_can_schedule,
    ensure_can_transition,
    get_user_roles,
)
from apps.core.exceptions import TransitionPermissionError


@pytest.mark.django_db
class TestRoleBootstrap:
    """The fixed roles are created by migrations."""

    def test_roles_exist_after_migrations(self):
        names = set(Role.objects.values_list('name', flat=True))

        assert {'admin', 'clinician', 'org_staff'} <= names

    def test_can_assign_role_to_user(self, django_user_model):
        user = django_user_model.objects.create_user(email='pt@clinic.test', password='testpass123')
        role = Role.objects.get(name=RoleChoices.CLINICIAN)

        UserRole.objects.create(user=user, role=role)

        assert get_user_roles(user) == {'clinician'}


@pytest.mark.django_db
class TestRoleGates:

    def test_admin_passes_every_gate(self, admin_user, partner_clinic):
        ensure_can_transition(admin_user)
        ensure_can_reverse(admin_user)
        ensure_can_schedule(admin_user, partner_clinic)

    def test_clinician_cannot_reverse(self, clinician_user):
        ensure_can_transition(clinician_user)

        with pytest.raises(TransitionPermissionError) as exc_info:
            ensure_can_reverse(clinician_user, action='reverse case')

        assert exc_info.value.status_code == 403
        assert exc_info.value.required_roles == ['admin']

    def test_org_staff_schedules_for_own_clinic_only(
        self, org_staff_user, partner_clinic, other_partner_clinic
    ):
        ensure_can_schedule(org_staff_user, partner_clinic)

        with pytest.raises(TransitionPermissionError):
            ensure_can_schedule(org_staff_user, other_partner_clinic)
        with pytest.raises(TransitionPermissionError):
            ensure_can_transition(org_staff_user)

    def test_user_without_role_is_refused(self, no_role_user, partner_clinic):
        assert get_user_roles(no_role_user) == set()

        with pytest.raises(TransitionPermissionError):
            ensure_can_schedule(no_role_user, partner_clinic)
