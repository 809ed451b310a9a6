"""
Global test fixtures for pytest.

Provides reusable fixtures for sync engine testing:
- Clinics (in-house and two partner clinics)
- Users and authenticated API clients by role
- Practitioner, session bundle, referral case and booking factories
"""
from datetime import date, time

import pytest
from rest_framework.test import APIClient

from apps.authz.models import Practitioner, Role, RoleChoices, User, UserRole
from apps.clinical import services
from apps.clinical.models import ReferralCase
from apps.core.apps import get_recent_events
from apps.core.models import Clinic
from apps.ledger.services import open_bundle
from apps.notifications.dispatcher import reset_sinks


@pytest.fixture(autouse=True)
def _reset_process_state():
    reset_sinks()
    get_recent_events().clear()
    yield
    reset_sinks()


# ============================================================================
# Clinics
# ============================================================================

@pytest.fixture
def in_house_clinic(db):
    return Clinic.objects.create(code='CL001', name='Main Physio Clinic', city='Bangkok')


@pytest.fixture
def partner_clinic(db):
    return Clinic.objects.create(code='CL002', name='Partner Clinic North', city='Chiang Mai')


@pytest.fixture
def other_partner_clinic(db):
    return Clinic.objects.create(code='CL003', name='Partner Clinic South', city='Phuket')


# ============================================================================
# Users
# ============================================================================

def _create_user_with_role(email, role_name, clinic=None):
    user = User.objects.create_user(email=email, password='testpass123', clinic=clinic)
    role, _ = Role.objects.get_or_create(name=role_name)
    UserRole.objects.create(user=user, role=role)
    return user


@pytest.fixture
def admin_user(db):
    return _create_user_with_role('admin@test.com', RoleChoices.ADMIN)


@pytest.fixture
def clinician_user(db, in_house_clinic):
    return _create_user_with_role('clinician@test.com', RoleChoices.CLINICIAN, clinic=in_house_clinic)


@pytest.fixture
def org_staff_user(db, partner_clinic):
    return _create_user_with_role('staff@partner.com', RoleChoices.ORG_STAFF, clinic=partner_clinic)


@pytest.fixture
def no_role_user(db):
    return User.objects.create_user(email='norole@test.com', password='testpass123')


# ============================================================================
# API Clients
# ============================================================================

@pytest.fixture
def api_client():
    """Unauthenticated DRF API client."""
    return APIClient()


def _client_for(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def admin_client(admin_user):
    return _client_for(admin_user)


@pytest.fixture
def clinician_client(clinician_user):
    return _client_for(clinician_user)


@pytest.fixture
def org_staff_client(org_staff_user):
    return _client_for(org_staff_user)


@pytest.fixture
def no_role_client(no_role_user):
    return _client_for(no_role_user)


# ============================================================================
# Domain objects
# ============================================================================

@pytest.fixture
def practitioner(db, in_house_clinic, clinician_user):
    return Practitioner.objects.create(
        user=clinician_user,
        display_name='PT Somchai',
        clinic=in_house_clinic,
    )


@pytest.fixture
def other_practitioner(db, in_house_clinic):
    return Practitioner.objects.create(display_name='PT Malee', clinic=in_house_clinic)


@pytest.fixture
def bundle(db, in_house_clinic, admin_user):
    return open_bundle(
        code='PKG-0001',
        name='Knee rehab 10 sessions',
        clinic=in_house_clinic,
        total_sessions=10,
        created_by=admin_user,
    )


@pytest.fixture
def make_bundle(db, in_house_clinic, admin_user):
    counter = {'n': 100}

    def _make(total_sessions=10, **kwargs):
        counter['n'] += 1
        kwargs.setdefault('clinic', in_house_clinic)
        return open_bundle(
            code=f'PKG-{counter["n"]:04d}',
            name=f'Bundle {counter["n"]}',
            total_sessions=total_sessions,
            created_by=admin_user,
            **kwargs,
        )
    return _make


@pytest.fixture
def make_case(db, in_house_clinic, partner_clinic, admin_user):
    """PENDING referral case; partner -> in-house by default (no assessment needed)."""
    def _make(source=None, target=None, bundle=None, **kwargs):
        return ReferralCase.objects.create(
            source_clinic=source or partner_clinic,
            target_clinic=target or in_house_clinic,
            bundle=bundle,
            diagnosis=kwargs.pop('diagnosis', 'Knee osteoarthritis'),
            created_by=admin_user,
            **kwargs,
        )
    return _make


@pytest.fixture
def make_booking(db, admin_user, practitioner, in_house_clinic):
    """Book through the coordinator so every invariant holds from the start."""
    def _make(start=time(9, 0), end=time(10, 0), booking_date=date(2026, 3, 2),
              provider=None, **kwargs):
        return services.create_booking(
            actor=kwargs.pop('actor', admin_user),
            provider=provider or practitioner,
            clinic=kwargs.pop('clinic', in_house_clinic),
            booking_date=booking_date,
            start_time=start,
            end_time=end,
            **kwargs,
        )
    return _make


@pytest.fixture
def assessment():
    return {
        'diagnosis': 'Lumbar strain',
        'chief_complaint': 'Low back pain for two weeks',
        'present_history': 'Onset after lifting, no radiation',
        'pain_score': 6,
    }


@pytest.fixture
def completion_note():
    return {
        'subjective': 'Pain reduced to 3/10',
        'objective': 'ROM improved 15 degrees',
        'assessment': 'Responding well to treatment',
        'plan': 'Continue home exercise program',
    }
