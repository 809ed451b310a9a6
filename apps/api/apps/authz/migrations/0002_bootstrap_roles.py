# Generated for role bootstrap

from django.db import migrations

ROLE_NAMES = ['admin', 'clinician', 'org_staff']


def create_roles(apps, schema_editor):
    """Create the fixed roles. Safe to run multiple times."""
    Role = apps.get_model('authz', 'Role')
    for name in ROLE_NAMES:
        Role.objects.get_or_create(name=name)


def remove_unused_roles(apps, schema_editor):
    """Delete fixed roles nobody is assigned to."""
    Role = apps.get_model('authz', 'Role')
    UserRole = apps.get_model('authz', 'UserRole')
    for role in Role.objects.filter(name__in=ROLE_NAMES):
        if not UserRole.objects.filter(role=role).exists():
            role.delete()


class Migration(migrations.Migration):

    dependencies = [
        ('authz', '0001_initial'),
    ]

    operations = [
        migrations.RunPython(create_roles, remove_unused_roles),
    ]
