from django.core.management.base import BaseCommand

from apps.ledger.models import SessionBundle
from apps.ledger.services import reconcile_bundle


class Command(BaseCommand):
    help = 'Checks every session bundle against its usage journal.'

    def add_arguments(self, parser):
        parser.add_argument('--code', help='Only check the bundle with this code')

    def handle(self, *args, **options):
        self.stdout.write(self.style.NOTICE('Checking session bundles...'))
        bundles = SessionBundle.objects.all()
        if options.get('code'):
            bundles = bundles.filter(code=options['code'])

        total = 0
        failing = 0
        for bundle in bundles.iterator():
            total += 1
            checks = reconcile_bundle(bundle)
            failed = [name for name, passed in checks.items() if not passed]
            if failed:
                failing += 1
                self.stdout.write(self.style.ERROR(f'{bundle.code}: {", ".join(failed)}'))

        if failing:
            self.stdout.write(self.style.ERROR(f'Checked: {total}, failing: {failing}'))
        else:
            self.stdout.write(self.style.SUCCESS(f'Checked: {total}, all consistent'))
