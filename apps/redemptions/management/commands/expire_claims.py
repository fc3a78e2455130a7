"""
Management command to expire claims whose code deadline has passed.

Claims are also expired lazily whenever they are touched; this sweep keeps
statuses current for claims nobody looks at again.

Usage:
    python manage.py expire_claims [--dry-run]
"""

from django.core.management.base import BaseCommand
from django.utils import timezone

from apps.redemptions.models import Claim
from apps.redemptions.services.credential_store import expire_stale_claims


class Command(BaseCommand):
    help = 'Mark pending and claimed claims past their code deadline as expired'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show how many claims would be expired without changing them',
        )

    def handle(self, *args, **options):
        now = timezone.now()
        stale = Claim.objects.stale(now)
        count = stale.count()

        if count == 0:
            self.stdout.write(self.style.SUCCESS('No stale claims found.'))
            return

        self.stdout.write(f'Found {count} stale claim(s).')

        if options['dry_run']:
            self.stdout.write(self.style.WARNING('--dry-run mode: No changes made.'))
            return

        expired = expire_stale_claims(now)
        self.stdout.write(self.style.SUCCESS(f'Expired {expired} claim(s).'))
