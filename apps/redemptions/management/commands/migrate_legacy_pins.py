"""
Management command to hash deal PINs still stored in plaintext.

Run once per environment before setting LEGACY_PIN_FALLBACK_ENABLED=False.
Migrated PINs keep working unchanged; they just move to the hashed tier.

Usage:
    python manage.py migrate_legacy_pins [--dry-run]
"""

from django.conf import settings
from django.core.management.base import BaseCommand

from apps.redemptions.services import migrate_legacy_pins


class Command(BaseCommand):
    help = 'Move plaintext legacy deal PINs into the hashed PIN tier'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show how many PINs would be migrated without changing them',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        count = migrate_legacy_pins(dry_run=dry_run)

        if dry_run:
            self.stdout.write(f'{count} legacy PIN(s) would be migrated.')
            self.stdout.write(self.style.WARNING('--dry-run mode: No changes made.'))
            return

        if count == 0:
            self.stdout.write(self.style.SUCCESS('No legacy PINs left to migrate.'))
        else:
            self.stdout.write(self.style.SUCCESS(f'Migrated {count} legacy PIN(s).'))

        if settings.LEGACY_PIN_FALLBACK_ENABLED:
            self.stdout.write(
                'The legacy PIN tier is still enabled. Set '
                'LEGACY_PIN_FALLBACK_ENABLED=False once every environment is migrated.'
            )
