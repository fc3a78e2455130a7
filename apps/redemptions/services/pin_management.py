"""
Deal PIN management service.

Vendor-side deal operations: reading the current rotating PIN, setting a
static PIN, reviewing verification attempts and migrating legacy
plaintext PINs into the hashed tier.
"""

import logging

from django.conf import settings
from django.utils import timezone

from apps.redemptions.models import AttemptRecord, DealVerificationSecret

from . import credential_store
from .code_generation import generate_deal_pin, normalize_code
from .rotating_pin import grace_deadline, rotating_pin

logger = logging.getLogger(__name__)


def current_rotating_pin(*, deal_id: int, vendor_user=None, now=None) -> dict:
    """
    Current rotating PIN of a deal, for display at the vendor's counter.

    Returns:
        Dict with ``deal_id``, ``pin``, ``next_rotation_at``,
        ``valid_until`` (end of the grace window) and ``rotation_interval``

    Raises:
        DealNotFoundError: If the deal doesn't exist
        NotDealVendorError: If the deal belongs to another vendor
    """
    now = now or timezone.now()
    deal = credential_store.get_deal(deal_id)
    credential_store.ensure_deal_vendor(deal, vendor_user)

    interval = settings.ROTATING_PIN_INTERVAL_SECONDS
    current = rotating_pin(deal.pk, now, settings.ROTATING_PIN_SECRET, interval)

    return {
        'deal_id': deal.pk,
        'pin': current.pin,
        'next_rotation_at': current.next_rotation_at,
        'valid_until': grace_deadline(now, interval),
        'rotation_interval': current.rotation_interval,
    }


def set_deal_pin(*, deal_id: int, vendor_user=None, raw_pin: str = None, now=None) -> dict:
    """
    Set the static PIN of a deal, generating one when none is given.

    The plaintext PIN is returned this once so the vendor can note it;
    only its hash is stored.

    Raises:
        DealNotFoundError: If the deal doesn't exist
        NotDealVendorError: If the deal belongs to another vendor
        WeakPinError: If ``raw_pin`` fails the strength rules
    """
    deal = credential_store.get_deal(deal_id)
    credential_store.ensure_deal_vendor(deal, vendor_user)

    pin = raw_pin if raw_pin else generate_deal_pin()
    secret = credential_store.hash_and_store_pin(deal=deal, raw_pin=pin, now=now)

    logger.info("Static PIN %s for deal %s", 'set' if raw_pin else 'generated', deal.pk)
    return {
        'deal_id': deal.pk,
        'pin': normalize_code(pin),
        'pin_expires_at': secret.pin_expires_at,
    }


def get_deal_attempts(*, deal_id: int, vendor_user=None, limit: int = 100) -> list:
    """Most recent verification attempts on a deal, for dispute resolution."""
    deal = credential_store.get_deal(deal_id)
    credential_store.ensure_deal_vendor(deal, vendor_user)
    return list(AttemptRecord.objects.filter(deal=deal).order_by('-attempted_at')[:limit])


def migrate_legacy_pins(*, dry_run: bool = False, now=None) -> int:
    """
    Hash every legacy plaintext PIN still on file.

    Returns:
        Number of PINs migrated (or that would be, with ``dry_run``)
    """
    pending = DealVerificationSecret.objects.exclude(legacy_pin='')

    if dry_run:
        return pending.count()

    migrated = 0
    for secret in list(pending):
        if credential_store.migrate_legacy_pin(secret, now=now):
            migrated += 1

    logger.info("Migrated %d legacy PIN(s)", migrated)
    return migrated
