"""
Credential store.

Persists claims and deal verification secrets. PIN secrets go in as
plaintext exactly once and come out only as a yes/no comparison.
"""

import functools
import logging
import secrets
from datetime import timedelta

from django.conf import settings
from django.contrib.auth.hashers import make_password
from django.db import transaction, IntegrityError, OperationalError, InterfaceError
from django.utils import timezone

from apps.deals.models import Deal
from apps.redemptions.models import (
    Claim,
    ClaimStatus,
    ACTIVE_STATUSES,
    DealVerificationSecret,
)

from .code_generation import generate_claim_code, normalize_code, validate_pin_strength
from .exceptions import (
    DealNotFoundError,
    DuplicateActiveClaimError,
    NotDealVendorError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)


def storage_guard(func):
    """Translate database connectivity failures into StorageUnavailableError."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (OperationalError, InterfaceError) as exc:
            logger.error("Storage unavailable during %s: %s", func.__name__, exc)
            raise StorageUnavailableError() from exc

    return wrapper


# =============================================================================
# Deals
# =============================================================================

@storage_guard
def get_deal(deal_id) -> Deal:
    try:
        return Deal.objects.select_related('vendor').get(pk=deal_id)
    except Deal.DoesNotExist:
        raise DealNotFoundError(f"Deal with ID {deal_id} not found")


def ensure_deal_vendor(deal: Deal, vendor_user) -> None:
    """
    Raise NotDealVendorError unless ``vendor_user`` owns the deal.

    ``vendor_user=None`` means an internal caller and skips the check.
    """
    if vendor_user is None:
        return
    if deal.vendor.user_id != vendor_user.pk:
        raise NotDealVendorError()


# =============================================================================
# Claims
# =============================================================================

def _expire(queryset) -> int:
    """Lazily move time-expired active claims to ``expired``."""
    return queryset.filter(status__in=ACTIVE_STATUSES).update(status=ClaimStatus.EXPIRED)


@storage_guard
@transaction.atomic
def create_claim(*, user, deal: Deal, now=None, max_retries: int = 5) -> Claim:
    """
    Create a claim with a fresh claim code valid for ``CLAIM_CODE_TTL_HOURS``.

    Codes only have to be unique among active claims; on a collision the
    code is regenerated. The partial unique indexes on ``claim_code`` and
    ``(user, deal)`` back up the application checks under concurrency.

    Args:
        user: Customer claiming the deal
        deal: Deal being claimed
        now: Issuance time (defaults to now)
        max_retries: Attempts to find a code not held by an active claim

    Returns:
        Created Claim (``pending`` if the deal requires activation,
        otherwise ``claimed``)

    Raises:
        DuplicateActiveClaimError: If the user already has an unexpired
            pending or claimed claim for this deal
        RuntimeError: If no free code was found after ``max_retries``
    """
    now = now or timezone.now()
    own_claims = Claim.objects.filter(user=user, deal=deal)

    expired = _expire(own_claims.stale(now))
    if expired:
        logger.info("Expired %d stale claim(s) of user %s on deal %s", expired, user.pk, deal.pk)

    if own_claims.active().exists():
        raise DuplicateActiveClaimError()

    status = ClaimStatus.PENDING if deal.requires_activation else ClaimStatus.CLAIMED
    expires_at = now + timedelta(hours=settings.CLAIM_CODE_TTL_HOURS)

    for attempt in range(max_retries):
        code = generate_claim_code()
        if Claim.objects.active().filter(claim_code=code).exists():
            logger.debug("Claim code collision on attempt %d, regenerating", attempt + 1)
            continue

        try:
            with transaction.atomic():
                return Claim.objects.create(
                    user=user,
                    deal=deal,
                    claim_code=code,
                    code_expires_at=expires_at,
                    status=status,
                    claimed_at=now,
                )
        except IntegrityError:
            # Lost a race: either the same user claimed concurrently or
            # another claim took the code first
            if own_claims.active().exists():
                raise DuplicateActiveClaimError()
            continue

    raise RuntimeError(f"Failed to generate unique claim code after {max_retries} attempts")


@storage_guard
def find_claim_by_code(code: str):
    """
    Look up a claim by its code.

    An active claim wins; otherwise the most recent claim that ever held the
    code is returned so callers can report it as used or expired.

    Returns:
        Claim or None
    """
    normalized = normalize_code(code)
    if not normalized:
        return None

    claims = Claim.objects.select_related('deal', 'deal__vendor', 'user').filter(
        claim_code=normalized
    )
    return claims.active().first() or claims.order_by('-claimed_at').first()


@storage_guard
def mark_claim_expired(claim: Claim) -> bool:
    """Conditionally expire an active claim. Returns True if this call expired it."""
    updated = _expire(Claim.objects.filter(pk=claim.pk))
    if updated:
        claim.status = ClaimStatus.EXPIRED
        logger.info("Claim %s expired", claim.pk)
    return bool(updated)


@storage_guard
def expire_stale_claims(now=None, **lookup) -> int:
    """Expire every active claim whose code deadline has passed, optionally filtered."""
    count = _expire(Claim.objects.filter(**lookup).stale(now or timezone.now()))
    if count:
        logger.info("Expired %d stale claim(s)", count)
    return count


# =============================================================================
# Deal PIN secrets
# =============================================================================

def _store_hashed_pin(secret: DealVerificationSecret, pin: str, now) -> DealVerificationSecret:
    salt = secrets.token_hex(16)
    secret.pin_hash = make_password(pin, salt=salt)
    secret.pin_salt = salt
    secret.pin_created_at = now
    secret.pin_expires_at = now + timedelta(days=settings.DEAL_PIN_TTL_DAYS)
    secret.legacy_pin = ''
    secret.save()
    return secret


@storage_guard
@transaction.atomic
def hash_and_store_pin(*, deal: Deal, raw_pin: str, now=None) -> DealVerificationSecret:
    """
    Hash a new static PIN for a deal with a fresh per-deal salt.

    Replaces any previous hash and clears the legacy plaintext PIN. Rotating
    PINs are derived statelessly, so nothing else needs invalidating.

    Raises:
        WeakPinError: If the PIN fails the strength rules
    """
    pin = validate_pin_strength(raw_pin)
    now = now or timezone.now()

    secret, _ = DealVerificationSecret.objects.select_for_update().get_or_create(deal=deal)
    _store_hashed_pin(secret, pin, now)

    logger.info("Stored new hashed PIN for deal %s (expires %s)", deal.pk, secret.pin_expires_at)
    return secret


@storage_guard
def get_verification_secret(deal: Deal):
    return DealVerificationSecret.objects.filter(deal=deal).first()


@storage_guard
@transaction.atomic
def migrate_legacy_pin(secret: DealVerificationSecret, now=None) -> bool:
    """
    Move a plaintext legacy PIN into the hashed tier.

    Strength rules are not applied: the PIN already circulates and must
    keep working after migration.

    Returns:
        True if a PIN was migrated
    """
    secret = DealVerificationSecret.objects.select_for_update().get(pk=secret.pk)
    legacy = normalize_code(secret.legacy_pin)
    if not legacy:
        return False

    _store_hashed_pin(secret, legacy, now or timezone.now())
    logger.info("Migrated legacy plaintext PIN of deal %s", secret.deal_id)
    return True
