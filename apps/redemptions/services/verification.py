"""
Verification engine.

Checks claim codes and deal PINs at the point of sale and drives the
claim lifecycle::

    pending -> claimed -> used -> completed
    pending/claimed -> expired      (lazily, once the code deadline passes)
    claimed -> completed            (verify and complete in one step)

Every redeeming transition is a conditional UPDATE on the current status,
so of two concurrent verifications of the same code exactly one wins.
Each verification runs inside an ``attempt_throttle.Attempt``: the budget
is checked before any comparison and the outcome is logged before the
throttle lock is released. A redemption that fails rolls back on its own
savepoint, so its failed attempt is still recorded.
"""

import hmac
import logging
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.contrib.auth.hashers import check_password
from django.db import transaction
from django.utils import timezone

from apps.redemptions.models import AttemptKind, Claim, ClaimStatus

from . import attempt_throttle, credential_store, redemption_ledger
from .code_generation import generate_claim_code, normalize_code
from .exceptions import (
    AlreadyRedeemedError,
    ClaimExpiredError,
    DealNotFoundError,
    DealUnavailableError,
    InvalidCodeError,
    InvalidPinError,
    InvalidStateTransitionError,
)
from .rotating_pin import matches_rotating_pin

logger = logging.getLogger(__name__)


# =============================================================================
# PIN verifiers
# =============================================================================

class PinVerifier:
    """One tier of deal PIN verification."""

    name = None

    def check(self, deal, submitted: str, now) -> bool:
        raise NotImplementedError


class RotatingPinVerifier(PinVerifier):
    name = 'rotating'

    def __init__(self, secret: str, interval: int):
        self.secret = secret
        self.interval = interval

    def check(self, deal, submitted, now):
        return matches_rotating_pin(deal.pk, submitted, now, self.secret, self.interval)


class HashedPinVerifier(PinVerifier):
    """Static PIN hashed with the deal's own salt; rejected once expired."""

    name = 'hashed'

    def check(self, deal, submitted, now):
        secret = credential_store.get_verification_secret(deal)
        if secret is None or not secret.has_hashed_pin:
            return False
        if secret.is_pin_expired(now):
            return False
        return check_password(normalize_code(submitted), secret.pin_hash)


class LegacyPlaintextPinVerifier(PinVerifier):
    """Plaintext PIN of deals created before PINs were hashed."""

    name = 'legacy'

    def check(self, deal, submitted, now):
        secret = credential_store.get_verification_secret(deal)
        if secret is None or not secret.legacy_pin:
            return False
        return hmac.compare_digest(
            normalize_code(submitted).encode(),
            normalize_code(secret.legacy_pin).encode(),
        )


def build_pin_verifiers():
    """Verifier tiers in the order they are tried."""
    verifiers = [
        RotatingPinVerifier(settings.ROTATING_PIN_SECRET, settings.ROTATING_PIN_INTERVAL_SECONDS),
        HashedPinVerifier(),
    ]
    if settings.LEGACY_PIN_FALLBACK_ENABLED:
        verifiers.append(LegacyPlaintextPinVerifier())
    return verifiers


def match_pin(deal, submitted: str, now, verifiers=None):
    """Return the name of the first tier accepting ``submitted``, or None."""
    for verifier in verifiers if verifiers is not None else build_pin_verifiers():
        if verifier.check(deal, submitted, now):
            return verifier.name
    return None


# =============================================================================
# Claim transitions
# =============================================================================

def _ensure_code_redeemable(claim: Claim, now) -> None:
    """
    Reject a claim whose code can no longer be verified.

    Expiry wins over every other outcome. An active claim found past its
    deadline is moved to ``expired`` here.
    """
    if claim.status == ClaimStatus.EXPIRED or claim.is_code_expired(now):
        if claim.is_active:
            credential_store.mark_claim_expired(claim)
        raise ClaimExpiredError()
    if claim.is_redeemed:
        raise AlreadyRedeemedError()
    if claim.status == ClaimStatus.PENDING:
        raise InvalidStateTransitionError("Claim has not been activated yet.")


def _lost_race(claim: Claim):
    current = Claim.objects.get(pk=claim.pk)
    logger.warning("Claim %s changed concurrently, now %s", claim.pk, current.status)
    if current.status == ClaimStatus.EXPIRED:
        return ClaimExpiredError()
    return AlreadyRedeemedError()


@transaction.atomic
def _redeem(claim: Claim, now, *, to_status=ClaimStatus.USED, **fields) -> Claim:
    """
    Move a ``claimed`` claim to ``to_status`` and count the redemption.

    Raises:
        AlreadyRedeemedError: If another request redeemed the claim first
        ClaimExpiredError: If the claim was expired concurrently
    """
    updated = Claim.objects.filter(pk=claim.pk, status=ClaimStatus.CLAIMED).update(
        status=to_status,
        vendor_verified=True,
        verified_at=now,
        used_at=now,
        **fields,
    )
    if not updated:
        raise _lost_race(claim)

    redemption_ledger.record_redemption(
        deal_id=claim.deal_id,
        vendor_id=claim.deal.vendor_id,
        user_id=claim.user_id,
    )
    claim.refresh_from_db()
    return claim


@transaction.atomic
def _redeem_for_customer(deal, user_id, now) -> Claim:
    """Redeem the customer's open claim for a deal, or record a direct redemption."""
    credential_store.expire_stale_claims(now, user_id=user_id, deal=deal)

    claim = Claim.objects.select_related('deal').active().filter(user_id=user_id, deal=deal).first()
    if claim is not None:
        if claim.status == ClaimStatus.PENDING:
            Claim.objects.filter(pk=claim.pk, status=ClaimStatus.PENDING).update(
                status=ClaimStatus.CLAIMED
            )
        return _redeem(claim, now)

    claim = Claim.objects.create(
        user_id=user_id,
        deal=deal,
        claim_code=generate_claim_code(),
        code_expires_at=now + timedelta(hours=settings.CLAIM_CODE_TTL_HOURS),
        status=ClaimStatus.USED,
        vendor_verified=True,
        verified_at=now,
        claimed_at=now,
        used_at=now,
    )
    redemption_ledger.record_redemption(
        deal_id=deal.pk,
        vendor_id=deal.vendor_id,
        user_id=user_id,
    )
    return claim


def calculate_savings(deal, bill_amount: Decimal, actual_discount=None) -> Decimal:
    """Customer savings for a bill, never more than the bill itself."""
    bill_amount = Decimal(bill_amount)
    if actual_discount is not None:
        savings = Decimal(actual_discount)
    else:
        savings = bill_amount * deal.discount_percentage / Decimal(100)
    return min(savings, bill_amount).quantize(Decimal('0.01'))


# =============================================================================
# Operations
# =============================================================================

@credential_store.storage_guard
def verify_claim_code(*, code: str, identity, vendor_user=None, now=None) -> dict:
    """
    Verify a claim code at the point of sale and mark the claim used.

    Args:
        code: Code read out by the customer (case and whitespace ignored)
        identity: attempt_throttle.Identity of the caller
        vendor_user: Vendor account performing the check, or None for
            internal callers
        now: Verification time (defaults to now)

    Returns:
        Dict with ``valid``, ``claim``, ``deal`` and ``customer``

    Raises:
        RateLimitedError: Too many failed claim code attempts
        InvalidCodeError: No claim holds this code
        NotDealVendorError: The claim is for another vendor's deal
        ClaimExpiredError: The code is past its deadline
        AlreadyRedeemedError: The claim was already used or completed
    """
    now = now or timezone.now()

    with attempt_throttle.Attempt(kind=AttemptKind.CLAIM_CODE, identity=identity, now=now) as attempt:
        claim = credential_store.find_claim_by_code(code)
        if claim is None:
            raise InvalidCodeError()
        attempt.deal = claim.deal

        credential_store.ensure_deal_vendor(claim.deal, vendor_user)
        _ensure_code_redeemable(claim, now)
        claim = _redeem(claim, now)

    logger.info("Claim %s verified for deal %s", claim.pk, claim.deal_id)

    return {
        'valid': True,
        'claim': claim,
        'deal': claim.deal,
        'customer': claim.user,
    }


@credential_store.storage_guard
def complete_redemption(*, claim_code: str, bill_amount, identity, actual_discount=None,
                        vendor_user=None, now=None) -> dict:
    """
    Complete a redemption with the final bill and record the customer's savings.

    A ``used`` claim moves to ``completed``. A ``claimed`` claim is verified
    and completed in one step, which counts the redemption once.

    Args:
        claim_code: Claim code of the redemption
        bill_amount: Final bill before the discount
        identity: attempt_throttle.Identity of the caller
        actual_discount: Discount actually granted; derived from the deal's
            percentage when omitted
        vendor_user: Vendor account completing the sale
        now: Completion time (defaults to now)

    Returns:
        Dict with ``success``, ``customer_savings`` and ``claim``

    Raises:
        RateLimitedError: Too many failed claim code attempts
        InvalidCodeError: No claim holds this code
        NotDealVendorError: The claim is for another vendor's deal
        ClaimExpiredError: An unverified code is past its deadline
        AlreadyRedeemedError: The claim was already completed
    """
    now = now or timezone.now()

    with attempt_throttle.Attempt(kind=AttemptKind.CLAIM_CODE, identity=identity, now=now) as attempt:
        claim = credential_store.find_claim_by_code(claim_code)
        if claim is None:
            raise InvalidCodeError()
        attempt.deal = claim.deal

        credential_store.ensure_deal_vendor(claim.deal, vendor_user)

        savings = calculate_savings(claim.deal, bill_amount, actual_discount)
        completion = {
            'bill_amount': Decimal(bill_amount),
            'actual_savings': savings,
            'completed_at': now,
        }

        # A used claim was verified in time; only unverified codes can expire
        if claim.status != ClaimStatus.USED:
            _ensure_code_redeemable(claim, now)

        with transaction.atomic():
            if claim.status == ClaimStatus.USED:
                updated = Claim.objects.filter(pk=claim.pk, status=ClaimStatus.USED).update(
                    status=ClaimStatus.COMPLETED,
                    **completion,
                )
                if not updated:
                    raise _lost_race(claim)
                claim.refresh_from_db()
            else:
                claim = _redeem(claim, now, to_status=ClaimStatus.COMPLETED, **completion)

            redemption_ledger.record_savings(user_id=claim.user_id, amount=savings)

    logger.info("Claim %s completed, customer saved %s", claim.pk, savings)

    return {
        'success': True,
        'customer_savings': savings,
        'claim': claim,
    }


@credential_store.storage_guard
def verify_deal_pin(*, deal_id, submitted_pin: str, identity, now=None, verifiers=None) -> dict:
    """
    Verify a deal PIN against the rotating, hashed and legacy tiers in turn.

    For a signed-in customer a match also redeems the deal: their open
    claim is marked used, or a used claim is recorded when they have none.
    For anyone else (anonymous callers, vendors checking their own PIN,
    admins) a match only reports validity.

    Args:
        deal_id: Deal the PIN belongs to
        submitted_pin: PIN as entered
        identity: attempt_throttle.Identity of the caller
        now: Verification time (defaults to now)
        verifiers: Verifier tiers to use instead of build_pin_verifiers()

    Returns:
        Dict with ``valid``, ``method`` (tier that matched) and ``claim``
        (None unless the caller is a customer)

    Raises:
        DealNotFoundError: The deal does not exist
        RateLimitedError: Too many failed PIN attempts on this deal
        DealUnavailableError: The deal cannot be redeemed right now
        InvalidPinError: No tier accepted the PIN
    """
    now = now or timezone.now()
    try:
        deal = credential_store.get_deal(deal_id)
    except DealNotFoundError as exc:
        # Unknown deals are throttled and logged like a wrong PIN
        deal, missing = None, exc

    claim = None
    with attempt_throttle.Attempt(kind=AttemptKind.PIN, identity=identity, deal=deal, now=now):
        if deal is None:
            raise missing

        reason = deal.unavailable_reason(now)
        if reason:
            raise DealUnavailableError(reason)

        method = match_pin(deal, submitted_pin, now, verifiers)
        if method is None:
            raise InvalidPinError()

        if identity.is_customer:
            claim = _redeem_for_customer(deal, identity.user_id, now)

    logger.info("PIN verified for deal %s by %s via %s tier", deal.pk, identity, method)

    return {
        'valid': True,
        'method': method,
        'claim': claim,
    }
