"""
Claim management service.

Customer-side claim operations: claiming a deal, activating a pending
claim, listing claims and rendering a claim as a QR code.
"""

import json
import logging
from io import BytesIO
from uuid import UUID

import qrcode
from django.db.models import QuerySet
from django.utils import timezone

from apps.accounts.models import User
from apps.redemptions.models import Claim, ClaimStatus

from . import credential_store
from .exceptions import (
    ClaimExpiredError,
    ClaimNotFoundError,
    DealUnavailableError,
    InvalidStateTransitionError,
)

logger = logging.getLogger(__name__)

QR_PAYLOAD_TYPE = 'deal_claim'


def claim_deal(*, user: User, deal_id: int, now=None) -> Claim:
    """
    Claim a deal and issue a claim code.

    Args:
        user: Customer claiming the deal
        deal_id: Deal to claim
        now: Claim time (defaults to now)

    Returns:
        Created Claim

    Raises:
        DealNotFoundError: If the deal doesn't exist
        DealUnavailableError: If the deal is inactive, unapproved, outside
            its validity window or sold out
        DuplicateActiveClaimError: If the user already holds an active claim
    """
    now = now or timezone.now()
    deal = credential_store.get_deal(deal_id)

    reason = deal.unavailable_reason(now)
    if reason:
        raise DealUnavailableError(reason)

    claim = credential_store.create_claim(user=user, deal=deal, now=now)
    logger.info("User %s claimed deal %s (claim %s, %s)", user.pk, deal.pk, claim.pk, claim.status)
    return claim


def get_user_claim(*, claim_id: UUID, user: User) -> Claim:
    try:
        return Claim.objects.select_related('deal', 'deal__vendor').get(pk=claim_id, user=user)
    except Claim.DoesNotExist:
        raise ClaimNotFoundError(f"Claim with ID {claim_id} not found")


def get_user_claims(*, user: User, status: str = None) -> QuerySet[Claim]:
    """
    Claims of a user, newest first.

    Stale active claims are expired first so the listed statuses are current.
    """
    credential_store.expire_stale_claims(user=user)

    claims = Claim.objects.filter(user=user).select_related('deal', 'deal__vendor')
    if status:
        claims = claims.filter(status=status)
    return claims.order_by('-claimed_at')


@credential_store.storage_guard
def activate_claim(*, claim_id: UUID, user: User, now=None) -> Claim:
    """
    Activate a pending claim so its code can be verified.

    Raises:
        ClaimNotFoundError: If the claim doesn't exist or isn't the user's
        ClaimExpiredError: If the code deadline already passed
        InvalidStateTransitionError: If the claim is not pending
    """
    now = now or timezone.now()
    claim = get_user_claim(claim_id=claim_id, user=user)

    if claim.is_active and claim.is_code_expired(now):
        credential_store.mark_claim_expired(claim)
        raise ClaimExpiredError()

    if not claim.can_transition_to(ClaimStatus.CLAIMED):
        raise InvalidStateTransitionError(f"Cannot activate a {claim.status} claim.")

    updated = Claim.objects.filter(pk=claim.pk, status=ClaimStatus.PENDING).update(
        status=ClaimStatus.CLAIMED
    )
    if not updated:
        raise InvalidStateTransitionError("Claim was changed concurrently.")

    claim.refresh_from_db()
    logger.info("Claim %s activated", claim.pk)
    return claim


def build_qr_payload(claim: Claim) -> str:
    """JSON payload a vendor's scanner reads from the claim QR code."""
    return json.dumps({
        'type': QR_PAYLOAD_TYPE,
        'claimCode': claim.claim_code,
        'dealId': claim.deal_id,
        'customerId': str(claim.user_id),
        'expiresAt': claim.code_expires_at.isoformat(),
    })


def render_claim_qr(claim: Claim) -> bytes:
    """
    Render the claim QR code as PNG bytes.

    Uses error correction level M, which survives a partly covered or
    scratched phone screen.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(build_qr_payload(claim))
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format='PNG')
    return buffer.getvalue()
