"""
Domain exceptions for the redemptions app.

These exceptions represent business rule violations raised by the
redemptions services layer, separate from HTTP concerns. Views catch
``RedemptionServiceError`` and turn it into a response using ``status_code``
and ``code``.

Exception Hierarchy:
    RedemptionServiceError (base)
    ├── DuplicateActiveClaimError
    ├── ClaimExpiredError
    ├── AlreadyRedeemedError
    ├── InvalidCodeError
    ├── ClaimNotFoundError
    ├── InvalidPinError
    │   └── WeakPinError
    ├── RateLimitedError
    ├── DealNotFoundError
    ├── DealUnavailableError
    ├── NotDealVendorError
    ├── InvalidStateTransitionError
    └── StorageUnavailableError

Only ``StorageUnavailableError`` is transient; callers may retry it. The
engine itself never retries anything.
"""


class RedemptionServiceError(Exception):
    """Base exception for all redemption service errors."""

    status_code = 400
    code = 'redemption_error'
    default_message = 'Redemption request failed.'
    # Whether a verification that fails with this error uses up attempt budget
    counts_as_attempt = True

    def __init__(self, message=None):
        super().__init__(message or self.default_message)


class DuplicateActiveClaimError(RedemptionServiceError):
    """Raised when the user already holds an unexpired, unused claim for the deal."""

    status_code = 409
    code = 'duplicate_active_claim'
    default_message = 'You already have an active claim for this deal.'


class ClaimExpiredError(RedemptionServiceError):
    """Raised when a claim code is used after its deadline."""

    status_code = 410
    code = 'claim_expired'
    default_message = 'Claim code has expired. Please claim the deal again.'


class AlreadyRedeemedError(RedemptionServiceError):
    """Raised when a claim has already been verified or completed."""

    status_code = 409
    code = 'already_redeemed'
    default_message = 'Claim code has already been used.'


class InvalidCodeError(RedemptionServiceError):
    """Raised when no claim matches the submitted code."""

    status_code = 404
    code = 'invalid_code'
    default_message = 'Invalid claim code.'


class ClaimNotFoundError(RedemptionServiceError):
    """Raised when a claim id does not exist or belongs to someone else."""

    status_code = 404
    code = 'claim_not_found'
    default_message = 'Claim not found.'


class InvalidPinError(RedemptionServiceError):
    """Raised when a deal PIN does not match any verification tier."""

    status_code = 400
    code = 'invalid_pin'
    default_message = 'Invalid PIN, please try again.'


class WeakPinError(InvalidPinError):
    """Raised when a vendor tries to set a PIN that fails the strength rules."""

    code = 'weak_pin'
    default_message = 'PIN does not meet the strength requirements.'


class RateLimitedError(RedemptionServiceError):
    """
    Raised when an identity exceeded its failed-attempt budget.

    ``retry_at`` is the earliest moment the identity may try again.
    """

    status_code = 429
    code = 'rate_limited'
    default_message = 'Too many failed attempts. Please try again later.'

    def __init__(self, message=None, retry_at=None):
        super().__init__(message)
        self.retry_at = retry_at


class DealNotFoundError(RedemptionServiceError):
    """Raised when a deal does not exist."""

    status_code = 404
    code = 'deal_not_found'
    default_message = 'Deal not found.'


class DealUnavailableError(RedemptionServiceError):
    """Raised when a deal is inactive, unapproved, out of its window or sold out."""

    status_code = 400
    code = 'deal_unavailable'
    default_message = 'This deal is not currently available.'


class NotDealVendorError(RedemptionServiceError):
    """Raised when a vendor acts on a deal that belongs to another vendor."""

    status_code = 403
    code = 'not_deal_vendor'
    default_message = 'This deal does not belong to your store.'


class InvalidStateTransitionError(RedemptionServiceError):
    """Raised when a claim is asked to move to a state its lifecycle forbids."""

    status_code = 409
    code = 'invalid_state_transition'
    default_message = 'Invalid state transition for this claim.'


class StorageUnavailableError(RedemptionServiceError):
    """Raised when the database cannot be reached; safe for the caller to retry."""

    status_code = 503
    code = 'storage_unavailable'
    default_message = 'Storage is temporarily unavailable. Please retry.'
    counts_as_attempt = False
