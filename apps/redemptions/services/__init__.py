"""
Redemptions app services layer.

Services contain the claim and verification logic. Views call them and
translate ``RedemptionServiceError`` subclasses into HTTP responses.
"""

from .exceptions import (
    RedemptionServiceError,
    DuplicateActiveClaimError,
    ClaimExpiredError,
    AlreadyRedeemedError,
    InvalidCodeError,
    ClaimNotFoundError,
    InvalidPinError,
    WeakPinError,
    RateLimitedError,
    DealNotFoundError,
    DealUnavailableError,
    NotDealVendorError,
    InvalidStateTransitionError,
    StorageUnavailableError,
)

from .attempt_throttle import Identity

from .claim_management import (
    claim_deal,
    activate_claim,
    get_user_claim,
    get_user_claims,
    build_qr_payload,
    render_claim_qr,
)

from .verification import (
    verify_claim_code,
    complete_redemption,
    verify_deal_pin,
)

from .pin_management import (
    current_rotating_pin,
    set_deal_pin,
    get_deal_attempts,
    migrate_legacy_pins,
)


__all__ = [
    # Exceptions
    'RedemptionServiceError',
    'DuplicateActiveClaimError',
    'ClaimExpiredError',
    'AlreadyRedeemedError',
    'InvalidCodeError',
    'ClaimNotFoundError',
    'InvalidPinError',
    'WeakPinError',
    'RateLimitedError',
    'DealNotFoundError',
    'DealUnavailableError',
    'NotDealVendorError',
    'InvalidStateTransitionError',
    'StorageUnavailableError',

    # Throttling
    'Identity',

    # Claims
    'claim_deal',
    'activate_claim',
    'get_user_claim',
    'get_user_claims',
    'build_qr_payload',
    'render_claim_qr',

    # Point of sale
    'verify_claim_code',
    'complete_redemption',
    'verify_deal_pin',

    # Deal PINs
    'current_rotating_pin',
    'set_deal_pin',
    'get_deal_attempts',
    'migrate_legacy_pins',
]
