"""
Redemption ledger.

Counter bumps for a successful redemption. Each counter is incremented
in the database with a single UPDATE so concurrent redemptions never
lose an increment; a NULL counter is treated as zero.
"""

import logging
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db import models
from django.db.models import F, Value
from django.db.models.functions import Coalesce

from apps.deals.models import Deal, Vendor

from .credential_store import storage_guard

logger = logging.getLogger(__name__)


def _increment(field_name):
    return Coalesce(F(field_name), Value(0), output_field=models.PositiveIntegerField()) + 1


@storage_guard
def record_redemption(*, deal_id, vendor_id, user_id) -> None:
    """
    Count one redemption on the deal, its vendor and the customer.

    Called inside the same transaction that moves the claim to a redeemed
    status, so the counters and the claim commit together.
    """
    Deal.objects.filter(pk=deal_id).update(
        current_redemptions=_increment('current_redemptions'),
        total_redemptions=_increment('total_redemptions'),
    )
    Vendor.objects.filter(pk=vendor_id).update(
        total_redemptions=_increment('total_redemptions'),
    )
    get_user_model().objects.filter(pk=user_id).update(
        deals_claimed=_increment('deals_claimed'),
    )

    logger.info("Recorded redemption of deal %s for user %s", deal_id, user_id)


@storage_guard
def record_savings(*, user_id, amount: Decimal) -> None:
    """Add the savings of a completed redemption to the customer's total."""
    get_user_model().objects.filter(pk=user_id).update(
        total_savings=Coalesce(
            F('total_savings'),
            Value(Decimal('0.00')),
            output_field=models.DecimalField(max_digits=12, decimal_places=2),
        ) + amount,
    )
