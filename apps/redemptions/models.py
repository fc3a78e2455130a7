from django.db import models
from django.db.models import Q
from django.utils import timezone
import uuid


class ClaimStatus(models.TextChoices):
    PENDING = 'pending', 'Pending activation'
    CLAIMED = 'claimed', 'Claimed'
    USED = 'used', 'Used'
    COMPLETED = 'completed', 'Completed'
    EXPIRED = 'expired', 'Expired'


# Statuses in which a claim still holds its code and blocks a second claim
ACTIVE_STATUSES = (ClaimStatus.PENDING, ClaimStatus.CLAIMED)

# Statuses a successful verification can no longer leave
REDEEMED_STATUSES = (ClaimStatus.USED, ClaimStatus.COMPLETED)

ALLOWED_TRANSITIONS = {
    ClaimStatus.PENDING: {ClaimStatus.CLAIMED, ClaimStatus.EXPIRED},
    ClaimStatus.CLAIMED: {ClaimStatus.USED, ClaimStatus.COMPLETED, ClaimStatus.EXPIRED},
    ClaimStatus.USED: {ClaimStatus.COMPLETED},
    ClaimStatus.COMPLETED: set(),
    ClaimStatus.EXPIRED: set(),
}


class ClaimQuerySet(models.QuerySet):

    def active(self):
        return self.filter(status__in=ACTIVE_STATUSES)

    def stale(self, now=None):
        """Active claims whose code has passed its deadline."""
        return self.active().filter(code_expires_at__lt=now or timezone.now())


class Claim(models.Model):
    """One customer's claim of one deal, identified by a short claim code."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        'accounts.User',
        on_delete=models.CASCADE,
        related_name='claims'
    )
    deal = models.ForeignKey(
        'deals.Deal',
        on_delete=models.CASCADE,
        related_name='claims'
    )

    # Bearer credential: possession is enough to redeem until expiry
    claim_code = models.CharField(max_length=6, db_index=True)
    code_expires_at = models.DateTimeField()

    status = models.CharField(
        max_length=20,
        choices=ClaimStatus.choices,
        default=ClaimStatus.CLAIMED
    )

    # Filled in when the vendor enters the transaction amount
    bill_amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    actual_savings = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    # Set together, exactly once
    vendor_verified = models.BooleanField(default=False)
    verified_at = models.DateTimeField(null=True, blank=True)

    claimed_at = models.DateTimeField(default=timezone.now)
    used_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    objects = ClaimQuerySet.as_manager()

    class Meta:
        db_table = 'deal_claims'
        constraints = [
            models.UniqueConstraint(
                fields=['claim_code'],
                condition=Q(status__in=['pending', 'claimed']),
                name='unique_active_claim_code',
            ),
            models.UniqueConstraint(
                fields=['user', 'deal'],
                condition=Q(status__in=['pending', 'claimed']),
                name='unique_active_claim_per_user_deal',
            ),
            models.CheckConstraint(
                condition=(
                    Q(vendor_verified=True, verified_at__isnull=False)
                    | Q(vendor_verified=False, verified_at__isnull=True)
                ),
                name='verified_at_iff_vendor_verified',
            ),
        ]
        indexes = [
            models.Index(fields=['user', 'deal'], name='claims_user_deal_idx'),
            models.Index(fields=['deal', 'status'], name='claims_deal_status_idx'),
            models.Index(fields=['status', 'code_expires_at'], name='claims_status_expiry_idx'),
        ]
        ordering = ['-claimed_at']

    def __str__(self):
        return f"{self.claim_code} - {self.deal_id} ({self.status})"

    @property
    def is_active(self):
        return self.status in ACTIVE_STATUSES

    @property
    def is_redeemed(self):
        return self.status in REDEEMED_STATUSES

    def is_code_expired(self, now=None):
        return (now or timezone.now()) > self.code_expires_at

    def can_transition_to(self, new_status):
        return new_status in ALLOWED_TRANSITIONS[self.status]


class DealVerificationSecret(models.Model):
    """
    Per-deal static PIN, stored only as an adaptive hash with its own salt.

    ``legacy_pin`` holds the plaintext PIN of deals created before hashing;
    ``manage.py migrate_legacy_pins`` moves it into ``pin_hash``.
    """

    deal = models.OneToOneField(
        'deals.Deal',
        on_delete=models.CASCADE,
        related_name='verification_secret'
    )
    pin_hash = models.CharField(max_length=255, blank=True)
    pin_salt = models.CharField(max_length=64, blank=True)
    pin_created_at = models.DateTimeField(null=True, blank=True)
    pin_expires_at = models.DateTimeField(null=True, blank=True)

    legacy_pin = models.CharField(max_length=16, blank=True)

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'deal_verification_secrets'

    def __str__(self):
        return f"PIN for deal {self.deal_id}"

    @property
    def has_hashed_pin(self):
        return bool(self.pin_hash and self.pin_salt)

    def is_pin_expired(self, now=None):
        return self.pin_expires_at is not None and (now or timezone.now()) > self.pin_expires_at


class AttemptKind(models.TextChoices):
    PIN = 'pin', 'Deal PIN'
    CLAIM_CODE = 'claim_code', 'Claim code'


class AttemptRecord(models.Model):
    """
    Append-only audit row for every verification try.

    Rows are never updated or deleted; they back both rate limiting and
    dispute resolution.
    """

    kind = models.CharField(max_length=20, choices=AttemptKind.choices)
    deal = models.ForeignKey(
        'deals.Deal',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='verification_attempts'
    )
    user = models.ForeignKey(
        'accounts.User',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='verification_attempts'
    )
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=500, blank=True)
    success = models.BooleanField()
    failure_reason = models.CharField(max_length=50, blank=True)
    attempted_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = 'verification_attempts'
        indexes = [
            models.Index(fields=['deal', 'attempted_at'], name='attempts_deal_time_idx'),
            models.Index(fields=['kind', 'attempted_at'], name='attempts_kind_time_idx'),
            models.Index(fields=['user', 'attempted_at'], name='attempts_user_time_idx'),
            models.Index(fields=['ip_address', 'attempted_at'], name='attempts_ip_time_idx'),
        ]
        ordering = ['-attempted_at']

    def __str__(self):
        outcome = 'ok' if self.success else (self.failure_reason or 'failed')
        return f"{self.kind} attempt on deal {self.deal_id}: {outcome}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Attempt records are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Attempt records are append-only")


class ThrottleBucket(models.Model):
    """
    Lock row for one throttling scope (an identity, per deal for PINs).

    Verification tries in the same scope lock this row, so their budget
    check and attempt record happen one try at a time.
    """

    key = models.CharField(max_length=255, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'verification_throttle_buckets'

    def __str__(self):
        return self.key
