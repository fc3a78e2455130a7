# ==========================================
# apps/deals/models.py
# ==========================================

from decimal import Decimal

from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.utils import timezone


class Vendor(models.Model):
    """Merchant that publishes deals and verifies them at the point of sale."""
    
    user = models.OneToOneField(
        'accounts.User',
        on_delete=models.CASCADE,
        related_name='vendor_profile'
    )
    business_name = models.CharField(max_length=200)
    city = models.CharField(max_length=100, blank=True)
    is_approved = models.BooleanField(default=False)
    
    # Redemption counter (written only by the redemption ledger)
    total_redemptions = models.PositiveIntegerField(default=0)
    
    created_at = models.DateTimeField(auto_now_add=True)
    
    class Meta:
        db_table = 'vendors'
        ordering = ['business_name']
    
    def __str__(self):
        return self.business_name


class Deal(models.Model):
    """
    Discount offer published by a vendor.

    Listing management lives outside this service; the redemption engine
    only reads availability fields and increments the counters.
    """
    
    vendor = models.ForeignKey(
        Vendor,
        on_delete=models.CASCADE,
        related_name='deals'
    )
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    
    # Pricing
    discount_percentage = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(100)]
    )
    original_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    discounted_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    
    # Availability
    valid_from = models.DateTimeField(default=timezone.now)
    valid_until = models.DateTimeField()
    is_active = models.BooleanField(default=True)
    is_approved = models.BooleanField(default=False)
    max_redemptions = models.PositiveIntegerField(null=True, blank=True)
    
    # Claims start as pending until activated
    requires_activation = models.BooleanField(default=False)
    
    # Redemption counters (written only by the redemption ledger)
    current_redemptions = models.PositiveIntegerField(default=0)
    total_redemptions = models.PositiveIntegerField(default=0)
    
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    
    class Meta:
        db_table = 'deals'
        indexes = [
            models.Index(fields=['vendor', 'is_active'], name='deals_vendor_active_idx'),
            models.Index(fields=['valid_until'], name='deals_valid_until_idx'),
        ]
        ordering = ['-created_at']
    
    def __str__(self):
        return f"{self.title} ({self.discount_percentage}% off)"
    
    def unavailable_reason(self, now=None):
        """Return why the deal cannot be claimed right now, or None."""
        now = now or timezone.now()
        if not self.is_active or not self.is_approved:
            return "Deal is not active or approved"
        if now < self.valid_from:
            return "Deal is not yet available"
        if now > self.valid_until:
            return "Deal has expired"
        if self.max_redemptions is not None and self.current_redemptions >= self.max_redemptions:
            return "Deal has reached its redemption limit"
        return None
