# ==========================================
# apps/deals/admin.py
# ==========================================

from django.contrib import admin
from apps.deals.models import Vendor, Deal


class DealInline(admin.TabularInline):
    """Inline admin for a vendor's deals."""
    model = Deal
    extra = 0
    fields = [
        'title',
        'discount_percentage',
        'valid_until',
        'is_active',
        'is_approved',
        'current_redemptions',
    ]
    readonly_fields = ['current_redemptions']
    show_change_link = True


@admin.register(Vendor)
class VendorAdmin(admin.ModelAdmin):
    """Admin interface for vendors."""

    list_display = [
        'business_name',
        'user',
        'city',
        'is_approved',
        'total_redemptions',
        'created_at',
    ]
    list_filter = ['is_approved', 'city']
    search_fields = ['business_name', 'user__email', 'city']
    readonly_fields = ['total_redemptions', 'created_at']
    inlines = [DealInline]
    ordering = ['business_name']

    actions = ['approve_vendors']

    @admin.action(description='Approve selected vendors')
    def approve_vendors(self, request, queryset):
        count = queryset.update(is_approved=True)
        self.message_user(request, f'Approved {count} vendor(s).')


@admin.register(Deal)
class DealAdmin(admin.ModelAdmin):
    """
    Admin interface for deals.

    Redemption counters are read-only; only the redemption ledger writes them.
    """

    list_display = [
        'title',
        'vendor',
        'discount_percentage',
        'valid_until',
        'is_active',
        'is_approved',
        'current_redemptions',
        'max_redemptions',
    ]
    list_filter = [
        'is_active',
        'is_approved',
        'requires_activation',
        'valid_until',
    ]
    search_fields = [
        'title',
        'description',
        'vendor__business_name',
    ]
    readonly_fields = [
        'current_redemptions',
        'total_redemptions',
        'created_at',
        'updated_at',
    ]
    list_select_related = ['vendor']
    date_hierarchy = 'created_at'
    ordering = ['-created_at']

    fieldsets = (
        ('Basic Information', {
            'fields': ('vendor', 'title', 'description')
        }),
        ('Pricing', {
            'fields': ('discount_percentage', 'original_price', 'discounted_price')
        }),
        ('Availability', {
            'fields': (
                'valid_from',
                'valid_until',
                'is_active',
                'is_approved',
                'max_redemptions',
                'requires_activation',
            )
        }),
        ('Redemptions', {
            'fields': ('current_redemptions', 'total_redemptions'),
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )

    actions = ['approve_deals', 'deactivate_deals']

    @admin.action(description='Approve selected deals')
    def approve_deals(self, request, queryset):
        count = queryset.update(is_approved=True)
        self.message_user(request, f'Approved {count} deal(s).')

    @admin.action(description='Deactivate selected deals')
    def deactivate_deals(self, request, queryset):
        count = queryset.update(is_active=False)
        self.message_user(request, f'Deactivated {count} deal(s).')
