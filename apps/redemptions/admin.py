# ==========================================
# apps/redemptions/admin.py
# ==========================================

from django.contrib import admin
from django.utils.html import format_html

from apps.redemptions.models import Claim, ClaimStatus, DealVerificationSecret, AttemptRecord


STATUS_COLORS = {
    ClaimStatus.PENDING: '#B8860B',
    ClaimStatus.CLAIMED: '#1E6FB8',
    ClaimStatus.USED: '#6B8E5E',
    ClaimStatus.COMPLETED: '#2C1810',
    ClaimStatus.EXPIRED: '#999999',
}


@admin.register(Claim)
class ClaimAdmin(admin.ModelAdmin):
    """
    Admin interface for claims.

    Status only changes through the verification services, so every field
    is read-only here.
    """

    list_display = [
        'claim_code',
        'deal',
        'user',
        'status_badge',
        'code_expires_at',
        'vendor_verified',
        'actual_savings',
        'claimed_at',
    ]
    list_filter = ['status', 'vendor_verified', 'claimed_at']
    search_fields = ['claim_code', 'user__email', 'deal__title']
    list_select_related = ['deal', 'user']
    date_hierarchy = 'claimed_at'
    ordering = ['-claimed_at']

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def status_badge(self, obj):
        """Display status as colored badge."""
        return format_html(
            '<span style="background: {}; color: white; padding: 3px 8px; '
            'border-radius: 10px; font-size: 11px;">{}</span>',
            STATUS_COLORS.get(obj.status, '#ccc'),
            obj.get_status_display(),
        )
    status_badge.short_description = 'Status'
    status_badge.admin_order_field = 'status'


@admin.register(DealVerificationSecret)
class DealVerificationSecretAdmin(admin.ModelAdmin):
    """PIN metadata only; hashes and legacy PINs are never displayed."""

    list_display = ['deal', 'has_hashed_pin', 'has_legacy_pin', 'pin_created_at', 'pin_expires_at']
    fields = ['deal', 'pin_created_at', 'pin_expires_at', 'updated_at']
    readonly_fields = fields
    search_fields = ['deal__title']

    def has_add_permission(self, request):
        return False

    @admin.display(boolean=True, description='Hashed PIN')
    def has_hashed_pin(self, obj):
        return obj.has_hashed_pin

    @admin.display(boolean=True, description='Legacy PIN')
    def has_legacy_pin(self, obj):
        return bool(obj.legacy_pin)


@admin.register(AttemptRecord)
class AttemptRecordAdmin(admin.ModelAdmin):
    """Read-only audit log of verification attempts."""

    list_display = [
        'attempted_at',
        'kind',
        'deal',
        'user',
        'ip_address',
        'success',
        'failure_reason',
    ]
    list_filter = ['kind', 'success', 'failure_reason', 'attempted_at']
    search_fields = ['ip_address', 'user__email', 'deal__title']
    list_select_related = ['deal', 'user']
    date_hierarchy = 'attempted_at'

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
