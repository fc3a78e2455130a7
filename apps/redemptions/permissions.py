from rest_framework import permissions

from apps.accounts.models import UserRole


class IsVendor(permissions.BasePermission):
    """
    Permission: User must have the vendor role and a vendor profile.

    Ownership of a specific deal is checked by the services.
    """

    message = 'Only vendor accounts can do this.'

    def has_permission(self, request, view):
        user = request.user
        return bool(
            user
            and user.is_authenticated
            and user.role == UserRole.VENDOR
            and hasattr(user, 'vendor_profile')
        )
