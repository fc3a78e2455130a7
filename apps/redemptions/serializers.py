from decimal import Decimal

from rest_framework import serializers

from apps.accounts.serializers import UserPublicSerializer
from apps.deals.models import Deal

from .models import Claim, AttemptRecord


class DealMinimalSerializer(serializers.ModelSerializer):
    """Minimal deal info for nested serialization."""

    vendor_name = serializers.CharField(source='vendor.business_name', read_only=True)

    class Meta:
        model = Deal
        fields = ['id', 'title', 'discount_percentage', 'vendor_name', 'valid_until']
        read_only_fields = fields


class ClaimSerializer(serializers.ModelSerializer):
    """Claim as shown to the customer who owns it."""

    deal = DealMinimalSerializer(read_only=True)

    class Meta:
        model = Claim
        fields = [
            'id',
            'deal',
            'claim_code',
            'status',
            'code_expires_at',
            'vendor_verified',
            'verified_at',
            'bill_amount',
            'actual_savings',
            'claimed_at',
            'used_at',
            'completed_at',
        ]
        read_only_fields = fields


class VendorClaimSerializer(serializers.ModelSerializer):
    """Claim as shown to the vendor at the point of sale."""

    customer = UserPublicSerializer(source='user', read_only=True)
    deal = DealMinimalSerializer(read_only=True)

    class Meta:
        model = Claim
        fields = [
            'id',
            'deal',
            'customer',
            'claim_code',
            'status',
            'verified_at',
            'bill_amount',
            'actual_savings',
            'completed_at',
        ]
        read_only_fields = fields


class VerifyClaimCodeSerializer(serializers.Serializer):
    claim_code = serializers.CharField(max_length=20, trim_whitespace=True)


class CompleteRedemptionSerializer(serializers.Serializer):
    claim_code = serializers.CharField(max_length=20, trim_whitespace=True)
    bill_amount = serializers.DecimalField(
        max_digits=10,
        decimal_places=2,
        min_value=Decimal('0.01'),
    )
    actual_discount = serializers.DecimalField(
        max_digits=10,
        decimal_places=2,
        min_value=Decimal('0.00'),
        required=False,
        allow_null=True,
    )

    def validate(self, attrs):
        discount = attrs.get('actual_discount')
        if discount is not None and discount > attrs['bill_amount']:
            raise serializers.ValidationError({
                'actual_discount': 'Discount cannot exceed the bill amount.'
            })
        return attrs


class VerifyPinSerializer(serializers.Serializer):
    pin = serializers.CharField(max_length=20, trim_whitespace=True)


class SetDealPinSerializer(serializers.Serializer):
    """Leave ``pin`` empty to have one generated."""

    pin = serializers.CharField(max_length=8, required=False, allow_blank=True)


class AttemptRecordSerializer(serializers.ModelSerializer):

    class Meta:
        model = AttemptRecord
        fields = [
            'id',
            'kind',
            'user',
            'ip_address',
            'success',
            'failure_reason',
            'attempted_at',
        ]
        read_only_fields = fields


# Response serializers for API documentation

class ClaimCodeVerifiedSerializer(serializers.Serializer):
    valid = serializers.BooleanField()
    claim = VendorClaimSerializer()
    deal = DealMinimalSerializer()
    customer = UserPublicSerializer()


class RedemptionCompletedSerializer(serializers.Serializer):
    success = serializers.BooleanField()
    customer_savings = serializers.DecimalField(max_digits=10, decimal_places=2)
    claim = VendorClaimSerializer()


class PinVerifiedSerializer(serializers.Serializer):
    valid = serializers.BooleanField()
    method = serializers.CharField()
    claim = ClaimSerializer(allow_null=True)


class RotatingPinSerializer(serializers.Serializer):
    deal_id = serializers.IntegerField()
    pin = serializers.CharField()
    next_rotation_at = serializers.DateTimeField()
    valid_until = serializers.DateTimeField()
    rotation_interval = serializers.IntegerField()


class DealPinSetSerializer(serializers.Serializer):
    deal_id = serializers.IntegerField()
    pin = serializers.CharField()
    pin_expires_at = serializers.DateTimeField()


class ErrorResponseSerializer(serializers.Serializer):
    error = serializers.CharField()
    code = serializers.CharField()
