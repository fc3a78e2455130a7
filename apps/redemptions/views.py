import math

from django.conf import settings
from django.http import HttpResponse
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from drf_spectacular.utils import extend_schema, OpenApiParameter, OpenApiTypes

from .models import ClaimStatus
from .permissions import IsVendor
from .serializers import (
    DealMinimalSerializer,
    ClaimSerializer,
    VendorClaimSerializer,
    VerifyClaimCodeSerializer,
    CompleteRedemptionSerializer,
    VerifyPinSerializer,
    SetDealPinSerializer,
    AttemptRecordSerializer,
    ClaimCodeVerifiedSerializer,
    RedemptionCompletedSerializer,
    PinVerifiedSerializer,
    RotatingPinSerializer,
    DealPinSetSerializer,
    ErrorResponseSerializer,
)

from apps.accounts.serializers import UserPublicSerializer
from apps.redemptions.services import (
    Identity,
    claim_deal,
    activate_claim,
    get_user_claim,
    get_user_claims,
    render_claim_qr,
    verify_claim_code,
    complete_redemption,
    verify_deal_pin,
    current_rotating_pin,
    set_deal_pin,
    get_deal_attempts,
    # Exceptions
    RedemptionServiceError,
    RateLimitedError,
)


class ClaimPagination(PageNumberPagination):
    """Custom pagination for claims."""
    page_size = 20
    page_size_query_param = 'page_size'
    max_page_size = 100


def client_ip(request):
    if settings.TRUST_X_FORWARDED_FOR:
        forwarded = request.META.get('HTTP_X_FORWARDED_FOR', '')
        if forwarded:
            return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def identity_for(request) -> Identity:
    """Throttling identity of the caller."""
    return Identity.for_user(
        request.user,
        ip_address=client_ip(request),
        user_agent=request.META.get('HTTP_USER_AGENT', ''),
    )


def error_response(exc: RedemptionServiceError) -> Response:
    """Map a service error to its HTTP response."""
    body = {'error': str(exc), 'code': exc.code}
    headers = {}

    if isinstance(exc, RateLimitedError) and exc.retry_at:
        seconds = math.ceil((exc.retry_at - timezone.now()).total_seconds())
        headers['Retry-After'] = str(max(seconds, 1))
        body['retry_at'] = exc.retry_at.isoformat()

    return Response(body, status=exc.status_code, headers=headers)


# =============================================================================
# Customer endpoints
# =============================================================================

@extend_schema(
    request=None,
    responses={
        201: ClaimSerializer,
        400: ErrorResponseSerializer,
        404: ErrorResponseSerializer,
        409: ErrorResponseSerializer,
    },
    description="Claim a deal and receive a claim code valid for 24 hours.",
    tags=['claims'],
)
@api_view(['POST'])
@permission_classes([IsAuthenticated])
def claim(request, deal_id):
    """Claim a deal."""
    try:
        claim_obj = claim_deal(user=request.user, deal_id=deal_id)
    except RedemptionServiceError as e:
        return error_response(e)

    return Response(ClaimSerializer(claim_obj).data, status=status.HTTP_201_CREATED)


@extend_schema(
    parameters=[
        OpenApiParameter('status', OpenApiTypes.STR, enum=ClaimStatus.values,
                         description="Only claims in this status"),
    ],
    responses={200: ClaimSerializer(many=True), 503: ErrorResponseSerializer},
    description="List the current user's claims, newest first.",
    tags=['claims'],
)
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def my_claims(request):
    """List current user's claims."""
    try:
        claims = get_user_claims(user=request.user, status=request.query_params.get('status'))
    except RedemptionServiceError as e:
        return error_response(e)

    paginator = ClaimPagination()
    page = paginator.paginate_queryset(claims, request)
    return paginator.get_paginated_response(ClaimSerializer(page, many=True).data)


@extend_schema(
    request=None,
    responses={
        200: ClaimSerializer,
        404: ErrorResponseSerializer,
        409: ErrorResponseSerializer,
        410: ErrorResponseSerializer,
    },
    description="Activate a pending claim so its code can be verified.",
    tags=['claims'],
)
@api_view(['POST'])
@permission_classes([IsAuthenticated])
def activate(request, claim_id):
    """Activate a pending claim."""
    try:
        claim_obj = activate_claim(claim_id=claim_id, user=request.user)
    except RedemptionServiceError as e:
        return error_response(e)

    return Response(ClaimSerializer(claim_obj).data)


@extend_schema(
    responses={(200, 'image/png'): OpenApiTypes.BINARY, 404: ErrorResponseSerializer},
    description="QR code (PNG) of a claim for the vendor to scan.",
    tags=['claims'],
)
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def claim_qr(request, claim_id):
    """Render the claim QR code."""
    try:
        claim_obj = get_user_claim(claim_id=claim_id, user=request.user)
    except RedemptionServiceError as e:
        return error_response(e)

    response = HttpResponse(render_claim_qr(claim_obj), content_type='image/png')
    response['Cache-Control'] = 'no-store'
    return response


@extend_schema(
    request=VerifyPinSerializer,
    responses={
        200: PinVerifiedSerializer,
        400: ErrorResponseSerializer,
        404: ErrorResponseSerializer,
        429: ErrorResponseSerializer,
    },
    description=(
        "Verify a deal PIN given by the store. Signed-in customers redeem the "
        "deal with a correct PIN; anonymous callers only learn validity."
    ),
    tags=['verification'],
)
@api_view(['POST'])
@permission_classes([AllowAny])
def verify_pin(request, deal_id):
    """Verify a deal PIN."""
    serializer = VerifyPinSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        result = verify_deal_pin(
            deal_id=deal_id,
            submitted_pin=serializer.validated_data['pin'],
            identity=identity_for(request),
        )
    except RedemptionServiceError as e:
        return error_response(e)

    claim_obj = result['claim']
    return Response({
        'valid': result['valid'],
        'method': result['method'],
        'claim': ClaimSerializer(claim_obj).data if claim_obj else None,
    })


# =============================================================================
# Point of sale endpoints
# =============================================================================

@extend_schema(
    request=VerifyClaimCodeSerializer,
    responses={
        200: ClaimCodeVerifiedSerializer,
        403: ErrorResponseSerializer,
        404: ErrorResponseSerializer,
        409: ErrorResponseSerializer,
        410: ErrorResponseSerializer,
        429: ErrorResponseSerializer,
    },
    description="Verify a customer's claim code at the point of sale.",
    tags=['pos'],
)
@api_view(['POST'])
@permission_classes([IsVendor])
def verify_code(request):
    """Verify a claim code."""
    serializer = VerifyClaimCodeSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        result = verify_claim_code(
            code=serializer.validated_data['claim_code'],
            identity=identity_for(request),
            vendor_user=request.user,
        )
    except RedemptionServiceError as e:
        return error_response(e)

    return Response({
        'valid': result['valid'],
        'claim': VendorClaimSerializer(result['claim']).data,
        'deal': DealMinimalSerializer(result['deal']).data,
        'customer': UserPublicSerializer(result['customer']).data,
    })


@extend_schema(
    request=CompleteRedemptionSerializer,
    responses={
        200: RedemptionCompletedSerializer,
        403: ErrorResponseSerializer,
        404: ErrorResponseSerializer,
        409: ErrorResponseSerializer,
        410: ErrorResponseSerializer,
        429: ErrorResponseSerializer,
    },
    description="Complete a redemption with the final bill amount.",
    tags=['pos'],
)
@api_view(['POST'])
@permission_classes([IsVendor])
def complete(request):
    """Complete a redemption."""
    serializer = CompleteRedemptionSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        result = complete_redemption(
            claim_code=serializer.validated_data['claim_code'],
            bill_amount=serializer.validated_data['bill_amount'],
            actual_discount=serializer.validated_data.get('actual_discount'),
            identity=identity_for(request),
            vendor_user=request.user,
        )
    except RedemptionServiceError as e:
        return error_response(e)

    return Response({
        'success': result['success'],
        'customer_savings': str(result['customer_savings']),
        'claim': VendorClaimSerializer(result['claim']).data,
    })


# =============================================================================
# Vendor deal endpoints
# =============================================================================

@extend_schema(
    responses={
        200: RotatingPinSerializer,
        403: ErrorResponseSerializer,
        404: ErrorResponseSerializer,
    },
    description="Current rotating PIN of a deal. Changes every 30 minutes.",
    tags=['vendor'],
)
@api_view(['GET'])
@permission_classes([IsVendor])
def current_pin(request, deal_id):
    """Get the current rotating PIN."""
    try:
        result = current_rotating_pin(deal_id=deal_id, vendor_user=request.user)
    except RedemptionServiceError as e:
        return error_response(e)

    response = Response(RotatingPinSerializer(result).data)
    response['Cache-Control'] = 'no-store'
    return response


@extend_schema(
    request=SetDealPinSerializer,
    responses={
        200: DealPinSetSerializer,
        400: ErrorResponseSerializer,
        403: ErrorResponseSerializer,
        404: ErrorResponseSerializer,
    },
    description=(
        "Set the static PIN of a deal, or generate one when no PIN is sent. "
        "The PIN is only shown in this response."
    ),
    tags=['vendor'],
)
@api_view(['POST'])
@permission_classes([IsVendor])
def deal_pin(request, deal_id):
    """Set or generate the static deal PIN."""
    serializer = SetDealPinSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        result = set_deal_pin(
            deal_id=deal_id,
            vendor_user=request.user,
            raw_pin=serializer.validated_data.get('pin') or None,
        )
    except RedemptionServiceError as e:
        return error_response(e)

    response = Response(DealPinSetSerializer(result).data)
    response['Cache-Control'] = 'no-store'
    return response


@extend_schema(
    responses={
        200: AttemptRecordSerializer(many=True),
        403: ErrorResponseSerializer,
        404: ErrorResponseSerializer,
    },
    description="Most recent verification attempts on a deal.",
    tags=['vendor'],
)
@api_view(['GET'])
@permission_classes([IsVendor])
def deal_attempts(request, deal_id):
    """List verification attempts on a deal."""
    try:
        attempts = get_deal_attempts(deal_id=deal_id, vendor_user=request.user)
    except RedemptionServiceError as e:
        return error_response(e)

    return Response(AttemptRecordSerializer(attempts, many=True).data)
