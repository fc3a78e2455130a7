from django.urls import path
from . import views

app_name = 'redemptions'

urlpatterns = [
    # Customer
    # POST /api/redemptions/deals/{deal_id}/claim/        - Claim a deal
    # GET  /api/redemptions/claims/                       - My claims
    # POST /api/redemptions/claims/{id}/activate/         - Activate pending claim
    # GET  /api/redemptions/claims/{id}/qr/               - Claim QR code (PNG)
    # POST /api/redemptions/deals/{deal_id}/verify-pin/   - Verify deal PIN
    path('deals/<int:deal_id>/claim/', views.claim, name='claim-deal'),
    path('claims/', views.my_claims, name='my-claims'),
    path('claims/<uuid:claim_id>/activate/', views.activate, name='activate-claim'),
    path('claims/<uuid:claim_id>/qr/', views.claim_qr, name='claim-qr'),
    path('deals/<int:deal_id>/verify-pin/', views.verify_pin, name='verify-pin'),

    # Point of sale (vendor)
    path('pos/verify-claim-code/', views.verify_code, name='verify-claim-code'),
    path('pos/complete-redemption/', views.complete, name='complete-redemption'),

    # Vendor deal management
    path('vendor/deals/<int:deal_id>/current-pin/', views.current_pin, name='current-pin'),
    path('vendor/deals/<int:deal_id>/pin/', views.deal_pin, name='deal-pin'),
    path('vendor/deals/<int:deal_id>/attempts/', views.deal_attempts, name='deal-attempts'),
]
