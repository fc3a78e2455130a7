import pytest
from datetime import timedelta
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken
from django.utils import timezone

from apps.accounts.models import User, UserRole
from apps.deals.models import Vendor, Deal
from apps.redemptions.services import Identity


def make_vendor(email, business_name):
    """Create a vendor account with an approved vendor profile."""
    user = User.objects.create_user(
        email=email,
        password='TestPass123!',
        display_name=business_name,
        role=UserRole.VENDOR,
    )
    vendor = Vendor.objects.create(
        user=user,
        business_name=business_name,
        city='Brno',
        is_approved=True,
    )
    return user, vendor


def make_deal(vendor, **overrides):
    """Create an active, approved deal valid for the next 30 days."""
    fields = {
        'vendor': vendor,
        'title': 'Two coffees for one',
        'discount_percentage': 20,
        'valid_from': timezone.now() - timedelta(days=1),
        'valid_until': timezone.now() + timedelta(days=30),
        'is_active': True,
        'is_approved': True,
    }
    fields.update(overrides)
    return Deal.objects.create(**fields)


def authenticate(client, user):
    refresh = RefreshToken.for_user(user)
    client.credentials(HTTP_AUTHORIZATION=f'Bearer {refresh.access_token}')
    return client


@pytest.fixture
def api_client():
    """Return an unauthenticated API client."""
    return APIClient()


@pytest.fixture
def customer(db):
    """Create and return a customer."""
    return User.objects.create_user(
        email='customer@example.com',
        password='TestPass123!',
        display_name='Test Customer',
        phone='+420600111222',
    )


@pytest.fixture
def other_customer(db):
    """Create and return another customer."""
    return User.objects.create_user(
        email='othercustomer@example.com',
        password='TestPass123!',
        display_name='Other Customer',
    )


@pytest.fixture
def vendor(db):
    """Create and return the vendor owning ``deal``."""
    _, vendor = make_vendor('vendor@example.com', 'Corner Cafe')
    return vendor


@pytest.fixture
def vendor_user(vendor):
    return vendor.user


@pytest.fixture
def other_vendor(db):
    """Create and return a vendor that does not own ``deal``."""
    _, vendor = make_vendor('othervendor@example.com', 'Rival Roasters')
    return vendor


@pytest.fixture
def deal(vendor):
    """Create and return a claimable deal."""
    return make_deal(vendor)


@pytest.fixture
def customer_identity(customer):
    return Identity(user_id=customer.pk, ip_address='203.0.113.10', user_agent='pytest',
                    role=UserRole.CUSTOMER)


@pytest.fixture
def vendor_identity(vendor_user):
    return Identity(user_id=vendor_user.pk, ip_address='203.0.113.20', user_agent='pytest',
                    role=UserRole.VENDOR)


@pytest.fixture
def anonymous_identity():
    return Identity(ip_address='198.51.100.7', user_agent='pytest')


@pytest.fixture
def customer_client(customer):
    """Return API client authenticated as the customer."""
    return authenticate(APIClient(), customer)


@pytest.fixture
def vendor_client(vendor_user):
    """Return API client authenticated as the deal's vendor."""
    return authenticate(APIClient(), vendor_user)


@pytest.fixture
def other_vendor_client(other_vendor):
    """Return API client authenticated as a different vendor."""
    return authenticate(APIClient(), other_vendor.user)
