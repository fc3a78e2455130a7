"""User registration service."""

import logging

from django.db import transaction, IntegrityError
from django.contrib.auth import get_user_model

from apps.accounts.models import UserRole
from .exceptions import UserRegistrationError

User = get_user_model()

logger = logging.getLogger(__name__)


@transaction.atomic
def register_user(
    *,
    email: str,
    password: str,
    display_name: str = "",
    phone: str = "",
    role: str = UserRole.CUSTOMER
) -> User:
    """
    Register a new customer or vendor account.

    Admin accounts cannot be self-registered; they are created with
    ``createsuperuser``.

    Args:
        email: User's email address
        password: User's password (will be hashed)
        display_name: Optional display name
        phone: Optional phone number
        role: ``customer`` (default) or ``vendor``

    Returns:
        Created User instance

    Raises:
        UserRegistrationError: If the email is taken or the role is not allowed
    """
    if role not in (UserRole.CUSTOMER, UserRole.VENDOR):
        raise UserRegistrationError(f"Cannot self-register with role '{role}'")

    if User.objects.filter(email__iexact=email).exists():
        raise UserRegistrationError("A user with this email already exists")

    try:
        user = User.objects.create_user(
            email=email,
            password=password,
            display_name=display_name,
            phone=phone,
            role=role,
        )
    except IntegrityError:
        raise UserRegistrationError("A user with this email already exists")

    logger.info("Registered %s account %s", role, user.id)
    return user
