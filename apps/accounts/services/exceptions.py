"""
Account errors.

Like the redemption errors, each carries the HTTP status and machine code
the auth views answer with.
"""


class AccountsServiceError(Exception):
    """Base exception for accounts services."""

    status_code = 400
    code = 'account_error'


class UserRegistrationError(AccountsServiceError):
    """Email already taken or role not open to self-registration."""

    code = 'registration_failed'


class InvalidCredentialsError(AccountsServiceError):
    status_code = 401
    code = 'invalid_credentials'


class InactiveAccountError(AccountsServiceError):
    status_code = 403
    code = 'account_inactive'
