"""
Claim code and deal PIN generation.

Codes are bearer credentials, so every character comes from the
``secrets`` CSPRNG.
"""

import re
import secrets
import string

from .exceptions import WeakPinError

CODE_ALPHABET = string.ascii_uppercase + string.digits
CLAIM_CODE_LENGTH = 6
DEAL_PIN_LENGTH = 6

PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 8
PIN_MIN_DISTINCT = 2

WEAK_PIN_PATTERNS = [
    re.compile(r'(.)\1{2,}'),          # three or more identical characters
    re.compile(r'1234|4321|0123|3210'),  # sequential digits
]


def _random_code(length: int) -> str:
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_claim_code() -> str:
    """Return a fresh 6-character claim code from A-Z0-9."""
    return _random_code(CLAIM_CODE_LENGTH)


def generate_deal_pin(max_attempts: int = 100) -> str:
    """
    Return a 6-character alphanumeric deal PIN that passes the strength rules.

    Raises:
        RuntimeError: If no acceptable PIN was drawn in ``max_attempts`` tries
    """
    for _ in range(max_attempts):
        pin = _random_code(DEAL_PIN_LENGTH)
        if pin_strength_problem(pin) is None:
            return pin
    raise RuntimeError(f"Failed to generate an acceptable PIN after {max_attempts} attempts")


def normalize_code(value) -> str:
    """Canonical form of a submitted code or PIN: trimmed and upper-cased."""
    return str(value or '').strip().upper()


def pin_strength_problem(pin: str):
    """Return a description of why ``pin`` is weak, or None if it is acceptable."""
    if not PIN_MIN_LENGTH <= len(pin) <= PIN_MAX_LENGTH:
        return f"PIN must be {PIN_MIN_LENGTH} to {PIN_MAX_LENGTH} characters long"
    if not pin.isascii() or not pin.isalnum():
        return "PIN must contain only letters and digits"
    if len(set(pin)) < PIN_MIN_DISTINCT:
        return f"PIN must contain at least {PIN_MIN_DISTINCT} different characters"
    for pattern in WEAK_PIN_PATTERNS:
        if pattern.search(pin):
            return "PIN cannot contain repeated or sequential patterns"
    return None


def validate_pin_strength(pin: str) -> str:
    """
    Normalize ``pin`` and check it against the strength rules.

    Returns:
        The normalized PIN

    Raises:
        WeakPinError: If the PIN is too short, too simple or patterned
    """
    normalized = normalize_code(pin)
    problem = pin_strength_problem(normalized)
    if problem:
        raise WeakPinError(problem)
    return normalized
