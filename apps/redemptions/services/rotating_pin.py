"""
Rotating deal PIN derivation.

A rotating PIN is never stored. It is recomputed on every check from the
deal id, the current time window and a server secret::

    window = floor(unix_time / interval)
    pin    = base36(HMAC-SHA256(secret, f"{deal_id}:{window}"))[:6]

The secret is passed in by the caller (it comes from
``settings.ROTATING_PIN_SECRET``), which keeps every function here pure.
A PIN from the immediately previous window is still accepted, so a PIN
read out just before rotation keeps working for one more interval.
"""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import NamedTuple

from .code_generation import CODE_ALPHABET, normalize_code

DEFAULT_INTERVAL_SECONDS = 30 * 60
ROTATING_PIN_LENGTH = 6

_PIN_SPACE = len(CODE_ALPHABET) ** ROTATING_PIN_LENGTH


class RotatingPin(NamedTuple):
    pin: str
    window: int
    next_rotation_at: datetime
    rotation_interval: int


def window_index(now: datetime, interval: int = DEFAULT_INTERVAL_SECONDS) -> int:
    return int(now.timestamp() // interval)


def window_start(window: int, interval: int = DEFAULT_INTERVAL_SECONDS) -> datetime:
    return datetime.fromtimestamp(window * interval, tz=dt_timezone.utc)


def derive_pin(secret: str, deal_id: int, window: int) -> str:
    """Map the keyed hash of ``(deal_id, window)`` onto 6 characters of A-Z0-9."""
    message = f"{deal_id}:{window}".encode()
    digest = hmac.new(secret.encode(), message, hashlib.sha256).digest()
    value = int.from_bytes(digest, 'big') % _PIN_SPACE

    chars = []
    for _ in range(ROTATING_PIN_LENGTH):
        value, index = divmod(value, len(CODE_ALPHABET))
        chars.append(CODE_ALPHABET[index])
    return ''.join(reversed(chars))


def current_window_pin(deal_id: int, now: datetime, secret: str,
                       interval: int = DEFAULT_INTERVAL_SECONDS) -> str:
    return derive_pin(secret, deal_id, window_index(now, interval))


def previous_window_pin(deal_id: int, now: datetime, secret: str,
                        interval: int = DEFAULT_INTERVAL_SECONDS) -> str:
    return derive_pin(secret, deal_id, window_index(now, interval) - 1)


def rotating_pin(deal_id: int, now: datetime, secret: str,
                 interval: int = DEFAULT_INTERVAL_SECONDS) -> RotatingPin:
    """Current PIN for a deal together with the moment it rotates."""
    window = window_index(now, interval)
    return RotatingPin(
        pin=derive_pin(secret, deal_id, window),
        window=window,
        next_rotation_at=window_start(window + 1, interval),
        rotation_interval=interval,
    )


def matches_rotating_pin(deal_id: int, submitted: str, now: datetime, secret: str,
                         interval: int = DEFAULT_INTERVAL_SECONDS) -> bool:
    """True if ``submitted`` equals the current or the previous window's PIN."""
    candidate = normalize_code(submitted)
    if len(candidate) != ROTATING_PIN_LENGTH:
        return False

    expected = (
        current_window_pin(deal_id, now, secret, interval),
        previous_window_pin(deal_id, now, secret, interval),
    )
    # Compare against both so timing does not reveal which window matched
    results = [hmac.compare_digest(candidate, pin) for pin in expected]
    return any(results)


def grace_deadline(now: datetime, interval: int = DEFAULT_INTERVAL_SECONDS) -> datetime:
    """Last moment the PIN of the current window is still accepted."""
    return window_start(window_index(now, interval) + 2, interval) - timedelta(microseconds=1)
