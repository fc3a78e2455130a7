"""
Attempt throttle.

Every verification try is appended to ``AttemptRecord``. The failed rows
in that log decide whether the next try is allowed:

    PIN attempts        per (deal, identity)
    Claim code attempts per identity, across all codes

An identity gets ``PIN_ATTEMPTS_PER_HOUR`` failures per rolling hour and
``PIN_ATTEMPTS_PER_DAY`` failures per rolling day. A throttled try is
itself logged but does not extend the lockout.

Tries in one scope are serialized on a ``ThrottleBucket`` row lock, so
simultaneous guesses cannot all pass the budget check before any of them
is counted.
"""

import logging
import sys
from datetime import timedelta
from typing import NamedTuple, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.accounts.models import UserRole
from apps.redemptions.models import AttemptKind, AttemptRecord, ThrottleBucket

from .credential_store import storage_guard
from .exceptions import RateLimitedError, RedemptionServiceError

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)

RATE_LIMITED_REASON = 'rate_limited'


class Identity(NamedTuple):
    """Who is attempting: the authenticated user, or the client address."""

    user_id: Optional[object] = None
    ip_address: Optional[str] = None
    user_agent: str = ''
    role: Optional[str] = None

    @classmethod
    def for_user(cls, user, ip_address=None, user_agent=''):
        if user is None or not user.is_authenticated:
            return cls(ip_address=ip_address, user_agent=user_agent[:500])
        return cls(user_id=user.pk, ip_address=ip_address, user_agent=user_agent[:500],
                   role=user.role)

    @property
    def is_anonymous(self):
        return self.user_id is None

    @property
    def is_customer(self):
        """Signed in with the customer role, so a PIN match redeems for them."""
        return self.user_id is not None and self.role == UserRole.CUSTOMER

    def lookup(self) -> dict:
        """Filter kwargs selecting this identity's attempt records."""
        if self.user_id is not None:
            return {'user_id': self.user_id}
        return {'user__isnull': True, 'ip_address': self.ip_address}

    def __str__(self):
        return f"user {self.user_id}" if self.user_id is not None else f"ip {self.ip_address}"


def _failures(*, kind, identity: Identity, deal=None):
    records = AttemptRecord.objects.filter(
        kind=kind,
        success=False,
        **identity.lookup(),
    ).exclude(failure_reason=RATE_LIMITED_REASON)

    if kind == AttemptKind.PIN:
        records = records.filter(deal=deal)
    return records


@storage_guard
def check(*, kind, identity: Identity, deal=None, now=None) -> None:
    """
    Raise RateLimitedError if the identity has used up its failure budget.

    ``retry_at`` on the error is when the oldest failure inside the
    exhausted window ages out.
    """
    now = now or timezone.now()
    failures = _failures(kind=kind, identity=identity, deal=deal)

    limits = (
        (HOUR, settings.PIN_ATTEMPTS_PER_HOUR),
        (DAY, settings.PIN_ATTEMPTS_PER_DAY),
    )
    for window, limit in limits:
        in_window = failures.filter(attempted_at__gt=now - window)
        if in_window.count() < limit:
            continue

        # Only the newest ``limit`` failures matter for when a slot frees up
        oldest = in_window.order_by('-attempted_at')[limit - 1]
        raise RateLimitedError(retry_at=oldest.attempted_at + window)


@storage_guard
def record(*, kind, identity: Identity, success: bool, deal=None,
           failure_reason: str = '', now=None) -> AttemptRecord:
    """Append one attempt to the audit log."""
    return AttemptRecord.objects.create(
        kind=kind,
        deal=deal,
        user_id=identity.user_id,
        ip_address=identity.ip_address,
        user_agent=identity.user_agent,
        success=success,
        failure_reason='' if success else failure_reason[:50],
        attempted_at=now or timezone.now(),
    )


def _bucket_key(*, kind, identity: Identity, deal=None) -> str:
    scope = getattr(deal, 'pk', None) if kind == AttemptKind.PIN else None
    return f"{kind}:{scope if scope is not None else '-'}:{identity}"


@storage_guard
def _lock_bucket(*, kind, identity: Identity, deal=None) -> None:
    key = _bucket_key(kind=kind, identity=identity, deal=deal)
    ThrottleBucket.objects.get_or_create(key=key)
    ThrottleBucket.objects.select_for_update().get(key=key)


class Attempt:
    """
    One throttled verification try, used as a context manager.

    Entering locks the identity's throttle bucket and checks its budget.
    Leaving logs the outcome before the lock is released, so concurrent
    tries from one identity are counted one after another. Service errors
    raised inside the block are logged as failures, and whatever the block
    wrote (a claim marked expired, say) is kept. Storage failures roll the
    block back and are not counted.

        with Attempt(kind=AttemptKind.PIN, identity=identity, deal=deal) as attempt:
            ...

    Set ``attempt.deal`` inside the block once the deal is known.

    Raises:
        RateLimitedError: On entry, if the identity is over its budget
    """

    def __init__(self, *, kind, identity: Identity, deal=None, now=None):
        self.kind = kind
        self.identity = identity
        self.deal = deal
        self.now = now or timezone.now()
        self._atomic = transaction.atomic()

    def __enter__(self):
        self._atomic.__enter__()
        try:
            _lock_bucket(kind=self.kind, identity=self.identity, deal=self.deal)
            check(kind=self.kind, identity=self.identity, deal=self.deal, now=self.now)
        except RateLimitedError as exc:
            self._finish(success=False, failure_reason=RATE_LIMITED_REASON)
            logger.warning(
                "Rate limited %s attempt by %s on deal %s until %s",
                self.kind, self.identity, getattr(self.deal, 'pk', None), exc.retry_at,
            )
            raise
        except BaseException:
            self._atomic.__exit__(*sys.exc_info())
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self._finish(success=True)
        elif issubclass(exc_type, RedemptionServiceError) and exc.counts_as_attempt:
            self._finish(success=False, failure_reason=exc.code)
            logger.info("%s verification by %s failed: %s", self.kind, self.identity, exc.code)
        else:
            self._atomic.__exit__(exc_type, exc, tb)
        return False

    def _finish(self, *, success, failure_reason=''):
        """Log the outcome and commit."""
        try:
            record(
                kind=self.kind,
                identity=self.identity,
                success=success,
                deal=self.deal,
                failure_reason=failure_reason,
                now=self.now,
            )
        except BaseException:
            self._atomic.__exit__(*sys.exc_info())
            raise
        self._atomic.__exit__(None, None, None)
