"""
Ecotrack - Clock and Random Source

Services take these as constructor arguments so tests can pin time
and token values. All timestamps are naive UTC, matching the columns.
"""

import secrets
from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_timestamp(value: datetime) -> int:
    """Seconds since epoch for a naive UTC datetime."""
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


class RandomSource:
    """Cryptographically secure random values (wraps :mod:`secrets`)."""

    def token_hex(self, nbytes: int) -> str:
        return secrets.token_hex(nbytes)

    def token_urlsafe(self, nbytes: int) -> str:
        return secrets.token_urlsafe(nbytes)
