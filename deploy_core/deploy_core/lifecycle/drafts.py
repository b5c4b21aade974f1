"""Expiry arithmetic for draft previews."""

from __future__ import annotations

import math
from datetime import datetime, timedelta

_SECONDS_PER_DAY = 86400


def compute_expiry(created_at: datetime, ttl_days: int) -> datetime:
    return created_at + timedelta(days=ttl_days)


def days_until_expiry(expires_at: datetime, now: datetime) -> int:
    """Whole days remaining, rounded up; never negative.

    A preview with one second left reports 1 day; one that expired any
    time in the past reports 0.
    """
    remaining = (expires_at - now).total_seconds() / _SECONDS_PER_DAY
    return max(0, math.ceil(remaining))


def is_expired(expires_at: datetime, now: datetime) -> bool:
    return days_until_expiry(expires_at, now) <= 0
