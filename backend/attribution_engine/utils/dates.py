"""Datetime normalization.

Every DateTime column stores naive UTC. Payloads may carry offsets
(``2026-03-02T10:00:00+02:00``) or none at all; naive input is taken as UTC.
"""

from datetime import datetime, timezone
from typing import Optional


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; pass naive values and None through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
