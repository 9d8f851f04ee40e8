# src/rolegate/db/time.py
"""Clock helpers shared by the ledger and challenge checks.

Ledger timestamps are timezone-aware UTC datetimes; challenge expiries are
unix seconds. Both derive from the same source so tests can patch one place.
"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def unix_now() -> float:
    """Return the current time in unix seconds."""
    return utcnow().timestamp()
