"""
core/durations.py -- Parse compact duration strings ("15m", "7d") into timedelta.

Token lifetimes are configured as <int><unit> where unit is one of s, m, h, d.
The same strings drive both JWT expiry and refresh-cookie max_age, so both
always agree.
"""

from __future__ import annotations

import re
from datetime import timedelta

from core.errors import ConfigurationError

DURATION_PATTERN = re.compile(r"(\d+)([smhd])", re.IGNORECASE)

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str) -> timedelta:
    """Return the timedelta for a duration string such as "15m" or "1d".

    Raises ConfigurationError for anything that is not <int><s|m|h|d> or that
    evaluates to zero -- a zero lifetime would mint tokens that are already
    expired.
    """
    match = DURATION_PATTERN.fullmatch((value or "").strip())
    if match is None:
        raise ConfigurationError(f"Invalid duration {value!r}; expected <int><s|m|h|d>.")
    amount, unit = int(match.group(1)), match.group(2).lower()
    if amount <= 0:
        raise ConfigurationError(f"Duration {value!r} must be positive.")
    return timedelta(seconds=amount * _UNIT_SECONDS[unit])
