"""
Timestamp utilities.

Price history stores epoch milliseconds, the events dataset stores ISO
8601 strings and the rest of the code works with timezone-aware UTC
`pandas.Timestamp` objects.  This module centralises the conversions
between those representations.
"""

from __future__ import annotations

from typing import Union
import pandas as pd

TimeLike = Union[str, int, float, pd.Timestamp]


def to_utc(ts: TimeLike) -> pd.Timestamp:
    """Convert `ts` to a timezone-aware UTC `pandas.Timestamp`.

    Integers and floats are read as epoch milliseconds.  Naive
    timestamps are assumed to be in UTC already.
    """
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        return pd.Timestamp(int(ts), unit="ms", tz="UTC")
    if not isinstance(ts, pd.Timestamp):
        ts = pd.Timestamp(ts)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def to_epoch_ms(ts: TimeLike) -> int:
    """Return `ts` as integer epoch milliseconds."""
    return int(to_utc(ts).value // 1_000_000)


def seconds_between(start: pd.Timestamp, end: pd.Timestamp) -> float:
    """Seconds elapsed from `start` to `end` (negative if `end` is earlier)."""
    return (end - start).total_seconds()
