"""
Price file gap check.

The backtest assumes one bar per second.  `find_gaps()` scans the price
file in pandas chunks and reports every place where consecutive
timestamps are more than one second apart, including gaps that span a
chunk boundary.
"""

from __future__ import annotations

from typing import Dict, List, Optional
import pandas as pd


def find_gaps(path: str, max_step_ms: int = 1_000, chunk_size: int = 1_000_000) -> List[Dict[str, object]]:
    """Return the gaps between consecutive bars of the price file.

    Each gap is a dict with ``previous_timestamp`` and
    ``current_timestamp`` (epoch ms), their ISO renderings and
    ``gap_seconds``.
    """
    gaps: List[Dict[str, object]] = []
    last: Optional[int] = None
    # A header row fails numeric coercion and is dropped with other bad rows
    reader = pd.read_csv(
        path,
        header=None,
        usecols=[0],
        names=['timestamp'],
        dtype=str,
        chunksize=chunk_size,
    )
    with reader:
        for chunk in reader:
            stamps = pd.to_numeric(chunk.iloc[:, 0], errors='coerce').dropna().astype('int64').reset_index(drop=True)
            if stamps.empty:
                continue
            if last is not None:
                stamps = pd.concat([pd.Series([last], dtype='int64'), stamps], ignore_index=True)
            steps = stamps.diff()
            for pos in steps.index[steps > max_step_ms]:
                previous, current = int(stamps[pos - 1]), int(stamps[pos])
                gaps.append({
                    'previous_timestamp': previous,
                    'current_timestamp': current,
                    'previous_time': pd.Timestamp(previous, unit='ms', tz='UTC').isoformat(),
                    'current_time': pd.Timestamp(current, unit='ms', tz='UTC').isoformat(),
                    'gap_seconds': (current - previous) / 1000,
                })
            last = int(stamps.iloc[-1])
    return gaps
