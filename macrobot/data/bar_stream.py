"""
Forward-only bar reader.

Starting from a byte offset produced by `PriceSeriesIndex`, `BarStream`
parses the price file in small pandas chunks and yields `PriceBar`
objects one at a time.  The caller can pass a stop condition evaluated
against every bar and the entry price; the stream ends right after the
first bar that satisfies it, so a single event never reads more of the
file than it needs.
"""

from __future__ import annotations

from typing import Callable, Iterator, List, Optional
import pandas as pd

from ..execution.models import PriceBar
from ..utils.timeutils import TimeLike, to_epoch_ms
from .price_index import DEFAULT_COLUMNS

StopCondition = Callable[[PriceBar, float], bool]

_PRICE_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close']


class BarStream:
    """Iterate bars from `start_offset` until `stop_condition` or end of file.

    Parameters
    ----------
    path : str
        Price CSV file.
    start_offset : int
        Byte offset of the first line to read.  Must be a line start.
    stop_condition : callable, optional
        ``stop_condition(bar, entry_price) -> bool``.  Only evaluated once
        the entry price is known.
    entry_time : time-like, optional
        Timestamp of the entry bar.  The entry price is the ``open`` of the
        first bar at or after it.  Without an entry time
        the first bar read is the entry bar.
    headers : list of str, optional
        Column names of the file, see `read_csv_header()`.
    chunk_size : int
        Rows parsed per pandas chunk.
    """

    def __init__(
        self,
        path: str,
        start_offset: int,
        stop_condition: Optional[StopCondition] = None,
        entry_time: Optional[TimeLike] = None,
        headers: Optional[List[str]] = None,
        chunk_size: int = 600,
    ) -> None:
        self.path = path
        self.start_offset = start_offset
        self.stop_condition = stop_condition
        self.entry_time_ms = None if entry_time is None else to_epoch_ms(entry_time)
        self.headers = list(headers) if headers else list(DEFAULT_COLUMNS)
        self.chunk_size = chunk_size
        self.entry_price: Optional[float] = None
        missing = [c for c in _PRICE_COLUMNS if c not in self.headers]
        if missing:
            raise ValueError(f"Price file columns {self.headers} lack {missing}")

    def _clean(self, chunk: pd.DataFrame) -> pd.DataFrame:
        """Coerce a raw chunk to numbers and drop malformed rows."""
        frame = chunk.apply(pd.to_numeric, errors='coerce')
        frame = frame.dropna(subset=_PRICE_COLUMNS).copy()
        if 'volume' in frame.columns:
            frame['volume'] = frame['volume'].fillna(0.0)
        else:
            frame['volume'] = 0.0
        return frame

    def _chunks(self) -> Iterator[pd.DataFrame]:
        with open(self.path, "rb") as fh:
            fh.seek(self.start_offset)
            try:
                reader = pd.read_csv(
                    fh,
                    header=None,
                    names=self.headers,
                    chunksize=self.chunk_size,
                    on_bad_lines='skip',
                    skip_blank_lines=True,
                    dtype=str,
                )
            except pd.errors.EmptyDataError:
                return
            with reader:
                try:
                    for chunk in reader:
                        if not chunk.empty:
                            yield self._clean(chunk)
                except pd.errors.EmptyDataError:
                    return

    def __iter__(self) -> Iterator[PriceBar]:
        self.entry_price = None
        for frame in self._chunks():
            for row in frame[_PRICE_COLUMNS + ['volume']].itertuples(index=False, name=None):
                ts, open_, high, low, close, volume = row
                ts = int(ts)
                if self.entry_price is None and (self.entry_time_ms is None or ts >= self.entry_time_ms):
                    self.entry_price = float(open_)
                bar = PriceBar(
                    timestamp=pd.Timestamp(ts, unit='ms', tz='UTC'),
                    open=float(open_),
                    high=float(high),
                    low=float(low),
                    close=float(close),
                    volume=float(volume),
                )
                yield bar
                if (
                    self.entry_price is not None
                    and self.stop_condition is not None
                    and self.stop_condition(bar, self.entry_price)
                ):
                    return


def stream_bars(
    path: str,
    start_offset: int,
    stop_condition: Optional[StopCondition] = None,
    entry_time: Optional[TimeLike] = None,
    headers: Optional[List[str]] = None,
    chunk_size: int = 600,
) -> BarStream:
    return BarStream(path, start_offset, stop_condition, entry_time, headers, chunk_size)


def load_bars(*args, **kwargs) -> List[PriceBar]:
    """Eager variant of `stream_bars()` returning a list."""
    return list(stream_bars(*args, **kwargs))
