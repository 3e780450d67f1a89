"""
Indexed seek into the second-resolution price file.

The price history is a single append-only CSV sorted by timestamp
(epoch milliseconds) that grows to tens of gigabytes, so it can not be
scanned or loaded per event.  `PriceSeriesIndex.locate()` finds the
byte offset of the first record at or after a given time by binary
searching over raw byte positions.  Records have variable length, so
each step reads a window of bytes around the midpoint, drops the
possibly truncated first and last lines and looks only at the complete
lines in between.
"""

from __future__ import annotations

from typing import List, NamedTuple, Optional, Tuple
import logging
import os

from ..utils.timeutils import TimeLike, to_epoch_ms

logger = logging.getLogger(__name__)

DEFAULT_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']
DEFAULT_WINDOW = 50_000


class _Record(NamedTuple):
    start: int
    end: int
    timestamp: int


def _parse_timestamp(line: bytes) -> Optional[int]:
    """Return the leading epoch-ms field of a CSV line, or None if malformed."""
    field = line.split(b',', 1)[0].strip()
    if not field:
        return None
    try:
        return int(field)
    except ValueError:
        try:
            return int(float(field))
        except ValueError:
            return None


def read_csv_header(path: str) -> List[str]:
    """Return the column names of the price file.

    Files without a header row are assumed to use `DEFAULT_COLUMNS`.
    """
    with open(path, "rb") as fh:
        first = fh.readline()
    if not first.strip() or _parse_timestamp(first) is not None:
        return list(DEFAULT_COLUMNS)
    return [name.strip() for name in first.decode("utf-8").strip().split(',')]


class PriceSeriesIndex:
    """Binary search over byte offsets of a timestamp-ordered CSV.

    Parameters
    ----------
    path : str
        Price file with one ``timestamp,open,high,low,close,volume``
        record per line, ascending by timestamp.
    window_size : int
        Bytes read per step.  A window should hold several complete
        lines; 50 000 bytes holds about a thousand one-second bars.
    """

    def __init__(self, path: str, window_size: int = DEFAULT_WINDOW) -> None:
        if window_size < 64:
            raise ValueError("window_size is too small to hold a record")
        self.path = path
        self.window_size = window_size
        self._data_start: Optional[int] = None

    # ------------------------------------------------------------------ io
    def _read(self, position: int, size: int) -> bytes:
        # One open per step: no descriptor is held between searches
        with open(self.path, "rb") as fh:
            fh.seek(position)
            return fh.read(size)

    def _scan(
        self,
        position: int,
        buf: bytes,
        file_size: int,
        skip_first: bool,
    ) -> Tuple[List[_Record], int]:
        """Parse the complete lines of a window read at `position`.

        Returns the well-formed records and the offset just past the
        last complete line examined.
        """
        records: List[_Record] = []
        pos = 0
        if skip_first:
            nl = buf.find(b'\n')
            if nl < 0:
                return records, position
            pos = nl + 1
        at_eof = position + len(buf) >= file_size
        while pos < len(buf):
            nl = buf.find(b'\n', pos)
            if nl < 0:
                if not at_eof:
                    break
                nl = len(buf)
            ts = _parse_timestamp(buf[pos:nl])
            end = min(position + nl + 1, file_size)
            if ts is not None:
                records.append(_Record(position + pos, end, ts))
            pos = nl + 1
        return records, min(position + pos, file_size)

    @property
    def data_start(self) -> int:
        """Offset of the first line after the header (0 without header)."""
        if self._data_start is None:
            with open(self.path, "rb") as fh:
                first = fh.readline()
            if first.strip() and _parse_timestamp(first) is None:
                self._data_start = len(first)
            else:
                self._data_start = 0
        return self._data_start

    def first_timestamp(self) -> Optional[int]:
        """Timestamp of the first well-formed record, or None for an empty file."""
        file_size = os.path.getsize(self.path)
        pos = self.data_start
        while pos < file_size:
            records, consumed = self._scan(pos, self._read(pos, self.window_size), file_size, False)
            if records:
                return records[0].timestamp
            if consumed <= pos:
                return None
            pos = consumed
        return None

    # -------------------------------------------------------------- search
    def locate(self, target_time: TimeLike) -> int:
        """Byte offset of the first complete record with timestamp >= target.

        Returns
        -------
        int
            ``0`` when `target_time` precedes the first record (no price
            history yet), the file size when it follows the last record
            (the caller will read an empty stream), otherwise the start
            offset of the matching record.
        """
        target = to_epoch_ms(target_time)
        file_size = os.path.getsize(self.path)
        first_ts = self.first_timestamp()
        if first_ts is None or target < first_ts:
            return 0

        # Invariant: the answer lies in [lo, hi]; lo and hi are line starts.
        lo = self.data_start
        hi = file_size
        half = self.window_size // 2
        steps = 0
        while hi - lo > self.window_size:
            mid = (lo + hi) // 2
            read_pos = max(mid - half, lo)
            buf = self._read(read_pos, self.window_size)
            records, consumed = self._scan(read_pos, buf, file_size, skip_first=read_pos != lo)
            steps += 1
            if not records:
                break
            hit = next((i for i, r in enumerate(records) if r.timestamp >= target), None)
            if hit is None:
                lo = consumed
            elif hit > 0:
                # A smaller record sits right before it, so nothing earlier qualifies
                logger.debug("Located %s after %d steps", target, steps)
                return records[hit].start
            elif records[0].start >= hi:
                break
            else:
                hi = records[0].start
        logger.debug("Narrowed %s to [%d, %d] after %d steps", target, lo, hi, steps)
        return self._scan_forward(lo, hi, target, file_size)

    def _scan_forward(self, lo: int, hi: int, target: int, file_size: int) -> int:
        pos = lo
        while pos < hi:
            buf = self._read(pos, self.window_size)
            records, consumed = self._scan(pos, buf, file_size, skip_first=False)
            for record in records:
                if record.start >= hi:
                    return hi
                if record.timestamp >= target:
                    return record.start
            if consumed <= pos:
                break
            pos = consumed
        return min(hi, file_size)
