"""
Exchange klines download.

`KlinesDownloader` builds the second-resolution price file used by the
backtest from the exchange's public ``/klines`` endpoint.  History is
requested in segments of `limit` one-second klines.  A batch of
consecutive segments is fetched in parallel, each segment through the
next proxy of the rotation, and the rows are appended to the CSV in
time order.  After every batch the start of the next one is written to
a progress file, so an interrupted download resumes where it stopped.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence
import logging
import os
import pandas as pd
import requests

from ..config.schema import DownloadConfig
from ..utils.persistence import load_json, save_json
from ..utils.timeutils import to_epoch_ms, to_utc
from .indicator_source import TransportError
from .proxies import Proxy, ProxyRotation

logger = logging.getLogger(__name__)

PRICE_COLUMNS = ('timestamp', 'open', 'high', 'low', 'close', 'volume')
INTERVAL = '1s'


class DownloadError(RuntimeError):
    """A batch kept failing after every retry."""


def kline_row(entry: Sequence) -> str:
    """CSV line for one kline: open time, OHLC and volume."""
    return ','.join(str(value) for value in entry[:len(PRICE_COLUMNS)])


class KlinesDownloader:
    """Download one-second klines for `config.symbol` into `output_path`.

    Parameters
    ----------
    config : DownloadConfig
        Endpoint, symbol, batch shape and progress file.
    output_path : str
        CSV file the rows are appended to.
    proxies : sequence of Proxy
        Pool the segments are spread over; empty means direct requests.
    session : requests.Session, optional
        HTTP session, injectable for tests.
    """

    def __init__(
        self,
        config: DownloadConfig,
        output_path: str,
        proxies: Sequence[Proxy] = (),
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ) -> None:
        self.config = config
        self.output_path = output_path
        self.rotation = ProxyRotation(proxies)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.segment_ms = config.limit * 1000

    def read_progress(self) -> int:
        progress = load_json(self.config.progress_path)
        if progress and progress.get('startTime') is not None:
            return int(progress['startTime'])
        return to_epoch_ms(self.config.start_time)

    def save_progress(self, start_ms: int) -> None:
        save_json(self.config.progress_path, {'startTime': start_ms})

    def fetch_segment(self, start_ms: int, proxy: Optional[Proxy] = None) -> List[list]:
        """Return the klines of the segment starting at `start_ms`.

        Raises
        ------
        TransportError
            When the request fails or the answer is not a kline list.
        """
        params = {
            'symbol': self.config.symbol,
            'interval': INTERVAL,
            'startTime': start_ms,
            'endTime': start_ms + self.segment_ms,
            'limit': self.config.limit,
        }
        url = f"{self.config.base_url.rstrip('/')}/klines"
        try:
            response = self.session.get(
                url,
                params=params,
                proxies=proxy.as_requests_proxies() if proxy else None,
                timeout=self.timeout,
            )
            response.raise_for_status()
            klines = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TransportError(f"Error fetching klines from {start_ms}: {exc}") from exc
        if not isinstance(klines, list):
            raise TransportError(f"Unexpected klines payload from {start_ms}: {klines!r}")
        return klines

    def _fetch_batch(self, executor: ThreadPoolExecutor, starts: List[int]) -> List[List[list]]:
        attempts = max(1, self.config.max_retries)
        for attempt in range(1, attempts + 1):
            futures = [executor.submit(self.fetch_segment, start, self.rotation.next()) for start in starts]
            try:
                return [future.result() for future in futures]
            except TransportError as exc:
                logger.warning("Batch from %s failed (attempt %d/%d): %s",
                               to_utc(starts[0]).isoformat(), attempt, attempts, exc)
        raise DownloadError(f"Giving up on the batch starting at {to_utc(starts[0]).isoformat()}")

    def _ensure_header(self) -> None:
        if os.path.exists(self.output_path) and os.path.getsize(self.output_path) > 0:
            return
        directory = os.path.dirname(self.output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.output_path, 'w', encoding='utf-8') as fh:
            fh.write(','.join(PRICE_COLUMNS) + '\n')

    def run(self, end_ms: Optional[int] = None) -> int:
        """Download from the saved progress up to `end_ms` (default now).

        Returns the number of rows appended.  Stops early once a whole
        batch comes back empty.

        Raises
        ------
        DownloadError
            When a batch still fails after `max_retries` attempts.  The
            progress file then points at that batch.
        """
        start = self.read_progress()
        if end_ms is None:
            end_ms = to_epoch_ms(pd.Timestamp.now(tz="UTC"))
        self._ensure_header()
        parallel = max(1, self.config.parallel_downloads)
        written = 0
        with ThreadPoolExecutor(max_workers=parallel) as executor:
            while start < end_ms:
                starts = [start + i * self.segment_ms for i in range(parallel)
                          if start + i * self.segment_ms < end_ms]
                segments = self._fetch_batch(executor, starts)
                if all(not segment for segment in segments):
                    logger.info("No more data available from the exchange.")
                    break
                rows = [kline_row(entry) for segment in segments for entry in segment]
                with open(self.output_path, 'a', encoding='utf-8') as fh:
                    fh.write('\n'.join(rows) + '\n')
                start += parallel * self.segment_ms
                self.save_progress(start)
                written += len(rows)
                logger.info("Fetched %d klines up to %s", len(rows), to_utc(start).isoformat())
        logger.info("%s klines downloaded: %d rows written to %s", self.config.symbol, written, self.output_path)
        return written
