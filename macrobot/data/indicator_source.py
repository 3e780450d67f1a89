"""
Live indicator source.

`HttpIndicatorSource` downloads the page where an indicator is
published and extracts the value with a regular expression.  A page
that does not contain a parsable number yet means the value is not
published, and the fetch returns ``None``; network failures raise
`TransportError` so the polling loop can rotate to another proxy.
"""

from __future__ import annotations

from typing import Callable, Optional
import logging
import re
import requests

from ..config.schema import IndicatorConfig
from .proxies import Proxy

logger = logging.getLogger(__name__)

IndicatorFetch = Callable[[Optional[Proxy]], Optional[float]]


class TransportError(RuntimeError):
    """The indicator source could not be reached."""


def parse_number(text: str, pattern: str) -> Optional[float]:
    """Return the first number matched by `pattern` in `text`.

    The first capture group is used when the pattern has one.
    Thousands separators are ignored.  Returns ``None`` when nothing
    matches or the match is not numeric.
    """
    match = re.search(pattern, text)
    if match is None:
        return None
    raw = match.group(1) if match.groups() else match.group(0)
    try:
        return float(raw.replace(',', '').strip())
    except ValueError:
        return None


class HttpIndicatorSource:
    """Fetch an indicator value from its publication page."""

    def __init__(self, url: str, value_pattern: str, timeout: float = 10.0,
                 session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.value_pattern = value_pattern
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_indicator(cls, indicator: IndicatorConfig, timeout: float = 10.0) -> "HttpIndicatorSource":
        return cls(indicator.url, indicator.value_pattern, timeout=timeout)

    def __call__(self, proxy: Optional[Proxy] = None) -> Optional[float]:
        return self.fetch(proxy)

    def fetch(self, proxy: Optional[Proxy] = None) -> Optional[float]:
        """Return the published value or ``None`` if it is not there yet.

        Raises
        ------
        TransportError
            When the request fails or the server answers with an error.
        """
        try:
            response = self.session.get(
                self.url,
                proxies=proxy.as_requests_proxies() if proxy else None,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransportError(f"Error fetching {self.url}: {exc}") from exc
        value = parse_number(response.text, self.value_pattern)
        logger.debug("Fetched %s via %s -> %s", self.url, proxy or 'direct connection', value)
        return value
