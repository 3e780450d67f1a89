"""
Proxy list and rotation.

Indicator pages are polled every second around a release, so requests
are spread over a pool of HTTP proxies.  `ProxyListClient` downloads
the pool from a Webshare-style listing API and `ProxyRotation` hands
the proxies out round robin.  An empty pool means proxyless operation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
import logging
import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Proxy:
    address: str
    port: int
    username: str = ""
    password: str = ""

    @property
    def url(self) -> str:
        if self.username:
            return f"http://{self.username}:{self.password}@{self.address}:{self.port}"
        return f"http://{self.address}:{self.port}"

    def as_requests_proxies(self) -> Dict[str, str]:
        """Mapping for the ``proxies`` argument of `requests`."""
        return {'http': self.url, 'https': self.url}

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


class ProxyListError(RuntimeError):
    """The proxy listing API could not be queried."""


class ProxyListClient:
    """Fetch the proxy pool from the listing API."""

    def __init__(self, api_url: str, api_key: str, page_size: int = 25, timeout: float = 10.0) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.page_size = page_size
        self.timeout = timeout

    def list_proxies(self) -> List[Proxy]:
        """Return the proxies currently available on the account.

        Raises
        ------
        ProxyListError
            On network failure or a non-success HTTP status.
        """
        try:
            response = requests.get(
                self.api_url,
                headers={'Authorization': f"Token {self.api_key}"},
                params={'mode': 'direct', 'page': 1, 'page_size': self.page_size},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ProxyListError(f"Error fetching proxies: {exc}") from exc
        proxies = [
            Proxy(
                address=entry['proxy_address'],
                port=int(entry['port']),
                username=entry.get('username', ''),
                password=entry.get('password', ''),
            )
            for entry in response.json().get('results', [])
            if entry.get('valid', True)
        ]
        logger.info("Loaded %d proxies", len(proxies))
        return proxies


class ProxyRotation:
    """Round-robin over a fixed pool; yields ``None`` when the pool is empty."""

    def __init__(self, proxies: Sequence[Proxy] = ()) -> None:
        self.proxies = list(proxies)
        self.index = 0

    def __len__(self) -> int:
        return len(self.proxies)

    def next(self) -> Optional[Proxy]:
        if not self.proxies:
            return None
        proxy = self.proxies[self.index]
        self.index = (self.index + 1) % len(self.proxies)
        return proxy

    def get(self, index: int) -> Optional[Proxy]:
        """Proxy at `index` (wrapping), used to pin the trading proxy."""
        if not self.proxies:
            return None
        return self.proxies[index % len(self.proxies)]
