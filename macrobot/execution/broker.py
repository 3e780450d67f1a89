"""
Broker adapter interface.

The live strategy talks to a trading venue only through
`BrokerAdapter`.  Every adapter method returns a `BrokerResult`
holding either the payload or a `BrokerError`; adapters never raise for
transport or venue failures, so callers always branch on
``result.ok`` before touching ``result.data``.

`PaperBroker` fills orders locally at the current quote.  It backs the
dry-run mode and the tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar
import logging
import uuid

from ..strategy.leverage import LONG

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BrokerError:
    """Failure reported by a broker call."""
    message: str
    code: str = 'error'
    status_code: Optional[int] = None

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.message} ({self.code}, status {self.status_code})"
        return f"{self.message} ({self.code})"


@dataclass(frozen=True)
class BrokerResult(Generic[T]):
    """Outcome of a broker call: ``data`` on success, ``error`` otherwise."""
    data: Optional[T] = None
    error: Optional[BrokerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: T = None) -> "BrokerResult[T]":
        return cls(data=data)

    @classmethod
    def failure(cls, message: str, code: str = 'error', status_code: Optional[int] = None) -> "BrokerResult[T]":
        return cls(error=BrokerError(message, code, status_code))


@dataclass(frozen=True)
class Quote:
    bid: float
    ask: float
    price_ref: Optional[str] = None

    def for_direction(self, direction: str) -> float:
        """Price paid to open a position in `direction`."""
        return self.ask if direction == LONG else self.bid


@dataclass(frozen=True)
class OpenedPosition:
    position_id: str
    open_price: float
    quantity: float


class BrokerAdapter(ABC):
    """Operations the live strategy needs from a trading venue."""

    def configure_proxy(self, proxy) -> None:
        """Route subsequent calls through `proxy`.  Ignored by default."""

    @abstractmethod
    def get_current_price(self) -> BrokerResult[Quote]:
        ...

    @abstractmethod
    def open_position(
        self, direction: str, amount_in_base: float, price_ref: Optional[str] = None
    ) -> BrokerResult[OpenedPosition]:
        ...

    @abstractmethod
    def attach_stop_order(self, position_id: str, price: float, amount: float) -> BrokerResult[None]:
        ...

    @abstractmethod
    def attach_target_order(self, position_id: str, price: float, amount: float) -> BrokerResult[None]:
        ...

    @abstractmethod
    def close_position(self, position_id: str, price_ref: Optional[str] = None) -> BrokerResult[None]:
        ...

    @abstractmethod
    def get_position(self, position_id: str) -> BrokerResult[Optional[OpenedPosition]]:
        """Look up an open position; ``data`` is ``None`` once the venue has closed it."""


@dataclass
class _PaperPosition:
    direction: str
    open_price: float
    quantity: float
    stops: Dict[float, float] = field(default_factory=dict)
    targets: Dict[float, float] = field(default_factory=dict)


class PaperBroker(BrokerAdapter):
    """Simulated venue that fills every order at the current quote.

    Parameters
    ----------
    price : float
        Mid price used when no `quote_source` is given.
    spread : float
        Distance between bid and ask around `price`.
    quote_source : BrokerAdapter, optional
        Real venue used only for prices, so dry runs see live quotes
        without sending orders.
    """

    def __init__(self, price: float = 0.0, spread: float = 0.0,
                 quote_source: Optional[BrokerAdapter] = None) -> None:
        self.price = price
        self.spread = spread
        self.quote_source = quote_source
        self.positions: Dict[str, _PaperPosition] = {}
        self.closed: Dict[str, float] = {}

    def get_current_price(self) -> BrokerResult[Quote]:
        if self.quote_source is not None:
            return self.quote_source.get_current_price()
        if self.price <= 0:
            return BrokerResult.failure("No paper price configured", code='no_price')
        half = self.spread / 2
        return BrokerResult.success(Quote(bid=self.price - half, ask=self.price + half,
                                          price_ref=uuid.uuid4().hex))

    def open_position(self, direction, amount_in_base, price_ref=None):
        if amount_in_base <= 0:
            return BrokerResult.failure(f"Invalid amount {amount_in_base}", code='invalid_amount')
        quote = self.get_current_price()
        if not quote.ok:
            return BrokerResult(error=quote.error)
        fill = quote.data.for_direction(direction)
        position_id = uuid.uuid4().hex
        self.positions[position_id] = _PaperPosition(direction, fill, amount_in_base)
        logger.info("PAPER opened %s %s at %s (id=%s)", direction, amount_in_base, fill, position_id)
        return BrokerResult.success(OpenedPosition(position_id, fill, amount_in_base))

    def _position(self, position_id: str) -> Optional[_PaperPosition]:
        return self.positions.get(position_id)

    def attach_stop_order(self, position_id, price, amount):
        position = self._position(position_id)
        if position is None:
            return BrokerResult.failure(f"Unknown position {position_id}", code='not_found')
        position.stops[price] = amount
        logger.info("PAPER stop %s for %s on %s", price, amount, position_id)
        return BrokerResult.success()

    def attach_target_order(self, position_id, price, amount):
        position = self._position(position_id)
        if position is None:
            return BrokerResult.failure(f"Unknown position {position_id}", code='not_found')
        position.targets[price] = amount
        logger.info("PAPER target %s for %s on %s", price, amount, position_id)
        return BrokerResult.success()

    def get_position(self, position_id):
        position = self._position(position_id)
        if position is None:
            return BrokerResult.success(None)
        return BrokerResult.success(OpenedPosition(position_id, position.open_price, position.quantity))

    def close_position(self, position_id, price_ref=None):
        position = self.positions.pop(position_id, None)
        if position is None:
            return BrokerResult.failure(f"Unknown position {position_id}", code='not_found')
        quote = self.get_current_price()
        exit_price = position.open_price
        if quote.ok:
            # Closing a long sells at the bid, closing a short buys at the ask
            exit_price = quote.data.bid if position.direction == LONG else quote.data.ask
        self.closed[position_id] = exit_price
        logger.info("PAPER closed %s at %s", position_id, exit_price)
        return BrokerResult.success()
