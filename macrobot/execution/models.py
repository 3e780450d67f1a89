"""
Event, bar, position and trade models.

These dataclasses represent the objects passed between the data
layer, the decision logic and the execution engines.  Keeping them in
a separate module improves readability and makes unit testing easier.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import pandas as pd

from ..utils.timeutils import to_utc

NO_MOVEMENT_SUFFIX = " (closed due to no movement)"


class ExitReason(str, Enum):
    """Terminal states of a simulated position."""
    TOOK_PROFIT = 'took_profit'
    STOPPED_OUT = 'stopped_out'
    TIMED_OUT_NO_MOVEMENT = 'timed_out_no_movement'
    TIMED_OUT_MAX_HOLD = 'timed_out_max_hold'
    END_OF_DATA = 'end_of_data'


@dataclass(frozen=True)
class PriceBar:
    """One second of OHLCV market data."""
    timestamp: pd.Timestamp
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class StopOrder:
    price: float
    amount: float


@dataclass
class TargetOrder:
    price: float
    amount: float


@dataclass
class TradePosition:
    """A position opened on the live venue."""
    id: str
    position_type: str  # 'long' or 'short'
    open_price: float
    quantity: float
    amount_instrument: float
    stop_orders: List[StopOrder] = field(default_factory=list)
    target_orders: List[TargetOrder] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'position_type': self.position_type,
            'open_price': self.open_price,
            'quantity': self.quantity,
            'amount_instrument': self.amount_instrument,
            'stop_orders': [vars(o) for o in self.stop_orders],
            'target_orders': [vars(o) for o in self.target_orders],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradePosition":
        return cls(
            id=str(data['id']),
            position_type=data['position_type'],
            open_price=float(data['open_price']),
            quantity=float(data['quantity']),
            amount_instrument=float(data['amount_instrument']),
            stop_orders=[StopOrder(**o) for o in data.get('stop_orders', [])],
            target_orders=[TargetOrder(**o) for o in data.get('target_orders', [])],
        )


@dataclass(frozen=True)
class TradeResult:
    """Represents a completed simulated trade."""
    event: str
    entry_time: pd.Timestamp
    exit_time: pd.Timestamp
    action: str  # 'buy' or 'sell', optionally with the no-movement suffix
    entry_price: float
    exit_price: float
    profit_or_loss: float
    position_size: float  # quantity in base asset
    leverage: int = 0
    exit_reason: Optional[str] = None

    @property
    def closed_for_no_movement(self) -> bool:
        return self.action.endswith(NO_MOVEMENT_SUFFIX)

    @property
    def duration_seconds(self) -> float:
        return abs((self.exit_time - self.entry_time).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event': self.event,
            'entry_time': self.entry_time.isoformat(),
            'exit_time': self.exit_time.isoformat(),
            'action': self.action,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'profit_or_loss': self.profit_or_loss,
            'position_size': self.position_size,
            'leverage': self.leverage,
            'exit_reason': self.exit_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeResult":
        return cls(
            event=data['event'],
            entry_time=to_utc(data['entry_time']),
            exit_time=to_utc(data['exit_time']),
            action=data['action'],
            entry_price=float(data['entry_price']),
            exit_price=float(data['exit_price']),
            profit_or_loss=float(data['profit_or_loss']),
            position_size=float(data['position_size']),
            leverage=int(data.get('leverage', 0)),
            exit_reason=data.get('exit_reason'),
        )
