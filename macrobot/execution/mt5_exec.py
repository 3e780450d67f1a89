"""
MetaTrader 5 broker adapter.

This module implements `BrokerAdapter` on top of a MetaTrader 5
terminal: market deals to open and close positions, ``TRADE_ACTION_SLTP``
requests to attach the stop-loss and take-profit, and the symbol tick
as the current quote.  Every failure is reported as a `BrokerResult`
error, including a missing `MetaTrader5` package.

**Note**: Running this adapter requires the `MetaTrader5` package and
a locally installed MT5 terminal.  Users can skip installing
MetaTrader5 when running backtests or dry runs with `PaperBroker`.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional

from ..config.schema import MT5Config
from ..strategy.leverage import LONG
from .broker import BrokerAdapter, BrokerResult, OpenedPosition, Quote

# Attempt to import MetaTrader5.  If unavailable, mt5 will be None.
try:
    import MetaTrader5 as mt5  # type: ignore
except ImportError:
    mt5 = None  # Will be checked at runtime


logger = logging.getLogger(__name__)


class MT5Broker(BrokerAdapter):
    """Trade one symbol through a MetaTrader 5 terminal."""

    def __init__(self, config: MT5Config, symbol: Optional[str] = None) -> None:
        self.config = config
        self.symbol = symbol or config.symbol
        self._connected = False
        # position ticket -> {'sl': price, 'tp': price}; MT5 stores one of each
        self._levels: Dict[str, Dict[str, float]] = {}

    def connect(self) -> BrokerResult[None]:
        """Initialise the MetaTrader 5 terminal and select the symbol."""
        if mt5 is None:
            return BrokerResult.failure(
                "MetaTrader5 package is not installed.  Install it with 'pip install MetaTrader5' to trade live.",
                code='unavailable',
            )
        if self._connected:
            return BrokerResult.success()
        if not mt5.initialize(path=self.config.path, login=self.config.login,
                              password=self.config.password, server=self.config.server):
            return BrokerResult.failure(f"MT5 initialisation failed: {mt5.last_error()}", code='init')
        if not mt5.symbol_select(self.symbol, True):
            mt5.shutdown()
            return BrokerResult.failure(f"Symbol {self.symbol} not available: {mt5.last_error()}", code='symbol')
        self._connected = True
        return BrokerResult.success()

    def shutdown(self) -> None:
        """Shutdown the MT5 connection if it was opened."""
        if mt5 and self._connected:
            mt5.shutdown()
            self._connected = False

    def _ensure_connected(self) -> Optional[BrokerResult]:
        result = self.connect()
        return None if result.ok else result

    def _send(self, request: dict, what: str) -> BrokerResult:
        result = mt5.order_send(request)
        if result is None:
            return BrokerResult.failure(f"{what} failed: {mt5.last_error()}", code='send')
        if result.retcode != mt5.TRADE_RETCODE_DONE:
            return BrokerResult.failure(f"{what} rejected: {result.comment}", code='rejected',
                                        status_code=result.retcode)
        return BrokerResult.success(result)

    def _symbol_info(self) -> BrokerResult:
        info = mt5.symbol_info(self.symbol)
        if info is None:
            return BrokerResult.failure(f"Symbol info for {self.symbol} unavailable: {mt5.last_error()}",
                                        code='symbol')
        return BrokerResult.success(info)

    def _volume(self, info, amount_in_base: float) -> float:
        """Convert a base-asset quantity into lots rounded to the volume step."""
        lots = amount_in_base / (info.trade_contract_size or 1.0)
        step = info.volume_step or 0.01
        lots = math.floor(round(lots / step, 9)) * step
        return round(max(lots, info.volume_min), 8)

    def get_current_price(self) -> BrokerResult[Quote]:
        failed = self._ensure_connected()
        if failed:
            return failed
        tick = mt5.symbol_info_tick(self.symbol)
        if tick is None:
            return BrokerResult.failure(f"No tick for {self.symbol}: {mt5.last_error()}", code='no_price')
        return BrokerResult.success(Quote(bid=tick.bid, ask=tick.ask, price_ref=str(tick.time_msc)))

    def open_position(self, direction, amount_in_base, price_ref=None):
        failed = self._ensure_connected()
        if failed:
            return failed
        info = self._symbol_info()
        if not info.ok:
            return info
        quote = self.get_current_price()
        if not quote.ok:
            return quote
        request = {
            'action': mt5.TRADE_ACTION_DEAL,
            'symbol': self.symbol,
            'volume': self._volume(info.data, amount_in_base),
            'type': mt5.ORDER_TYPE_BUY if direction == LONG else mt5.ORDER_TYPE_SELL,
            'price': quote.data.for_direction(direction),
            'deviation': self.config.deviation,
            'magic': self.config.magic,
            'comment': 'macrobot open',
            'type_time': mt5.ORDER_TIME_GTC,
            'type_filling': mt5.ORDER_FILLING_IOC,
        }
        logger.info("Sending %s deal for %s lots of %s", direction, request['volume'], self.symbol)
        sent = self._send(request, "Open position")
        if not sent.ok:
            return sent
        deal = sent.data
        quantity = deal.volume * (info.data.trade_contract_size or 1.0)
        position_id = str(deal.order)
        self._levels[position_id] = {}
        return BrokerResult.success(OpenedPosition(position_id, deal.price, quantity))

    def get_position(self, position_id):
        failed = self._ensure_connected()
        if failed:
            return failed
        positions = mt5.positions_get(ticket=int(position_id))
        if positions is None:
            return BrokerResult.failure(f"Position lookup failed: {mt5.last_error()}", code='query')
        if not positions:
            return BrokerResult.success(None)
        info = self._symbol_info()
        if not info.ok:
            return info
        position = positions[0]
        quantity = position.volume * (info.data.trade_contract_size or 1.0)
        return BrokerResult.success(OpenedPosition(position_id, position.price_open, quantity))

    def _modify_levels(self, position_id: str, key: str, price: float) -> BrokerResult[None]:
        failed = self._ensure_connected()
        if failed:
            return failed
        levels = self._levels.setdefault(position_id, {})
        levels[key] = price
        request = {
            'action': mt5.TRADE_ACTION_SLTP,
            'symbol': self.symbol,
            'position': int(position_id),
            'sl': levels.get('sl', 0.0),
            'tp': levels.get('tp', 0.0),
            'magic': self.config.magic,
        }
        sent = self._send(request, "Attach %s" % key)
        return BrokerResult.success() if sent.ok else BrokerResult(error=sent.error)

    def attach_stop_order(self, position_id, price, amount):
        # MT5 stop-loss always covers the whole position
        return self._modify_levels(position_id, 'sl', price)

    def attach_target_order(self, position_id, price, amount):
        return self._modify_levels(position_id, 'tp', price)

    def close_position(self, position_id, price_ref=None):
        failed = self._ensure_connected()
        if failed:
            return failed
        positions = mt5.positions_get(ticket=int(position_id))
        if not positions:
            return BrokerResult.failure(f"Position {position_id} not found", code='not_found')
        position = positions[0]
        tick = mt5.symbol_info_tick(self.symbol)
        if tick is None:
            return BrokerResult.failure(f"No tick for {self.symbol}: {mt5.last_error()}", code='no_price')
        closing_long = position.type == mt5.POSITION_TYPE_BUY
        request = {
            'action': mt5.TRADE_ACTION_DEAL,
            'symbol': self.symbol,
            'volume': position.volume,
            'type': mt5.ORDER_TYPE_SELL if closing_long else mt5.ORDER_TYPE_BUY,
            'position': position.ticket,
            'price': tick.bid if closing_long else tick.ask,
            'deviation': self.config.deviation,
            'magic': self.config.magic,
            'comment': 'macrobot close',
            'type_time': mt5.ORDER_TIME_GTC,
            'type_filling': mt5.ORDER_FILLING_IOC,
        }
        sent = self._send(request, "Close position")
        if sent.ok:
            self._levels.pop(position_id, None)
            return BrokerResult.success()
        return BrokerResult(error=sent.error)
