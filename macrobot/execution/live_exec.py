"""
Live execution engine.

Around a scheduled release the bot polls the indicator's publication
page every few seconds, rotating through a pool of proxies.  The first
tick that yields a value cancels the polling task and hands the value
to `SurpriseTrader`, which sizes the position from the surprise, opens
it at market and attaches a take-profit and a stop-loss computed from
the actual fill.  When a maximum holding time is configured, the
position is also closed by a timer.

All mutable state of a run lives in a `LiveSession`, so several loops
can coexist in one process (as they do in the tests).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence
import logging
import threading
import requests

from ..config.schema import Config, ConfigurationError, IndicatorConfig, resolve_indicator
from ..data.indicator_source import HttpIndicatorSource, IndicatorFetch, TransportError
from ..data.proxies import Proxy, ProxyListClient, ProxyRotation
from ..strategy.leverage import LONG, decide_for_indicator, exit_levels
from ..utils.persistence import load_position, save_position
from .broker import BrokerAdapter, PaperBroker
from .models import StopOrder, TargetOrder, TradePosition
from .mt5_exec import MT5Broker

logger = logging.getLogger(__name__)

StrategyFn = Callable[[float, Optional[Proxy]], Any]


class PollingTask:
    """Call `tick` every `interval` seconds until `cancel()` is called.

    Ticks run sequentially in the thread that calls `run()`.  A cancel
    issued from inside a tick (or from another thread) is seen before
    the next tick starts.
    """

    def __init__(self, interval: float, tick: Callable[["PollingTask"], None]) -> None:
        self.interval = interval
        self.tick = tick
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def run(self) -> None:
        while not self._cancelled.is_set():
            self.tick(self)
            if self._cancelled.wait(self.interval):
                break


@dataclass
class LiveSession:
    """State shared by the ticks of one strategy run."""
    rotation: ProxyRotation
    designated_proxy: Optional[Proxy] = None
    attempts: int = 0
    value: Optional[float] = None
    executed: bool = False
    result: Any = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def claim_execution(self) -> bool:
        """Mark the strategy as executed; ``False`` if it already was."""
        with self._lock:
            if self.executed:
                return False
            self.executed = True
            return True


class LiveStrategyLoop:
    """Poll an indicator until it is published, then run the strategy once.

    Parameters
    ----------
    single_shot : bool
        Stop after the first attempt even when no value was found.
    strategy_proxy_index : int
        Index of the proxy pinned for the trading calls.
    """

    def __init__(self, single_shot: bool = False, strategy_proxy_index: int = 0) -> None:
        self.single_shot = single_shot
        self.strategy_proxy_index = strategy_proxy_index

    def run(
        self,
        fetch: IndicatorFetch,
        strategy: StrategyFn,
        poll_interval_seconds: float,
        proxies: Sequence[Proxy] = (),
    ) -> LiveSession:
        """Block until the strategy ran (or the single attempt failed)."""
        rotation = ProxyRotation(proxies)
        session = LiveSession(rotation=rotation, designated_proxy=rotation.get(self.strategy_proxy_index))
        if not proxies:
            logger.info("No proxies configured. Polling without proxy.")

        def tick(task: PollingTask) -> None:
            if session.executed:
                task.cancel()
                return
            proxy = rotation.next()
            session.attempts += 1
            try:
                value = fetch(proxy)
            except (TransportError, requests.RequestException) as exc:
                logger.warning("Attempt %d failed: %s", session.attempts, exc)
                value = None
            if value is None:
                logger.info("No valid value found using %s. Rotating to the next proxy.",
                            proxy or 'direct connection')
                if self.single_shot:
                    task.cancel()
                return
            if not session.claim_execution():
                task.cancel()
                return
            task.cancel()
            session.value = value
            logger.info("Valid value found: %s", value)
            session.result = strategy(value, session.designated_proxy)

        PollingTask(poll_interval_seconds, tick).run()
        return session


class SurpriseTrader:
    """Trade an indicator value: decide, open, protect, optionally time out."""

    def __init__(
        self,
        config: Config,
        indicator: IndicatorConfig,
        broker: BrokerAdapter,
        state_file: Optional[str] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.config = config
        self.indicator = indicator
        self.broker = broker
        self.state_file = state_file
        self.timer_factory = timer_factory
        self.position: Optional[TradePosition] = None
        self.close_timer: Any = None

    def _persist(self) -> None:
        if self.state_file:
            save_position(self.state_file, self.position)

    def __call__(self, value: float, proxy: Optional[Proxy] = None) -> Optional[TradePosition]:
        name = self.indicator.name
        decision = decide_for_indicator(self.config, self.indicator, value)
        if not decision.is_trade:
            logger.info("%s value %s is around the threshold %s. No action taken.",
                        name, value, self.indicator.threshold)
            return None
        direction = decision.direction
        logger.info("%s value %s is %s the threshold %s. Executing %s strategy with leverage %d.",
                    name, value, 'above' if value > self.indicator.threshold else 'below',
                    self.indicator.threshold, direction.upper(), decision.magnitude)

        self.broker.configure_proxy(proxy)
        quote = self.broker.get_current_price()
        if not quote.ok:
            logger.error("Error fetching current price: %s", quote.error)
            return None
        price = quote.data.for_direction(direction)
        if price <= 0:
            logger.error("Invalid %s quote %s. Not trading.", direction.upper(), price)
            return None
        notional = self.config.base_amount * decision.magnitude
        amount = notional / price
        opened = self.broker.open_position(direction, amount, quote.data.price_ref)
        if not opened.ok:
            logger.error("Error executing %s strategy: %s", direction.upper(), opened.error)
            return None

        fill = opened.data
        logger.info("Successfully executed %s strategy: %s at %s", direction.upper(), fill.quantity, fill.open_price)
        position = TradePosition(
            id=fill.position_id,
            position_type=direction,
            open_price=fill.open_price,
            quantity=fill.quantity,
            amount_instrument=amount,
        )
        self.position = position
        self._protect(position)
        self._persist()

        hold = self.config.hold_limit(self.indicator)
        if hold is not None:
            self.close_timer = self.timer_factory(hold, self.close, args=(position,))
            self.close_timer.daemon = True
            self.close_timer.start()
        return position

    def _protect(self, position: TradePosition) -> None:
        take_profit, stop_loss = exit_levels(position.open_price, position.position_type,
                                             self.config.sl_pct, self.config.tp_pct)
        target = self.broker.attach_target_order(position.id, take_profit, position.quantity)
        if target.ok:
            position.target_orders.append(TargetOrder(take_profit, position.quantity))
        else:
            logger.error("Error attaching take-profit at %s: %s", take_profit, target.error)
        stop = self.broker.attach_stop_order(position.id, stop_loss, position.quantity)
        if stop.ok:
            position.stop_orders.append(StopOrder(stop_loss, position.quantity))
        else:
            logger.error("Error attaching stop-loss at %s: %s", stop_loss, stop.error)

    def close(self, position: TradePosition) -> bool:
        """Close `position` at market; returns whether the broker accepted."""
        quote = self.broker.get_current_price()
        result = self.broker.close_position(position.id, quote.data.price_ref if quote.ok else None)
        if not result.ok:
            logger.error("Error closing position %s: %s", position.id, result.error)
            return False
        logger.info("Closed %s position %s after the holding time", position.position_type, position.id)
        if self.position is position:
            self.position = None
            self._persist()
        return True


def build_broker(config: Config) -> BrokerAdapter:
    """Choose the broker adapter for the live configuration."""
    live = config.live
    if live.broker not in ('mt5', 'paper'):
        raise ConfigurationError(f"Unsupported broker {live.broker!r}. Expected 'mt5' or 'paper'.")
    if live.broker == 'mt5' and not live.dry_run:
        return MT5Broker(config.mt5)
    quote_source = MT5Broker(config.mt5) if live.broker == 'mt5' else None
    return PaperBroker(price=live.paper_price, quote_source=quote_source)


class LiveEngine:
    """Wire configuration, proxies, indicator source and broker into one run."""

    def __init__(
        self,
        config: Config,
        broker: Optional[BrokerAdapter] = None,
        fetch: Optional[IndicatorFetch] = None,
        proxies: Optional[Sequence[Proxy]] = None,
    ) -> None:
        self.config = config
        self.indicator = resolve_indicator(config, config.live.indicator)
        if fetch is None and not self.indicator.url:
            raise ConfigurationError(f"Indicator {self.indicator.name} has no url to poll")
        self.broker = broker or build_broker(config)
        self.fetch = fetch or HttpIndicatorSource.from_indicator(self.indicator, config.live.request_timeout)
        self._proxies = proxies

    def _load_proxies(self) -> Sequence[Proxy]:
        if self._proxies is not None:
            return self._proxies
        if self.config.live.proxyless:
            return []
        proxy_cfg = self.config.proxy
        return ProxyListClient(proxy_cfg.api_url, proxy_cfg.api_key, proxy_cfg.page_size,
                               timeout=self.config.live.request_timeout).list_proxies()

    def _reconcile_state(self, state_file: str) -> bool:
        """Clear a recorded position the venue has already closed.

        Returns ``False`` while a position from a previous run is still
        open, or when its status cannot be confirmed.
        """
        existing = load_position(state_file)
        if existing is None:
            return True
        held = self.broker.get_position(existing.id)
        if not held.ok:
            logger.error("Cannot check position %s recorded in %s: %s. Not trading.",
                         existing.id, state_file, held.error)
            return False
        if held.data is not None:
            logger.warning("Position %s from a previous run is still open (recorded in %s). Not trading again.",
                           existing.id, state_file)
            return False
        logger.info("Position %s recorded in %s was closed by the venue. Clearing state.", existing.id, state_file)
        save_position(state_file, None)
        return True

    def run(self) -> Optional[LiveSession]:
        """Poll until the release is traded.  Press Ctrl+C to stop."""
        live = self.config.live
        try:
            if not self._reconcile_state(live.state_file):
                return None
            logger.info("Using %s trading strategy (dry_run=%s)", self.indicator.name, live.dry_run)
            trader = SurpriseTrader(self.config, self.indicator, self.broker, state_file=live.state_file)
            loop = LiveStrategyLoop(single_shot=live.single_shot, strategy_proxy_index=live.strategy_proxy_index)
            session = loop.run(self.fetch, trader, live.poll_interval_seconds, self._load_proxies())
            if trader.close_timer is not None:
                logger.info("Waiting for the holding time to elapse...")
                trader.close_timer.join()
            return session
        except KeyboardInterrupt:
            logger.info("Shutting down live engine...")
            return None
        finally:
            for adapter in (self.broker, getattr(self.broker, 'quote_source', None)):
                if isinstance(adapter, MT5Broker):
                    adapter.shutdown()
