"""
Backtest execution engine.

This module replays historical indicator releases against the
second-resolution price file.  For every release `BacktestEngine`
computes the leverage the live bot would have used, seeks to the
release time with `PriceSeriesIndex`, streams the following bars and
lets `PositionSimulator` walk them until the position hits its
take-profit, its stop-loss or one of the timeout rules.  Each traded
event yields exactly one `TradeResult`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional
import logging

from ..config.schema import Config
from ..data.bar_stream import BarStream
from ..data.events import IndicatorEvent, load_events
from ..data.price_index import PriceSeriesIndex, read_csv_header
from ..strategy.leverage import LONG, LeverageResult, decide_for_indicator, exit_levels
from ..utils.timeutils import seconds_between, to_epoch_ms
from .models import ExitReason, NO_MOVEMENT_SUFFIX, PriceBar, TradeResult

logger = logging.getLogger(__name__)


class PositionState(str, Enum):
    AWAITING_ENTRY = 'awaiting_entry'
    OPEN = 'open'
    TOOK_PROFIT = ExitReason.TOOK_PROFIT.value
    STOPPED_OUT = ExitReason.STOPPED_OUT.value
    TIMED_OUT_NO_MOVEMENT = ExitReason.TIMED_OUT_NO_MOVEMENT.value
    TIMED_OUT_MAX_HOLD = ExitReason.TIMED_OUT_MAX_HOLD.value
    END_OF_DATA = ExitReason.END_OF_DATA.value


@dataclass
class ExitRules:
    """Exit parameters applied to every simulated position."""
    sl_pct: float
    tp_pct: float
    return_threshold_pct: float
    grace_seconds: float = 10.0
    max_hold_seconds: Optional[float] = None
    same_bar_priority: str = 'take_profit'
    no_movement_policy: str = 'cumulative'

    @classmethod
    def from_config(cls, config: Config, max_hold_seconds: Optional[float] = None) -> "ExitRules":
        return cls(
            sl_pct=config.sl_pct,
            tp_pct=config.tp_pct,
            return_threshold_pct=config.no_movement_return_threshold_pct,
            grace_seconds=config.no_movement_grace_seconds,
            max_hold_seconds=max_hold_seconds,
            same_bar_priority=config.same_bar_priority,
            no_movement_policy=config.no_movement_policy,
        )


class PositionSimulator:
    """Walk bars for one position and decide where it exits.

    The simulator is a small state machine: it waits for the first bar
    at or after the entry time, opens the position at that bar's open
    and then checks, bar by bar, take-profit, stop-loss, the
    no-movement rule and the optional maximum holding time.
    """

    def __init__(self, rules: ExitRules, base_amount: float) -> None:
        self.rules = rules
        self.base_amount = base_amount

    def _touched(self, bar: PriceBar, level: float, long: bool, favourable: bool) -> bool:
        # Favourable levels sit above entry for longs, adverse ones below
        if long == favourable:
            return bar.high >= level
        return bar.low <= level

    def simulate(
        self,
        event_name: str,
        entry_time,
        bars: Iterable[PriceBar],
        decision: LeverageResult,
    ) -> Optional[TradeResult]:
        """Simulate the position opened for `decision` at `entry_time`.

        Returns ``None`` for dead-zone decisions and when no bar at or
        after `entry_time` exists.
        """
        if not decision.is_trade:
            return None
        rules = self.rules
        long = decision.direction == LONG
        state = PositionState.AWAITING_ENTRY
        entry_price = take_profit = stop_loss = return_threshold = 0.0
        exit_price = 0.0
        exit_time = entry_time
        crossed_threshold = False
        last_bar: Optional[PriceBar] = None

        for bar in bars:
            if state == PositionState.AWAITING_ENTRY:
                if bar.timestamp < entry_time:
                    continue
                entry_price = bar.open
                take_profit, stop_loss = exit_levels(entry_price, decision.direction, rules.sl_pct, rules.tp_pct)
                direction_sign = 1.0 if long else -1.0
                return_threshold = entry_price * (1.0 + direction_sign * rules.return_threshold_pct)
                state = PositionState.OPEN
            last_bar = bar

            elapsed = seconds_between(entry_time, bar.timestamp)
            hit_tp = self._touched(bar, take_profit, long, favourable=True)
            hit_sl = self._touched(bar, stop_loss, long, favourable=False)
            if hit_tp and hit_sl and rules.same_bar_priority == 'stop_loss':
                hit_tp = False
            crossed_now = self._touched(bar, return_threshold, long, favourable=True)
            if rules.no_movement_policy == 'per_bar':
                crossed_threshold = crossed_now
            elif crossed_now:
                crossed_threshold = True

            if hit_tp:
                state, exit_price = PositionState.TOOK_PROFIT, take_profit
            elif hit_sl:
                state, exit_price = PositionState.STOPPED_OUT, stop_loss
            elif elapsed >= rules.grace_seconds and not crossed_threshold:
                state, exit_price = PositionState.TIMED_OUT_NO_MOVEMENT, bar.close
            elif rules.max_hold_seconds is not None and elapsed >= rules.max_hold_seconds:
                state, exit_price = PositionState.TIMED_OUT_MAX_HOLD, bar.close
            else:
                continue
            exit_time = bar.timestamp
            break

        if state == PositionState.AWAITING_ENTRY:
            logger.info("%s: no price data after %s. Skipping event.", event_name, entry_time)
            return None
        if state == PositionState.OPEN:
            state = PositionState.END_OF_DATA
            exit_price = last_bar.close
            exit_time = last_bar.timestamp

        quantity = self.base_amount * decision.magnitude / entry_price
        if long:
            profit_or_loss = (exit_price - entry_price) * quantity
        else:
            profit_or_loss = (entry_price - exit_price) * quantity

        action = 'buy' if long else 'sell'
        if state == PositionState.TIMED_OUT_NO_MOVEMENT:
            action += NO_MOVEMENT_SUFFIX
        logger.info(
            "%s: %s. Entry price: %s, Exit price: %s, Profit/Loss: %.2f",
            event_name, state.value, entry_price, exit_price, profit_or_loss,
        )
        return TradeResult(
            event=event_name,
            entry_time=entry_time,
            exit_time=exit_time,
            action=action,
            entry_price=round(entry_price, 2),
            exit_price=round(exit_price, 2),
            profit_or_loss=round(profit_or_loss, 2),
            position_size=round(quantity, 4),
            leverage=decision.leverage,
            exit_reason=state.value,
        )


class BacktestEngine:
    """Run the surprise strategy over the historical events dataset."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.prices_path = config.data.prices_path
        self.index = PriceSeriesIndex(self.prices_path, window_size=config.data.window_size)

    def _stop_condition(self, entry_time, max_hold_seconds: Optional[float]):
        # Wide enough for both exit levels to be seen by the simulator
        band = max(self.config.tp_pct, self.config.sl_pct)

        def reached(bar: PriceBar, entry_price: float) -> bool:
            if bar.high > entry_price * (1 + band) or bar.low < entry_price * (1 - band):
                return True
            return max_hold_seconds is not None and seconds_between(entry_time, bar.timestamp) >= max_hold_seconds

        return reached

    def run_event(self, event: IndicatorEvent, headers: List[str]) -> Optional[TradeResult]:
        """Simulate one release; ``None`` when the event is not traded."""
        indicator = self.config.indicator_for_event(event.event_id)
        if indicator is None:
            logger.debug("%s: no offset configured for event id %s", event.name, event.event_id)
            return None
        value = event.observed_value
        if value is None or event.consensus is None:
            logger.info("%s: missing consensus or value. Skipping event.", event.name)
            return None

        decision = decide_for_indicator(self.config, indicator, value, threshold=event.consensus)
        if not decision.is_trade:
            logger.info("%s: Value %s is around the threshold. No action taken.", event.name, value)
            return None
        if decision.leverage > 0:
            logger.info("%s: Value %s is below the threshold. Buying with leverage %d.",
                        event.name, value, decision.magnitude)
        else:
            logger.info("%s: Value %s is above the threshold. Selling with leverage %d.",
                        event.name, value, decision.magnitude)

        first_ts = self.index.first_timestamp()
        if first_ts is None or to_epoch_ms(event.release_time) < first_ts:
            logger.info("Event time %s is before the first price data point. Skipping event.",
                        event.release_time)
            return None
        start = self.index.locate(event.release_time)

        max_hold = self.config.hold_limit(indicator)
        bars = BarStream(
            self.prices_path,
            start,
            stop_condition=self._stop_condition(event.release_time, max_hold),
            entry_time=event.release_time,
            headers=headers,
            chunk_size=self.config.data.chunk_size,
        )
        simulator = PositionSimulator(ExitRules.from_config(self.config, max_hold), self.config.base_amount)
        return simulator.simulate(event.name, event.release_time, bars, decision)

    def run(self, events: Optional[List[IndicatorEvent]] = None) -> List[TradeResult]:
        """Execute the backtest across all events.

        Returns
        -------
        list of TradeResult
            One result per traded event, in release order.
        """
        if events is None:
            events = load_events(self.config.data.events_path)
        headers = read_csv_header(self.prices_path)
        results: List[TradeResult] = []
        for event in events:
            result = self.run_event(event, headers)
            if result is not None:
                results.append(result)
        logger.info("Backtest finished: %d trades from %d events", len(results), len(events))
        return results
