"""
Surprise-to-leverage decision.

The trading signal is a single number: how far the published value of
an indicator lands from the expected value, measured in units of a
per-indicator offset.  That distance, truncated toward zero and capped
at the maximum leverage, sizes the position; its sign (after applying
the indicator's direction) picks long or short.  Distances smaller than
one offset are treated as noise and produce no trade.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import math

from ..config.schema import Config, IndicatorConfig

LONG = 'long'
SHORT = 'short'

# Guards against (1.5 - 1.3) / 0.2 == 0.9999999999999998
_RATIO_DECIMALS = 9


@dataclass(frozen=True)
class LeverageResult:
    """Leverage and direction derived from one indicator value."""
    leverage: int
    direction: Optional[str]
    capped_at_max: bool = False

    @property
    def is_trade(self) -> bool:
        return self.leverage != 0

    @property
    def magnitude(self) -> int:
        return abs(self.leverage)


def max_leverage(max_position_size: float, base_amount: float) -> int:
    """Largest leverage allowed by the position size cap."""
    if base_amount <= 0:
        raise ValueError("base_amount must be positive")
    return int(math.floor(max_position_size / base_amount))


def decide_leverage(
    value: float,
    threshold: float,
    offset: float,
    direct: bool,
    max_lev: int,
) -> LeverageResult:
    """Map an observed value to a signed leverage.

    Parameters
    ----------
    value : float
        Published (or, when missing, consensus) value of the indicator.
    threshold : float
        Expected value the surprise is measured against.
    offset : float
        Surprise size worth one unit of leverage.
    direct : bool
        If ``False`` the leverage is negated, so a value above the
        threshold sells and a value below buys.
    max_lev : int
        Magnitude cap applied before the direction flip.

    Returns
    -------
    LeverageResult
        ``leverage`` is 0 and ``direction`` is ``None`` inside the dead
        zone.
    """
    if offset <= 0:
        raise ValueError("offset must be positive")
    ratio = round((value - threshold) / offset, _RATIO_DECIMALS)
    leverage = int(math.copysign(math.floor(abs(ratio)), ratio))

    capped = False
    if leverage > max_lev:
        leverage = max_lev
        capped = True
    elif leverage < -max_lev:
        leverage = -max_lev
        capped = True

    if not direct:
        leverage = -leverage

    if -1 < leverage < 1:
        return LeverageResult(leverage=0, direction=None, capped_at_max=False)
    return LeverageResult(
        leverage=leverage,
        direction=LONG if leverage > 0 else SHORT,
        capped_at_max=capped,
    )


def decide_for_indicator(
    config: Config,
    indicator: IndicatorConfig,
    value: float,
    threshold: Optional[float] = None,
) -> LeverageResult:
    """Apply :func:`decide_leverage` with an indicator's configuration.

    `threshold` defaults to the indicator's configured expectation; the
    backtest passes the historical consensus instead.
    """
    return decide_leverage(
        value=value,
        threshold=indicator.threshold if threshold is None else threshold,
        offset=indicator.offset,
        direct=indicator.direct,
        max_lev=max_leverage(config.max_position_size, config.base_amount),
    )


def exit_levels(entry_price: float, direction: str, sl_pct: float, tp_pct: float) -> tuple:
    """Return ``(take_profit, stop_loss)`` prices for a position."""
    if direction == LONG:
        return entry_price * (1.0 + tp_pct), entry_price * (1.0 - sl_pct)
    return entry_price * (1.0 - tp_pct), entry_price * (1.0 + sl_pct)
