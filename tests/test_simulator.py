import os
import sys
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from macrobot.execution.backtest_exec import ExitRules, PositionSimulator
from macrobot.execution.models import ExitReason, PriceBar
from macrobot.strategy.leverage import LONG, SHORT, LeverageResult

import unittest

ENTRY = pd.Timestamp("2024-05-15 12:30:00", tz="UTC")


def _bar(second, open_, high, low, close):
    return PriceBar(ENTRY + pd.Timedelta(seconds=second), open_, high, low, close, 1.0)


def _flat(second, price=60_000.0):
    return _bar(second, price, price, price, price)


class TestPositionSimulator(unittest.TestCase):
    def setUp(self) -> None:
        self.rules = ExitRules(sl_pct=0.002, tp_pct=0.02, return_threshold_pct=0.0015, grace_seconds=10)
        self.simulator = PositionSimulator(self.rules, base_amount=200_000)

    def test_short_takes_profit(self) -> None:
        bars = [_flat(0), _flat(1), _bar(2, 60_000, 60_050, 58_700, 58_750)]
        result = self.simulator.simulate("CPI", ENTRY, bars, LeverageResult(-2, SHORT))
        self.assertEqual(result.exit_reason, ExitReason.TOOK_PROFIT.value)
        self.assertEqual(result.action, 'sell')
        self.assertEqual(result.entry_price, 60_000.0)
        self.assertEqual(result.exit_price, 58_800.0)
        self.assertAlmostEqual(result.profit_or_loss, 8_000.0, places=2)
        self.assertAlmostEqual(result.position_size, 6.6667, places=4)
        self.assertEqual(result.leverage, -2)
        self.assertEqual(result.exit_time, ENTRY + pd.Timedelta(seconds=2))

    def test_long_stops_out(self) -> None:
        bars = [_bar(0, 60_000, 60_100, 59_990, 60_050), _bar(1, 60_050, 60_060, 59_800, 59_850)]
        result = self.simulator.simulate("NFP", ENTRY, bars, LeverageResult(1, LONG))
        self.assertEqual(result.exit_reason, ExitReason.STOPPED_OUT.value)
        self.assertEqual(result.action, 'buy')
        self.assertEqual(result.exit_price, 59_880.0)
        self.assertAlmostEqual(result.profit_or_loss, -400.0, places=2)

    def test_take_profit_wins_when_bar_touches_both_levels(self) -> None:
        bars = [_bar(0, 60_000, 61_300, 59_800, 60_000)]
        result = self.simulator.simulate("CPI", ENTRY, bars, LeverageResult(1, LONG))
        self.assertEqual(result.exit_reason, ExitReason.TOOK_PROFIT.value)
        self.assertEqual(result.exit_price, 61_200.0)

    def test_stop_loss_priority_is_configurable(self) -> None:
        self.rules.same_bar_priority = 'stop_loss'
        bars = [_bar(0, 60_000, 61_300, 59_800, 60_000)]
        result = self.simulator.simulate("CPI", ENTRY, bars, LeverageResult(1, LONG))
        self.assertEqual(result.exit_reason, ExitReason.STOPPED_OUT.value)

    def test_short_take_profit_wins_when_bar_touches_both_levels(self) -> None:
        # Short levels: take-profit 58 800 below, stop-loss 60 120 above
        bars = [_bar(0, 60_000, 60_200, 58_700, 59_000)]
        result = self.simulator.simulate("CPI", ENTRY, bars, LeverageResult(-1, SHORT))
        self.assertEqual(result.exit_reason, ExitReason.TOOK_PROFIT.value)
        self.assertEqual(result.exit_price, 58_800.0)
        self.assertAlmostEqual(result.profit_or_loss, 4_000.0, places=2)

    def test_short_stop_loss_priority_is_configurable(self) -> None:
        self.rules.same_bar_priority = 'stop_loss'
        bars = [_bar(0, 60_000, 60_200, 58_700, 59_000)]
        result = self.simulator.simulate("CPI", ENTRY, bars, LeverageResult(-1, SHORT))
        self.assertEqual(result.exit_reason, ExitReason.STOPPED_OUT.value)
        self.assertEqual(result.exit_price, 60_120.0)
        self.assertAlmostEqual(result.profit_or_loss, -400.0, places=2)

    def test_closes_when_price_does_not_move(self) -> None:
        bars = [_bar(s, 60_000, 60_050, 59_950, 60_010) for s in range(20)]
        result = self.simulator.simulate("CPI", ENTRY, bars, LeverageResult(1, LONG))
        self.assertEqual(result.exit_reason, ExitReason.TIMED_OUT_NO_MOVEMENT.value)
        self.assertTrue(result.closed_for_no_movement)
        self.assertEqual(result.action, 'buy (closed due to no movement)')
        self.assertEqual(result.exit_time, ENTRY + pd.Timedelta(seconds=10))
        self.assertEqual(result.exit_price, 60_010.0)

    def test_early_favourable_move_disables_no_movement_exit(self) -> None:
        # Short threshold is 59 910; touched at second 3, then price drifts back
        bars = [_flat(0), _flat(1), _flat(2), _bar(3, 60_000, 60_000, 59_900, 59_950)]
        bars += [_flat(s) for s in range(4, 30)]
        result = self.simulator.simulate("CPI", ENTRY, bars, LeverageResult(-1, SHORT))
        self.assertEqual(result.exit_reason, ExitReason.END_OF_DATA.value)
        self.assertEqual(result.exit_time, ENTRY + pd.Timedelta(seconds=29))
        self.assertEqual(result.exit_price, 60_000.0)
        self.assertAlmostEqual(result.profit_or_loss, 0.0)

    def test_per_bar_policy_closes_after_early_move_fades(self) -> None:
        self.rules.no_movement_policy = 'per_bar'
        bars = [_flat(0), _flat(1), _flat(2), _bar(3, 60_000, 60_000, 59_900, 59_950)]
        bars += [_flat(s) for s in range(4, 30)]
        result = self.simulator.simulate("CPI", ENTRY, bars, LeverageResult(-1, SHORT))
        self.assertEqual(result.exit_reason, ExitReason.TIMED_OUT_NO_MOVEMENT.value)
        self.assertEqual(result.exit_time, ENTRY + pd.Timedelta(seconds=10))
        self.assertEqual(result.action, 'sell (closed due to no movement)')

    def test_per_bar_policy_keeps_position_while_bars_reach_threshold(self) -> None:
        self.rules.no_movement_policy = 'per_bar'
        # Long threshold is 60 090; every bar reaches it until second 14
        bars = [_bar(s, 60_000, 60_100, 60_000, 60_050) for s in range(15)]
        bars += [_flat(s, 60_050) for s in range(15, 20)]
        result = self.simulator.simulate("NFP", ENTRY, bars, LeverageResult(1, LONG))
        self.assertEqual(result.exit_reason, ExitReason.TIMED_OUT_NO_MOVEMENT.value)
        self.assertEqual(result.exit_time, ENTRY + pd.Timedelta(seconds=15))
        self.assertEqual(result.exit_price, 60_050.0)

    def test_max_hold(self) -> None:
        self.rules.max_hold_seconds = 5
        bars = [_bar(0, 60_000, 60_100, 60_000, 60_050)] + [_flat(s, 60_020) for s in range(1, 20)]
        result = self.simulator.simulate("FOMC", ENTRY, bars, LeverageResult(1, LONG))
        self.assertEqual(result.exit_reason, ExitReason.TIMED_OUT_MAX_HOLD.value)
        self.assertEqual(result.exit_time, ENTRY + pd.Timedelta(seconds=5))
        self.assertEqual(result.exit_price, 60_020.0)

    def test_bars_before_entry_are_ignored(self) -> None:
        bars = [_bar(-2, 50_000, 50_000, 40_000, 50_000), _flat(0), _bar(1, 60_000, 61_500, 60_000, 61_400)]
        result = self.simulator.simulate("CPI", ENTRY, bars, LeverageResult(1, LONG))
        self.assertEqual(result.entry_price, 60_000.0)
        self.assertEqual(result.exit_reason, ExitReason.TOOK_PROFIT.value)

    def test_no_trade_without_bars_or_leverage(self) -> None:
        self.assertIsNone(self.simulator.simulate("CPI", ENTRY, [], LeverageResult(1, LONG)))
        self.assertIsNone(self.simulator.simulate("CPI", ENTRY, [_flat(0)], LeverageResult(0, None)))


if __name__ == '__main__':
    unittest.main()
