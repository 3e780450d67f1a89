import json
import os
import sys
import tempfile
import pandas as pd

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from macrobot.config.schema import Config
from macrobot.execution.backtest_exec import BacktestEngine
from macrobot.execution.models import ExitReason
from macrobot.reporting.report import generate_backtest_report

import unittest

T0 = 1_700_000_000_000
CPI_ID = "6f846eaa-9a12-43ab-930d-f059069c6646"
NFP_ID = "9cdf56fd-99e4-4026-aa99-2b6c0ca92811"


def _iso(ms):
    return pd.Timestamp(ms, unit='ms', tz='UTC').isoformat()


class TestBacktestEngine(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        prices = os.path.join(self.tmp.name, "prices.csv")
        lines = ["timestamp,open,high,low,close,volume"]
        for second in range(300):
            price = 58_700.0 if second == 65 else 60_000.0
            lines.append(f"{T0 + second * 1000},60000.0,60000.0,{price},{price},1.0")
        with open(prices, "w") as fh:
            fh.write("\n".join(lines) + "\n")

        events = [
            # Traded: 0.54 vs 0.50 consensus is two offsets above, sell with leverage 2
            {'eventId': CPI_ID, 'name': 'CPI', 'dateUtc': _iso(T0 + 60_000),
             'actual': 0.54, 'consensus': 0.5, 'previous': 0.4},
            # Before the first bar
            {'eventId': CPI_ID, 'name': 'CPI', 'dateUtc': _iso(T0 - 3_600_000),
             'actual': 0.7, 'consensus': 0.5},
            # Inside the dead zone
            {'eventId': NFP_ID, 'name': 'NFP', 'dateUtc': _iso(T0 + 120_000),
             'actual': 180_000, 'consensus': 175_000},
            # Not a configured indicator
            {'eventId': 'unknown', 'name': 'Retail Sales', 'dateUtc': _iso(T0 + 130_000),
             'actual': 5.0, 'consensus': 1.0},
            # No consensus
            {'eventId': NFP_ID, 'name': 'NFP', 'dateUtc': _iso(T0 + 140_000),
             'actual': 100_000, 'consensus': None},
        ]
        events_path = os.path.join(self.tmp.name, "events.json")
        with open(events_path, "w") as fh:
            json.dump(events, fh)

        self.cfg = Config()
        self.cfg.data.prices_path = prices
        self.cfg.data.events_path = events_path
        self.cfg.data.window_size = 256
        self.cfg.data.chunk_size = 16

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_runs_only_tradable_events(self) -> None:
        results = BacktestEngine(self.cfg).run()
        self.assertEqual(len(results), 1)
        trade = results[0]
        self.assertEqual(trade.event, 'CPI')
        self.assertEqual(trade.action, 'sell')
        self.assertEqual(trade.leverage, -2)
        self.assertEqual(trade.entry_time, pd.Timestamp(T0 + 60_000, unit='ms', tz='UTC'))
        self.assertEqual(trade.exit_time, pd.Timestamp(T0 + 65_000, unit='ms', tz='UTC'))
        self.assertEqual(trade.exit_reason, ExitReason.TOOK_PROFIT.value)
        self.assertEqual(trade.exit_price, 58_800.0)
        self.assertAlmostEqual(trade.profit_or_loss, 8_000.0, places=2)

    def test_max_hold_closes_position(self) -> None:
        self.cfg.max_hold_seconds = 3
        results = BacktestEngine(self.cfg).run()
        self.assertEqual(len(results), 1)
        trade = results[0]
        self.assertEqual(trade.exit_reason, ExitReason.TIMED_OUT_MAX_HOLD.value)
        self.assertEqual(trade.exit_time, pd.Timestamp(T0 + 63_000, unit='ms', tz='UTC'))
        self.assertAlmostEqual(trade.profit_or_loss, 0.0)

    def test_per_indicator_hold_overrides_global(self) -> None:
        self.cfg.max_hold_seconds = 3
        self.cfg.indicators['CPI'].max_hold_seconds = 4
        trade = BacktestEngine(self.cfg).run()[0]
        self.assertEqual(trade.exit_time, pd.Timestamp(T0 + 64_000, unit='ms', tz='UTC'))

    def test_report_with_trade_charts(self) -> None:
        results = BacktestEngine(self.cfg).run()
        out_dir = os.path.join(self.tmp.name, "results")
        generate_backtest_report(results, out_dir=out_dir, prices_path=self.cfg.data.prices_path,
                                 window_size=self.cfg.data.window_size)
        self.assertTrue(os.path.exists(os.path.join(out_dir, "charts", "trade_001.png")))


if __name__ == '__main__':
    unittest.main()
