import os
import sys
import tempfile

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from macrobot.config.schema import Config, ConfigurationError, load_config, resolve_indicator

import unittest


class TestConfig(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _write(self, text: str) -> str:
        path = os.path.join(self.tmp.name, "config.yaml")
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(text)
        return path

    def test_defaults(self) -> None:
        cfg = load_config(self._write(""))
        self.assertEqual(cfg.base_amount, 200_000)
        self.assertEqual(cfg.max_position_size, 1_000_000)
        self.assertEqual(cfg.sl_pct, 0.002)
        self.assertEqual(cfg.tp_pct, 0.02)
        self.assertIsNone(cfg.max_hold_seconds)
        self.assertEqual(sorted(cfg.indicators), ['CPI', 'FOMC', 'GDP', 'NFP', 'PCE'])
        self.assertFalse(any(ind.direct for ind in cfg.indicators.values()))
        self.assertEqual(cfg.indicators['NFP'].offset, 15_000)
        self.assertEqual(cfg.no_movement_policy, "cumulative")
        self.assertEqual(cfg.download.symbol, "BTCUSDT")
        self.assertEqual(cfg.download.parallel_downloads, 20)

    def test_yaml_overrides_are_merged(self) -> None:
        cfg = load_config(self._write(
            "sl_pct: 0.01\n"
            "no_movement_policy: PER_BAR\n"
            "max_hold_seconds: 1500\n"
            "indicators:\n"
            "  CPI:\n"
            "    threshold: 0.4\n"
            "    max_hold_seconds: 600\n"
            "data:\n"
            "  window_size: 4096\n"
            "live:\n"
            "  indicator: fomc\n"
        ))
        self.assertEqual(cfg.sl_pct, 0.01)
        self.assertEqual(cfg.no_movement_policy, "per_bar")
        self.assertEqual(cfg.max_hold_seconds, 1500.0)
        cpi = cfg.indicators['CPI']
        self.assertEqual(cpi.threshold, 0.4)
        self.assertEqual(cpi.offset, 0.02)
        self.assertEqual(cpi.event_id, "6f846eaa-9a12-43ab-930d-f059069c6646")
        self.assertEqual(cfg.hold_limit(cpi), 600.0)
        self.assertEqual(cfg.hold_limit(cfg.indicators['NFP']), 1500.0)
        self.assertEqual(cfg.data.window_size, 4096)
        self.assertEqual(cfg.data.chunk_size, 600)
        self.assertEqual(resolve_indicator(cfg, cfg.live.indicator).name, 'FOMC')

    def test_unknown_live_indicator(self) -> None:
        with self.assertRaises(ConfigurationError):
            load_config(self._write("live:\n  indicator: retail_sales\n"))

    def test_invalid_values(self) -> None:
        with self.assertRaises(ConfigurationError):
            load_config(self._write("same_bar_priority: coin_flip\n"))
        with self.assertRaises(ConfigurationError):
            load_config(self._write("no_movement_policy: sometimes\n"))
        with self.assertRaises(ConfigurationError):
            load_config(self._write("data:\n  unknown_key: 1\n"))
        with self.assertRaises(ConfigurationError):
            load_config(self._write("indicators:\n  CPI:\n    offset: 0\n"))

    def test_event_lookup(self) -> None:
        cfg = Config()
        self.assertEqual(cfg.indicator_for_event("9cdf56fd-99e4-4026-aa99-2b6c0ca92811").name, 'NFP')
        self.assertIsNone(cfg.indicator_for_event("unknown"))
        self.assertIsNone(cfg.indicator_for_event(None))


if __name__ == '__main__':
    unittest.main()
