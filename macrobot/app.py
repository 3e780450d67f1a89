"""
Application entry point.

This module defines a simple command‑line interface for the bot: run a
backtest over historical releases, recompute statistics from saved
results, trade a release live, download and check the price file and
prepare the events dataset from a raw calendar export.
"""

from __future__ import annotations

import argparse
import logging
import os
from typing import List, Optional

from .config.schema import Config, load_config
from .data.events import clean_history
from .data.klines_check import find_gaps
from .data.klines_download import KlinesDownloader
from .data.proxies import ProxyListClient
from .execution.backtest_exec import BacktestEngine
from .execution.live_exec import LiveEngine
from .reporting.metrics import compute_statistics, format_statistics
from .reporting.report import RESULTS_FILE, STATISTICS_FILE, generate_backtest_report
from .utils.persistence import load_json, load_trade_results, save_json


def _setup_logging(verbose: bool) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def _run_backtest(config: Config, charts: bool) -> None:
    logging.info("Running backtest...")
    results = BacktestEngine(config).run()
    stats = generate_backtest_report(
        results,
        out_dir=config.data.results_dir,
        prices_path=config.data.prices_path if charts else None,
        window_size=config.data.window_size,
    )
    logging.info("Backtest statistics:\n%s", format_statistics(stats))
    logging.info("Backtest complete. Results saved to the '%s' directory.", config.data.results_dir)


def _run_stats(config: Config, results_path: Optional[str]) -> None:
    path = results_path or os.path.join(config.data.results_dir, RESULTS_FILE)
    stats = compute_statistics(load_trade_results(path))
    save_json(os.path.join(os.path.dirname(path) or '.', STATISTICS_FILE), stats)
    logging.info("Backtest statistics:\n%s", format_statistics(stats))


def _check_prices(config: Config) -> None:
    gaps = find_gaps(config.data.prices_path)
    if not gaps:
        logging.info("All timestamps are consecutive.")
        return
    logging.warning("%d gaps detected", len(gaps))
    for gap in gaps:
        logging.warning("%s -> %s (%.0f s)", gap['previous_time'], gap['current_time'], gap['gap_seconds'])


def _download_prices(config: Config) -> None:
    proxies = []
    if not config.live.proxyless:
        proxy_cfg = config.proxy
        proxies = ProxyListClient(proxy_cfg.api_url, proxy_cfg.api_key, proxy_cfg.page_size,
                                  timeout=config.live.request_timeout).list_proxies()
    logging.info("Downloading %s klines into %s...", config.download.symbol, config.data.prices_path)
    KlinesDownloader(config.download, config.data.prices_path, proxies=proxies,
                     timeout=config.live.request_timeout).run()


def _clean_events(config: Config, raw_path: str) -> None:
    raw = load_json(raw_path)
    if raw is None:
        raise FileNotFoundError(f"Raw calendar export not found: {raw_path}")
    event_ids = [ind.event_id for ind in config.indicators.values() if ind.event_id]
    cleaned = clean_history(raw, event_ids)
    save_json(config.data.events_path, cleaned)
    logging.info("Data cleaned successfully: %d events written to %s", len(cleaned), config.data.events_path)


def main(argv: Optional[List[str]] = None) -> None:
    """Parse command‑line arguments and dispatch to the appropriate mode."""
    parser = argparse.ArgumentParser(description="Macro release trading bot")
    parser.add_argument('mode',
                        choices=['backtest', 'stats', 'live', 'download-prices', 'check-prices', 'clean-events'],
                        help="Operating mode")
    parser.add_argument('--config', default='config.yaml', help="Path to configuration YAML file")
    parser.add_argument('--indicator', help="Override the live indicator (CPI, GDP, PCE, NFP, FOMC)")
    parser.add_argument('--results', help="Results JSON for the stats mode")
    parser.add_argument('--raw', default='data/history.json', help="Raw calendar export for clean-events")
    parser.add_argument('--no-charts', action='store_true', help="Skip the per-trade price charts")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging")
    args = parser.parse_args(argv)

    _setup_logging(args.verbose)

    config = load_config(args.config)
    config.mode = args.mode

    if args.mode == 'backtest':
        _run_backtest(config, charts=not args.no_charts)
    elif args.mode == 'stats':
        _run_stats(config, args.results)
    elif args.mode == 'download-prices':
        _download_prices(config)
    elif args.mode == 'check-prices':
        _check_prices(config)
    elif args.mode == 'clean-events':
        _clean_events(config, args.raw)
    else:
        if args.indicator:
            config.live.indicator = args.indicator
        LiveEngine(config).run()


if __name__ == '__main__':
    main()
