"""
Report generation utilities.

This module turns backtest results into human‑readable artefacts:
the raw results as JSON (the format `stats` reloads), a CSV of trades,
a JSON summary of statistics, a PNG chart of cumulative profit and,
optionally, one PNG per trade showing the price action around entry
and exit.
"""

from __future__ import annotations

import os
import logging
from typing import Any, Dict, List, Optional
import pandas as pd
import matplotlib

# Use non‑interactive backend for environments without display
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from ..data.bar_stream import BarStream
from ..data.price_index import PriceSeriesIndex, read_csv_header
from ..execution.models import TradeResult
from ..utils.persistence import save_json, save_trade_results
from .metrics import compute_statistics

logger = logging.getLogger(__name__)

RESULTS_FILE = 'backtest_results.json'
STATISTICS_FILE = 'backtest_statistics.json'
CHART_MARGIN_SECONDS = 50


def generate_backtest_report(
    results: List[TradeResult],
    out_dir: str = "results",
    prices_path: Optional[str] = None,
    window_size: int = 50_000,
) -> Dict[str, Any]:
    """Generate report files for a backtest run.

    Creates the output directory if it does not exist and writes the
    following files:

    - `backtest_results.json` – the complete list of trades
    - `trades.csv` – the same trades as a table
    - `backtest_statistics.json` – performance statistics
    - `pnl_curve.png` – cumulative profit/loss per trade
    - `charts/trade_NNN.png` – price around each trade, only when
      `prices_path` is given

    Returns the statistics dictionary.
    """
    os.makedirs(out_dir, exist_ok=True)

    save_trade_results(os.path.join(out_dir, RESULTS_FILE), results)

    df_trades = pd.DataFrame([r.to_dict() for r in results])
    df_trades.to_csv(os.path.join(out_dir, 'trades.csv'), index=False)

    stats = compute_statistics(results)
    save_json(os.path.join(out_dir, STATISTICS_FILE), stats)

    plot_pnl_curve(results, os.path.join(out_dir, 'pnl_curve.png'))

    if prices_path and results:
        chart_dir = os.path.join(out_dir, 'charts')
        os.makedirs(chart_dir, exist_ok=True)
        index = PriceSeriesIndex(prices_path, window_size=window_size)
        headers = read_csv_header(prices_path)
        for number, trade in enumerate(results, start=1):
            plot_trade(trade, index, headers, os.path.join(chart_dir, f'trade_{number:03d}.png'))
    return stats


def plot_pnl_curve(results: List[TradeResult], path: str) -> None:
    fig, ax = plt.subplots(figsize=(10, 4))
    if results:
        # Plotted as naive UTC
        times = pd.to_datetime([r.exit_time for r in results], utc=True).tz_localize(None)
        cumulative = pd.Series([r.profit_or_loss for r in results]).cumsum()
        ax.step(times, cumulative, where='post', linewidth=1.5)
        ax.axhline(0.0, color='grey', linewidth=0.8)
        ax.set_title('Cumulative Profit/Loss')
        ax.set_xlabel('Exit time')
        ax.set_ylabel('P/L')
        fig.autofmt_xdate()
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)


def plot_trade(trade: TradeResult, index: PriceSeriesIndex, headers: List[str], path: str) -> None:
    """Chart the bars from shortly before entry until shortly after exit."""
    start = trade.entry_time - pd.Timedelta(seconds=CHART_MARGIN_SECONDS)
    end = trade.exit_time + pd.Timedelta(seconds=CHART_MARGIN_SECONDS)
    # Before the first record locate() yields 0; read from the first bar instead
    offset = max(index.locate(start), index.data_start)
    bars = [
        bar for bar in BarStream(index.path, offset, stop_condition=lambda bar, _: bar.timestamp >= end,
                                 headers=headers)
        if start <= bar.timestamp <= end
    ]
    if not bars:
        return
    frame = pd.DataFrame([vars(b) for b in bars]).set_index('timestamp')
    frame.index = frame.index.tz_convert(None)

    is_buy = trade.action.startswith('buy')
    fig, ax = plt.subplots(figsize=(10, 5))
    ax.fill_between(frame.index, frame['low'], frame['high'], color='lightsteelblue', step='mid')
    ax.plot(frame.index, frame['close'], color='steelblue', linewidth=1.0)
    ax.scatter([trade.entry_time.tz_convert(None)], [trade.entry_price], marker='^' if is_buy else 'v',
               color='green' if is_buy else 'red', s=80, zorder=3, label='entry')
    ax.scatter([trade.exit_time.tz_convert(None)], [trade.exit_price], marker='x', color='black', s=80, zorder=3, label='exit')
    ax.set_title(f"{trade.event} {trade.action} P/L {trade.profit_or_loss:.2f}")
    ax.legend(loc='best')
    fig.autofmt_xdate()
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)
