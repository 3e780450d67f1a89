"""
Performance metrics calculations.

This module aggregates backtest `TradeResult` records into summary
statistics: win/loss counts, false positives (positions closed by the
no-movement rule), profit and loss totals and averages, average trade
duration, Sharpe and Sortino ratios over per-trade P/L and, for each
indicator, how often it produced a trade and how often that trade won.
"""

from __future__ import annotations

from typing import Any, Dict, List
import math
import pandas as pd

from ..execution.models import TradeResult


def _empty_statistics() -> Dict[str, Any]:
    return {
        'total_trades': 0,
        'total_winning_trades': 0,
        'total_losing_trades': 0,
        'total_false_positives': 0,
        'total_profit': 0.0,
        'total_loss': 0.0,
        'avg_profit': 0.0,
        'avg_loss': 0.0,
        'avg_trade_duration': 0.0,
        'sharpe_ratio': 0.0,
        'sortino_ratio': 0.0,
        'event_stats': [],
    }


def compute_statistics(results: List[TradeResult]) -> Dict[str, Any]:
    """Compute the summary statistics of a backtest.

    Parameters
    ----------
    results : list of TradeResult
        Completed simulated trades.

    Returns
    -------
    dict
        JSON-serialisable statistics.  ``avg_trade_duration`` is in
        seconds; the ratios are computed on absolute per-trade P/L with
        population standard deviations and are 0 when undefined.
    """
    if not results:
        return _empty_statistics()

    total = len(results)
    pnl = [r.profit_or_loss for r in results]
    wins = [p for p in pnl if p > 0]
    losses = [p for p in pnl if p < 0]
    false_positives = [r for r in results if r.closed_for_no_movement]

    total_profit = sum(wins)
    total_loss = sum(losses)

    mean_ret = sum(pnl) / total
    std_dev = math.sqrt(sum((p - mean_ret) ** 2 for p in pnl) / total)
    sharpe = mean_ret / std_dev if std_dev > 0 else 0.0
    downside = math.sqrt(sum(min(0.0, p - mean_ret) ** 2 for p in pnl) / total)
    sortino = mean_ret / downside if downside > 0 else 0.0

    event_stats: List[Dict[str, Any]] = []
    for event in dict.fromkeys(r.event for r in results):
        trades = [r for r in results if r.event == event]
        n = len(trades)
        won = sum(1 for r in trades if r.profit_or_loss > 0)
        lost = sum(1 for r in trades if r.profit_or_loss < 0)
        flat = sum(1 for r in trades if r.closed_for_no_movement)
        event_stats.append({
            'event': event,
            'total_trades': n,
            'winning_trades': won,
            'losing_trades': lost,
            'false_positives': flat,
            'impact_probability': n / total,
            'success_probability': won / n,
            'failure_probability': lost / n,
            'false_positive_probability': flat / n,
        })

    return {
        'total_trades': total,
        'total_winning_trades': len(wins),
        'total_losing_trades': len(losses),
        'total_false_positives': len(false_positives),
        'total_profit': total_profit,
        'total_loss': total_loss,
        'avg_profit': total_profit / len(wins) if wins else 0.0,
        'avg_loss': total_loss / len(losses) if losses else 0.0,
        'avg_trade_duration': sum(r.duration_seconds for r in results) / total,
        'sharpe_ratio': sharpe,
        'sortino_ratio': sortino,
        'event_stats': event_stats,
    }


def format_statistics(stats: Dict[str, Any]) -> str:
    """Render statistics as two plain-text tables for the log."""
    main = pd.DataFrame(
        [
            ('Total Trades', stats['total_trades']),
            ('Winning Trades', stats['total_winning_trades']),
            ('Losing Trades', stats['total_losing_trades']),
            ('False Positives', stats['total_false_positives']),
            ('Total Profit', f"{stats['total_profit']:.2f}"),
            ('Total Loss', f"{stats['total_loss']:.2f}"),
            ('Average Profit', f"{stats['avg_profit']:.2f}"),
            ('Average Loss', f"{stats['avg_loss']:.2f}"),
            ('Average Trade Duration (seconds)', f"{stats['avg_trade_duration']:.2f}"),
            ('Sharpe Ratio', f"{stats['sharpe_ratio']:.2f}"),
            ('Sortino Ratio', f"{stats['sortino_ratio']:.2f}"),
        ],
        columns=['Statistic', 'Value'],
    )
    text = main.to_string(index=False)
    if stats['event_stats']:
        events = pd.DataFrame(stats['event_stats'])
        for column in ('impact_probability', 'success_probability',
                       'failure_probability', 'false_positive_probability'):
            events[column] = (events[column] * 100).round(2)
        events = events.rename(columns={
            'impact_probability': 'impact %',
            'success_probability': 'success %',
            'failure_probability': 'failure %',
            'false_positive_probability': 'false positive %',
        })
        text += "\n\n" + events.to_string(index=False)
    return text
