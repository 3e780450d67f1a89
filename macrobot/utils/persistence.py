"""
State persistence utilities.

Backtest runs persist their trades as a JSON array so that statistics
and charts can be produced later without replaying the price file.
Live sessions remember the position they opened so that a restart does
not open a second one for the same release.  This module provides the
JSON-based load/save functions for both.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..execution.models import TradePosition, TradeResult


def load_json(path: str) -> Optional[Any]:
    """Load a JSON file, returning `None` if it does not exist."""
    file_path = Path(path)
    if not file_path.exists():
        return None
    with file_path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def save_json(path: str, payload: Any) -> None:
    """Write `payload` as indented JSON, creating parent directories."""
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with file_path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, ensure_ascii=False, indent=2)


def save_trade_results(path: str, results: List[TradeResult]) -> None:
    save_json(path, [r.to_dict() for r in results])


def load_trade_results(path: str) -> List[TradeResult]:
    """Read a results file written by `save_trade_results()`.

    Raises
    ------
    FileNotFoundError
        If `path` does not exist.
    """
    raw = load_json(path)
    if raw is None:
        raise FileNotFoundError(f"Backtest results not found: {path}")
    return [TradeResult.from_dict(entry) for entry in raw]


def load_position(path: str) -> Optional[TradePosition]:
    """Return the live position recorded in the state file, if any."""
    state: Optional[Dict[str, Any]] = load_json(path)
    if not state or state.get('position') is None:
        return None
    return TradePosition.from_dict(state['position'])


def save_position(path: str, position: Optional[TradePosition]) -> None:
    save_json(path, {'position': position.to_dict() if position else None})
