"""
Historical indicator releases.

The events dataset is a JSON array exported from an economic calendar.
Each entry describes one release of an indicator: when it was
published, the consensus expected beforehand and the value actually
printed.  `clean_history()` turns a raw calendar export into that
dataset; `load_events()` reads it back as `IndicatorEvent` objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import json
import logging
import pandas as pd

from ..utils.timeutils import to_utc

logger = logging.getLogger(__name__)

RELEVANT_FIELDS = [
    'eventId',
    'dateUtc',
    'actual',
    'revised',
    'consensus',
    'previous',
    'ratioDeviation',
    'name',
    'unit',
]

_POTENCY_SCALE = {'K': 1_000, 'M': 1_000_000}
_SCALED_FIELDS = ('actual', 'revised', 'consensus', 'previous')


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class IndicatorEvent:
    """One historical release of a macroeconomic indicator."""
    event_id: str
    name: str
    release_time: pd.Timestamp
    actual: Optional[float]
    consensus: Optional[float]
    previous: Optional[float] = None

    @property
    def observed_value(self) -> Optional[float]:
        """Published value, or the consensus when nothing was published."""
        return self.actual if self.actual is not None else self.consensus

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndicatorEvent":
        release = data.get('dateUtc', data.get('release_time'))
        if release is None:
            raise ValueError(f"Event has no release time: {data!r}")
        event_id = data.get('eventId', data.get('event_id'))
        return cls(
            event_id=str(event_id),
            name=str(data.get('name') or event_id),
            release_time=to_utc(release),
            actual=_optional_float(data.get('actual')),
            consensus=_optional_float(data.get('consensus')),
            previous=_optional_float(data.get('previous')),
        )


def load_events(path: str) -> List[IndicatorEvent]:
    """Read the events dataset, ordered by release time."""
    logger.info("Reading events from %s", path)
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    events = [IndicatorEvent.from_dict(entry) for entry in raw]
    events.sort(key=lambda e: e.release_time)
    return events


def clean_history(raw: Iterable[Dict[str, Any]], event_ids: Iterable[str]) -> List[Dict[str, Any]]:
    """Reduce a raw calendar export to the events dataset.

    Only entries whose ``eventId`` is in `event_ids` are kept, values
    quoted in thousands (``potency == 'K'``) or millions (``'M'``) are
    expanded to units, and every entry is trimmed to `RELEVANT_FIELDS`.
    """
    wanted = set(event_ids)
    cleaned: List[Dict[str, Any]] = []
    for entry in raw:
        if entry.get('eventId') not in wanted:
            continue
        scale = _POTENCY_SCALE.get(entry.get('potency'))
        row = {name: entry.get(name) for name in RELEVANT_FIELDS}
        if scale is not None:
            for name in _SCALED_FIELDS:
                if row[name] is not None:
                    row[name] = row[name] * scale
        cleaned.append(row)
    return cleaned
