"""Summary and lap rows for the activity summary table."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from constants import LABEL_COLUMN
from core.column_prefs import is_numbered_key, order_named_first

logger = logging.getLogger(__name__)

METERS_TO_FEET = 3.28084


def format_cell(value) -> str:
    """Table text for one cell; missing values (None, NaN, NaT) render blank."""
    if pd.api.types.is_scalar(value) and pd.isna(value):
        return ''
    return str(value)


def _column_sort_key(key: str):
    return (0, int(key), '') if is_numbered_key(key) else (1, 0, key)


class SummaryData:
    """Owns the summary/lap tables derived from one decoded activity."""

    def __init__(self, decoded: Optional[Dict[str, Any]] = None):
        decoded = decoded or {}
        self.file_path = decoded.get('file_path')
        self.session_mesgs = list(decoded.get('session_mesgs') or [])
        self.lap_mesgs = list(decoded.get('lap_mesgs') or [])
        self.record_mesgs = list(decoded.get('record_mesgs') or [])

    def summary_row(self) -> Dict[str, Any]:
        """First session message, or stats derived from the record stream."""
        if self.session_mesgs:
            row = dict(self.session_mesgs[0])
            for field in ('total_ascent', 'total_descent'):
                value = row.get(field)
                if isinstance(value, (int, float)) and not pd.isna(value):
                    row[f'{field}_ft'] = f"{value * METERS_TO_FEET:.0f} ft"
            return row

        if not self.record_mesgs:
            return {}

        records = pd.DataFrame(self.record_mesgs)
        stats: Dict[str, Any] = {'total_records': int(len(records))}
        if 'timestamp' in records.columns:
            timestamps = pd.to_datetime(records['timestamp'], errors='coerce')
            stats['start_time'] = records['timestamp'].iloc[0]
            stats['end_time'] = records['timestamp'].iloc[-1]
            if timestamps.notna().any():
                elapsed = timestamps.max() - timestamps.min()
                stats['duration'] = int(round(elapsed.total_seconds()))
        if 'distance' in records.columns:
            stats['total_distance'] = records['distance'].dropna().iloc[-1] if records['distance'].notna().any() else None
        if 'speed' in records.columns:
            speeds = pd.to_numeric(records['speed'], errors='coerce').dropna()
            if not speeds.empty:
                stats['avg_speed'] = float(speeds.mean())
                stats['max_speed'] = float(speeds.max())
        if 'altitude' in records.columns:
            altitudes = pd.to_numeric(records['altitude'], errors='coerce').dropna()
            if not altitudes.empty:
                stats['min_altitude_ft'] = float(altitudes.min() * METERS_TO_FEET)
                stats['max_altitude_ft'] = float(altitudes.max() * METERS_TO_FEET)
        return stats

    def rows(self) -> List[Dict[str, Any]]:
        """Labelled rows: the summary first, then one per lap."""
        rows = [{LABEL_COLUMN: 'Summary', **self.summary_row()}]
        for index, lap in enumerate(self.lap_mesgs):
            rows.append({LABEL_COLUMN: f'Lap {index + 1}', **lap})
        return rows

    def all_keys(self) -> List[str]:
        """Column universe: every field with a value in some row, named first.

        Sorted so the universe does not depend on message field order.
        """
        keys = set()
        for row in self.rows():
            for key, value in row.items():
                if key == LABEL_COLUMN or value is None:
                    continue
                keys.add(str(key))
        return order_named_first(sorted(keys, key=_column_sort_key))

    def row_labels(self) -> List[str]:
        return ['All', 'Summary'] + [f'Lap {index + 1}' for index in range(len(self.lap_mesgs))]

    def to_frame(self, visible_columns: Sequence[str], row_filter: str = 'All') -> pd.DataFrame:
        ordered = order_named_first(visible_columns)
        rows = self.rows()
        if row_filter and row_filter != 'All':
            rows = [row for row in rows if row[LABEL_COLUMN] == row_filter]

        frame = pd.DataFrame(rows)
        for column in ordered:
            if column not in frame.columns:
                frame[column] = None
        if LABEL_COLUMN not in frame.columns:
            frame[LABEL_COLUMN] = pd.Series(dtype=object)
        frame = frame[[LABEL_COLUMN, *ordered]]
        return frame.rename(columns={LABEL_COLUMN: 'Type'})

    def to_csv(self, visible_columns: Sequence[str], row_filter: str = 'All') -> str:
        """CSV text for the visible columns ("Copy as CSV")."""
        return self.to_frame(visible_columns, row_filter).to_csv(index=False)

    def get_record_count(self) -> int:
        return len(self.record_mesgs)
