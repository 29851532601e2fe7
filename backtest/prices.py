"""Historical price access for the simulation engine."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from backtest.errors import DataError

logger = logging.getLogger(__name__)

GRANULARITY_RULES = {
    'hourly': '1h',
    'daily': '1D',
}

TimestampLike = Union[pd.Timestamp, str, int, float, Any]


def to_timestamp(value: TimestampLike) -> pd.Timestamp:
    """
    Coerce ``value`` to a timezone-naive UTC timestamp.

    Integers and floats are treated as epoch milliseconds.
    """
    if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool):
        ts = pd.Timestamp(int(value), unit='ms')
    else:
        ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_convert('UTC').tz_localize(None)
    return ts.as_unit('ns')


def ns_values(index: pd.DatetimeIndex) -> np.ndarray:
    """Epoch nanoseconds for ``index`` regardless of its stored resolution."""
    return index.as_unit('ns').asi8


def normalize_series(data: Any) -> pd.Series:
    """
    Build a sorted float price series indexed by timestamp.

    Accepts a Series, a DataFrame with ``timestamp``/``price`` columns, a mapping
    of timestamp to price, or an iterable of ``(timestamp, price)`` pairs or
    ``{'timestamp': ..., 'price': ...}`` dicts. Non-positive and missing prices
    are dropped; duplicate timestamps keep the last sample.
    """
    if isinstance(data, pd.Series):
        series = data.copy()
    elif isinstance(data, pd.DataFrame):
        if 'timestamp' not in data.columns or 'price' not in data.columns:
            raise DataError("Price frame must include 'timestamp' and 'price' columns")
        series = pd.Series(data['price'].to_numpy(), index=data['timestamp'].to_numpy())
    elif isinstance(data, Mapping):
        series = pd.Series(list(data.values()), index=list(data.keys()))
    else:
        stamps = []
        values = []
        for point in data:
            if isinstance(point, Mapping):
                stamps.append(point['timestamp'])
                values.append(point['price'])
            else:
                ts, price = point
                stamps.append(ts)
                values.append(price)
        series = pd.Series(values, index=stamps, dtype=float)

    if series.empty:
        return pd.Series(dtype=float, index=pd.DatetimeIndex([]))

    series.index = pd.DatetimeIndex([to_timestamp(ts) for ts in series.index]).as_unit('ns')
    series = pd.to_numeric(series, errors='coerce').astype(float)
    series = series[np.isfinite(series.to_numpy()) & (series.to_numpy() > 0)]
    series = series[~series.index.duplicated(keep='last')].sort_index()
    return series


def price_at(series: pd.Series, timestamp: TimestampLike) -> float:
    """
    Price at ``timestamp``: the exact sample if present, the first/last sample
    outside the covered range, otherwise linear interpolation between the
    bracketing samples.
    """
    if series is None or series.empty:
        raise DataError("No price samples available")
    target = to_timestamp(timestamp).value
    times = ns_values(series.index)
    values = series.to_numpy(dtype=float)
    pos = int(np.searchsorted(times, target, side='left'))
    if pos < len(times) and times[pos] == target:
        return float(values[pos])
    if pos == 0:
        return float(values[0])
    if pos >= len(times):
        return float(values[-1])
    t0, t1 = times[pos - 1], times[pos]
    p0, p1 = values[pos - 1], values[pos]
    ratio = (target - t0) / (t1 - t0)
    return float(p0 + (p1 - p0) * ratio)


class PriceOracle(ABC):
    """Supplies historical price series per token."""

    @abstractmethod
    def get_prices(
        self,
        tokens: Sequence[str],
        start: TimestampLike,
        end: TimestampLike,
        granularity: Optional[str] = None,
    ) -> Dict[str, pd.Series]:
        """Return a sorted price series per token; unknown tokens are omitted."""

    def price_at(self, series: pd.Series, timestamp: TimestampLike) -> float:
        return price_at(series, timestamp)


class InMemoryPriceOracle(PriceOracle):
    """Oracle over pre-loaded series. Series are treated as read-only."""

    def __init__(self, series_by_token: Mapping[str, Any]) -> None:
        self._series: Dict[str, pd.Series] = {
            token: normalize_series(data) for token, data in series_by_token.items()
        }

    @property
    def tokens(self) -> list:
        return sorted(self._series)

    def series(self, token: str) -> Optional[pd.Series]:
        return self._series.get(token)

    def get_prices(
        self,
        tokens: Sequence[str],
        start: TimestampLike,
        end: TimestampLike,
        granularity: Optional[str] = None,
    ) -> Dict[str, pd.Series]:
        start_ts = to_timestamp(start)
        end_ts = to_timestamp(end)
        result: Dict[str, pd.Series] = {}
        for token in tokens:
            series = self._series.get(token)
            if series is None or series.empty:
                logger.warning("No price series available for %s", token)
                continue
            window = _slice_with_brackets(series, start_ts, end_ts)
            if granularity is not None:
                rule = GRANULARITY_RULES.get(granularity)
                if rule is None:
                    raise ValueError(f"Unsupported granularity: {granularity}")
                window = window.resample(rule).last().dropna()
            result[token] = window
        return result


class CsvPriceOracle(InMemoryPriceOracle):
    """
    Oracle backed by a CSV file.

    Two layouts are understood: long (``token,timestamp,price``) and wide
    (``timestamp,<TOKEN>,<TOKEN>,...``).
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        super().__init__(load_price_csv(self.path))


def load_price_csv(path: Union[str, Path]) -> Dict[str, pd.Series]:
    df = pd.read_csv(path)
    if 'timestamp' not in df.columns:
        raise DataError(f"Price file {path} must include a 'timestamp' column")
    df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True).dt.tz_localize(None)
    if {'token', 'price'}.issubset(df.columns):
        return {
            str(token): normalize_series(group[['timestamp', 'price']])
            for token, group in df.groupby('token')
        }
    series: Dict[str, pd.Series] = {}
    for column in df.columns:
        if column == 'timestamp':
            continue
        frame = pd.DataFrame({'timestamp': df['timestamp'], 'price': df[column]})
        series[str(column)] = normalize_series(frame)
    return series


def _slice_with_brackets(series: pd.Series, start: pd.Timestamp, end: pd.Timestamp) -> pd.Series:
    """Slice ``[start, end]`` keeping one sample either side for interpolation."""
    times = ns_values(series.index)
    lo = int(np.searchsorted(times, start.value, side='right')) - 1
    hi = int(np.searchsorted(times, end.value, side='left')) + 1
    lo = max(lo, 0)
    hi = min(hi, len(times))
    if lo >= hi:
        # Range lies entirely outside the samples; keep the nearest one.
        nearest = 0 if end.value < times[0] else len(times) - 1
        return series.iloc[nearest:nearest + 1]
    return series.iloc[lo:hi]

