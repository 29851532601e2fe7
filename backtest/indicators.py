"""Technical indicator values over the price history seen so far in a run."""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pandas as pd

SUPPORTED_INDICATORS = ('RSI', 'MA', 'BB', 'MACD')


def rsi(prices: pd.Series, period: int = 14) -> Optional[float]:
    """Wilder RSI of the last sample. ``None`` until two samples exist."""
    if len(prices) < 2:
        return None
    delta = prices.diff().dropna()
    gains = delta.clip(lower=0.0)
    losses = -delta.clip(upper=0.0)
    avg_gain = gains.ewm(alpha=1.0 / period, adjust=False).mean().iloc[-1]
    avg_loss = losses.ewm(alpha=1.0 / period, adjust=False).mean().iloc[-1]
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return float(100.0 - 100.0 / (1.0 + rs))


def moving_average(prices: pd.Series, period: int = 14) -> Optional[float]:
    if prices.empty:
        return None
    return float(prices.rolling(period, min_periods=1).mean().iloc[-1])


def bollinger_lower(prices: pd.Series, period: int = 20, width: float = 2.0) -> Optional[float]:
    if prices.empty:
        return None
    window = prices.iloc[-period:]
    std = float(window.std(ddof=0)) if len(window) > 1 else 0.0
    return float(window.mean() - width * std)


def macd(prices: pd.Series, fast: int = 12, slow: int = 26) -> Optional[float]:
    if len(prices) < 2:
        return None
    fast_ema = prices.ewm(span=fast, adjust=False).mean().iloc[-1]
    slow_ema = prices.ewm(span=slow, adjust=False).mean().iloc[-1]
    return float(fast_ema - slow_ema)


def indicator_value(indicator: str, history: Sequence[float], period: int = 14) -> Optional[float]:
    """Dispatch by indicator name; returns ``None`` when history is too short."""
    prices = pd.Series(np.asarray(history, dtype=float))
    name = str(indicator).upper()
    if name == 'RSI':
        return rsi(prices, period)
    if name == 'MA':
        return moving_average(prices, period)
    if name == 'BB':
        return bollinger_lower(prices, period)
    if name == 'MACD':
        return macd(prices)
    raise ValueError(f"Unsupported indicator: {indicator}")
