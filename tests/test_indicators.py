import pandas as pd
import pytest

from backtest.indicators import bollinger_lower, indicator_value, macd, moving_average, rsi


def test_rsi_extremes():
    assert rsi(pd.Series([1.0, 2.0, 3.0])) == 100.0
    assert rsi(pd.Series([3.0, 2.0, 1.0])) == pytest.approx(0.0)
    assert rsi(pd.Series([1.0, 1.0])) == 50.0
    assert rsi(pd.Series([1.0])) is None


def test_moving_average_uses_available_samples():
    assert moving_average(pd.Series([1.0, 2.0, 3.0]), period=2) == pytest.approx(2.5)
    assert moving_average(pd.Series([4.0]), period=14) == 4.0
    assert moving_average(pd.Series([], dtype=float)) is None


def test_bollinger_lower_band():
    prices = pd.Series([1.0, 3.0])
    # mean 2, population std 1
    assert bollinger_lower(prices, period=20) == pytest.approx(0.0)
    assert bollinger_lower(pd.Series([5.0])) == 5.0


def test_macd_sign_follows_trend():
    rising = pd.Series([float(i) for i in range(1, 40)])
    assert macd(rising) > 0
    assert macd(rising[::-1].reset_index(drop=True)) < 0
    assert macd(pd.Series([1.0])) is None


def test_indicator_value_dispatch():
    history = [1.0, 2.0, 3.0]
    assert indicator_value('ma', history, period=3) == pytest.approx(2.0)
    assert indicator_value('RSI', history) == 100.0
    with pytest.raises(ValueError):
        indicator_value('ATR', history)
