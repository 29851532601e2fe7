import pandas as pd
import pytest

from backtest.errors import DataError
from backtest.prices import (
    CsvPriceOracle,
    InMemoryPriceOracle,
    load_price_csv,
    normalize_series,
    price_at,
    to_timestamp,
)

from conftest import day, daily_series


@pytest.fixture
def series():
    return daily_series([100.0, 200.0, 400.0])


def test_price_at_exact_sample(series):
    assert price_at(series, day(1)) == 200.0


def test_price_at_clamps_outside_range(series):
    assert price_at(series, day(-5)) == 100.0
    assert price_at(series, day(10)) == 400.0


def test_price_at_interpolates(series):
    assert price_at(series, day(1) + pd.Timedelta(hours=6)) == pytest.approx(250.0)
    assert price_at(series, day(0) + pd.Timedelta(hours=12)) == pytest.approx(150.0)


def test_price_at_empty_series():
    with pytest.raises(DataError):
        price_at(pd.Series(dtype=float), day(0))


def test_to_timestamp_forms():
    assert to_timestamp(1_704_067_200_000) == day(0)
    assert to_timestamp('2024-01-01T00:00:00Z') == day(0)
    assert to_timestamp(pd.Timestamp('2024-01-01 02:00', tz='Europe/Berlin')) == day(0) + pd.Timedelta(hours=1)


def test_normalize_drops_bad_prices_and_duplicates():
    normalized = normalize_series([
        (day(2), 3.0),
        (day(0), 1.0),
        (day(1), -1.0),
        (day(3), float('nan')),
        (day(2), 4.0),
    ])
    assert list(normalized.index) == [day(0), day(2)]
    assert list(normalized) == [1.0, 4.0]


def test_normalize_accepts_dict_records():
    normalized = normalize_series([{'timestamp': '2024-01-02', 'price': 5}, {'timestamp': '2024-01-01', 'price': 4}])
    assert list(normalized) == [4.0, 5.0]


def test_oracle_keeps_bracketing_samples(series):
    oracle = InMemoryPriceOracle({'ETH': series})
    window = oracle.get_prices(['ETH', 'BTC'], day(0) + pd.Timedelta(hours=12), day(1) + pd.Timedelta(hours=12))
    assert set(window) == {'ETH'}
    assert list(window['ETH'].index) == [day(0), day(1), day(2)]


def test_oracle_outside_range_keeps_nearest(series):
    oracle = InMemoryPriceOracle({'ETH': series})
    window = oracle.get_prices(['ETH'], day(20), day(30))
    assert list(window['ETH']) == [400.0]


def test_oracle_resamples_by_granularity():
    hourly = pd.Series([1.0, 2.0, 3.0], index=pd.date_range(day(0), periods=3, freq='12h'))
    oracle = InMemoryPriceOracle({'ETH': hourly})
    daily = oracle.get_prices(['ETH'], day(0), day(1), granularity='daily')['ETH']
    assert list(daily) == [2.0, 3.0]
    with pytest.raises(ValueError):
        oracle.get_prices(['ETH'], day(0), day(1), granularity='weekly')


def test_load_long_csv(tmp_path):
    path = tmp_path / 'prices.csv'
    path.write_text(
        'token,timestamp,price\n'
        'ETH,2024-01-01,2000\n'
        'ETH,2024-01-02,2100\n'
        'USDC,2024-01-01,1\n'
    )
    series = load_price_csv(path)
    assert set(series) == {'ETH', 'USDC'}
    assert list(series['ETH']) == [2000.0, 2100.0]
    assert series['ETH'].index[1] == day(1)


def test_load_wide_csv(tmp_path):
    path = tmp_path / 'prices.csv'
    path.write_text(
        'timestamp,ETH,USDC\n'
        '2024-01-01T00:00:00Z,2000,1\n'
        '2024-01-02T00:00:00Z,,1\n'
    )
    oracle = CsvPriceOracle(path)
    assert oracle.tokens == ['ETH', 'USDC']
    assert list(oracle.series('ETH')) == [2000.0]
    assert len(oracle.series('USDC')) == 2


def test_csv_requires_timestamp(tmp_path):
    path = tmp_path / 'prices.csv'
    path.write_text('date,ETH\n2024-01-01,1\n')
    with pytest.raises(DataError):
        load_price_csv(path)
