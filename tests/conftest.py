import numpy as np
import pandas as pd
import pytest

from backtest.blocks import ExecutionContext, make_block
from backtest.ledger import Ledger

BASE = pd.Timestamp('2024-01-01')


def day(n):
    return BASE + pd.Timedelta(days=n)


def make_context(prices, ledger=None, timestamp=None, history=None):
    return ExecutionContext(
        timestamp=timestamp if timestamp is not None else day(0),
        prices=dict(prices),
        ledger=ledger if ledger is not None else Ledger(10_000.0),
        history=history or {},
    )


def daily_series(values, start=BASE):
    index = pd.date_range(start, periods=len(values), freq='D')
    return pd.Series(np.asarray(values, dtype=float), index=index)


@pytest.fixture
def market():
    """160 days of oscillating ETH and a flat USDC peg."""
    steps = np.arange(160)
    eth = 2000.0 + 300.0 * np.sin(steps / 7.0) + 2.0 * steps
    return {
        'ETH': daily_series(eth),
        'USDC': daily_series(np.ones(len(steps))),
    }


@pytest.fixture
def dip_buyer():
    """Buy ETH with USDC whenever ETH trades at or below 2100."""
    return [
        make_block('trigger', 'price_trigger', asset='ETH', target_price=2100.0, condition='<='),
        make_block('buy', 'uniswap_swap', input_token='USDC', output_token='ETH', amount=500.0, slippage=0.5),
    ]
