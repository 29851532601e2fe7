import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from backtest.errors import InsufficientBalance, LedgerError, MissingPosition
from backtest.ledger import Ledger

from conftest import day


def test_initial_capital_and_holdings():
    ledger = Ledger(10_000.0, initial_holdings={'ETH': 2.0})
    assert ledger.get_balance('USDC') == 10_000.0
    assert ledger.get_balance('ETH') == 2.0
    assert ledger.get_balance('DAI') == 0.0


def test_subtract_balance_fails_instead_of_clamping():
    ledger = Ledger(100.0)
    with pytest.raises(InsufficientBalance) as excinfo:
        ledger.subtract_balance('USDC', 150.0)
    assert 'Insufficient balance: USDC' in str(excinfo.value)
    assert excinfo.value.available == 100.0
    assert excinfo.value.requested == 150.0
    assert ledger.get_balance('USDC') == 100.0


@settings(max_examples=100, deadline=None)
@given(st.lists(
    st.tuples(st.sampled_from(['add', 'sub']), st.floats(min_value=0, max_value=1e6, allow_nan=False)),
    max_size=40,
))
def test_balance_never_negative(operations):
    ledger = Ledger(1_000.0)
    for op, amount in operations:
        before = ledger.get_balance('USDC')
        if op == 'add':
            ledger.add_balance('USDC', amount)
        elif amount > before:
            with pytest.raises(InsufficientBalance):
                ledger.subtract_balance('USDC', amount)
            assert ledger.get_balance('USDC') == before
        else:
            ledger.subtract_balance('USDC', amount)
        assert ledger.get_balance('USDC') >= 0


def test_negative_amounts_rejected():
    ledger = Ledger(100.0)
    with pytest.raises(ValueError):
        ledger.add_balance('USDC', -1.0)
    with pytest.raises(ValueError):
        ledger.subtract_balance('USDC', -1.0)


def test_positions_lifecycle():
    ledger = Ledger(100.0)
    first = ledger.add_position(kind='supply', asset='USDC', amount=50.0, entry_price=1.0,
                                entry_timestamp=day(0), protocol='aave')
    second = ledger.add_position(kind='staking', asset='ETH', amount=1.0, entry_price=2000.0,
                                 entry_timestamp=day(0), protocol='lido')
    assert first.id == 'position-1'
    assert second.id == 'position-2'
    assert ledger.get_positions(kind='supply') == [first]
    assert ledger.get_positions(protocol='lido') == [second]
    assert ledger.get_positions(asset='ETH') == [second]

    ledger.reduce_position(first.id, 20.0)
    assert first.amount == 30.0
    ledger.reduce_position(first.id, 30.0)
    assert ledger.get_positions(kind='supply') == []

    ledger.remove_position(second.id)
    with pytest.raises(MissingPosition):
        ledger.remove_position(second.id)


def test_reduce_position_beyond_amount_fails():
    ledger = Ledger(100.0)
    position = ledger.add_position(kind='borrow', asset='DAI', amount=10.0, entry_price=1.0,
                                   entry_timestamp=day(0), protocol='aave')
    with pytest.raises(LedgerError):
        ledger.reduce_position(position.id, 11.0)
    assert position.amount == 10.0


def test_unknown_position_kind():
    with pytest.raises(ValueError):
        Ledger(100.0).add_position(kind='margin', asset='ETH', amount=1.0, entry_price=1.0,
                                   entry_timestamp=day(0), protocol='x')


def test_trade_ids_are_monotonic_and_totals_accumulate():
    ledger = Ledger(100.0)
    first = ledger.record_trade(timestamp=day(0), kind='swap', input_token='USDC', input_amount=10.0,
                                price=1.0, fees_usd=0.03, gas_cost_usd=2.0)
    second = ledger.record_trade(timestamp=day(1), kind='exit', input_token='ETH', input_amount=1.0,
                                 price=2000.0, gas_cost_usd=1.0)
    assert [first.id, second.id] == ['trade-1', 'trade-2']
    assert ledger.total_gas_spent() == pytest.approx(3.0)
    assert ledger.total_fees_spent() == pytest.approx(0.03)
    assert first.to_dict()['timestamp'] == day(0).isoformat()


def test_equity_counts_positions_and_subtracts_debt():
    ledger = Ledger(1_000.0, initial_holdings={'ETH': 1.0})
    ledger.add_position(kind='supply', asset='USDC', amount=500.0, entry_price=1.0,
                        entry_timestamp=day(0), protocol='aave')
    ledger.add_position(kind='borrow', asset='DAI', amount=200.0, entry_price=1.0,
                        entry_timestamp=day(0), protocol='aave')
    equity = ledger.calculate_equity({'USDC': 1.0, 'ETH': 2000.0, 'DAI': 1.0})
    assert equity == pytest.approx(1_000.0 + 2000.0 + 500.0 - 200.0)


def test_accrue_interest_only_grows_interest_bearing_positions():
    ledger = Ledger(100.0)
    supply = ledger.add_position(kind='supply', asset='USDC', amount=1_000.0, entry_price=1.0,
                                 entry_timestamp=day(0), protocol='aave', apy=0.365)
    flat = ledger.add_position(kind='liquidity', asset='ETH', amount=1.0, entry_price=1.0,
                               entry_timestamp=day(0), protocol='uniswap:ETH/USDC')
    accrued = ledger.accrue_interest(2.0)
    assert accrued == pytest.approx(2.0)
    assert supply.amount == pytest.approx(1_002.0)
    assert flat.amount == 1.0
    assert ledger.accrue_interest(0) == 0.0
