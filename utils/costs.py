"""Centralised simulated trade cost configuration."""

from typing import Tuple

# Gas per on-chain action, expressed in ETH and converted to USD with the
# price of the token the action moves.
GAS_COSTS = {
    'swap': 0.001,
    'supply': 0.0015,
    'borrow': 0.002,
    'repay': 0.0015,
    'withdraw': 0.001,
    'liquidity': 0.003,
    'trigger': 0.0,
    'exit': 0.0005,
    'flash_loan': 0.002,
    'staking': 0.0015,
}

# Protocol fee rate charged on the swap input.
PROTOCOL_FEES = {
    'uniswap': 0.003,
    'aave': 0.0,
    'compound': 0.0,
    'curve': 0.0004,
    'balancer': 0.002,
    'oneinch': 0.001,
}

FLASH_LOAN_FEE_RATE = 0.0009

# Aggregator routing improves the quoted rate by 0.1%.
ONEINCH_RATE_BONUS = 1.001


def gas_cost_usd(action: str, token_price: float) -> float:
    """Return the USD gas cost of ``action`` priced in the moved token."""
    return GAS_COSTS.get(action, 0.0) * token_price


def fee_amount(input_amount: float, protocol: str) -> float:
    """Return the absolute protocol fee charged on ``input_amount``."""
    return input_amount * PROTOCOL_FEES.get(protocol, 0.0)


def apply_fee_then_slippage(gross_output: float, fee_rate: float, slippage_pct: float) -> Tuple[float, float]:
    """
    Reduce a naive price-ratio output by the protocol fee, then by slippage.

    Returns ``(net_output, slippage_amount)`` where the slippage amount is in
    output-token units.
    """
    after_fee = gross_output * (1.0 - fee_rate)
    slippage_amount = after_fee * (slippage_pct / 100.0)
    return after_fee - slippage_amount, slippage_amount
