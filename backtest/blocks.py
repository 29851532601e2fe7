"""
Strategy block interpreter.

Each block kind maps to a plain handler function in ``BLOCK_HANDLERS``. A
handler receives the block and the per-step ``ExecutionContext``; it checks its
own preconditions, mutates the ledger when it fires, and records exactly one
trade per fired action. Handlers reject bad params or missing prices with an
``ok=False`` result instead of raising; ledger refusals (insufficient balance,
missing collateral) are converted to ``ok=False`` by ``execute_block``.
"""

from __future__ import annotations

import json
import logging
import operator
import re
from dataclasses import dataclass, field, replace
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import pandas as pd

from backtest.config import Config
from backtest.errors import InsufficientBalance, LedgerError, MissingPosition, StructuralError
from backtest.indicators import SUPPORTED_INDICATORS, indicator_value
from backtest.ledger import Ledger, Position
from utils.costs import (
    FLASH_LOAN_FEE_RATE,
    ONEINCH_RATE_BONUS,
    PROTOCOL_FEES,
    apply_fee_then_slippage,
    fee_amount,
    gas_cost_usd,
)

logger = logging.getLogger(__name__)

ENTRY = 'ENTRY'
PROTOCOL = 'PROTOCOL'
EXIT = 'EXIT'
RISK = 'RISK'
CATEGORIES = (ENTRY, PROTOCOL, EXIT, RISK)

BLOCK_CATEGORIES = {
    'price_trigger': ENTRY,
    'time_trigger': ENTRY,
    'volume_trigger': ENTRY,
    'technical_indicator_trigger': ENTRY,
    'uniswap_swap': PROTOCOL,
    'curve_swap': PROTOCOL,
    'balancer_swap': PROTOCOL,
    'oneinch_swap': PROTOCOL,
    'aave_supply': PROTOCOL,
    'aave_borrow': PROTOCOL,
    'aave_repay': PROTOCOL,
    'aave_withdraw': PROTOCOL,
    'compound_supply': PROTOCOL,
    'compound_borrow': PROTOCOL,
    'uniswap_v3_liquidity': PROTOCOL,
    'flash_loan': PROTOCOL,
    'staking': PROTOCOL,
    'stop_loss': EXIT,
    'take_profit': EXIT,
    'time_exit': EXIT,
    'conditional_exit': EXIT,
    'position_sizing': RISK,
    'risk_limits': RISK,
    'rebalancing': RISK,
}

TOKEN_PARAMS = ('asset', 'input_token', 'output_token', 'token0', 'token1')

# Default APY (percent) for interest-bearing positions.
DEFAULT_APY = {
    'supply': 3.0,
    'staking': 4.0,
    'borrow': 0.0,
}

DEFAULT_STOP_LOSS_PCT = 10.0
DEFAULT_TAKE_PROFIT_PCT = 20.0
DEFAULT_TIME_EXIT_MS = 86_400_000
SYNTHETIC_VOLUME_MULTIPLIER = 1_000_000
EQUALITY_TOLERANCE = 0.01


def _approx_equal(a: float, b: float) -> bool:
    return abs(a - b) < EQUALITY_TOLERANCE


COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    '>=': operator.ge,
    '<=': operator.le,
    '>': operator.gt,
    '<': operator.lt,
    '==': _approx_equal,
}


@dataclass(frozen=True)
class Block:
    """One declarative strategy step. Treat ``params`` as read-only."""

    id: str
    kind: str
    category: str
    params: Dict[str, Any] = field(default_factory=dict)
    label: str = ''

    def __post_init__(self) -> None:
        object.__setattr__(self, 'params', dict(self.params))

    def with_params(self, overrides: Mapping[str, Any]) -> 'Block':
        """Derive a block with ``overrides`` merged over the current params."""
        merged = dict(self.params)
        merged.update(overrides)
        return replace(self, params=merged)

    @property
    def display_name(self) -> str:
        return self.label or self.kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'kind': self.kind,
            'category': self.category,
            'label': self.label,
            'params': dict(self.params),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> 'Block':
        kind = str(payload.get('kind') or payload.get('type') or '')
        if not kind:
            raise StructuralError(f"Block {payload.get('id')!r} has no kind")
        category = str(payload.get('category') or BLOCK_CATEGORIES.get(kind, '')).upper()
        if category not in CATEGORIES:
            raise StructuralError(f"Block {payload.get('id')!r} has unknown category {category!r}")
        return cls(
            id=str(payload['id']),
            kind=kind,
            category=category,
            params=dict(payload.get('params') or {}),
            label=str(payload.get('label') or ''),
        )


def make_block(block_id: str, kind: str, label: str = '', **params: Any) -> Block:
    """Build a block using the catalogue category for ``kind``."""
    category = BLOCK_CATEGORIES.get(kind)
    if category is None:
        raise StructuralError(f"Unknown block kind: {kind}")
    return Block(id=block_id, kind=kind, category=category, params=params, label=label)


def blocks_from_payload(payload: Union[Sequence[Mapping[str, Any]], Mapping[str, Any]]) -> List[Block]:
    items = payload.get('blocks', []) if isinstance(payload, Mapping) else payload
    return [Block.from_dict(item) for item in items]


def load_strategy(path: Union[str, Path]) -> List[Block]:
    """Load blocks from a JSON file (a list, or an object with ``blocks``)."""
    return blocks_from_payload(json.loads(Path(path).read_text()))


def block_tokens(block: Block) -> List[str]:
    tokens = [str(block.params[key]) for key in TOKEN_PARAMS if block.params.get(key)]
    allocation = block.params.get('target_allocation')
    if isinstance(allocation, Mapping):
        tokens.extend(str(token) for token in allocation)
    return tokens


def referenced_tokens(blocks: Iterable[Block]) -> List[str]:
    """Tokens referenced by a strategy, in first-seen order."""
    seen: Dict[str, None] = {}
    for block in blocks:
        for token in block_tokens(block):
            seen.setdefault(token, None)
    return list(seen)


@dataclass
class ExecutionContext:
    """Point-in-time view handed to every block of one simulation step."""

    timestamp: pd.Timestamp
    prices: Dict[str, float]
    ledger: Ledger
    results: Dict[str, 'ExecutionResult'] = field(default_factory=dict)
    history: Dict[str, List[float]] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionResult:
    ok: bool
    fired: bool
    message: str = ''
    payload: Dict[str, Any] = field(default_factory=dict)


class BlockRejected(Exception):
    """Bad params or a missing price; reported as ``ok=False``."""


def _fired(message: str, **payload: Any) -> ExecutionResult:
    return ExecutionResult(ok=True, fired=True, message=message, payload=payload)


def _idle(message: str, **payload: Any) -> ExecutionResult:
    return ExecutionResult(ok=True, fired=False, message=message, payload=payload)


# ---------------------------------------------------------------------------
# Parameter and price helpers
# ---------------------------------------------------------------------------

def _text(block: Block, key: str, default: Optional[str] = None) -> str:
    value = block.params.get(key, default)
    if value is None or str(value).strip() == '':
        raise BlockRejected(f"{block.display_name}: missing required parameter '{key}'")
    return str(value)


def _number(block: Block, key: str, default: Optional[float] = None) -> float:
    value = block.params.get(key)
    if value is None or value == '':
        if default is None:
            raise BlockRejected(f"{block.display_name}: missing required parameter '{key}'")
        return float(default)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise BlockRejected(f"{block.display_name}: invalid value for '{key}': {value!r}") from None


def _positive(block: Block, key: str, default: Optional[float] = None) -> float:
    value = _number(block, key, default)
    if value <= 0:
        raise BlockRejected(f"{block.display_name}: '{key}' must be greater than 0")
    return value


def _comparator(block: Block) -> Callable[[float, float], bool]:
    condition = str(block.params.get('condition', '>='))
    try:
        return COMPARATORS[condition]
    except KeyError:
        raise BlockRejected(f"Invalid condition: {condition}") from None


def _price(context: ExecutionContext, token: str) -> float:
    price = context.prices.get(token, 0.0)
    if not price or price <= 0:
        raise BlockRejected(f"Missing price data for {token}")
    return price


def _require_balance(context: ExecutionContext, token: str, amount: float) -> None:
    available = context.ledger.get_balance(token)
    if amount > available:
        raise InsufficientBalance(token, available, amount)


def _asset_positions(context: ExecutionContext, asset: Optional[str] = None) -> List[Position]:
    return [
        position
        for position in context.ledger.get_positions(asset=asset)
        if not position.is_liability
    ]


def _close_position(context: ExecutionContext, position: Position, price: float) -> None:
    context.ledger.remove_position(position.id)
    context.ledger.add_balance(position.asset, position.amount)
    context.ledger.record_trade(
        timestamp=context.timestamp,
        kind='exit',
        input_token=position.asset,
        input_amount=position.amount,
        price=price,
        gas_cost_usd=gas_cost_usd('exit', price),
    )


# ---------------------------------------------------------------------------
# ENTRY blocks
# ---------------------------------------------------------------------------

def execute_price_trigger(block: Block, context: ExecutionContext) -> ExecutionResult:
    asset = _text(block, 'asset')
    target = _positive(block, 'target_price')
    compare = _comparator(block)
    current = _price(context, asset)
    condition = block.params.get('condition', '>=')
    if compare(current, target):
        return _fired(f"Price trigger met: {asset} {condition} {target}", current_price=current, target_price=target)
    return _idle(f"Price trigger not met: {asset} = {current:.2f}", current_price=current, target_price=target)


def _cron_field_matches(spec: str, value: int, low: int, high: int) -> bool:
    for part in spec.split(','):
        step = 1
        if '/' in part:
            part, step_text = part.split('/', 1)
            step = int(step_text)
        if part == '*':
            start, end = low, high
        elif '-' in part:
            start_text, end_text = part.split('-', 1)
            start, end = int(start_text), int(end_text)
        else:
            start = end = int(part)
        if start <= value <= end and (value - start) % step == 0:
            return True
    return False


def cron_matches(schedule: str, timestamp: pd.Timestamp) -> bool:
    """Match a five-field cron expression (UTC) against ``timestamp``."""
    fields = schedule.split()
    if len(fields) != 5:
        raise ValueError(f"Cron schedule must have five fields: {schedule!r}")
    minute, hour, day, month, weekday = fields
    cron_weekday = (timestamp.dayofweek + 1) % 7
    return (
        _cron_field_matches(minute, timestamp.minute, 0, 59)
        and _cron_field_matches(hour, timestamp.hour, 0, 23)
        and _cron_field_matches(day, timestamp.day, 1, 31)
        and _cron_field_matches(month, timestamp.month, 1, 12)
        and (
            _cron_field_matches(weekday, cron_weekday, 0, 7)
            or (cron_weekday == 0 and _cron_field_matches(weekday, 7, 0, 7))
        )
    )


def execute_time_trigger(block: Block, context: ExecutionContext) -> ExecutionResult:
    schedule = _text(block, 'schedule')
    try:
        matched = cron_matches(schedule, context.timestamp)
    except ValueError as exc:
        raise BlockRejected(str(exc)) from None
    if matched:
        return _fired('Time trigger executed: schedule matched', schedule=schedule)
    return _idle('Time trigger not executed: schedule not matched', schedule=schedule)


def execute_volume_trigger(block: Block, context: ExecutionContext) -> ExecutionResult:
    asset = _text(block, 'asset')
    required = _number(block, 'min_volume', 0.0)
    volume = _price(context, asset) * SYNTHETIC_VOLUME_MULTIPLIER
    if volume >= required:
        return _fired(f"Volume trigger met: {asset} volume {volume:.0f} >= {required}", volume=volume)
    return _idle(f"Volume trigger not met: {asset} volume {volume:.0f} < {required}", volume=volume)


def execute_technical_indicator_trigger(block: Block, context: ExecutionContext) -> ExecutionResult:
    asset = _text(block, 'asset')
    indicator = _text(block, 'indicator').upper()
    if indicator not in SUPPORTED_INDICATORS:
        raise BlockRejected(f"Unsupported indicator: {indicator}")
    target = _number(block, 'value')
    period = int(_positive(block, 'period', 14))
    compare = _comparator(block)
    _price(context, asset)
    value = indicator_value(indicator, context.history.get(asset, []), period)
    if value is None:
        return _idle(f"{indicator} trigger waiting for price history", indicator=indicator)
    condition = block.params.get('condition', '>=')
    payload = {'indicator': indicator, 'indicator_value': value, 'target_value': target}
    if compare(value, target):
        return _fired(f"{indicator} trigger met: {value:.2f} {condition} {target}", **payload)
    return _idle(f"{indicator} trigger not met: {value:.2f} {condition} {target}", **payload)


# ---------------------------------------------------------------------------
# PROTOCOL blocks
# ---------------------------------------------------------------------------

def execute_swap(
    block: Block,
    context: ExecutionContext,
    *,
    protocol: str,
    default_slippage: float,
    rate_bonus: float = 1.0,
) -> ExecutionResult:
    """
    Price-ratio swap: ``amount * price_in / price_out``, reduced by the
    protocol fee and then by slippage. Balance is checked before any price
    lookup.
    """
    input_token = _text(block, 'input_token')
    output_token = _text(block, 'output_token')
    amount = _positive(block, 'amount')
    slippage = _number(block, 'slippage', default_slippage)
    if slippage < 0:
        raise BlockRejected(f"{block.display_name}: 'slippage' cannot be negative")

    _require_balance(context, input_token, amount)
    price_in = _price(context, input_token)
    price_out = _price(context, output_token)

    fee_rate = PROTOCOL_FEES[protocol]
    naive_output = amount * (price_in / price_out) * rate_bonus
    output_amount, slippage_amount = apply_fee_then_slippage(naive_output, fee_rate, slippage)
    fee_input_units = fee_amount(amount, protocol)
    gas = gas_cost_usd('swap', price_in)

    context.ledger.subtract_balance(input_token, amount)
    context.ledger.add_balance(output_token, output_amount)
    context.ledger.record_trade(
        timestamp=context.timestamp,
        kind='swap',
        input_token=input_token,
        output_token=output_token,
        input_amount=amount,
        output_amount=output_amount,
        price=price_out,
        slippage_pct=slippage,
        fees_usd=fee_input_units * price_in,
        gas_cost_usd=gas,
    )
    return _fired(
        f"Swapped {amount} {input_token} for {output_amount:.4f} {output_token} on {protocol}",
        input_amount=amount,
        output_amount=output_amount,
        naive_output=naive_output,
        fee_amount=fee_input_units,
        slippage_amount=slippage_amount,
        gas_cost_usd=gas,
    )


def execute_supply(block: Block, context: ExecutionContext, *, protocol: str) -> ExecutionResult:
    asset = _text(block, 'asset')
    amount = _positive(block, 'amount')
    apy = _number(block, 'apy', DEFAULT_APY['supply'])
    _require_balance(context, asset, amount)
    price = _price(context, asset)

    context.ledger.subtract_balance(asset, amount)
    position = context.ledger.add_position(
        kind='supply',
        asset=asset,
        amount=amount,
        entry_price=price,
        entry_timestamp=context.timestamp,
        protocol=protocol,
        apy=apy / 100.0,
    )
    gas = gas_cost_usd('supply', price)
    context.ledger.record_trade(
        timestamp=context.timestamp,
        kind='supply',
        input_token=asset,
        input_amount=amount,
        price=price,
        gas_cost_usd=gas,
    )
    return _fired(f"Supplied {amount} {asset} to {protocol}", position_id=position.id, gas_cost_usd=gas)


def execute_borrow(block: Block, context: ExecutionContext, *, protocol: str) -> ExecutionResult:
    """Borrowing only requires some supply position under the same protocol."""
    asset = _text(block, 'asset')
    amount = _positive(block, 'amount')
    apy = _number(block, 'apy', DEFAULT_APY['borrow'])
    if not context.ledger.get_positions(kind='supply', protocol=protocol):
        raise MissingPosition(f"Cannot borrow: no collateral supplied to {protocol}")
    price = _price(context, asset)

    context.ledger.add_balance(asset, amount)
    position = context.ledger.add_position(
        kind='borrow',
        asset=asset,
        amount=amount,
        entry_price=price,
        entry_timestamp=context.timestamp,
        protocol=protocol,
        apy=apy / 100.0,
    )
    gas = gas_cost_usd('borrow', price)
    context.ledger.record_trade(
        timestamp=context.timestamp,
        kind='borrow',
        input_token=asset,
        input_amount=amount,
        price=price,
        gas_cost_usd=gas,
    )
    return _fired(
        f"Borrowed {amount} {asset} from {protocol}",
        position_id=position.id,
        interest_rate_mode=block.params.get('interest_rate_mode'),
        gas_cost_usd=gas,
    )


def execute_repay(block: Block, context: ExecutionContext, *, protocol: str) -> ExecutionResult:
    asset = _text(block, 'asset')
    amount = _positive(block, 'amount')
    _require_balance(context, asset, amount)
    debts = context.ledger.get_positions(kind='borrow', protocol=protocol, asset=asset)
    if not debts:
        raise MissingPosition(f"No debt to repay for {asset} on {protocol}")
    debt = debts[0]
    price = _price(context, asset)

    context.ledger.reduce_position(debt.id, amount)
    context.ledger.subtract_balance(asset, amount)
    gas = gas_cost_usd('repay', price)
    context.ledger.record_trade(
        timestamp=context.timestamp,
        kind='repay',
        input_token=asset,
        input_amount=amount,
        price=price,
        gas_cost_usd=gas,
    )
    return _fired(f"Repaid {amount} {asset} to {protocol}", remaining_debt=debt.amount, gas_cost_usd=gas)


def execute_withdraw(block: Block, context: ExecutionContext, *, protocol: str) -> ExecutionResult:
    asset = _text(block, 'asset')
    amount = _positive(block, 'amount')
    supplies = context.ledger.get_positions(kind='supply', protocol=protocol, asset=asset)
    if not supplies:
        raise MissingPosition(f"Cannot withdraw: nothing supplied to {protocol} for {asset}")
    supply = supplies[0]
    price = _price(context, asset)

    context.ledger.reduce_position(supply.id, amount)
    context.ledger.add_balance(asset, amount)
    gas = gas_cost_usd('withdraw', price)
    context.ledger.record_trade(
        timestamp=context.timestamp,
        kind='withdraw',
        input_token=asset,
        input_amount=amount,
        price=price,
        gas_cost_usd=gas,
    )
    return _fired(f"Withdrew {amount} {asset} from {protocol}", remaining_supply=supply.amount, gas_cost_usd=gas)


def execute_uniswap_v3_liquidity(block: Block, context: ExecutionContext) -> ExecutionResult:
    # Each leg becomes its own liquidity position so it stays priced in its token.
    token0 = _text(block, 'token0')
    token1 = _text(block, 'token1')
    amount0 = _number(block, 'amount0', 0.0)
    amount1 = _number(block, 'amount1', 0.0)
    if amount0 < 0 or amount1 < 0 or amount0 + amount1 <= 0:
        raise BlockRejected(f"{block.display_name}: liquidity amounts must be non-negative and not both zero")
    _require_balance(context, token0, amount0)
    _require_balance(context, token1, amount1)
    price0 = _price(context, token0)
    price1 = _price(context, token1)

    pool = f"uniswap:{token0}/{token1}"
    for token, amount, price in ((token0, amount0, price0), (token1, amount1, price1)):
        if amount <= 0:
            continue
        context.ledger.subtract_balance(token, amount)
        context.ledger.add_position(
            kind='liquidity',
            asset=token,
            amount=amount,
            entry_price=price,
            entry_timestamp=context.timestamp,
            protocol=pool,
        )
    gas = gas_cost_usd('liquidity', price0)
    context.ledger.record_trade(
        timestamp=context.timestamp,
        kind='liquidity',
        input_token=token0,
        output_token=token1,
        input_amount=amount0,
        output_amount=amount1,
        price=price0,
        gas_cost_usd=gas,
    )
    return _fired(
        f"Added liquidity: {amount0} {token0} + {amount1} {token1}",
        pool=pool,
        fee_tier=block.params.get('fee_tier'),
        gas_cost_usd=gas,
    )


def execute_flash_loan(block: Block, context: ExecutionContext) -> ExecutionResult:
    """The loan is repaid within the step, so only the fee leaves the ledger."""
    asset = _text(block, 'asset')
    amount = _positive(block, 'amount')
    fee = amount * FLASH_LOAN_FEE_RATE
    _require_balance(context, asset, fee)
    price = _price(context, asset)

    context.ledger.subtract_balance(asset, fee)
    gas = gas_cost_usd('flash_loan', price)
    context.ledger.record_trade(
        timestamp=context.timestamp,
        kind='flash_loan',
        input_token=asset,
        input_amount=amount,
        price=price,
        fees_usd=fee * price,
        gas_cost_usd=gas,
    )
    return _fired(f"Flash loan executed: {amount} {asset} (fee {fee:.6f})", fee=fee, gas_cost_usd=gas)


def execute_staking(block: Block, context: ExecutionContext) -> ExecutionResult:
    asset = _text(block, 'asset')
    amount = _positive(block, 'amount')
    apy = _number(block, 'apy', DEFAULT_APY['staking'])
    _require_balance(context, asset, amount)
    price = _price(context, asset)

    context.ledger.subtract_balance(asset, amount)
    position = context.ledger.add_position(
        kind='staking',
        asset=asset,
        amount=amount,
        entry_price=price,
        entry_timestamp=context.timestamp,
        protocol=str(block.params.get('protocol') or 'staking'),
        apy=apy / 100.0,
    )
    gas = gas_cost_usd('staking', price)
    context.ledger.record_trade(
        timestamp=context.timestamp,
        kind='staking',
        input_token=asset,
        input_amount=amount,
        price=price,
        gas_cost_usd=gas,
    )
    staking_type = block.params.get('staking_type', 'liquid')
    return _fired(f"Staked {amount} {asset} ({staking_type})", position_id=position.id, gas_cost_usd=gas)


# ---------------------------------------------------------------------------
# EXIT blocks
# ---------------------------------------------------------------------------

def _change_pct(position: Position, price: float) -> float:
    entry_value = position.amount * position.entry_price
    current_value = position.amount * price
    return (current_value - entry_value) / entry_value * 100.0


def _exit_when(
    context: ExecutionContext,
    positions: Sequence[Position],
    predicate: Callable[[Position, float], bool],
) -> List[str]:
    exits: List[str] = []
    for position in positions:
        price = context.prices.get(position.asset, 0.0)
        if price <= 0 or position.entry_price <= 0:
            continue
        if predicate(position, price):
            _close_position(context, position, price)
            exits.append(position.asset)
    return exits


def execute_stop_loss(block: Block, context: ExecutionContext) -> ExecutionResult:
    threshold = _positive(block, 'percentage', DEFAULT_STOP_LOSS_PCT)
    positions = _asset_positions(context, block.params.get('asset'))
    if not positions:
        return _idle('No positions to check for stop loss')
    exits = _exit_when(context, positions, lambda p, price: -_change_pct(p, price) >= threshold)
    if exits:
        return _fired(f"Stop loss triggered: exited positions in {', '.join(exits)}", exits=exits, threshold=threshold)
    return _idle(f"Stop loss not triggered (max drawdown: {threshold}%)", exits=exits, threshold=threshold)


def execute_take_profit(block: Block, context: ExecutionContext) -> ExecutionResult:
    target = _positive(block, 'percentage', DEFAULT_TAKE_PROFIT_PCT)
    positions = _asset_positions(context, block.params.get('asset'))
    if not positions:
        return _idle('No positions to check for take profit')
    exits = _exit_when(context, positions, lambda p, price: _change_pct(p, price) >= target)
    if exits:
        return _fired(f"Take profit triggered: exited positions in {', '.join(exits)}", exits=exits, target=target)
    return _idle(f"Take profit not triggered (target: {target}%)", exits=exits, target=target)


def execute_time_exit(block: Block, context: ExecutionContext) -> ExecutionResult:
    duration_ms = _positive(block, 'duration', DEFAULT_TIME_EXIT_MS)
    positions = _asset_positions(context, block.params.get('asset'))
    if not positions:
        return _idle('No positions to check for time exit')
    duration = pd.Timedelta(milliseconds=duration_ms)
    exits: List[str] = []
    for position in positions:
        if context.timestamp - position.entry_timestamp >= duration:
            price = context.prices.get(position.asset) or position.entry_price
            _close_position(context, position, price)
            exits.append(position.asset)
    if exits:
        return _fired(f"Time exit triggered: exited positions in {', '.join(exits)}", exits=exits)
    return _idle(f"Time exit not triggered (duration: {duration_ms:.0f}ms)", exits=exits)


CONDITION_PATTERN = re.compile(r'^\s*(profit|loss|price)\s*(>=|<=|==|>|<)\s*(-?\d+(?:\.\d+)?)\s*$', re.IGNORECASE)


def execute_conditional_exit(block: Block, context: ExecutionContext) -> ExecutionResult:
    """Close positions matching ``"<profit|loss|price> <op> <value>"``."""
    condition = _text(block, 'condition')
    match = CONDITION_PATTERN.match(condition)
    if match is None:
        raise BlockRejected(f"Unsupported exit condition: {condition!r}")
    metric, op, threshold_text = match.group(1).lower(), match.group(2), match.group(3)
    compare = COMPARATORS[op]
    threshold = float(threshold_text)

    positions = _asset_positions(context, block.params.get('asset'))
    if not positions:
        return _idle('No positions to check for conditional exit', condition=condition)

    def matches(position: Position, price: float) -> bool:
        if metric == 'price':
            observed = price
        elif metric == 'profit':
            observed = _change_pct(position, price)
        else:
            observed = -_change_pct(position, price)
        return compare(observed, threshold)

    exits = _exit_when(context, positions, matches)
    if exits:
        return _fired(f"Conditional exit triggered: exited positions in {', '.join(exits)}", exits=exits, condition=condition)
    return _idle(f"Conditional exit not met: {condition}", exits=exits, condition=condition)


# ---------------------------------------------------------------------------
# RISK blocks
# ---------------------------------------------------------------------------

def execute_position_sizing(block: Block, context: ExecutionContext) -> ExecutionResult:
    method = str(block.params.get('method', 'fixed_percentage'))
    value = _positive(block, 'value', 10.0)
    max_position = block.params.get('max_position')
    return _fired(
        f"Position sizing set: {method} ({value}%)",
        method=method,
        value=value,
        max_position=None if max_position is None else float(max_position),
    )


def execute_risk_limits(block: Block, context: ExecutionContext) -> ExecutionResult:
    limits = {
        key: block.params.get(key)
        for key in ('max_drawdown', 'max_position_size', 'max_leverage', 'max_daily_loss')
    }
    return _fired('Risk limits set', **limits)


def execute_rebalancing(block: Block, context: ExecutionContext) -> ExecutionResult:
    """Report (not execute) the moves needed to reach the target allocation."""
    allocation = block.params.get('target_allocation')
    if not isinstance(allocation, Mapping) or not allocation:
        raise BlockRejected(f"{block.display_name}: 'target_allocation' must map tokens to percentages")
    threshold = _number(block, 'threshold', 5.0)
    method = block.params.get('method', 'threshold')

    total_value = context.ledger.calculate_equity(context.prices)
    if total_value <= 0:
        return _idle('Rebalancing skipped: portfolio has no value')

    changes: List[Dict[str, float]] = []
    for token, target_pct in allocation.items():
        current_value = context.ledger.get_balance(token) * context.prices.get(token, 0.0)
        current_pct = current_value / total_value * 100.0
        deviation = abs(current_pct - float(target_pct))
        if deviation > threshold:
            changes.append({
                'token': token,
                'current_pct': current_pct,
                'target_pct': float(target_pct),
                'delta_usd': total_value * float(target_pct) / 100.0 - current_value,
            })
    if changes:
        summary = ', '.join(f"{c['delta_usd']:+.2f} {c['token']}" for c in changes)
        return _fired(f"Rebalancing needed: {summary}", changes=changes, method=method, threshold=threshold)
    return _idle('Rebalancing not needed (within threshold)', changes=changes, method=method, threshold=threshold)


BlockHandler = Callable[[Block, ExecutionContext], ExecutionResult]

BLOCK_HANDLERS: Dict[str, BlockHandler] = {
    'price_trigger': execute_price_trigger,
    'time_trigger': execute_time_trigger,
    'volume_trigger': execute_volume_trigger,
    'technical_indicator_trigger': execute_technical_indicator_trigger,
    'uniswap_swap': partial(execute_swap, protocol='uniswap', default_slippage=Config.DEFAULT_SLIPPAGE_PCT),
    'curve_swap': partial(execute_swap, protocol='curve', default_slippage=Config.CURVE_SLIPPAGE_PCT),
    'balancer_swap': partial(execute_swap, protocol='balancer', default_slippage=Config.DEFAULT_SLIPPAGE_PCT),
    'oneinch_swap': partial(
        execute_swap,
        protocol='oneinch',
        default_slippage=Config.DEFAULT_SLIPPAGE_PCT,
        rate_bonus=ONEINCH_RATE_BONUS,
    ),
    'aave_supply': partial(execute_supply, protocol='aave'),
    'aave_borrow': partial(execute_borrow, protocol='aave'),
    'aave_repay': partial(execute_repay, protocol='aave'),
    'aave_withdraw': partial(execute_withdraw, protocol='aave'),
    'compound_supply': partial(execute_supply, protocol='compound'),
    'compound_borrow': partial(execute_borrow, protocol='compound'),
    'uniswap_v3_liquidity': execute_uniswap_v3_liquidity,
    'flash_loan': execute_flash_loan,
    'staking': execute_staking,
    'stop_loss': execute_stop_loss,
    'take_profit': execute_take_profit,
    'time_exit': execute_time_exit,
    'conditional_exit': execute_conditional_exit,
    'position_sizing': execute_position_sizing,
    'risk_limits': execute_risk_limits,
    'rebalancing': execute_rebalancing,
}


def execute_block(block: Block, context: ExecutionContext) -> ExecutionResult:
    handler = BLOCK_HANDLERS.get(block.kind)
    if handler is None:
        raise StructuralError(f"Unknown block kind: {block.kind}")
    try:
        return handler(block, context)
    except BlockRejected as exc:
        return ExecutionResult(ok=False, fired=False, message=str(exc))
    except LedgerError as exc:
        return ExecutionResult(ok=False, fired=False, message=str(exc))


def execute_sequence(blocks: Sequence[Block], context: ExecutionContext) -> List[ExecutionResult]:
    """
    Run ``blocks`` in order. A PROTOCOL or EXIT block whose immediate
    predecessor did not fire is skipped. Every result is stored in
    ``context.results`` under the block id.
    """
    results: List[ExecutionResult] = []
    for block in blocks:
        previous = results[-1] if results else None
        if block.category in (PROTOCOL, EXIT) and previous is not None and not previous.fired:
            result = ExecutionResult(
                ok=True,
                fired=False,
                message=f"Skipped {block.display_name}: previous condition not met",
                payload={'skipped': True},
            )
        else:
            result = execute_block(block, context)
        results.append(result)
        context.results[block.id] = result
    return results
