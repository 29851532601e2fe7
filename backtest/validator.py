"""Static checks run on a strategy before it is simulated or optimized."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Mapping, Sequence

from backtest.blocks import BLOCK_HANDLERS, COMPARATORS, Block

AMOUNT_KINDS = (
    'uniswap_swap',
    'curve_swap',
    'balancer_swap',
    'oneinch_swap',
    'aave_supply',
    'compound_supply',
    'staking',
)
COMPARATOR_KINDS = ('price_trigger', 'technical_indicator_trigger')


@dataclass
class ValidationIssue:
    block_id: str
    message: str


@dataclass
class ValidationResult:
    valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)


def _positive_number(value) -> bool:
    try:
        return float(value) > 0
    except (TypeError, ValueError):
        return False


def validate_strategy(blocks: Sequence[Block]) -> ValidationResult:
    if not blocks:
        return ValidationResult(valid=False, errors=[ValidationIssue('', 'Strategy has no blocks')])

    errors: List[ValidationIssue] = []
    for block in blocks:
        if block.kind not in BLOCK_HANDLERS:
            errors.append(ValidationIssue(block.id, f"Unknown block kind: {block.kind}"))
            continue
        if block.kind in AMOUNT_KINDS and not _positive_number(block.params.get('amount')):
            errors.append(ValidationIssue(block.id, 'Amount must be greater than 0'))
        if block.kind == 'price_trigger' and not _positive_number(block.params.get('target_price')):
            errors.append(ValidationIssue(block.id, 'Target price required'))
        if block.kind in COMPARATOR_KINDS and block.params.get('condition', '>=') not in COMPARATORS:
            errors.append(ValidationIssue(block.id, f"Invalid condition: {block.params.get('condition')}"))
        if block.kind == 'rebalancing':
            allocation = block.params.get('target_allocation')
            if not isinstance(allocation, Mapping) or not allocation:
                errors.append(ValidationIssue(block.id, 'Target allocation required'))

    return ValidationResult(valid=not errors, errors=errors)
