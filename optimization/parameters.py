"""Optimizable parameter definitions and parameter-set helpers."""

from __future__ import annotations

import copy
import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from skopt.space import Categorical, Real, Space

from backtest.blocks import Block

CONTINUOUS = 'continuous'
DISCRETE = 'discrete'
PERCENTAGE = 'percentage'
PARAMETER_KINDS = (CONTINUOUS, DISCRETE, PERCENTAGE)

OBJECTIVES = (
    'sharpe_ratio',
    'total_return',
    'max_drawdown',
    'win_rate',
    'gas_costs',
    'protocol_fees',
)
MAXIMIZE = frozenset({'sharpe_ratio', 'total_return', 'win_rate'})

ParameterSet = Dict[str, Dict[str, float]]
RandomStateLike = Union[int, np.random.RandomState, None]


@dataclass
class ParameterDefinition:
    block_id: str
    block_kind: str
    name: str
    kind: str = CONTINUOUS
    min: Optional[float] = None
    max: Optional[float] = None
    values: Optional[List[float]] = None
    default: float = 0.0

    def __post_init__(self) -> None:
        if self.kind not in PARAMETER_KINDS:
            raise ValueError(f"Unknown parameter kind: {self.kind}")
        if self.kind == DISCRETE and not self.values:
            raise ValueError(f"Discrete parameter {self.block_id}.{self.name} needs values")

    @property
    def is_discrete(self) -> bool:
        return self.kind == DISCRETE

    def bounds(self) -> Tuple[float, float]:
        if self.is_discrete:
            return float(min(self.values)), float(max(self.values))
        low = 0.0 if self.min is None else float(self.min)
        high = 100.0 if self.max is None else float(self.max)
        return low, high

    def dimension(self):
        """scikit-optimize dimension, or ``None`` when only one value is possible."""
        if self.is_discrete:
            choices = sorted({float(v) for v in self.values})
            return Categorical(choices, name=self.key) if len(choices) > 1 else None
        low, high = self.bounds()
        return Real(low, high, name=self.key) if high > low else None

    def fixed_value(self) -> float:
        if self.is_discrete:
            return float(self.values[0])
        return self.bounds()[0]

    @property
    def key(self) -> str:
        return f"{self.block_id}.{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> 'ParameterDefinition':
        return cls(**{k: payload[k] for k in cls.__dataclass_fields__ if k in payload})


def oriented_score(scores: Mapping[str, float], objective: str) -> float:
    """Score where larger is always better; ``-inf`` when missing or not finite."""
    value = scores.get(objective)
    if value is None or not np.isfinite(value):
        return float('-inf')
    return float(value) if objective in MAXIMIZE else -float(value)


def canonical_key(parameters: Mapping[str, Any]) -> str:
    """Stable serialization used for caching and de-duplication."""
    return json.dumps(parameters, sort_keys=True, separators=(',', ':'), default=float)


def get_value(parameters: Mapping[str, Mapping[str, float]], definition: ParameterDefinition) -> Optional[float]:
    block_params = parameters.get(definition.block_id) or {}
    value = block_params.get(definition.name)
    return None if value is None else float(value)


def set_value(parameters: ParameterSet, definition: ParameterDefinition, value: float) -> None:
    parameters.setdefault(definition.block_id, {})[definition.name] = float(value)


def copy_parameters(parameters: ParameterSet) -> ParameterSet:
    return copy.deepcopy(parameters)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def apply_parameters(blocks: Sequence[Block], parameters: Mapping[str, Mapping[str, Any]]) -> List[Block]:
    """Derive blocks whose params are overridden by ``parameters``."""
    return [
        block.with_params(parameters[block.id]) if parameters.get(block.id) else block
        for block in blocks
    ]


def sample_parameter_sets(
    definitions: Sequence[ParameterDefinition],
    count: int,
    random_state: np.random.RandomState,
) -> List[ParameterSet]:
    """Draw ``count`` uniform samples, respecting ranges and discrete value sets."""
    if count <= 0:
        return []
    variable = [(d, d.dimension()) for d in definitions]
    dimensions = [dim for _, dim in variable if dim is not None]
    rows = Space(dimensions).rvs(n_samples=count, random_state=random_state) if dimensions else [[] for _ in range(count)]

    samples: List[ParameterSet] = []
    for row in rows:
        values = iter(row)
        sample: ParameterSet = {}
        for definition, dim in variable:
            value = next(values) if dim is not None else definition.fixed_value()
            set_value(sample, definition, float(value))
        samples.append(sample)
    return samples


def normalized_vector(definitions: Sequence[ParameterDefinition], parameters: ParameterSet) -> np.ndarray:
    """Map each parameter onto [0, 1] using its bounds; NaN where undefined."""
    out = np.full(len(definitions), np.nan)
    for idx, definition in enumerate(definitions):
        value = get_value(parameters, definition)
        low, high = definition.bounds()
        if value is None or high <= low:
            continue
        out[idx] = (value - low) / (high - low)
    return out


def parameter_distance(
    definitions: Sequence[ParameterDefinition],
    a: ParameterSet,
    b: ParameterSet,
) -> float:
    """Root-mean-square distance over normalized parameters defined in both sets."""
    diff = normalized_vector(definitions, a) - normalized_vector(definitions, b)
    diff = diff[~np.isnan(diff)]
    if diff.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(diff ** 2)))


# ---------------------------------------------------------------------------
# Extraction from strategy blocks
# ---------------------------------------------------------------------------

SWAP_KINDS = ('uniswap_swap', 'curve_swap', 'balancer_swap', 'oneinch_swap')
SUPPLY_KINDS = ('aave_supply', 'compound_supply', 'staking')
PRIORITY = {
    'percentage': 1,
    'target_price': 2,
    'slippage': 3,
    'amount': 4,
}
MAX_PARAMETERS = 10


def _scaled(block: Block, name: str, low: float, high: float, kind: str = CONTINUOUS) -> ParameterDefinition:
    base = float(block.params[name])
    return ParameterDefinition(
        block_id=block.id,
        block_kind=block.kind,
        name=name,
        kind=kind,
        min=base * low,
        max=base * high,
        default=base,
    )


def _fixed_range(block: Block, name: str, low: float, high: float, kind: str) -> ParameterDefinition:
    return ParameterDefinition(
        block_id=block.id,
        block_kind=block.kind,
        name=name,
        kind=kind,
        min=low,
        max=high,
        default=float(block.params[name]),
    )


def _block_parameters(block: Block) -> List[ParameterDefinition]:
    params = block.params
    found: List[ParameterDefinition] = []
    if block.kind in SWAP_KINDS:
        if params.get('slippage') is not None:
            found.append(_fixed_range(block, 'slippage', 0.1, 2.0, CONTINUOUS))
        if params.get('amount') is not None:
            found.append(_scaled(block, 'amount', 0.5, 1.5))
    elif block.kind in SUPPLY_KINDS:
        if params.get('amount') is not None:
            found.append(_scaled(block, 'amount', 0.5, 1.5))
    elif block.kind == 'price_trigger':
        if params.get('target_price') is not None:
            found.append(_scaled(block, 'target_price', 0.8, 1.2))
    elif block.kind == 'stop_loss':
        if params.get('percentage') is not None:
            found.append(_fixed_range(block, 'percentage', 1.0, 20.0, PERCENTAGE))
    elif block.kind == 'take_profit':
        if params.get('percentage') is not None:
            found.append(_fixed_range(block, 'percentage', 5.0, 50.0, PERCENTAGE))
    return found


def extract_parameters(blocks: Sequence[Block], limit: int = MAX_PARAMETERS) -> List[ParameterDefinition]:
    """Optimizable parameters of a strategy, most important first."""
    definitions: List[ParameterDefinition] = []
    for block in blocks:
        definitions.extend(_block_parameters(block))
    definitions.sort(key=lambda d: PRIORITY.get(d.name, 10))
    return definitions[:limit]
