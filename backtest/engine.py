"""Simulation engine: replays a block strategy over a historical time grid."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

from backtest.blocks import BLOCK_HANDLERS, Block, ExecutionContext, execute_sequence, referenced_tokens
from backtest.config import Config
from backtest.errors import DataError, StructuralError
from backtest.ledger import Ledger, Trade
from backtest.metrics import BacktestMetrics, calculate_metrics
from backtest.prices import InMemoryPriceOracle, PriceOracle, price_at, to_timestamp

logger = logging.getLogger(__name__)

ONE_DAY = pd.Timedelta(days=1)


@dataclass
class BacktestConfig:
    start_date: pd.Timestamp
    end_date: pd.Timestamp
    initial_capital: float = Config.INITIAL_CAPITAL
    rebalance_interval: int = Config.REBALANCE_INTERVAL_MS  # milliseconds
    base_currency: str = Config.BASE_CURRENCY
    initial_holdings: Dict[str, float] = field(default_factory=dict)
    granularity: Optional[str] = None

    def __post_init__(self) -> None:
        self.start_date = to_timestamp(self.start_date)
        self.end_date = to_timestamp(self.end_date)
        if self.end_date <= self.start_date:
            raise StructuralError("end_date must be after start_date")
        if self.initial_capital <= 0:
            raise StructuralError("initial_capital must be greater than 0")
        if self.rebalance_interval <= 0:
            raise StructuralError("rebalance_interval must be greater than 0")

    def with_window(self, start: Any, end: Any) -> 'BacktestConfig':
        return BacktestConfig(
            start_date=start,
            end_date=end,
            initial_capital=self.initial_capital,
            rebalance_interval=self.rebalance_interval,
            base_currency=self.base_currency,
            initial_holdings=dict(self.initial_holdings),
            granularity=self.granularity,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'initial_capital': self.initial_capital,
            'rebalance_interval': self.rebalance_interval,
            'base_currency': self.base_currency,
            'initial_holdings': dict(sorted(self.initial_holdings.items())),
            'granularity': self.granularity,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> 'BacktestConfig':
        return cls(
            start_date=payload['start_date'],
            end_date=payload['end_date'],
            initial_capital=float(payload.get('initial_capital', Config.INITIAL_CAPITAL)),
            rebalance_interval=int(payload.get('rebalance_interval', Config.REBALANCE_INTERVAL_MS)),
            base_currency=str(payload.get('base_currency', Config.BASE_CURRENCY)),
            initial_holdings=dict(payload.get('initial_holdings') or {}),
            granularity=payload.get('granularity'),
        )


@dataclass
class EquityPoint:
    timestamp: pd.Timestamp
    equity: float


@dataclass
class BacktestResult:
    metrics: BacktestMetrics
    equity_curve: List[EquityPoint]
    trades: List[Trade] = field(default_factory=list)
    skipped_steps: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'metrics': self.metrics.to_dict(),
            'equity_curve': [
                {'date': point.timestamp.isoformat(), 'equity': point.equity}
                for point in self.equity_curve
            ],
            'trades': [trade.to_dict() for trade in self.trades],
            'skipped_steps': self.skipped_steps,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> 'BacktestResult':
        trades = []
        for item in payload.get('trades', []):
            fields = dict(item)
            fields['timestamp'] = to_timestamp(fields['timestamp'])
            trades.append(Trade(**fields))
        return cls(
            metrics=BacktestMetrics.from_dict(payload['metrics']),
            equity_curve=[
                EquityPoint(timestamp=to_timestamp(point['date']), equity=float(point['equity']))
                for point in payload.get('equity_curve', [])
            ],
            trades=trades,
            skipped_steps=int(payload.get('skipped_steps', 0)),
        )


def build_time_grid(start: pd.Timestamp, end: pd.Timestamp, interval_ms: int) -> pd.DatetimeIndex:
    """Steps from ``start`` to ``end`` every ``interval_ms``, always ending on ``end``."""
    grid = pd.date_range(start=start, end=end, freq=pd.Timedelta(milliseconds=interval_ms))
    if len(grid) == 0 or grid[-1] != end:
        grid = grid.append(pd.DatetimeIndex([end]))
    return grid


def _validate_blocks(blocks: Sequence[Block]) -> List[str]:
    if not blocks:
        raise StructuralError("Cannot backtest empty strategy")
    unknown = sorted({block.kind for block in blocks if block.kind not in BLOCK_HANDLERS})
    if unknown:
        raise StructuralError(f"Unknown block kind: {', '.join(unknown)}")
    tokens = referenced_tokens(blocks)
    if not tokens:
        raise StructuralError("Strategy does not reference any tokens")
    return tokens


def run_backtest(
    blocks: Sequence[Block],
    prices: Union[PriceOracle, Mapping[str, Any]],
    config: BacktestConfig,
) -> BacktestResult:
    """
    Simulate ``blocks`` between ``config.start_date`` and ``config.end_date``.

    The oracle is consulted once, before stepping. Steps lacking a usable price
    for any needed token are skipped with a warning; a run with no usable step
    at all raises ``DataError``.
    """
    tokens = _validate_blocks(blocks)
    needed = list(dict.fromkeys([config.base_currency, *config.initial_holdings, *tokens]))

    oracle = prices if isinstance(prices, PriceOracle) else InMemoryPriceOracle(prices)
    series_by_token = oracle.get_prices(needed, config.start_date, config.end_date, config.granularity)
    series_by_token = {token: s for token, s in series_by_token.items() if s is not None and not s.empty}
    if not series_by_token:
        raise DataError(f"No price data fetched for {', '.join(needed)}")

    ledger = Ledger(config.initial_capital, config.base_currency, config.initial_holdings)
    history: Dict[str, List[float]] = {token: [] for token in needed}
    equity_curve: List[EquityPoint] = []
    skipped = 0
    initial_equity: Optional[float] = None
    last_step: Optional[pd.Timestamp] = None

    for timestamp in build_time_grid(config.start_date, config.end_date, config.rebalance_interval):
        step_prices: Dict[str, float] = {}
        missing: List[str] = []
        for token in needed:
            series = series_by_token.get(token)
            if series is not None:
                price = price_at(series, timestamp)
            else:
                # The base currency is the unit of account.
                price = 1.0 if token == config.base_currency else 0.0
            if price > 0:
                step_prices[token] = price
            else:
                missing.append(token)
        if missing:
            skipped += 1
            logger.warning("Skipping step %s: no usable price for %s", timestamp.isoformat(), ', '.join(missing))
            continue

        if initial_equity is None:
            initial_equity = ledger.calculate_equity(step_prices)
        if last_step is not None:
            ledger.accrue_interest((timestamp - last_step) / ONE_DAY)
        last_step = timestamp
        for token, price in step_prices.items():
            history[token].append(price)

        context = ExecutionContext(timestamp=timestamp, prices=step_prices, ledger=ledger, history=history)
        execute_sequence(blocks, context)
        equity_curve.append(EquityPoint(timestamp=timestamp, equity=ledger.calculate_equity(step_prices)))

    if not equity_curve:
        raise DataError("No usable price data for any simulation step")

    span_days = (equity_curve[-1].timestamp - equity_curve[0].timestamp) / ONE_DAY
    metrics = calculate_metrics(
        [point.equity for point in equity_curve],
        ledger.trades,
        initial_equity=initial_equity or config.initial_capital,
        days=span_days,
    )
    return BacktestResult(
        metrics=metrics,
        equity_curve=equity_curve,
        trades=ledger.trades,
        skipped_steps=skipped,
    )
