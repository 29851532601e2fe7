"""Performance and risk statistics for a simulated equity curve."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Sequence, Tuple

import numpy as np

from backtest.ledger import Trade

ANNUALIZATION_DAYS = 365
PAIRED_ENTRY_KINDS = ('entry', 'swap')
PAIRED_EXIT_KINDS = ('exit', 'swap')


@dataclass
class BacktestMetrics:
    sharpe_ratio: float = 0.0
    total_return: float = 0.0
    max_drawdown: float = 0.0
    win_trades: int = 0
    total_trades: int = 0
    total_gas_spent: float = 0.0
    total_fees_spent: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    volatility: float = 0.0
    average_return: float = 0.0
    win_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> 'BacktestMetrics':
        known = {key: payload[key] for key in cls.__dataclass_fields__ if key in payload}
        return cls(**known)


def daily_returns(equity: Sequence[float]) -> np.ndarray:
    """Consecutive step returns ``(e_i - e_{i-1}) / e_{i-1}``; non-positive bases are skipped."""
    values = np.asarray(equity, dtype=float)
    if values.size < 2:
        return np.array([], dtype=float)
    previous = values[:-1]
    current = values[1:]
    mask = previous > 0
    return (current[mask] - previous[mask]) / previous[mask]


def sharpe_ratio(returns: np.ndarray, risk_free_rate: float = 0.0) -> float:
    if returns.size == 0:
        return 0.0
    std = float(np.std(returns))
    if std == 0 or not np.isfinite(std):
        return 0.0
    annualized_return = float(np.mean(returns)) * ANNUALIZATION_DAYS
    annualized_std = std * math.sqrt(ANNUALIZATION_DAYS)
    return (annualized_return - risk_free_rate) / annualized_std


def max_drawdown(equity: Sequence[float]) -> float:
    """Largest peak-to-trough decline, in percent of the running peak."""
    values = np.asarray(equity, dtype=float)
    if values.size == 0:
        return 0.0
    peaks = np.maximum.accumulate(values)
    with np.errstate(divide='ignore', invalid='ignore'):
        drawdowns = np.where(peaks > 0, (peaks - values) / peaks * 100.0, 0.0)
    return float(np.clip(drawdowns.max(), 0.0, 100.0))


def sortino_ratio(returns: np.ndarray, risk_free_rate: float = 0.0) -> float:
    """
    Annualized mean return over the downside deviation.

    Only negative returns enter the denominator. With no negative returns the
    ratio is unbounded (``inf``) when the mean is positive and 0 otherwise.
    """
    if returns.size == 0:
        return 0.0
    mean = float(np.mean(returns))
    downside = returns[returns < 0]
    if downside.size == 0:
        return math.inf if mean > 0 else 0.0
    downside_dev = float(np.std(downside)) * math.sqrt(ANNUALIZATION_DAYS)
    if downside_dev == 0:
        return 0.0
    return (mean * ANNUALIZATION_DAYS - risk_free_rate) / downside_dev


def calmar_ratio(total_return_pct: float, max_drawdown_pct: float, days: float) -> float:
    if days <= 0:
        return 0.0
    if max_drawdown_pct == 0:
        return math.inf
    annualized_return = (total_return_pct / 100.0) * (ANNUALIZATION_DAYS / days)
    return annualized_return / (max_drawdown_pct / 100.0)


def win_loss(trades: Sequence[Trade]) -> Tuple[int, int]:
    """
    Pair consecutive entry/swap trades with the following exit/swap trade and
    count a win when the exit value exceeds the entry value.
    """
    relevant = [t for t in trades if t.kind in ('swap', 'entry', 'exit')]
    if len(relevant) < 2:
        return 0, len(relevant)
    wins = 0
    pairs = 0
    for entry, exit_trade in zip(relevant, relevant[1:]):
        if entry.kind not in PAIRED_ENTRY_KINDS or exit_trade.kind not in PAIRED_EXIT_KINDS:
            continue
        pairs += 1
        entry_value = entry.input_amount * entry.price
        if exit_trade.output_amount:
            exit_value = exit_trade.output_amount * exit_trade.price
        else:
            exit_value = entry.input_amount * exit_trade.price
        if exit_value > entry_value:
            wins += 1
    return wins, pairs or len(relevant)


def calculate_metrics(
    equity: Sequence[float],
    trades: Sequence[Trade],
    initial_equity: float,
    days: float,
) -> BacktestMetrics:
    values = np.asarray(equity, dtype=float)
    returns = daily_returns(values)
    final_equity = float(values[-1]) if values.size else initial_equity
    total_return = (final_equity - initial_equity) / initial_equity * 100.0 if initial_equity > 0 else 0.0
    drawdown = max_drawdown(values)
    wins, total = win_loss(trades)
    mean_return = float(np.mean(returns)) if returns.size else 0.0
    volatility = float(np.std(returns)) * math.sqrt(ANNUALIZATION_DAYS) * 100.0 if returns.size else 0.0

    return BacktestMetrics(
        sharpe_ratio=sharpe_ratio(returns),
        total_return=total_return,
        max_drawdown=drawdown,
        win_trades=wins,
        total_trades=total,
        total_gas_spent=float(sum(t.gas_cost_usd for t in trades)),
        total_fees_spent=float(sum(t.fees_usd for t in trades)),
        sortino_ratio=sortino_ratio(returns),
        calmar_ratio=calmar_ratio(total_return, drawdown, days),
        volatility=volatility,
        average_return=mean_return * 100.0,
        win_rate=(wins / total * 100.0) if total > 0 else 0.0,
    )
