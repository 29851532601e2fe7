"""Utilities for folding walk-forward window metrics into objective scores."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import pandas as pd

from backtest.metrics import BacktestMetrics
from optimization.parameters import OBJECTIVES

TRAIN = 'train'
TEST = 'test'


@dataclass(frozen=True)
class WindowScore:
    window: int
    phase: str
    scores: Dict[str, float]


def scores_from_metrics(metrics: BacktestMetrics) -> Dict[str, float]:
    """Objective vector of a single simulation run."""
    win_rate = metrics.win_trades / metrics.total_trades if metrics.total_trades > 0 else 0.0
    return {
        'sharpe_ratio': float(metrics.sharpe_ratio),
        'total_return': float(metrics.total_return),
        'max_drawdown': float(metrics.max_drawdown),
        'win_rate': float(win_rate),
        'gas_costs': float(metrics.total_gas_spent),
        'protocol_fees': float(metrics.total_fees_spent),
    }


def _phase_means(frame: pd.DataFrame, phase: str) -> Dict[str, float]:
    subset = frame[frame['phase'] == phase]
    if subset.empty:
        return {}
    means = subset[list(OBJECTIVES)].mean()
    return {objective: float(means[objective]) for objective in OBJECTIVES}


def aggregate_window_scores(window_scores: Sequence[WindowScore]) -> Tuple[Dict[str, float], Dict[str, float]]:
    """
    Average per-window scores by phase.

    Returns ``(in_sample, out_of_sample)``; either map is empty when no window
    contributed to that phase.
    """
    if not window_scores:
        return {}, {}
    rows = []
    for item in window_scores:
        row = {'window': item.window, 'phase': item.phase}
        row.update({objective: item.scores.get(objective, 0.0) for objective in OBJECTIVES})
        rows.append(row)
    frame = pd.DataFrame(rows)
    return _phase_means(frame, TRAIN), _phase_means(frame, TEST)
