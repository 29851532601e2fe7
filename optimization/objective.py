"""Objective evaluation: walk-forward simulation of one candidate parameter set."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from backtest.blocks import Block
from backtest.engine import BacktestConfig
from backtest.errors import OptimizationError
from optimization.fold_scoring import WindowScore, aggregate_window_scores, scores_from_metrics
from optimization.parameters import ParameterSet
from optimization.scheduler import BacktestJob, BacktestScheduler
from optimization.walk_forward import WalkForwardValidator

logger = logging.getLogger(__name__)

FAILED_DEGRADATION = 100.0


@dataclass
class Solution:
    """One evaluated candidate; only ``is_pareto_optimal`` changes after creation."""

    id: str
    parameters: ParameterSet
    in_sample_scores: Dict[str, float] = field(default_factory=dict)
    out_of_sample_scores: Dict[str, float] = field(default_factory=dict)
    degradation: float = 0.0
    is_pareto_optimal: bool = False
    error: Optional[str] = None
    windows_failed: int = 0

    @classmethod
    def failed_candidate(cls, solution_id: str, parameters: ParameterSet, message: str,
                         windows_failed: int = 0) -> 'Solution':
        return cls(
            id=solution_id,
            parameters=parameters,
            degradation=FAILED_DEGRADATION,
            error=message,
            windows_failed=windows_failed,
        )

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def scores(self) -> Dict[str, float]:
        """Out-of-sample scores when available, otherwise in-sample."""
        return self.out_of_sample_scores or self.in_sample_scores

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'parameters': self.parameters,
            'in_sample_scores': self.in_sample_scores,
            'out_of_sample_scores': self.out_of_sample_scores,
            'degradation': self.degradation,
            'is_pareto_optimal': self.is_pareto_optimal,
            'error': self.error,
            'windows_failed': self.windows_failed,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> 'Solution':
        return cls(
            id=str(payload['id']),
            parameters=dict(payload.get('parameters') or {}),
            in_sample_scores=dict(payload.get('in_sample_scores') or {}),
            out_of_sample_scores=dict(payload.get('out_of_sample_scores') or {}),
            degradation=float(payload.get('degradation', 0.0)),
            is_pareto_optimal=bool(payload.get('is_pareto_optimal', False)),
            error=payload.get('error'),
            windows_failed=int(payload.get('windows_failed', 0)),
        )


class ObjectiveEvaluator:
    """
    Runs every walk-forward window's train and test simulation for a candidate
    through the scheduler and folds the results into score vectors.

    A window whose train or test run fails is dropped. When every window fails
    ``OptimizationError`` is raised.
    """

    def __init__(
        self,
        scheduler: BacktestScheduler,
        blocks: Sequence[Block],
        backtest_config: BacktestConfig,
        validator: Optional[WalkForwardValidator] = None,
    ) -> None:
        self.scheduler = scheduler
        self.blocks = list(blocks)
        self.backtest_config = backtest_config
        self.validator = validator or WalkForwardValidator()
        self.windows = self.validator.generate_windows(backtest_config.start_date, backtest_config.end_date)

    def _jobs(self, parameters: ParameterSet) -> List[BacktestJob]:
        jobs: List[BacktestJob] = []
        for window in self.windows:
            jobs.append(BacktestJob(
                blocks=self.blocks,
                parameters=parameters,
                config=self.backtest_config.with_window(window.train_start, window.train_end),
            ))
            jobs.append(BacktestJob(
                blocks=self.blocks,
                parameters=parameters,
                config=self.backtest_config.with_window(window.test_start, window.test_end),
            ))
        return jobs

    def evaluate(self, solution_id: str, parameters: ParameterSet) -> Solution:
        outcomes = self.scheduler.run_batch(self._jobs(parameters))

        window_scores: List[WindowScore] = []
        errors: List[str] = []
        for index, _window in enumerate(self.windows):
            train, test = outcomes[2 * index], outcomes[2 * index + 1]
            if train.error is not None or test.error is not None:
                errors.append((train.error or test.error).describe())
                logger.warning("Window %d dropped for %s: %s", index, solution_id, errors[-1])
                continue
            window_scores.append(WindowScore(index, 'train', scores_from_metrics(train.result.metrics)))
            window_scores.append(WindowScore(index, 'test', scores_from_metrics(test.result.metrics)))

        if not window_scores:
            message = errors[0] if errors else 'No walk-forward windows'
            raise OptimizationError(f"All walk-forward windows failed for {solution_id}: {message}")

        in_sample, out_of_sample = aggregate_window_scores(window_scores)
        return Solution(
            id=solution_id,
            parameters=parameters,
            in_sample_scores=in_sample,
            out_of_sample_scores=out_of_sample,
            degradation=self.validator.calculate_degradation(in_sample, out_of_sample),
            windows_failed=len(errors),
        )
