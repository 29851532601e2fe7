"""Walk-forward window generation and in/out-of-sample degradation."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

import pandas as pd

from backtest.prices import to_timestamp
from optimization.parameters import MAXIMIZE

TRAIN_WINDOW_DAYS = 90
TEST_WINDOW_DAYS = 30
STEP_SIZE_DAYS = 30
OVERFIT_THRESHOLD = 60.0  # percent degradation
FALLBACK_TRAIN_FRACTION = 0.7


@dataclass(frozen=True)
class WalkForwardWindow:
    train_start: pd.Timestamp
    train_end: pd.Timestamp
    test_start: pd.Timestamp
    test_end: pd.Timestamp

    def to_dict(self) -> Dict[str, str]:
        return {
            'train_start': self.train_start.isoformat(),
            'train_end': self.train_end.isoformat(),
            'test_start': self.test_start.isoformat(),
            'test_end': self.test_end.isoformat(),
        }


class WalkForwardValidator:
    """Fixed-length train/test windows advancing by a fixed step."""

    def __init__(
        self,
        train_days: int = TRAIN_WINDOW_DAYS,
        test_days: int = TEST_WINDOW_DAYS,
        step_days: int = STEP_SIZE_DAYS,
        overfit_threshold: float = OVERFIT_THRESHOLD,
    ) -> None:
        if train_days <= 0 or test_days <= 0 or step_days <= 0:
            raise ValueError("Walk-forward window lengths must be positive")
        self.train_delta = pd.Timedelta(days=train_days)
        self.test_delta = pd.Timedelta(days=test_days)
        self.step_delta = pd.Timedelta(days=step_days)
        self.overfit_threshold = overfit_threshold

    def generate_windows(self, start: Any, end: Any) -> List[WalkForwardWindow]:
        start_ts = to_timestamp(start)
        end_ts = to_timestamp(end)
        if end_ts <= start_ts:
            raise ValueError("Walk-forward range must end after it starts")

        if end_ts - start_ts < self.train_delta + self.test_delta:
            # Short ranges get a single 70/30 split.
            split = start_ts + (end_ts - start_ts) * FALLBACK_TRAIN_FRACTION
            return [WalkForwardWindow(start_ts, split, split, end_ts)]

        windows: List[WalkForwardWindow] = []
        train_start = start_ts
        while True:
            train_end = train_start + self.train_delta
            test_end = train_end + self.test_delta
            if test_end > end_ts:
                break
            windows.append(WalkForwardWindow(train_start, train_end, train_end, test_end))
            train_start = train_start + self.step_delta
        return windows

    def calculate_degradation(
        self,
        in_sample: Mapping[str, float],
        out_of_sample: Mapping[str, float],
    ) -> float:
        """
        Mean percentage deterioration over objectives present in both score maps.

        Deterioration respects each objective's orientation and is floored at
        zero, so an out-of-sample improvement is never penalized. Objectives
        with a zero or non-finite in-sample value are excluded.
        """
        degradations: List[float] = []
        for objective, in_value in in_sample.items():
            out_value = out_of_sample.get(objective)
            if out_value is None or in_value is None:
                continue
            in_value = float(in_value)
            out_value = float(out_value)
            if in_value == 0 or not math.isfinite(in_value) or not math.isfinite(out_value):
                continue
            if objective in MAXIMIZE:
                change = (in_value - out_value) / abs(in_value) * 100.0
            else:
                change = (out_value - in_value) / abs(in_value) * 100.0
            degradations.append(max(0.0, change))
        if not degradations:
            return 0.0
        return sum(degradations) / len(degradations)

    def is_overfit(self, degradation: float) -> bool:
        return degradation > self.overfit_threshold
