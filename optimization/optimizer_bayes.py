"""Surrogate-free Bayesian-style search over strategy parameters."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from optimization.parameters import (
    ParameterDefinition,
    ParameterSet,
    copy_parameters,
    oriented_score,
    parameter_distance,
    sample_parameter_sets,
)

CANDIDATES_PER_SUGGESTION = 20
TARGET_DISTANCE = 0.2


@dataclass
class Observation:
    parameters: ParameterSet
    scores: Dict[str, float]


class BayesianOptimizer:
    """
    Suggests candidates at a preferred normalized distance from the best
    observation so far, trading exploration against exploitation.

    Only the primary (first) objective ranks observations. Sampling draws from
    a seeded ``RandomState`` so a given seed reproduces the same suggestions.
    """

    def __init__(
        self,
        definitions: Sequence[ParameterDefinition],
        objectives: Sequence[str],
        seed: Optional[int] = None,
        candidates_per_suggestion: int = CANDIDATES_PER_SUGGESTION,
        target_distance: float = TARGET_DISTANCE,
    ) -> None:
        if not objectives:
            raise ValueError("At least one objective is required")
        self.definitions = list(definitions)
        self.objectives = list(objectives)
        self.candidates_per_suggestion = max(1, int(candidates_per_suggestion))
        self.target_distance = float(target_distance)
        self.random_state = np.random.RandomState(seed)
        self.observations: List[Observation] = []

    @property
    def primary_objective(self) -> str:
        return self.objectives[0]

    def generate_initial_samples(self, count: int) -> List[ParameterSet]:
        return sample_parameter_sets(self.definitions, count, self.random_state)

    def add_observation(self, parameters: ParameterSet, scores: Dict[str, float]) -> None:
        self.observations.append(Observation(copy_parameters(parameters), dict(scores)))

    def best_observation(self) -> Optional[Observation]:
        scored = [
            obs for obs in self.observations
            if np.isfinite(oriented_score(obs.scores, self.primary_objective))
        ]
        if not scored:
            return None
        return max(scored, key=lambda obs: oriented_score(obs.scores, self.primary_objective))

    def acquisition(self, candidate: ParameterSet, anchor: ParameterSet) -> float:
        distance = parameter_distance(self.definitions, candidate, anchor)
        return 1.0 / (1.0 + abs(distance - self.target_distance))

    def suggest_next(self) -> ParameterSet:
        best = self.best_observation()
        if best is None:
            return self.generate_initial_samples(1)[0]
        candidates = self.generate_initial_samples(self.candidates_per_suggestion)
        values = [self.acquisition(candidate, best.parameters) for candidate in candidates]
        return candidates[int(np.argmax(values))]
