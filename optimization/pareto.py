"""Pareto dominance over multi-objective solutions."""

from __future__ import annotations

import math
from typing import List, Optional, Sequence

from optimization.objective import Solution
from optimization.parameters import MAXIMIZE


def objective_value(solution: Solution, objective: str) -> Optional[float]:
    value = solution.scores.get(objective)
    if value is None:
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def dominates(a: Solution, b: Solution, objectives: Sequence[str]) -> bool:
    """True when ``a`` is no worse than ``b`` everywhere and strictly better somewhere.

    Objectives missing from either solution are ignored.
    """
    strictly_better = False
    for objective in objectives:
        a_value = objective_value(a, objective)
        b_value = objective_value(b, objective)
        if a_value is None or b_value is None:
            continue
        if objective in MAXIMIZE:
            if a_value < b_value:
                return False
            if a_value > b_value:
                strictly_better = True
        else:
            if a_value > b_value:
                return False
            if a_value < b_value:
                strictly_better = True
    return strictly_better


def extract_frontier(solutions: Sequence[Solution], objectives: Sequence[str]) -> List[Solution]:
    """
    Recompute the non-dominated set from scratch and refresh every solution's
    ``is_pareto_optimal`` flag. Failed solutions never join the frontier.
    """
    candidates = [s for s in solutions if not s.failed]
    frontier: List[Solution] = []
    for solution in candidates:
        dominated = any(
            other is not solution and dominates(other, solution, objectives)
            for other in candidates
        )
        if not dominated:
            frontier.append(solution)

    members = {id(s) for s in frontier}
    for solution in solutions:
        solution.is_pareto_optimal = id(solution) in members
    return frontier
