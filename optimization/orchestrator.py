"""Orchestrator for multi-objective strategy optimization runs."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from backtest.blocks import Block
from backtest.engine import BacktestConfig
from backtest.errors import OptimizationError, StructuralError
from backtest.validator import validate_strategy
from optimization.objective import ObjectiveEvaluator, Solution
from optimization.optimizer_bayes import BayesianOptimizer
from optimization.optimizer_genetic import DEFAULT_POPULATION_SIZE, GeneticOptimizer
from optimization.parameters import OBJECTIVES, ParameterDefinition, ParameterSet, oriented_score
from optimization.pareto import extract_frontier
from optimization.persistence import RunStore
from optimization.scheduler import BacktestScheduler, WorkerErrorInfo
from optimization.walk_forward import WalkForwardValidator

logger = logging.getLogger(__name__)

IDLE = 'idle'
RUNNING = 'running'
STOPPED = 'stopped'
COMPLETED = 'completed'

BAYESIAN = 'bayesian'
GENETIC = 'genetic'
ALGORITHMS = (BAYESIAN, GENETIC)

INITIAL_SAMPLES = 10
DEFAULT_SECONDS_PER_ITERATION = 5.0


@dataclass
class OptimizationConfig:
    parameters: List[ParameterDefinition]
    objectives: List[str]
    algorithm: str
    max_iterations: int
    backtest_config: BacktestConfig
    population_size: int = DEFAULT_POPULATION_SIZE
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.algorithm not in ALGORITHMS:
            raise StructuralError(f"Unknown algorithm: {self.algorithm}")
        if not self.objectives:
            raise StructuralError("At least one objective is required")
        unknown = [name for name in self.objectives if name not in OBJECTIVES]
        if unknown:
            raise StructuralError(f"Unknown objective: {', '.join(unknown)}")
        if self.max_iterations <= 0:
            raise StructuralError("max_iterations must be greater than 0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'parameters': [definition.to_dict() for definition in self.parameters],
            'objectives': list(self.objectives),
            'algorithm': self.algorithm,
            'max_iterations': self.max_iterations,
            'backtest_config': self.backtest_config.to_dict(),
            'population_size': self.population_size,
            'seed': self.seed,
        }


@dataclass
class OptimizationProgress:
    iteration: int
    max_iterations: int
    best_solution: Optional[Solution]
    pareto_frontier: List[Solution]
    estimated_time_remaining: float
    workers_active: int
    errors: List[WorkerErrorInfo] = field(default_factory=list)


@dataclass
class OptimizationResult:
    config: OptimizationConfig
    solutions: List[Solution]
    pareto_frontier: List[Solution]
    total_iterations: int
    total_time: float
    cache_hit_rate: float
    status: str = COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'config': self.config.to_dict(),
            'total_iterations': self.total_iterations,
            'total_time': self.total_time,
            'cache_hit_rate': self.cache_hit_rate,
            'pareto_frontier': [solution.id for solution in self.pareto_frontier],
            'solutions': [solution.to_dict() for solution in self.solutions],
        }


ProgressCallback = Callable[[OptimizationProgress], None]


class OptimizationOrchestrator:
    """
    Drives a search strategy against the objective evaluator.

    Progress is reported after every evaluation. ``stop()`` is cooperative:
    the in-flight evaluation finishes and the loop exits before the next one.
    """

    def __init__(
        self,
        scheduler: BacktestScheduler,
        store: Optional[RunStore] = None,
        validator: Optional[WalkForwardValidator] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.scheduler = scheduler
        self.store = store
        self.validator = validator or WalkForwardValidator()
        self._clock = clock
        self._state = IDLE
        self._stop_event = threading.Event()
        self.solutions: List[Solution] = []
        self.iteration = 0
        self._started_at = 0.0

    @property
    def state(self) -> str:
        return self._state

    def stop(self) -> None:
        self._stop_event.set()
        if self._state == RUNNING:
            self._state = STOPPED
            logger.info("Stop requested; finishing the in-flight evaluation")

    def _should_stop(self) -> bool:
        return self._stop_event.is_set()

    # ---------------------------- evaluation
    def _evaluate(
        self,
        evaluator: ObjectiveEvaluator,
        config: OptimizationConfig,
        parameters: ParameterSet,
        on_progress: Optional[ProgressCallback],
    ) -> Solution:
        solution_id = f"solution-{len(self.solutions)}"
        try:
            solution = evaluator.evaluate(solution_id, parameters)
        except OptimizationError as exc:
            logger.warning("%s", exc)
            solution = Solution.failed_candidate(solution_id, parameters, str(exc), len(evaluator.windows))

        self.solutions.append(solution)
        self.iteration += 1
        if self.store is not None:
            self.store.append_solution(solution)

        progress = self._progress(config)
        if self.store is not None:
            self.store.write_checkpoint({
                'state': self._state,
                'iteration': progress.iteration,
                'max_iterations': progress.max_iterations,
                'pareto_frontier': [s.id for s in progress.pareto_frontier],
                'best_solution': progress.best_solution.id if progress.best_solution else None,
                'cache_hit_rate': self.scheduler.cache_hit_rate,
            })
        if on_progress is not None:
            on_progress(progress)
        return solution

    def _best(self, frontier: Sequence[Solution], objectives: Sequence[str]) -> Optional[Solution]:
        if not frontier:
            return None
        return max(frontier, key=lambda s: oriented_score(s.scores, objectives[0]))

    def _progress(self, config: OptimizationConfig) -> OptimizationProgress:
        frontier = extract_frontier(self.solutions, config.objectives)
        elapsed = self._clock() - self._started_at
        per_iteration = elapsed / self.iteration if self.iteration > 0 else DEFAULT_SECONDS_PER_ITERATION
        remaining = max(0, config.max_iterations - self.iteration)
        return OptimizationProgress(
            iteration=self.iteration,
            max_iterations=config.max_iterations,
            best_solution=self._best(frontier, config.objectives),
            pareto_frontier=frontier,
            estimated_time_remaining=remaining * per_iteration,
            workers_active=self.scheduler.workers_active,
            errors=self.scheduler.drain_errors(),
        )

    # ---------------------------- search loops
    def _run_bayesian(self, evaluator, config, on_progress) -> None:
        optimizer = BayesianOptimizer(config.parameters, config.objectives, seed=config.seed)
        for parameters in optimizer.generate_initial_samples(min(INITIAL_SAMPLES, config.max_iterations)):
            if self._should_stop():
                return
            solution = self._evaluate(evaluator, config, parameters, on_progress)
            optimizer.add_observation(parameters, solution.scores)

        while self.iteration < config.max_iterations and not self._should_stop():
            parameters = optimizer.suggest_next()
            solution = self._evaluate(evaluator, config, parameters, on_progress)
            optimizer.add_observation(parameters, solution.scores)

    def _run_genetic(self, evaluator, config, on_progress) -> None:
        optimizer = GeneticOptimizer(
            config.parameters,
            config.objectives,
            population_size=config.population_size,
            seed=config.seed,
        )
        while self.iteration < config.max_iterations and not self._should_stop():
            for index, parameters in enumerate(optimizer.get_population()):
                if self.iteration >= config.max_iterations or self._should_stop():
                    return
                solution = self._evaluate(evaluator, config, parameters, on_progress)
                optimizer.set_fitness(index, optimizer.fitness_from_scores(solution.scores))
            logger.info(
                "Generation %d evaluated (%d/%d iterations)",
                optimizer.generation, self.iteration, config.max_iterations,
            )
            optimizer.evolve()

    def optimize(
        self,
        blocks: Sequence[Block],
        config: OptimizationConfig,
        on_progress: Optional[ProgressCallback] = None,
    ) -> OptimizationResult:
        if self._state == RUNNING:
            raise RuntimeError("Optimization already running")

        validation = validate_strategy(blocks)
        if not validation.valid:
            details = '; '.join(f"{issue.block_id}: {issue.message}" for issue in validation.errors)
            raise StructuralError(f"Invalid strategy: {details}")

        evaluator = ObjectiveEvaluator(self.scheduler, blocks, config.backtest_config, self.validator)
        self._stop_event.clear()
        self.solutions = []
        self.iteration = 0
        self._started_at = self._clock()
        self._state = RUNNING
        if self.store is not None:
            self.store.write_config(config.to_dict())

        logger.info(
            "Starting %s optimization: %d iterations, %d parameters, %d windows, objectives %s",
            config.algorithm, config.max_iterations, len(config.parameters),
            len(evaluator.windows), ', '.join(config.objectives),
        )
        try:
            if config.algorithm == BAYESIAN:
                self._run_bayesian(evaluator, config, on_progress)
            else:
                self._run_genetic(evaluator, config, on_progress)
        except Exception:
            self._state = STOPPED
            raise

        if self._state == RUNNING:
            self._state = COMPLETED
        frontier = extract_frontier(self.solutions, config.objectives)
        result = OptimizationResult(
            config=config,
            solutions=list(self.solutions),
            pareto_frontier=frontier,
            total_iterations=self.iteration,
            total_time=self._clock() - self._started_at,
            cache_hit_rate=self.scheduler.cache_hit_rate,
            status=self._state,
        )
        if self.store is not None:
            self.store.write_result(result.to_dict())
        logger.info(
            "Optimization %s after %d iterations: %d solutions on the Pareto frontier",
            result.status, result.total_iterations, len(frontier),
        )
        return result
