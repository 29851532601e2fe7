"""Bounded worker pool that evaluates backtests with caching and retry."""

from __future__ import annotations

import itertools
import logging
import multiprocessing as mp
import os
import threading
import time
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from backtest.blocks import Block
from backtest.config import Config
from backtest.engine import BacktestConfig, BacktestResult
from backtest.prices import PriceOracle
from optimization.engine.evaluator import RESPONSE_ERROR, build_request, init_worker, run_backtest_task
from optimization.parameters import ParameterSet, canonical_key
from utils.retry import RetryError, retry_with_backoff

logger = logging.getLogger(__name__)

TIMEOUT = 'timeout'
VALIDATION = 'validation'
CALCULATION = 'calculation'
NETWORK = 'network'
UNKNOWN = 'unknown'

VALIDATION_ERROR_TYPES = ('StructuralError', 'DataError')

ERROR_RULES = (
    (TIMEOUT, ('timeout', 'timed out'),
     'The backtest is taking too long. Try reducing the date range or simplifying the strategy.'),
    (VALIDATION, ('validation', 'invalid', 'missing'),
     'Check the strategy configuration. Ensure all required parameters are set correctly.'),
    (CALCULATION, ('calculation', 'nan', 'infinity'),
     'A calculation error occurred. Check strategy parameters for invalid values such as negative amounts.'),
    (NETWORK, ('network', 'fetch', 'connection'),
     'A network error occurred while fetching price data. Check connectivity and try again.'),
)
VALIDATION_HINT = ERROR_RULES[1][2]


@dataclass
class WorkerErrorInfo:
    kind: str
    message: str
    actionable: Optional[str] = None
    parameters: Optional[ParameterSet] = None

    def describe(self) -> str:
        return f"{self.message}. {self.actionable}" if self.actionable else self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'message': self.message,
            'actionable': self.actionable,
            'parameters': self.parameters,
        }


class WorkerError(RuntimeError):
    """A worker reported a failed evaluation."""

    def __init__(self, info: WorkerErrorInfo) -> None:
        super().__init__(info.describe())
        self.info = info


def classify_error(
    message: str,
    error_type: Optional[str] = None,
    parameters: Optional[ParameterSet] = None,
) -> WorkerErrorInfo:
    """Bucket a worker failure and attach a remediation hint."""
    if error_type in VALIDATION_ERROR_TYPES:
        return WorkerErrorInfo(VALIDATION, message, VALIDATION_HINT, parameters)
    lowered = message.lower()
    for kind, markers, hint in ERROR_RULES:
        if any(marker in lowered for marker in markers):
            return WorkerErrorInfo(kind, message, hint, parameters)
    return WorkerErrorInfo(UNKNOWN, message, None, parameters)


def _retryable(exc: BaseException) -> bool:
    return isinstance(exc, WorkerError) and exc.info.kind != VALIDATION


@dataclass
class BacktestJob:
    blocks: Sequence[Block]
    parameters: ParameterSet
    config: BacktestConfig


@dataclass
class JobOutcome:
    job: BacktestJob
    result: Optional[BacktestResult] = None
    error: Optional[WorkerErrorInfo] = None


def default_worker_count() -> int:
    return max(1, min(os.cpu_count() or 4, Config.OPTIMIZER_MAX_WORKERS))


class BacktestScheduler:
    """
    Runs simulation requests on a process (or thread) pool.

    Results are cached by a canonical fingerprint of the strategy, the
    parameter overrides and the simulation window. Failed evaluations are
    classified; everything except validation failures is retried with bounded
    exponential backoff before the error is surfaced.
    """

    def __init__(
        self,
        price_data: Union[PriceOracle, Mapping[str, Any]],
        *,
        worker_count: Optional[int] = None,
        executor: str = Config.OPTIMIZER_EXECUTOR,
        timeout: float = Config.OPTIMIZER_TASK_TIMEOUT,
        max_retries: int = Config.OPTIMIZER_MAX_RETRIES,
        initial_delay: float = Config.OPTIMIZER_RETRY_INITIAL_DELAY,
        max_delay: float = Config.OPTIMIZER_RETRY_MAX_DELAY,
        on_error: Optional[Callable[[WorkerErrorInfo], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if executor not in ('process', 'thread'):
            raise ValueError(f"Unknown executor: {executor}")
        self.price_data = price_data
        self.worker_count = int(worker_count or default_worker_count())
        self.executor_kind = executor
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.on_error = on_error
        self._sleep = sleep

        self._pool: Optional[Executor] = None
        self._lock = threading.Lock()
        self._cache: Dict[str, BacktestResult] = {}
        self._hits = 0
        self._misses = 0
        self._active = 0
        self._errors: List[WorkerErrorInfo] = []
        self._ids = itertools.count(1)

    # ---------------------------- pool lifecycle
    def _ensure_pool(self) -> Executor:
        with self._lock:
            if self._pool is None:
                if self.executor_kind == 'process':
                    self._pool = ProcessPoolExecutor(
                        max_workers=self.worker_count,
                        mp_context=mp.get_context('spawn'),
                        initializer=init_worker,
                        initargs=(self.price_data,),
                    )
                else:
                    self._pool = ThreadPoolExecutor(
                        max_workers=self.worker_count,
                        initializer=init_worker,
                        initargs=(self.price_data,),
                    )
            return self._pool

    def _reset_pool(self) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=False)

    def close(self) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)

    def __enter__(self) -> 'BacktestScheduler':
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ---------------------------- stats
    @property
    def workers_active(self) -> int:
        with self._lock:
            return self._active

    @property
    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)

    @property
    def cache_hit_rate(self) -> float:
        with self._lock:
            total = self._hits + self._misses
            return self._hits / total if total else 0.0

    def drain_errors(self) -> List[WorkerErrorInfo]:
        """Errors reported since the previous call."""
        with self._lock:
            errors, self._errors = self._errors, []
        return errors

    def _report(self, info: WorkerErrorInfo) -> None:
        logger.warning("Worker %s error: %s", info.kind, info.message)
        with self._lock:
            self._errors.append(info)
        if self.on_error is not None:
            self.on_error(info)

    # ---------------------------- evaluation
    @staticmethod
    def cache_key(blocks: Sequence[Block], parameters: ParameterSet, config: BacktestConfig) -> str:
        return canonical_key({
            'blocks': [block.to_dict() for block in blocks],
            'parameters': parameters,
            'config': config.to_dict(),
        })

    def _release(self, _future: Optional[Future] = None) -> None:
        with self._lock:
            self._active -= 1

    def _pool_failure(self, exc: BaseException, parameters: ParameterSet) -> WorkerError:
        self._reset_pool()
        return WorkerError(classify_error(f"Worker process died: {exc}", parameters=parameters))

    def _dispatch(self, blocks: Sequence[Block], parameters: ParameterSet, config: BacktestConfig) -> BacktestResult:
        request = build_request(f"task-{next(self._ids)}", blocks, parameters, config)
        pool = self._ensure_pool()
        with self._lock:
            self._active += 1
        try:
            future = pool.submit(run_backtest_task, request)
        except BrokenProcessPool as exc:
            self._release()
            raise self._pool_failure(exc, parameters) from exc
        except Exception:
            self._release()
            raise
        # A timed-out task keeps its worker busy until it returns.
        future.add_done_callback(self._release)

        try:
            response = future.result(timeout=self.timeout)
        except FuturesTimeout:
            future.cancel()
            info = classify_error(f"Backtest timed out after {self.timeout}s", parameters=parameters)
            raise WorkerError(info) from None
        except BrokenProcessPool as exc:
            raise self._pool_failure(exc, parameters) from exc

        if response.get('type') == RESPONSE_ERROR:
            info = classify_error(
                response.get('error') or 'Unknown worker error',
                response.get('error_type'),
                response.get('parameters') or parameters,
            )
            raise WorkerError(info)
        return BacktestResult.from_dict(response['result'])

    def run_backtest(
        self,
        blocks: Sequence[Block],
        parameters: ParameterSet,
        config: BacktestConfig,
    ) -> BacktestResult:
        """Evaluate one request; errors are reported once, after retries give up."""
        key = self.cache_key(blocks, parameters, config)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._hits += 1
                return cached
            self._misses += 1

        try:
            result = retry_with_backoff(
                lambda: self._dispatch(blocks, parameters, config),
                max_retries=self.max_retries,
                initial_delay=self.initial_delay,
                max_delay=self.max_delay,
                retryable=_retryable,
                sleep=self._sleep,
            )
        except RetryError as exc:
            logger.error("Backtest failed after %d attempts: %s", exc.attempts, exc.last_error)
            self._report(exc.last_error.info)
            raise exc.last_error from exc
        except WorkerError as exc:
            logger.error("Backtest rejected without retry: %s", exc.info.message)
            self._report(exc.info)
            raise

        with self._lock:
            self._cache[key] = result
        return result

    def run_batch(self, jobs: Sequence[BacktestJob]) -> List[JobOutcome]:
        """Evaluate jobs concurrently; outcomes come back in submission order."""
        if not jobs:
            return []

        def _run(job: BacktestJob) -> JobOutcome:
            try:
                return JobOutcome(job=job, result=self.run_backtest(job.blocks, job.parameters, job.config))
            except WorkerError as exc:
                return JobOutcome(job=job, error=exc.info)
            except Exception as exc:
                logger.exception("Unexpected failure evaluating %s", job.parameters)
                info = classify_error(str(exc) or type(exc).__name__, type(exc).__name__, job.parameters)
                self._report(info)
                return JobOutcome(job=job, error=info)

        with ThreadPoolExecutor(max_workers=min(self.worker_count, len(jobs))) as coordinator:
            return list(coordinator.map(_run, jobs))
