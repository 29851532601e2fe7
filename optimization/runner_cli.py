"""Command-line interface for strategy backtests and optimization runs."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from backtest.blocks import load_strategy
from backtest.config import Config
from backtest.engine import BacktestConfig, run_backtest
from backtest.errors import BacktestError
from backtest.prices import CsvPriceOracle, to_timestamp
from optimization.orchestrator import ALGORITHMS, BAYESIAN, OptimizationConfig, OptimizationOrchestrator, OptimizationProgress
from optimization.parameters import MAX_PARAMETERS, OBJECTIVES, extract_parameters
from optimization.persistence import RunStore
from optimization.scheduler import BacktestScheduler

logger = logging.getLogger(__name__)


def _parse_holdings(items: Sequence[str]) -> Dict[str, float]:
    holdings: Dict[str, float] = {}
    for item in items or ():
        token, sep, amount = item.partition('=')
        if not sep or not token.strip():
            raise SystemExit(f"Holding '{item}' must look like TOKEN=AMOUNT")
        holdings[token.strip().upper()] = float(amount)
    return holdings


def _parse_objectives(raw: str) -> List[str]:
    objectives = [obj.strip() for obj in raw.split(',') if obj.strip()] if raw else ['sharpe_ratio', 'max_drawdown']
    unknown = [obj for obj in objectives if obj not in OBJECTIVES]
    if unknown:
        raise SystemExit(f"Unknown objective(s) {', '.join(unknown)} (choose from {', '.join(OBJECTIVES)})")
    return objectives


def _price_oracle(path: Path) -> CsvPriceOracle:
    """Load prices, falling back to ``DATA_DIR`` for relative paths."""
    if not path.exists() and not path.is_absolute():
        candidate = Path(Config.data_path(str(path)))
        if candidate.exists():
            path = candidate
    logger.info("Loading prices from %s", path)
    return CsvPriceOracle(path)


def _data_range(oracle: CsvPriceOracle) -> Tuple[pd.Timestamp, pd.Timestamp]:
    starts, ends = [], []
    for token in oracle.tokens:
        series = oracle.series(token)
        if series is not None and not series.empty:
            starts.append(series.index.min())
            ends.append(series.index.max())
    if not starts:
        raise SystemExit('Price file contains no usable prices')
    return min(starts), max(ends)


def _backtest_config(args: argparse.Namespace, oracle: CsvPriceOracle) -> BacktestConfig:
    data_start, data_end = _data_range(oracle)
    return BacktestConfig(
        start_date=to_timestamp(args.start) if args.start else data_start,
        end_date=to_timestamp(args.end) if args.end else data_end,
        initial_capital=args.capital,
        rebalance_interval=args.interval_ms,
        base_currency=args.base_currency.upper(),
        initial_holdings=_parse_holdings(args.holding),
    )


def _log_progress(progress: OptimizationProgress) -> None:
    best = progress.best_solution
    best_label = f"{best.id} {json.dumps(best.scores, sort_keys=True)}" if best else 'none'
    logger.info(
        "Iteration %d/%d | frontier=%d | best=%s | eta=%.1fs | workers=%d",
        progress.iteration, progress.max_iterations, len(progress.pareto_frontier),
        best_label, progress.estimated_time_remaining, progress.workers_active,
    )
    for error in progress.errors:
        logger.warning("Worker error (%s): %s", error.kind, error.describe())


def cmd_backtest(args: argparse.Namespace) -> int:
    blocks = load_strategy(args.strategy)
    oracle = _price_oracle(args.prices)
    result = run_backtest(blocks, oracle, _backtest_config(args, oracle))
    payload = {'metrics': result.metrics.to_dict(), 'skipped_steps': result.skipped_steps}
    if args.trades:
        payload['trades'] = [trade.to_dict() for trade in result.trades]
    print(json.dumps(payload, indent=2))
    return 0


def cmd_optimize(args: argparse.Namespace) -> int:
    blocks = load_strategy(args.strategy)
    oracle = _price_oracle(args.prices)
    parameters = extract_parameters(blocks, limit=args.max_parameters)
    if not parameters:
        raise SystemExit('Strategy exposes no optimizable parameters')

    config = OptimizationConfig(
        parameters=parameters,
        objectives=_parse_objectives(args.objectives),
        algorithm=args.algorithm,
        max_iterations=args.max_iterations,
        backtest_config=_backtest_config(args, oracle),
        population_size=args.population_size,
        seed=args.seed,
    )

    if args.run_dir:
        run_dir = args.run_dir
    else:
        stamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        run_dir = Path(args.runs_dir) / f"optimization_{stamp}"
    store = RunStore(run_dir)

    with BacktestScheduler(oracle, worker_count=args.workers, executor=args.executor) as scheduler:
        orchestrator = OptimizationOrchestrator(scheduler, store=store)
        result = orchestrator.optimize(blocks, config, on_progress=_log_progress)

    print(f"Run {result.status}. Results saved to {run_dir}")
    print(f"Iterations: {result.total_iterations}  time: {result.total_time:.1f}s  cache hit rate: {result.cache_hit_rate:.1%}")
    print("Pareto frontier:")
    for solution in result.pareto_frontier:
        scores = ' '.join(f"{name}={solution.scores.get(name, float('nan')):.4f}" for name in config.objectives)
        print(f"  {solution.id:<14} {scores} degradation={solution.degradation:.1f}%")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument('--log-level', default=Config.LOG_LEVEL, help='Logging level (default from LOG_LEVEL).')
    subparsers = parser.add_subparsers(dest='command', required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('strategy', type=Path, help='Strategy JSON (list of blocks or {"blocks": [...]}).')
    common.add_argument('prices', type=Path, help='Price CSV, long (token,timestamp,price) or wide layout; relative paths also resolve in DATA_DIR.')
    common.add_argument('--start', default=None, help='Start date (default: first price sample).')
    common.add_argument('--end', default=None, help='End date (default: last price sample).')
    common.add_argument('--capital', type=float, default=Config.INITIAL_CAPITAL, help='Initial capital in the base currency.')
    common.add_argument('--interval-ms', type=int, default=Config.REBALANCE_INTERVAL_MS, help='Simulation step in milliseconds.')
    common.add_argument('--base-currency', default=Config.BASE_CURRENCY, help='Currency of the initial capital.')
    common.add_argument('--holding', action='append', default=[], help='Extra starting balance TOKEN=AMOUNT (repeatable).')

    backtest = subparsers.add_parser('backtest', parents=[common], help='Run a single backtest and print its metrics.')
    backtest.add_argument('--trades', action='store_true', help='Include the trade log in the output.')
    backtest.set_defaults(func=cmd_backtest)

    optimize = subparsers.add_parser('optimize', parents=[common], help='Search strategy parameters with walk-forward validation.')
    optimize.add_argument('--algorithm', choices=ALGORITHMS, default=BAYESIAN)
    optimize.add_argument('--objectives', default='', help=f"Comma-separated objectives from: {', '.join(OBJECTIVES)}.")
    optimize.add_argument('--max-iterations', type=int, default=50)
    optimize.add_argument('--population-size', type=int, default=30, help='Genetic population size.')
    optimize.add_argument('--max-parameters', type=int, default=MAX_PARAMETERS)
    optimize.add_argument('--seed', type=int, default=None, help='Random seed for reproducible searches.')
    optimize.add_argument('--workers', type=int, default=None, help='Worker pool size (default: CPU count, capped).')
    optimize.add_argument('--executor', choices=('process', 'thread'), default=Config.OPTIMIZER_EXECUTOR)
    optimize.add_argument('--runs-dir', default=Config.OPTIMIZER_RUNS_DIR, help='Parent directory for run output.')
    optimize.add_argument('--run-dir', type=Path, default=None, help='Explicit run directory.')
    optimize.set_defaults(func=cmd_optimize)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format='%(asctime)s - %(levelname)s - %(message)s')
    Config.validate()
    try:
        return args.func(args)
    except BacktestError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == '__main__':
    sys.exit(main())
