import pandas as pd
import pytest

from backtest.blocks import make_block
from backtest.engine import BacktestConfig, run_backtest
from backtest.errors import OptimizationError
from backtest.metrics import BacktestMetrics
from optimization.fold_scoring import TEST, TRAIN, WindowScore, aggregate_window_scores, scores_from_metrics
from optimization.objective import FAILED_DEGRADATION, ObjectiveEvaluator, Solution
from optimization.parameters import apply_parameters
from optimization.scheduler import BacktestScheduler, JobOutcome, classify_error
from optimization.walk_forward import WalkForwardValidator

from conftest import day


@pytest.fixture
def scheduler(market):
    with BacktestScheduler(market, worker_count=2, executor='thread', max_retries=0,
                           initial_delay=0.0, max_delay=0.0, sleep=lambda _s: None) as scheduler:
        yield scheduler


@pytest.fixture
def validator():
    return WalkForwardValidator(train_days=10, test_days=5, step_days=5)


@pytest.fixture
def backtest_config():
    return BacktestConfig(start_date=day(0), end_date=day(40))


def test_scores_from_metrics():
    metrics = BacktestMetrics(sharpe_ratio=1.2, total_return=5.0, max_drawdown=3.0, win_trades=3,
                              total_trades=4, total_gas_spent=7.5, total_fees_spent=1.5)
    assert scores_from_metrics(metrics) == {
        'sharpe_ratio': 1.2,
        'total_return': 5.0,
        'max_drawdown': 3.0,
        'win_rate': 0.75,
        'gas_costs': 7.5,
        'protocol_fees': 1.5,
    }
    assert scores_from_metrics(BacktestMetrics())['win_rate'] == 0.0


def test_aggregate_window_scores_averages_by_phase():
    in_sample, out_of_sample = aggregate_window_scores([
        WindowScore(0, TRAIN, {'sharpe_ratio': 1.0}),
        WindowScore(1, TRAIN, {'sharpe_ratio': 3.0}),
        WindowScore(0, TEST, {'sharpe_ratio': -1.0}),
    ])
    assert in_sample['sharpe_ratio'] == pytest.approx(2.0)
    assert out_of_sample['sharpe_ratio'] == pytest.approx(-1.0)
    assert aggregate_window_scores([]) == ({}, {})


def test_solution_round_trip_and_failed_candidate():
    failed = Solution.failed_candidate('solution-3', {'b': {'x': 1.0}}, 'boom', windows_failed=2)
    assert failed.failed
    assert failed.degradation == FAILED_DEGRADATION
    assert failed.scores == {}
    assert Solution.from_dict(failed.to_dict()) == failed

    ok = Solution('solution-1', {}, in_sample_scores={'sharpe_ratio': 1.0})
    assert not ok.failed
    assert ok.scores == {'sharpe_ratio': 1.0}


def test_evaluate_reproduces_out_of_sample_scores(scheduler, dip_buyer, backtest_config, market, validator):
    evaluator = ObjectiveEvaluator(scheduler, dip_buyer, backtest_config, validator)
    parameters = {'trigger': {'target_price': 2200.0}, 'buy': {'amount': 400.0}}

    solution = evaluator.evaluate('solution-0', parameters)

    assert len(evaluator.windows) == 6
    assert solution.windows_failed == 0
    blocks = apply_parameters(dip_buyer, parameters)
    replayed = pd.DataFrame([
        scores_from_metrics(run_backtest(blocks, market, backtest_config.with_window(w.test_start, w.test_end)).metrics)
        for w in evaluator.windows
    ]).mean()
    for objective, value in solution.out_of_sample_scores.items():
        assert value == pytest.approx(replayed[objective])
    assert solution.degradation == pytest.approx(
        validator.calculate_degradation(solution.in_sample_scores, solution.out_of_sample_scores)
    )


class FirstWindowFails:
    def __init__(self, inner):
        self.inner = inner

    def run_batch(self, jobs):
        outcomes = self.inner.run_batch(jobs)
        outcomes[0] = JobOutcome(job=jobs[0], error=classify_error('network down'))
        return outcomes


def test_failed_windows_are_dropped(scheduler, dip_buyer, backtest_config, validator):
    full = ObjectiveEvaluator(scheduler, dip_buyer, backtest_config, validator)
    partial = ObjectiveEvaluator(FirstWindowFails(scheduler), dip_buyer, backtest_config, validator)

    solution = partial.evaluate('solution-0', {})
    reference = full.evaluate('solution-1', {})

    assert solution.windows_failed == 1
    assert not solution.failed
    assert solution.out_of_sample_scores.keys() == reference.out_of_sample_scores.keys()


def test_all_windows_failing_raises(scheduler, backtest_config, validator):
    blocks = [make_block('t', 'price_trigger', asset='XYZ', target_price=1.0)]
    evaluator = ObjectiveEvaluator(scheduler, blocks, backtest_config, validator)
    with pytest.raises(OptimizationError, match='All walk-forward windows failed for solution-7'):
        evaluator.evaluate('solution-7', {})
