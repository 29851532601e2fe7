import time
from concurrent.futures.process import BrokenProcessPool

import pytest

from backtest.blocks import make_block
from backtest.engine import BacktestConfig, BacktestResult, run_backtest
from optimization import scheduler as scheduler_module
from optimization.engine import evaluator
from optimization.scheduler import (
    CALCULATION,
    NETWORK,
    TIMEOUT,
    UNKNOWN,
    VALIDATION,
    BacktestJob,
    BacktestScheduler,
    WorkerError,
    classify_error,
)

from conftest import day


@pytest.fixture
def config():
    return BacktestConfig(start_date=day(0), end_date=day(20))


def _scheduler(market, **kwargs):
    options = dict(worker_count=2, executor='thread', initial_delay=0.0, max_delay=0.0, sleep=lambda _s: None)
    options.update(kwargs)
    return BacktestScheduler(market, **options)


class ScriptedWorker:
    """Replays canned errors before delegating to the real worker task."""

    def __init__(self, errors=(), error_type='RuntimeError'):
        self.errors = list(errors)
        self.error_type = error_type
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        if self.errors:
            return {
                'type': evaluator.RESPONSE_ERROR,
                'id': request['id'],
                'parameters': request['parameters'],
                'error': self.errors.pop(0),
                'error_type': self.error_type,
            }
        return evaluator.run_backtest_task(request)


@pytest.mark.parametrize('message, error_type, kind', [
    ('Backtest timed out after 5s', None, TIMEOUT),
    ('Invalid condition: !=', None, VALIDATION),
    ('Missing price data for ETH', None, VALIDATION),
    ('NaN in calculation', None, CALCULATION),
    ('connection reset by peer', None, NETWORK),
    ('No usable price data for any simulation step', 'DataError', VALIDATION),
    ('Cannot backtest empty strategy', 'StructuralError', VALIDATION),
    ('something odd', None, UNKNOWN),
])
def test_classify_error(message, error_type, kind):
    info = classify_error(message, error_type, {'b': {'x': 1.0}})
    assert info.kind == kind
    assert info.parameters == {'b': {'x': 1.0}}
    assert (info.actionable is None) == (kind == UNKNOWN)


def test_run_backtest_matches_direct_engine_run(market, dip_buyer, config):
    with _scheduler(market) as scheduler:
        result = scheduler.run_backtest(dip_buyer, {'buy': {'amount': 250.0}}, config)

    direct = run_backtest([dip_buyer[0], dip_buyer[1].with_params({'amount': 250.0})], market, config)
    assert isinstance(result, BacktestResult)
    assert result.metrics == direct.metrics


def test_repeated_requests_hit_the_cache(market, dip_buyer, config, monkeypatch):
    worker = ScriptedWorker()
    monkeypatch.setattr(scheduler_module, 'run_backtest_task', worker)
    with _scheduler(market) as scheduler:
        first = scheduler.run_backtest(dip_buyer, {}, config)
        second = scheduler.run_backtest(dip_buyer, {}, config)
        assert second is first
        assert worker.calls == 1
        assert scheduler.cache_size == 1
        assert scheduler.cache_hit_rate == pytest.approx(0.5)

        other_window = config.with_window(day(0), day(10))
        scheduler.run_backtest(dip_buyer, {}, other_window)
        assert worker.calls == 2


def test_cache_key_depends_on_parameters_and_window(dip_buyer, config):
    key = BacktestScheduler.cache_key(dip_buyer, {'buy': {'amount': 1.0}}, config)
    assert key == BacktestScheduler.cache_key(dip_buyer, {'buy': {'amount': 1.0}}, config)
    assert key != BacktestScheduler.cache_key(dip_buyer, {'buy': {'amount': 2.0}}, config)
    assert key != BacktestScheduler.cache_key(dip_buyer, {'buy': {'amount': 1.0}}, config.with_window(day(0), day(5)))


def test_transient_errors_are_retried_with_backoff(market, dip_buyer, config, monkeypatch):
    worker = ScriptedWorker(errors=['network connection reset', 'network connection reset'])
    monkeypatch.setattr(scheduler_module, 'run_backtest_task', worker)
    delays = []
    reported = []
    with _scheduler(market, max_retries=2, initial_delay=1.0, max_delay=5.0,
                    sleep=delays.append, on_error=reported.append) as scheduler:
        result = scheduler.run_backtest(dip_buyer, {}, config)
        drained = scheduler.drain_errors()

    assert result.metrics.total_trades > 0
    assert worker.calls == 3
    assert delays == [1.0, 2.0]
    assert reported == []
    assert drained == []


def test_retries_are_bounded(market, dip_buyer, config, monkeypatch):
    worker = ScriptedWorker(errors=['network down'] * 10)
    monkeypatch.setattr(scheduler_module, 'run_backtest_task', worker)
    reported = []
    with _scheduler(market, max_retries=2, on_error=reported.append) as scheduler:
        with pytest.raises(WorkerError) as excinfo:
            scheduler.run_backtest(dip_buyer, {}, config)
        assert scheduler.cache_size == 0
        drained = scheduler.drain_errors()
    assert excinfo.value.info.kind == NETWORK
    assert worker.calls == 3
    assert [info.kind for info in reported] == [NETWORK]
    assert [info.message for info in drained] == ['network down']


def test_validation_errors_are_not_retried(market, dip_buyer, config, monkeypatch):
    worker = ScriptedWorker(errors=['Cannot backtest empty strategy'], error_type='StructuralError')
    monkeypatch.setattr(scheduler_module, 'run_backtest_task', worker)
    reported = []
    with _scheduler(market, max_retries=3, on_error=reported.append) as scheduler:
        with pytest.raises(WorkerError) as excinfo:
            scheduler.run_backtest(dip_buyer, {}, config)
    assert excinfo.value.info.kind == VALIDATION
    assert excinfo.value.info.actionable
    assert worker.calls == 1
    assert len(reported) == 1


def test_real_data_errors_surface_as_validation(market, config):
    blocks = [make_block('t', 'price_trigger', asset='XYZ', target_price=1.0)]
    with _scheduler(market, max_retries=3) as scheduler:
        with pytest.raises(WorkerError) as excinfo:
            scheduler.run_backtest(blocks, {}, config)
    assert excinfo.value.info.kind == VALIDATION
    assert 'No usable price data' in excinfo.value.info.message


def test_slow_tasks_time_out(market, dip_buyer, config, monkeypatch):
    def slow(request):
        time.sleep(0.5)
        return evaluator.run_backtest_task(request)

    monkeypatch.setattr(scheduler_module, 'run_backtest_task', slow)
    with _scheduler(market, timeout=0.05, max_retries=0) as scheduler:
        with pytest.raises(WorkerError) as excinfo:
            scheduler.run_backtest(dip_buyer, {}, config)
        # The slow task still occupies its worker after the timeout.
        assert scheduler.workers_active == 1
    assert scheduler.workers_active == 0
    assert excinfo.value.info.kind == TIMEOUT


def test_run_batch_keeps_order_and_isolates_failures(market, dip_buyer, config):
    broken = [make_block('t', 'price_trigger', asset='XYZ', target_price=1.0)]
    jobs = [
        BacktestJob(dip_buyer, {}, config),
        BacktestJob(broken, {}, config),
        BacktestJob(dip_buyer, {'buy': {'amount': 100.0}}, config),
    ]
    with _scheduler(market, max_retries=0) as scheduler:
        outcomes = scheduler.run_batch(jobs)
        assert scheduler.run_batch([]) == []

    assert [outcome.job for outcome in outcomes] == jobs
    assert outcomes[0].result is not None and outcomes[0].error is None
    assert outcomes[1].result is None and outcomes[1].error.kind == VALIDATION
    assert outcomes[2].result is not None


class DeadPool:
    """Executor stand-in whose workers have all died."""

    def __init__(self):
        self.submits = 0

    def submit(self, fn, *args):
        self.submits += 1
        raise BrokenProcessPool('A child process terminated abruptly')

    def shutdown(self, wait=True):
        pass


def test_broken_pool_on_submit_becomes_error_outcome(market, dip_buyer, config, monkeypatch):
    pool = DeadPool()
    reported = []
    with _scheduler(market, max_retries=1, on_error=reported.append) as scheduler:
        monkeypatch.setattr(scheduler, '_ensure_pool', lambda: pool)
        outcome, = scheduler.run_batch([BacktestJob(dip_buyer, {}, config)])
        assert scheduler.workers_active == 0

    assert outcome.result is None
    assert 'Worker process died' in outcome.error.message
    assert pool.submits == 2
    assert len(reported) == 1


def test_unexpected_worker_exception_does_not_abort_batch(market, dip_buyer, config, monkeypatch):
    def fragile(request):
        if request['parameters']:
            raise ValueError('corrupt payload')
        return evaluator.run_backtest_task(request)

    monkeypatch.setattr(scheduler_module, 'run_backtest_task', fragile)
    jobs = [BacktestJob(dip_buyer, {'buy': {'amount': 100.0}}, config), BacktestJob(dip_buyer, {}, config)]
    reported = []
    with _scheduler(market, max_retries=2, on_error=reported.append) as scheduler:
        bad, good = scheduler.run_batch(jobs)

    assert bad.result is None
    assert bad.error.kind == UNKNOWN
    assert bad.error.message == 'corrupt payload'
    assert bad.error.parameters == {'buy': {'amount': 100.0}}
    assert good.result is not None and good.error is None
    assert [info.message for info in reported] == ['corrupt payload']


def test_unknown_executor_rejected(market):
    with pytest.raises(ValueError):
        BacktestScheduler(market, executor='fiber')
