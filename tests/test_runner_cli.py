import json

import pandas as pd
import pytest

from optimization.runner_cli import main


@pytest.fixture
def files(tmp_path, market, dip_buyer):
    prices = pd.DataFrame({'timestamp': market['ETH'].index, 'ETH': market['ETH'].values, 'USDC': 1.0})
    prices_path = tmp_path / 'prices.csv'
    prices.to_csv(prices_path, index=False)
    strategy_path = tmp_path / 'strategy.json'
    strategy_path.write_text(json.dumps({'blocks': [block.to_dict() for block in dip_buyer]}))
    return strategy_path, prices_path


def test_backtest_command_prints_metrics(files, capsys):
    strategy, prices = files
    code = main(['backtest', str(strategy), str(prices), '--end', '2024-01-21', '--trades', '--holding', 'ETH=0.5'])

    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload['skipped_steps'] == 0
    assert payload['metrics']['total_trades'] >= 1
    assert payload['trades'][0]['kind'] == 'swap'


def test_backtest_command_reports_structural_errors(tmp_path, files):
    _strategy, prices = files
    empty = tmp_path / 'empty.json'
    empty.write_text('[]')
    assert main(['backtest', str(empty), str(prices)]) == 1


def test_bad_holding_argument(files):
    strategy, prices = files
    with pytest.raises(SystemExit):
        main(['backtest', str(strategy), str(prices), '--holding', 'ETH'])


def test_optimize_command_writes_run(files, tmp_path, capsys):
    strategy, prices = files
    run_dir = tmp_path / 'run'
    code = main([
        'optimize', str(strategy), str(prices),
        '--end', '2024-01-21',
        '--algorithm', 'genetic',
        '--population-size', '2',
        '--max-iterations', '3',
        '--objectives', 'total_return,max_drawdown',
        '--executor', 'thread',
        '--workers', '1',
        '--seed', '5',
        '--run-dir', str(run_dir),
    ])

    assert code == 0
    assert 'Pareto frontier' in capsys.readouterr().out
    result = json.loads((run_dir / 'result.json').read_text())
    assert result['total_iterations'] == 3
    assert result['config']['objectives'] == ['total_return', 'max_drawdown']
    assert len((run_dir / 'solutions.jsonl').read_text().splitlines()) == 3


def test_unknown_objective(files):
    strategy, prices = files
    with pytest.raises(SystemExit):
        main(['optimize', str(strategy), str(prices), '--objectives', 'alpha', '--executor', 'thread'])
