import math

from hypothesis import given, settings
from hypothesis import strategies as st

from optimization.objective import Solution
from optimization.pareto import dominates, extract_frontier

OBJECTIVES = ['sharpe_ratio', 'max_drawdown']


def _solution(solution_id, sharpe, drawdown, in_sample=False):
    scores = {'sharpe_ratio': sharpe, 'max_drawdown': drawdown}
    if in_sample:
        return Solution(solution_id, {}, in_sample_scores=scores)
    return Solution(solution_id, {}, out_of_sample_scores=scores)


def test_three_solution_frontier():
    a = _solution('A', 2.0, 10.0)
    b = _solution('B', 1.5, 5.0)
    c = _solution('C', 1.0, 12.0)

    frontier = extract_frontier([a, b, c], OBJECTIVES)

    assert frontier == [a, b]
    assert dominates(a, c, OBJECTIVES)
    assert not dominates(a, b, OBJECTIVES)
    assert not dominates(b, a, OBJECTIVES)
    assert (a.is_pareto_optimal, b.is_pareto_optimal, c.is_pareto_optimal) == (True, True, False)


def test_frontier_flags_are_recomputed():
    a = _solution('A', 1.0, 10.0)
    extract_frontier([a], OBJECTIVES)
    assert a.is_pareto_optimal

    better = _solution('B', 2.0, 5.0)
    extract_frontier([a, better], OBJECTIVES)
    assert not a.is_pareto_optimal
    assert better.is_pareto_optimal


def test_equal_solutions_do_not_dominate_each_other():
    a = _solution('A', 1.0, 5.0)
    b = _solution('B', 1.0, 5.0)
    assert not dominates(a, b, OBJECTIVES)
    assert extract_frontier([a, b], OBJECTIVES) == [a, b]


def test_failed_solutions_never_join_the_frontier():
    failed = Solution.failed_candidate('F', {}, 'All walk-forward windows failed')
    good = _solution('G', 0.1, 50.0)
    assert extract_frontier([failed, good], OBJECTIVES) == [good]
    assert not failed.is_pareto_optimal
    assert extract_frontier([failed], OBJECTIVES) == []


def test_in_sample_scores_used_when_no_out_of_sample():
    a = _solution('A', 2.0, 1.0, in_sample=True)
    b = _solution('B', 1.0, 2.0)
    assert dominates(a, b, OBJECTIVES)


def test_missing_and_non_finite_objectives_are_ignored():
    a = Solution('A', {}, out_of_sample_scores={'sharpe_ratio': 2.0, 'max_drawdown': math.inf})
    b = Solution('B', {}, out_of_sample_scores={'sharpe_ratio': 1.0})
    assert dominates(a, b, OBJECTIVES)
    assert not dominates(b, a, OBJECTIVES)


score = st.floats(min_value=-100, max_value=100, allow_nan=False)


@settings(max_examples=200, deadline=None)
@given(st.tuples(score, score), st.tuples(score, score))
def test_dominance_is_antisymmetric_and_irreflexive(first, second):
    a = _solution('A', *first)
    b = _solution('B', *second)
    assert not (dominates(a, b, OBJECTIVES) and dominates(b, a, OBJECTIVES))
    assert not dominates(a, a, OBJECTIVES)


@settings(max_examples=100, deadline=None)
@given(st.lists(st.tuples(score, score), min_size=1, max_size=12))
def test_frontier_is_non_empty_and_mutually_non_dominated(points):
    solutions = [_solution(f"s{i}", *point) for i, point in enumerate(points)]
    frontier = extract_frontier(solutions, OBJECTIVES)
    assert frontier
    for member in frontier:
        assert not any(dominates(other, member, OBJECTIVES) for other in solutions)
