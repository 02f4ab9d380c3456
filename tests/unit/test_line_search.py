import numpy as np
import pytest

from blockprop.config import Knobs
from blockprop.core.matrix import BlockSparseMatrix, BlockSparseMatrixVector
from blockprop.optimizer.cost_function import CostAndGradientFunction
from blockprop.optimizer.line_search import (
    IntervalUpdateError,
    IntervalWidthError,
    LineSearchError,
    MaximumStepError,
    MinimumStepError,
    MoreThuenteLineSearch,
    NonDescentDirectionError,
    RoundingError,
    _cubic_minimizer,
    _cubic_minimizer_bounded,
    _force_shrinkage,
    _Point,
    _update_interval_of_uncertainty,
)


def _scalar(value):
    return BlockSparseMatrixVector([BlockSparseMatrix.from_blocks([[[value]]])])


class ScalarCost(CostAndGradientFunction):
    """Wrap ``f(x)`` and ``f'(x)`` of a single parameter."""

    def __init__(self, fn, derivative):
        super().__init__(0.0, 0.0, [BlockSparseMatrix(1, 1, 1)])
        self.fn = fn
        self.derivative = derivative
        self.calls = 0
        self.costs = []

    def compute_cost_and_gradient(self, inputs):
        self.calls += 1
        x = inputs[0].data[0, 0, 0]
        self.costs.append(self.fn(x))
        return self.costs[-1], _scalar(self.derivative(x))


def _quadratic():
    return ScalarCost(lambda x: (x - 3.0) ** 2, lambda x: 2.0 * (x - 3.0))


def _search(cost_function, knobs=None, step=1.0, direction=1.0):
    start = _scalar(0.0)
    cost, gradient = cost_function.compute_cost_and_gradient(start)
    cost_function.calls = 0
    cost_function.costs = []
    return MoreThuenteLineSearch(Knobs(knobs)).search(
        cost_function, start, cost, gradient, _scalar(direction), step
    )


def test_quadratic_converges_to_minimizer():
    result = _search(_quadratic(), {"LineSearch::GradientAccuracy": 0.1})
    assert result.converged
    assert result.step == pytest.approx(3.0)
    assert result.cost == pytest.approx(0.0)
    assert result.iterations == 2
    assert result.inputs[0].data[0, 0, 0] == pytest.approx(3.0)


def test_quadratic_accepts_first_step_with_loose_curvature():
    result = _search(_quadratic())
    assert result.converged
    assert result.step == 1.0
    assert result.cost == pytest.approx(4.0)
    assert result.iterations == 1


def test_overshooting_step_is_bracketed():
    result = _search(_quadratic(), {"LineSearch::GradientAccuracy": 0.1}, step=10.0)
    assert result.converged
    assert result.step == pytest.approx(3.0)
    assert result.iterations == 2


def test_iteration_budget_returns_last_point():
    result = _search(
        _quadratic(),
        {"LineSearch::GradientAccuracy": 0.1, "LineSearch::MaximumIterations": 1},
    )
    assert not result.converged
    assert result.step == 1.0
    assert result.cost == pytest.approx(4.0)
    assert result.iterations == 1


def test_ascent_direction_fails_before_evaluation():
    cost_function = _quadratic()
    with pytest.raises(NonDescentDirectionError):
        _search(cost_function, direction=-1.0)
    assert cost_function.calls == 0


def test_zero_directional_derivative_is_not_descent():
    cost_function = ScalarCost(lambda x: 1.0, lambda x: 0.0)
    with pytest.raises(LineSearchError):
        _search(cost_function)


def test_unbounded_function_hits_maximum_step():
    cost_function = ScalarCost(lambda x: -x, lambda x: -1.0)
    with pytest.raises(MaximumStepError):
        _search(cost_function, {"LineSearch::MaximumStep": 2.0})
    assert cost_function.calls == 2


def test_initial_step_must_be_positive():
    with pytest.raises(ValueError):
        _search(_quadratic(), step=0.0)


@pytest.mark.parametrize(
    "knobs",
    [
        {"LineSearch::FunctionAccuracy": 0.0},
        {"LineSearch::GradientAccuracy": -0.5},
        {"LineSearch::MachinePrecision": 0.0},
        {"LineSearch::MinimumStep": -1.0},
        {"LineSearch::MinimumStep": 2.0, "LineSearch::MaximumStep": 1.0},
        {"LineSearch::MaximumIterations": 0},
    ],
)
def test_invalid_configuration_is_rejected(knobs):
    with pytest.raises(ValueError):
        MoreThuenteLineSearch(Knobs(knobs))


def test_configuration_reads_knobs():
    search = MoreThuenteLineSearch(Knobs({"LineSearch::MaximumIterations": "25"}))
    assert search.maximum_iterations == 25
    assert search.gradient_accuracy == 0.9
    assert np.isclose(search.function_accuracy, 1e-4)


def _quintic():
    # Steep for large steps with a shallow basin near 1.6
    return ScalarCost(
        lambda x: (x + 0.004) ** 5 - 2.0 * (x + 0.004) ** 4,
        lambda x: 5.0 * (x + 0.004) ** 4 - 8.0 * (x + 0.004) ** 3,
    )


def _rational():
    # phi(a) = -a / (a^2 + 2), minimized at sqrt(2)
    return ScalarCost(lambda x: -x / (x * x + 2.0), lambda x: (x * x - 2.0) / (x * x + 2.0) ** 2)


def _assert_strong_wolfe(result, cost_function, function_accuracy, gradient_accuracy):
    initial_cost = cost_function.fn(0.0)
    initial_slope = cost_function.derivative(0.0)
    assert result.cost <= initial_cost + function_accuracy * result.step * initial_slope
    assert abs(cost_function.derivative(result.step)) <= gradient_accuracy * abs(initial_slope)


def test_rational_function_satisfies_strong_wolfe():
    cost_function = _rational()
    knobs = {"LineSearch::FunctionAccuracy": 1.0e-3, "LineSearch::GradientAccuracy": 0.1}
    result = _search(cost_function, knobs, step=0.1)

    assert result.converged
    assert result.iterations == 3
    assert result.step == pytest.approx(np.sqrt(2.0), abs=0.05)
    _assert_strong_wolfe(result, cost_function, 1.0e-3, 0.1)


def test_modified_function_is_used_in_stage_one(caplog):
    cost_function = _quadratic()
    knobs = {"LineSearch::FunctionAccuracy": 0.4, "LineSearch::GradientAccuracy": 0.1}
    with caplog.at_level("DEBUG", logger="blockprop.optimizer.line_search"):
        result = _search(cost_function, knobs, step=5.0)

    assert "Interpolating the modified function at step 5" in caplog.text
    assert "Leaving stage one" not in caplog.text
    assert result.converged
    assert result.step == pytest.approx(3.0)
    assert result.iterations == 3
    _assert_strong_wolfe(result, cost_function, 0.4, 0.1)


def test_stage_one_ends_on_sufficient_decrease(caplog):
    cost_function = _quadratic()
    with caplog.at_level("DEBUG", logger="blockprop.optimizer.line_search"):
        result = _search(cost_function, {"LineSearch::GradientAccuracy": 0.1}, step=5.0)

    assert "Leaving stage one at step 5" in caplog.text
    assert "Interpolating the modified function" not in caplog.text
    assert result.converged
    assert result.step == pytest.approx(3.0)
    assert result.iterations == 2


def test_final_bracketed_iteration_returns_best_point():
    cost_function = _quintic()
    result = _search(cost_function, {"LineSearch::MaximumIterations": 5}, step=100.0)

    assert not result.converged
    assert result.iterations == 5
    assert result.cost == min(cost_function.costs)
    assert result.cost == pytest.approx(-1.7366, abs=1e-3)
    assert result.step == pytest.approx(1.218, abs=1e-2)
    assert result.inputs[0].data[0, 0, 0] == result.step


def test_step_outside_interval_is_a_rounding_error():
    cost_function = _quintic()
    with pytest.raises(RoundingError):
        _search(cost_function, step=100.0)
    assert cost_function.calls == 5


def test_step_below_minimum_fails():
    cost_function = ScalarCost(lambda x: (x - 0.1) ** 2, lambda x: 2.0 * (x - 0.1))
    with pytest.raises(MinimumStepError):
        _search(cost_function, {"LineSearch::MinimumStep": 1.0}, step=0.5)
    assert cost_function.calls == 1


def test_collapsed_interval_fails():
    cost_function = _quadratic()
    knobs = {"LineSearch::MachinePrecision": 1.0, "LineSearch::GradientAccuracy": 0.1}
    with pytest.raises(IntervalWidthError):
        _search(cost_function, knobs, step=10.0)
    assert cost_function.calls == 2


def test_bounded_cubic_minimizer():
    # Interpolates (x - 3)^2 exactly
    assert _cubic_minimizer_bounded(0.0, 9.0, -6.0, 1.0, 4.0, -4.0, 0.0, 5.0) == pytest.approx(3.0)
    # Divergent cubic falls back to the bound on the far side
    assert _cubic_minimizer_bounded(0.0, 1.0, -2.0, 1.0, 0.0, -1.0, 0.0, 5.0) == 5.0
    assert _cubic_minimizer_bounded(1.0, 0.0, -1.0, 0.0, 1.0, -2.0, -5.0, 5.0) == -5.0


def test_cubic_minimizer_with_equal_slopes_is_unbounded():
    assert _cubic_minimizer(0.0, 0.0, -1.0, 1.0, -1.0, -1.0) == float("inf")


def test_higher_cost_brackets_the_minimizer():
    best, end, step, bracket = _update_interval_of_uncertainty(
        _Point(0.0, 9.0, -6.0), _Point(0.0, 9.0, -6.0), _Point(10.0, 49.0, 14.0), 0.0, 50.0, False
    )
    assert bracket
    assert best.step == 0.0
    assert end.step == 10.0
    assert step == pytest.approx(3.0)


def test_opposite_slopes_bracket_the_minimizer():
    best, end, step, bracket = _update_interval_of_uncertainty(
        _Point(0.0, 0.0, -1.0), _Point(0.0, 0.0, -1.0), _Point(2.0, -1.0, 1.0), 0.0, 10.0, False
    )
    assert bracket
    assert best.step == 2.0
    assert end.step == 0.0
    assert step == pytest.approx(1.5352, abs=1e-4)


def test_shrinking_slope_extrapolates_before_bracketing():
    best, end, step, bracket = _update_interval_of_uncertainty(
        _Point(0.0, 1.0, -2.0), _Point(0.0, 1.0, -2.0), _Point(1.0, 0.0, -1.0), 0.0, 5.0, False
    )
    assert not bracket
    assert best.step == 1.0
    assert step == 5.0


def test_shrinking_slope_stays_inside_two_thirds_of_bracket():
    best, end, step, bracket = _update_interval_of_uncertainty(
        _Point(1.0, 0.0, -1.0), _Point(4.0, 5.0, 3.0), _Point(2.0, -0.5, -0.8), 1.0, 4.0, True
    )
    assert bracket
    assert best.step == 2.0
    assert end.step == 4.0
    assert step == pytest.approx(2.0 + 4.0 / 3.0)


def test_steep_slope_in_bracket_interpolates_from_best_and_trial():
    best, end, step, bracket = _update_interval_of_uncertainty(
        _Point(1.0, 0.0, -1.0), _Point(4.0, 5.0, 3.0), _Point(2.0, -2.0, -1.5), 1.0, 4.0, True
    )
    assert bracket
    assert best.step == 2.0
    assert end.step == 4.0
    # The cubic through the trial and the far end would give about 2.152
    assert step == pytest.approx(2.2842, abs=1e-4)


def test_steep_slope_without_bracket_jumps_to_bound():
    _, _, step, bracket = _update_interval_of_uncertainty(
        _Point(0.0, 0.0, -1.0), _Point(0.0, 0.0, -1.0), _Point(1.0, -2.0, -1.5), 0.0, 5.0, False
    )
    assert not bracket
    assert step == 5.0


def test_interval_update_rejects_trial_outside_bracket():
    with pytest.raises(IntervalUpdateError):
        _update_interval_of_uncertainty(
            _Point(1.0, 0.0, -1.0), _Point(4.0, 5.0, 3.0), _Point(5.0, 1.0, 1.0), 1.0, 4.0, True
        )


def test_slow_shrinkage_forces_bisection():
    best, end = _Point(1.0, 0.0, -1.0), _Point(4.0, 5.0, 3.0)
    assert _force_shrinkage(best, end, 1.5, previous_width=3.0) == 2.5
    assert _force_shrinkage(best, end, 1.5, previous_width=6.0) == 1.5
