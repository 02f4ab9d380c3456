"""More-Thuente line search.

Finds a step along a descent direction that satisfies the strong Wolfe
conditions, following

    Jorge J. More and David J. Thuente. Line search algorithm with guaranteed
    sufficient decrease. ACM Transactions on Mathematical Software (TOMS),
    Vol 20, No 3, pp. 286-307, 1994.

The search keeps two points: ``best``, the step with the lowest cost seen so
far, and ``interval_end``, the other end of the interval of uncertainty. Once
``bracket`` is set a minimizer is known to lie between them.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import NamedTuple, Protocol, Sequence

from ..config import Knobs
from ..core.matrix import BlockSparseMatrix, BlockSparseMatrixVector
from .cost_function import CostAndGradientFunction

logger = logging.getLogger(__name__)


class LineSearchError(RuntimeError):
    """The line search could not produce an acceptable step."""


class NonDescentDirectionError(LineSearchError):
    """The search direction does not decrease the objective."""


class RoundingError(LineSearchError):
    """The trial step collapsed onto the interval of uncertainty."""


class MaximumStepError(LineSearchError):
    """The step reached the maximum step while the cost was still falling."""


class MinimumStepError(LineSearchError):
    """The step reached the minimum step without sufficient decrease."""


class IntervalWidthError(LineSearchError):
    """The interval of uncertainty shrank below the machine precision."""


class IntervalUpdateError(LineSearchError):
    """The interval of uncertainty was updated with inconsistent inputs."""


@dataclass
class LineSearchResult:
    """The last evaluated point of a line search."""

    step: float
    inputs: BlockSparseMatrixVector
    cost: float
    gradient: BlockSparseMatrixVector
    iterations: int
    converged: bool


class LineSearch(Protocol):
    """Protocol implemented by line searches."""

    def search(
        self,
        cost_function: CostAndGradientFunction,
        inputs: Sequence[BlockSparseMatrix],
        cost: float,
        gradient: Sequence[BlockSparseMatrix],
        direction: Sequence[BlockSparseMatrix],
        step: float,
    ) -> LineSearchResult:
        """Search from ``inputs`` along ``direction`` starting with ``step``."""


class _Point(NamedTuple):
    step: float
    cost: float
    gradient_direction: float


class MoreThuenteLineSearch:
    """Line search with guaranteed sufficient decrease."""

    def __init__(self, knobs: Knobs | None = None) -> None:
        knobs = knobs if knobs is not None else Knobs()
        self.machine_precision = knobs.get_knob_value("LineSearch::MachinePrecision", 1.0e-13)
        self.gradient_accuracy = knobs.get_knob_value("LineSearch::GradientAccuracy", 0.9)
        self.function_accuracy = knobs.get_knob_value("LineSearch::FunctionAccuracy", 1.0e-4)
        self.maximum_step = knobs.get_knob_value("LineSearch::MaximumStep", 1.0e20)
        self.minimum_step = knobs.get_knob_value("LineSearch::MinimumStep", 1.0e-20)
        self.maximum_iterations = knobs.get_knob_value("LineSearch::MaximumIterations", 10)

        if self.function_accuracy <= 0.0:
            raise ValueError("Function accuracy must be positive.")
        if self.gradient_accuracy <= 0.0:
            raise ValueError("Gradient accuracy must be positive.")
        if self.machine_precision <= 0.0:
            raise ValueError("Machine precision must be positive.")
        if self.minimum_step < 0.0:
            raise ValueError("Minimum step must be non-negative.")
        if self.maximum_step < self.minimum_step:
            raise ValueError("Maximum step must be greater than minimum step.")
        if self.maximum_iterations < 1:
            raise ValueError("Maximum iterations must be at least one.")

    def search(
        self,
        cost_function: CostAndGradientFunction,
        inputs: Sequence[BlockSparseMatrix],
        cost: float,
        gradient: Sequence[BlockSparseMatrix],
        direction: Sequence[BlockSparseMatrix],
        step: float,
    ) -> LineSearchResult:
        logger.debug("Starting line search with initial cost %f", cost)

        if not step > 0.0:
            raise ValueError(f"Initial step must be positive, got {step}")

        inputs = BlockSparseMatrixVector(inputs)
        gradient = BlockSparseMatrixVector(gradient)
        direction = BlockSparseMatrixVector(direction)

        initial_gradient_direction = gradient.dot_product(direction)
        if not initial_gradient_direction < 0.0:
            raise NonDescentDirectionError(
                "Search direction does not decrease objective function "
                f"(directional derivative {initial_gradient_direction})"
            )

        bracket = False
        stage_one = True
        initial_cost = float(cost)

        gradient_direction_test = initial_gradient_direction * self.function_accuracy

        interval_width = self.maximum_step - self.minimum_step
        previous_interval_width = 2.0 * interval_width

        best = _Point(0.0, initial_cost, initial_gradient_direction)
        interval_end = _Point(0.0, initial_cost, initial_gradient_direction)

        iteration = 0
        while True:
            # Bounds of the trial step for this iteration
            if bracket:
                min_step = min(best.step, interval_end.step)
                max_step = max(best.step, interval_end.step)
            else:
                min_step = best.step
                max_step = step + 4.0 * (step - best.step)

            step = min(max(step, self.minimum_step), self.maximum_step)

            # Fall back to the best step if the trial left the interval or the
            # budget allows only one more evaluation
            last_chance = bracket and iteration + 1 >= self.maximum_iterations
            if bracket and (last_chance or step <= min_step or max_step <= step):
                step = best.step

            trial_inputs = inputs.add(direction.multiply(step))
            trial_cost, trial_gradient = cost_function.compute_cost_and_gradient(trial_inputs)
            trial_gradient = BlockSparseMatrixVector(trial_gradient)
            gradient_direction = trial_gradient.dot_product(direction)

            test_cost = initial_cost + step * gradient_direction_test
            iteration += 1

            logger.debug(
                "iteration %d: step %g cost %g direction %g, best step %g (%g cost, %g direction), "
                "end step %g (%g cost, %g direction)",
                iteration,
                step,
                trial_cost,
                gradient_direction,
                best.step,
                best.cost,
                best.gradient_direction,
                interval_end.step,
                interval_end.cost,
                interval_end.gradient_direction,
            )

            if last_chance:
                logger.debug("Line search budget exhausted, returning best step %g", step)
                return LineSearchResult(
                    step=step,
                    inputs=trial_inputs,
                    cost=trial_cost,
                    gradient=trial_gradient,
                    iterations=iteration,
                    converged=False,
                )

            if bracket and (step <= min_step or max_step <= step):
                raise RoundingError("Rounding error occurred.")

            if (
                step == self.maximum_step
                and trial_cost <= test_cost
                and gradient_direction <= gradient_direction_test
            ):
                raise MaximumStepError("The line search step became larger than the max step size.")

            if step == self.minimum_step and (
                test_cost < trial_cost or gradient_direction_test <= gradient_direction
            ):
                raise MinimumStepError("The line search step became smaller than the min step size.")

            if bracket and (max_step - min_step) <= self.machine_precision * max_step:
                raise IntervalWidthError("The width of the interval of uncertainty is too small.")

            converged = trial_cost <= test_cost and abs(gradient_direction) <= (
                self.gradient_accuracy * -initial_gradient_direction
            )
            if iteration >= self.maximum_iterations or converged:
                if not converged:
                    logger.debug("Line search stopped after %d iterations", iteration)
                return LineSearchResult(
                    step=step,
                    inputs=trial_inputs,
                    cost=trial_cost,
                    gradient=trial_gradient,
                    iterations=iteration,
                    converged=converged,
                )

            # Stage one ends once the modified function is nonpositive with a
            # nonnegative derivative.
            if (
                stage_one
                and trial_cost <= test_cost
                and min(self.function_accuracy, self.gradient_accuracy) * initial_gradient_direction
                <= gradient_direction
            ):
                logger.debug("Leaving stage one at step %g", step)
                stage_one = False

            trial = _Point(step, trial_cost, gradient_direction)

            if stage_one and test_cost < trial_cost <= best.cost:
                # Predict the step from the function shifted by the sufficient
                # decrease line, then shift the interval back.
                logger.debug("Interpolating the modified function at step %g", step)
                best, interval_end, step, bracket = _update_interval_of_uncertainty(
                    _shift(best, gradient_direction_test, -1.0),
                    _shift(interval_end, gradient_direction_test, -1.0),
                    _shift(trial, gradient_direction_test, -1.0),
                    min_step,
                    max_step,
                    bracket,
                )
                best = _shift(best, gradient_direction_test, 1.0)
                interval_end = _shift(interval_end, gradient_direction_test, 1.0)
            else:
                best, interval_end, step, bracket = _update_interval_of_uncertainty(
                    best, interval_end, trial, min_step, max_step, bracket
                )

            # Force a sufficient decrease in the width of the interval
            if bracket:
                step = _force_shrinkage(best, interval_end, step, previous_interval_width)
                previous_interval_width = interval_width
                interval_width = abs(interval_end.step - best.step)


def _shift(point: _Point, slope: float, sign: float) -> _Point:
    return _Point(
        point.step,
        point.cost + sign * point.step * slope,
        point.gradient_direction + sign * slope,
    )


def _force_shrinkage(best: _Point, interval_end: _Point, step: float, previous_width: float) -> float:
    """Bisect the interval when it kept more than 2/3 of its width from two iterations back."""

    if (2.0 / 3.0) * previous_width <= abs(interval_end.step - best.step):
        logger.debug("Forcing bisection of [%g, %g]", best.step, interval_end.step)
        return best.step + 0.5 * (interval_end.step - best.step)
    return step


def _divide(numerator: float, denominator: float) -> float:
    if denominator == 0.0:
        return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)
    return numerator / denominator


def _is_sign_different(left: float, right: float) -> bool:
    return math.copysign(1.0, left) != math.copysign(1.0, right)


def _cubic_minimizer(u: float, fu: float, du: float, v: float, fv: float, dv: float) -> float:
    """Minimizer of the cubic interpolating ``(u, fu, du)`` and ``(v, fv, dv)``."""

    d = v - u
    theta = (fu - fv) * 3.0 / d + du + dv
    s = max(abs(theta), abs(du), abs(dv))
    a = theta / s
    gamma = s * math.sqrt(max(0.0, a * a - (du / s) * (dv / s)))
    if v < u:
        gamma = -gamma
    p = gamma - du + theta
    q = gamma - du + gamma + dv
    r = _divide(p, q)
    return u + r * d


def _cubic_minimizer_bounded(
    u: float,
    fu: float,
    du: float,
    v: float,
    fv: float,
    dv: float,
    min_step: float,
    max_step: float,
) -> float:
    """Cubic minimizer that falls back to a bound when the cubic diverges."""

    d = v - u
    theta = (fu - fv) * 3.0 / d + du + dv
    s = max(abs(theta), abs(du), abs(dv))
    a = theta / s
    gamma = s * math.sqrt(max(0.0, a * a - (du / s) * (dv / s)))
    if u < v:
        gamma = -gamma
    p = gamma - dv + theta
    q = gamma - dv + gamma + du
    r = _divide(p, q)
    if r < 0.0 and gamma != 0.0:
        return v - r * d
    if v > u:
        return max_step
    return min_step


def _quadratic_minimizer(u: float, fu: float, du: float, v: float, fv: float) -> float:
    """Minimizer of the quadratic through ``(u, fu)``, ``(v, fv)`` with slope ``du`` at ``u``."""

    a = v - u
    return u + _divide(du, (fu - fv) / a + du) / 2.0 * a


def _secant_minimizer(u: float, du: float, v: float, dv: float) -> float:
    """Minimizer of the quadratic whose derivative passes through ``du`` and ``dv``."""

    a = u - v
    return v + _divide(dv, dv - du) * a


def _update_interval_of_uncertainty(
    best: _Point,
    interval_end: _Point,
    trial: _Point,
    min_step: float,
    max_step: float,
    bracket: bool,
) -> tuple[_Point, _Point, float, bool]:
    """Choose the next trial step and shrink the interval of uncertainty.

    Returns the new ``best`` and ``interval_end`` points, the next step and the
    updated bracket flag.
    """

    if bracket:
        if trial.step <= min(best.step, interval_end.step) or max(best.step, interval_end.step) <= trial.step:
            raise IntervalUpdateError("Step is outside of the current interval.")
        if best.gradient_direction * (trial.step - best.step) >= 0.0:
            raise IntervalUpdateError("The function does not decrease from the start of the interval.")
        if max_step < min_step:
            raise IntervalUpdateError("Invalid min/max step specified, the min is larger than the max.")

    sign_differs = _is_sign_different(trial.gradient_direction, best.gradient_direction)

    if best.cost < trial.cost:
        # Case 1: a higher cost. The minimizer is bracketed; take the cubic
        # minimizer if it is closer to best, otherwise average the two.
        bracket = True
        bounded = True
        cubic = _cubic_minimizer(*best, *trial)
        quadratic = _quadratic_minimizer(best.step, best.cost, best.gradient_direction, trial.step, trial.cost)
        if abs(cubic - best.step) < abs(quadratic - best.step):
            new_step = cubic
        else:
            new_step = cubic + 0.5 * (quadratic - cubic)
    elif sign_differs:
        # Case 2: a lower cost with derivatives of opposite sign. The
        # minimizer is bracketed; take the minimizer closer to the trial.
        bracket = True
        bounded = False
        cubic = _cubic_minimizer(*best, *trial)
        quadratic = _secant_minimizer(best.step, best.gradient_direction, trial.step, trial.gradient_direction)
        if abs(cubic - trial.step) <= abs(quadratic - trial.step):
            new_step = cubic
        else:
            new_step = quadratic
    elif abs(trial.gradient_direction) < abs(best.gradient_direction):
        # Case 3: a lower cost, derivatives of the same sign, and a shrinking
        # derivative magnitude.
        bounded = True
        cubic = _cubic_minimizer_bounded(*best, *trial, min_step, max_step)
        quadratic = _secant_minimizer(best.step, best.gradient_direction, trial.step, trial.gradient_direction)
        if bracket:
            if abs(trial.step - cubic) < abs(trial.step - quadratic):
                new_step = cubic
            else:
                new_step = quadratic
        else:
            if abs(trial.step - cubic) > abs(trial.step - quadratic):
                new_step = cubic
            else:
                new_step = quadratic
    else:
        # Case 4: a lower cost, derivatives of the same sign, and a derivative
        # magnitude that does not shrink.
        bounded = False
        if bracket:
            new_step = _cubic_minimizer(*best, *trial)
        elif best.step < trial.step:
            new_step = max_step
        else:
            new_step = min_step

    # The interval update does not depend on the new step.
    if best.cost < trial.cost:
        interval_end = trial
    elif sign_differs:
        interval_end = best
        best = trial
    else:
        best = trial

    new_step = min(max(new_step, min_step), max_step)

    # Keep bounded steps away from the far end of the interval
    if bracket and bounded:
        limit = best.step + (2.0 / 3.0) * (interval_end.step - best.step)
        if best.step < interval_end.step:
            new_step = min(limit, new_step)
        else:
            new_step = max(limit, new_step)

    return best, interval_end, new_step, bracket


__all__ = [
    "IntervalUpdateError",
    "IntervalWidthError",
    "LineSearch",
    "LineSearchError",
    "LineSearchResult",
    "MaximumStepError",
    "MinimumStepError",
    "MoreThuenteLineSearch",
    "NonDescentDirectionError",
    "RoundingError",
]
