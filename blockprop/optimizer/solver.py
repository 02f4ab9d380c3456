"""Steepest-descent solver driven by a line search."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from ..config import Knobs
from ..core.matrix import BlockSparseMatrix, BlockSparseMatrixVector
from .cost_function import CostAndGradientFunction
from .line_search import LineSearch, LineSearchError, MoreThuenteLineSearch

logger = logging.getLogger(__name__)


@dataclass
class SolverResult:
    """Outcome of :meth:`GradientDescentSolver.solve`."""

    inputs: BlockSparseMatrixVector
    cost: float
    iterations: int
    failure: LineSearchError | None = None


class GradientDescentSolver:
    """Move along the negative gradient, choosing each step with a line search.

    A line-search failure ends the solve; the last accepted point is kept and
    the failure is reported in the result.
    """

    def __init__(
        self,
        line_search: LineSearch | None = None,
        iterations: int | None = None,
        knobs: Knobs | None = None,
    ) -> None:
        knobs = knobs if knobs is not None else Knobs()
        self.line_search = line_search or MoreThuenteLineSearch(knobs)
        if iterations is None:
            iterations = knobs.get_knob_value("GradientDescentSolver::Iterations", 1)
        if iterations < 1:
            raise ValueError("Solver iterations must be at least one.")
        self.iterations = iterations

    def solve(
        self, cost_function: CostAndGradientFunction, inputs: Sequence[BlockSparseMatrix]
    ) -> SolverResult:
        inputs = BlockSparseMatrixVector(inputs)
        cost, gradient = cost_function.compute_cost_and_gradient(inputs)
        gradient = BlockSparseMatrixVector(gradient)

        iteration = 0
        for iteration in range(1, self.iterations + 1):
            norm = gradient.norm()
            if norm == 0.0:
                logger.debug("Gradient vanished at iteration %d", iteration)
                return SolverResult(inputs, cost, iteration - 1)

            direction = gradient.negate()
            try:
                result = self.line_search.search(
                    cost_function, inputs, cost, gradient, direction, 1.0 / norm
                )
            except LineSearchError as exc:
                logger.warning("Line search failed at iteration %d: %s", iteration, exc)
                return SolverResult(inputs, cost, iteration - 1, failure=exc)

            logger.debug(
                "iteration %d: cost %g -> %g (step %g, %d evaluations)",
                iteration,
                cost,
                result.cost,
                result.step,
                result.iterations,
            )
            if not result.converged and result.cost > cost:
                logger.warning("Line search ended above the starting cost at iteration %d", iteration)
                return SolverResult(inputs, cost, iteration - 1)
            inputs, cost, gradient = result.inputs, result.cost, result.gradient

        return SolverResult(inputs, cost, iteration)


__all__ = ["GradientDescentSolver", "SolverResult"]
