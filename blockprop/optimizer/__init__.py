"""Cost-and-gradient oracles, line search and solvers."""

from . import cost_function, line_search, solver

__all__ = ["cost_function", "line_search", "solver"]
