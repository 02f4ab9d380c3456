"""Cost registry used by the back-propagation strategies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable

from ..core.matrix import BlockSparseMatrix

CostFn = Callable[[BlockSparseMatrix, BlockSparseMatrix], tuple[float, BlockSparseMatrix]]


@dataclass(frozen=True)
class Cost:
    """Cost wrapper returning the batch cost and the unnormalized output delta."""

    name: str
    fn: CostFn

    def __call__(
        self, output: BlockSparseMatrix, reference: BlockSparseMatrix
    ) -> tuple[float, BlockSparseMatrix]:
        return self.fn(output, reference)


class CostRegistry:
    """Central registry for cost functions."""

    def __init__(self) -> None:
        self._registry: Dict[str, Cost] = {}

    def register(self, name: str, fn: CostFn) -> None:
        self._registry[name] = Cost(name, fn)

    def names(self) -> Iterable[str]:
        return sorted(self._registry)

    def get(self, name: str) -> Cost:
        if name not in self._registry:
            available = ", ".join(sorted(self._registry))
            raise KeyError(f"Unknown cost {name!r}. Available costs: {available}")
        return self._registry[name]


REGISTRY = CostRegistry()


def _squared_error(
    output: BlockSparseMatrix, reference: BlockSparseMatrix
) -> tuple[float, BlockSparseMatrix]:
    samples = output.rows
    errors = output.subtract(reference)
    cost = errors.element_multiply(errors).reduce_sum() / (2.0 * samples)
    return cost, errors.element_multiply(output.sigmoid_derivative())


def _cross_entropy(
    output: BlockSparseMatrix, reference: BlockSparseMatrix
) -> tuple[float, BlockSparseMatrix]:
    samples = output.rows
    eps = 1e-15
    log_hx = output.add_scalar(eps).log()
    log_one_minus_hx = output.negate().add_scalar(1.0 + eps).log()
    one_minus_y = reference.negate().add_scalar(1.0)
    total = reference.element_multiply(log_hx).add(one_minus_y.element_multiply(log_one_minus_hx))
    return -total.reduce_sum() / samples, output.subtract(reference)


REGISTRY.register("squared_error", _squared_error)
REGISTRY.register("cross_entropy", _cross_entropy)

__all__ = ["Cost", "CostRegistry", "REGISTRY"]
