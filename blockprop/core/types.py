"""Core typing contracts for blockprop."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

Array = np.ndarray


@dataclass(frozen=True)
class Batch:
    """A single mini-batch of data."""

    inputs: Array
    targets: Array


@dataclass(frozen=True)
class RunResult:
    """Summary returned by :meth:`blockprop.training.trainer.Trainer.run`."""

    steps: int
    final_cost: float
    failures: int = 0


@dataclass(frozen=True)
class SparseMatrixFormat:
    """Shape descriptor of one block-sparse matrix."""

    blocks: int
    rows_per_block: int
    columns_per_block: int
    is_row_sparse: bool = True

    @classmethod
    def from_matrix(cls, matrix) -> "SparseMatrixFormat":
        if isinstance(matrix, np.ndarray):
            if matrix.ndim != 2:
                raise ValueError(f"Expected a 2-D matrix, got shape {matrix.shape}")
            return cls(1, int(matrix.shape[0]), int(matrix.shape[1]), True)
        return cls(
            matrix.blocks,
            matrix.rows_per_block,
            matrix.columns_per_block,
            matrix.is_row_sparse,
        )

    @property
    def size(self) -> int:
        return self.blocks * self.rows_per_block * self.columns_per_block


SparseMatrixVectorFormat = Tuple[SparseMatrixFormat, ...]
