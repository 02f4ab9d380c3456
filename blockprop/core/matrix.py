"""Block-sparse matrix engine backed by numpy.

A :class:`BlockSparseMatrix` stores equally sized blocks in a single
``(blocks, rows_per_block, columns_per_block)`` array. Row-sparse matrices lay
their blocks out along the rows (the dense view is the vertical stack of the
blocks), column-sparse matrices along the columns. Layer weights are block
diagonal, so only the diagonal blocks are ever stored.

All operations return new matrices; nothing here mutates its operands except
the explicit ``set_*`` helpers.
"""

from __future__ import annotations

import math
from typing import Iterable, Iterator, Sequence

import numpy as np

from .activations import sigmoid, sigmoid_derivative
from .types import Array, SparseMatrixFormat


class BlockSparseMatrix:
    """A matrix partitioned into fixed-size blocks."""

    def __init__(
        self,
        blocks: int = 0,
        rows_per_block: int = 0,
        columns_per_block: int = 0,
        is_row_sparse: bool = True,
    ) -> None:
        self.data = np.zeros((blocks, rows_per_block, columns_per_block), dtype=np.float64)
        self.is_row_sparse = bool(is_row_sparse)

    # ------------------------------------------------------------------
    # Construction

    @classmethod
    def from_blocks(cls, data: Array, is_row_sparse: bool = True) -> "BlockSparseMatrix":
        data = np.array(data, dtype=np.float64)
        if data.ndim != 3:
            raise ValueError(f"Block data must be 3-D, got shape {data.shape}")
        matrix = cls(is_row_sparse=is_row_sparse)
        matrix.data = data
        return matrix

    @classmethod
    def from_dense(
        cls, matrix: Array, blocks: int = 1, is_row_sparse: bool = False
    ) -> "BlockSparseMatrix":
        """Split a dense 2-D matrix into ``blocks`` along rows or columns."""

        matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float64))
        rows, columns = matrix.shape
        if is_row_sparse:
            if rows % blocks:
                raise ValueError(f"Cannot split {rows} rows into {blocks} blocks")
            data = matrix.reshape(blocks, rows // blocks, columns)
        else:
            if columns % blocks:
                raise ValueError(f"Cannot split {columns} columns into {blocks} blocks")
            data = matrix.reshape(rows, blocks, columns // blocks).transpose(1, 0, 2)
        return cls.from_blocks(data, is_row_sparse=is_row_sparse)

    @classmethod
    def from_format(cls, fmt: SparseMatrixFormat) -> "BlockSparseMatrix":
        return cls(fmt.blocks, fmt.rows_per_block, fmt.columns_per_block, fmt.is_row_sparse)

    @classmethod
    def from_vector(cls, vector: Array, fmt: SparseMatrixFormat) -> "BlockSparseMatrix":
        vector = np.asarray(vector, dtype=np.float64).reshape(-1)
        if vector.size != fmt.size:
            raise ValueError(f"Vector of size {vector.size} does not match format {fmt}")
        shape = (fmt.blocks, fmt.rows_per_block, fmt.columns_per_block)
        return cls.from_blocks(vector.reshape(shape), is_row_sparse=fmt.is_row_sparse)

    def copy(self) -> "BlockSparseMatrix":
        return self.from_blocks(self.data, is_row_sparse=self.is_row_sparse)

    def _like(self, data: Array, is_row_sparse: bool | None = None) -> "BlockSparseMatrix":
        matrix = BlockSparseMatrix(is_row_sparse=self.is_row_sparse if is_row_sparse is None else is_row_sparse)
        matrix.data = data
        return matrix

    # ------------------------------------------------------------------
    # Shape

    @property
    def blocks(self) -> int:
        return int(self.data.shape[0])

    @property
    def rows_per_block(self) -> int:
        return int(self.data.shape[1])

    @property
    def columns_per_block(self) -> int:
        return int(self.data.shape[2])

    @property
    def is_column_sparse(self) -> bool:
        return not self.is_row_sparse

    @property
    def rows(self) -> int:
        if self.is_row_sparse:
            return self.blocks * self.rows_per_block
        return self.rows_per_block

    @property
    def columns(self) -> int:
        if self.is_row_sparse:
            return self.columns_per_block
        return self.blocks * self.columns_per_block

    @property
    def size(self) -> int:
        return int(self.data.size)

    @property
    def format(self) -> SparseMatrixFormat:
        return SparseMatrixFormat.from_matrix(self)

    def set_row_sparse(self) -> None:
        self.is_row_sparse = True

    def set_column_sparse(self) -> None:
        self.is_row_sparse = False

    def shape_string(self) -> str:
        layout = "row" if self.is_row_sparse else "column"
        return (
            f"({self.rows} rows, {self.columns} columns, {self.blocks} blocks of "
            f"{self.rows_per_block}x{self.columns_per_block}, {layout} sparse)"
        )

    def __repr__(self) -> str:
        return f"BlockSparseMatrix{self.shape_string()}"

    def __len__(self) -> int:
        return self.blocks

    def __iter__(self) -> Iterator[Array]:
        return iter(self.data)

    def __getitem__(self, index: int) -> Array:
        return self.data[index]

    def __setitem__(self, index: int, block: Array) -> None:
        self.data[index] = block

    def _check_same_shape(self, other: "BlockSparseMatrix", operation: str) -> None:
        if self.data.shape != other.data.shape:
            raise ValueError(
                f"{operation}: shape mismatch {self.shape_string()} vs {other.shape_string()}"
            )

    # ------------------------------------------------------------------
    # Elementwise arithmetic

    def add(self, other: "BlockSparseMatrix") -> "BlockSparseMatrix":
        self._check_same_shape(other, "add")
        return self._like(self.data + other.data)

    def subtract(self, other: "BlockSparseMatrix") -> "BlockSparseMatrix":
        self._check_same_shape(other, "subtract")
        return self._like(self.data - other.data)

    def element_multiply(self, other: "BlockSparseMatrix") -> "BlockSparseMatrix":
        self._check_same_shape(other, "element_multiply")
        return self._like(self.data * other.data)

    def multiply(self, scalar: float) -> "BlockSparseMatrix":
        return self._like(self.data * float(scalar))

    def add_scalar(self, scalar: float) -> "BlockSparseMatrix":
        return self._like(self.data + float(scalar))

    def negate(self) -> "BlockSparseMatrix":
        return self._like(-self.data)

    def abs(self) -> "BlockSparseMatrix":
        return self._like(np.abs(self.data))

    def log(self) -> "BlockSparseMatrix":
        return self._like(np.log(self.data))

    def sigmoid(self) -> "BlockSparseMatrix":
        return self._like(sigmoid(self.data))

    def sigmoid_derivative(self) -> "BlockSparseMatrix":
        return self._like(sigmoid_derivative(self.data))

    def transpose(self) -> "BlockSparseMatrix":
        return self._like(
            np.ascontiguousarray(self.data.transpose(0, 2, 1)),
            is_row_sparse=not self.is_row_sparse,
        )

    # ------------------------------------------------------------------
    # Reductions

    def reduce_sum(self) -> float:
        return float(self.data.sum())

    def reduce_sum_along_columns(self) -> "BlockSparseMatrix":
        """Sum each block row across its columns, leaving one column per block."""

        return self._like(self.data.sum(axis=2, keepdims=True))

    def reduce_sum_along_rows(self) -> "BlockSparseMatrix":
        """Sum each block column across its rows, leaving one row per block."""

        return self._like(self.data.sum(axis=1, keepdims=True))

    def reduce_tile_sum_along_rows(self, blocks: int) -> "BlockSparseMatrix":
        """Coalesce into ``blocks`` blocks, adding block ``k`` into ``k % blocks``."""

        if blocks <= 0 or self.blocks % blocks:
            raise ValueError(f"Cannot coalesce {self.blocks} blocks into {blocks}")
        tiles = self.data.reshape(-1, blocks, self.rows_per_block, self.columns_per_block)
        return self._like(tiles.sum(axis=0))

    def dot_product(self, other: "BlockSparseMatrix") -> float:
        self._check_same_shape(other, "dot_product")
        return float(np.vdot(self.data, other.data))

    # ------------------------------------------------------------------
    # Block-aware products

    def _cyclic_blocks(self, other: "BlockSparseMatrix", operation: str) -> Array:
        if other.blocks == 0 or self.blocks % other.blocks:
            raise ValueError(
                f"{operation}: {self.blocks} blocks cannot reuse {other.blocks} blocks cyclically"
            )
        return other.data[np.arange(self.blocks) % other.blocks]

    def convolutional_multiply(self, other: "BlockSparseMatrix") -> "BlockSparseMatrix":
        """Multiply block ``k`` by block ``k % other.blocks`` of ``other``."""

        if self.columns_per_block != other.rows_per_block:
            raise ValueError(
                f"convolutional_multiply: inner dimensions differ {self.shape_string()} "
                f"vs {other.shape_string()}"
            )
        right = self._cyclic_blocks(other, "convolutional_multiply")
        return self._like(np.matmul(self.data, right))

    def convolutional_add_broadcast_row(self, row: "BlockSparseMatrix") -> "BlockSparseMatrix":
        """Add a one-row block to every row of the matching (cyclic) block."""

        if row.rows_per_block != 1 or row.columns_per_block != self.columns_per_block:
            raise ValueError(
                f"convolutional_add_broadcast_row: cannot broadcast {row.shape_string()} "
                f"onto {self.shape_string()}"
            )
        return self._like(self.data + self._cyclic_blocks(row, "convolutional_add_broadcast_row"))

    def reverse_convolutional_multiply(self, other: "BlockSparseMatrix") -> "BlockSparseMatrix":
        """Pairwise block products; the result is row sparse."""

        if self.blocks != other.blocks or self.columns_per_block != other.rows_per_block:
            raise ValueError(
                f"reverse_convolutional_multiply: {self.shape_string()} "
                f"vs {other.shape_string()}"
            )
        return self._like(np.matmul(self.data, other.data), is_row_sparse=True)

    # ------------------------------------------------------------------
    # Layout conversion

    def to_dense(self) -> Array:
        if self.is_row_sparse:
            return self.data.reshape(self.rows, self.columns).copy()
        return self.data.transpose(1, 0, 2).reshape(self.rows, self.columns)

    def reshape_columns(self, columns_per_block: int) -> "BlockSparseMatrix":
        """Re-block the dense column layout into blocks ``columns_per_block`` wide."""

        if columns_per_block == self.columns_per_block and self.is_column_sparse:
            return self.copy()
        dense = self.to_dense()
        rows, columns = dense.shape
        if columns_per_block <= 0 or columns % columns_per_block:
            raise ValueError(
                f"Cannot re-block {columns} columns into blocks of {columns_per_block}"
            )
        return self.from_dense(dense, blocks=columns // columns_per_block, is_row_sparse=False)

    def to_vector(self) -> Array:
        return self.data.reshape(-1).copy()


def as_block_sparse(matrix, blocks: int = 1) -> BlockSparseMatrix:
    """Wrap a dense ``(rows, columns)`` batch as a column-sparse matrix."""

    if isinstance(matrix, BlockSparseMatrix):
        return matrix
    return BlockSparseMatrix.from_dense(matrix, blocks=blocks, is_row_sparse=False)


class BlockSparseMatrixVector(list):
    """An ordered list of block-sparse matrices treated as one vector."""

    def _check_length(self, other: Sequence[BlockSparseMatrix]) -> None:
        if len(self) != len(other):
            raise ValueError(f"Vector length mismatch: {len(self)} vs {len(other)}")

    def add(self, other: Sequence[BlockSparseMatrix]) -> "BlockSparseMatrixVector":
        self._check_length(other)
        return BlockSparseMatrixVector(left.add(right) for left, right in zip(self, other))

    def subtract(self, other: Sequence[BlockSparseMatrix]) -> "BlockSparseMatrixVector":
        self._check_length(other)
        return BlockSparseMatrixVector(left.subtract(right) for left, right in zip(self, other))

    def multiply(self, scalar: float) -> "BlockSparseMatrixVector":
        return BlockSparseMatrixVector(matrix.multiply(scalar) for matrix in self)

    def negate(self) -> "BlockSparseMatrixVector":
        return BlockSparseMatrixVector(matrix.negate() for matrix in self)

    def dot_product(self, other: Sequence[BlockSparseMatrix]) -> float:
        self._check_length(other)
        return float(sum(left.dot_product(right) for left, right in zip(self, other)))

    def norm(self) -> float:
        return math.sqrt(self.dot_product(self))

    def copy(self) -> "BlockSparseMatrixVector":
        return BlockSparseMatrixVector(matrix.copy() for matrix in self)

    @property
    def format(self) -> tuple[SparseMatrixFormat, ...]:
        return tuple(matrix.format for matrix in self)

    def to_vector(self) -> Array:
        if not self:
            return np.zeros(0, dtype=np.float64)
        return np.concatenate([matrix.to_vector() for matrix in self])

    @classmethod
    def from_vector(
        cls, vector: Array, formats: Iterable[SparseMatrixFormat]
    ) -> "BlockSparseMatrixVector":
        vector = np.asarray(vector, dtype=np.float64).reshape(-1)
        matrices = cls()
        offset = 0
        for fmt in formats:
            matrices.append(BlockSparseMatrix.from_vector(vector[offset : offset + fmt.size], fmt))
            offset += fmt.size
        if offset != vector.size:
            raise ValueError(f"Vector of size {vector.size} does not match formats of size {offset}")
        return matrices


__all__ = ["BlockSparseMatrix", "BlockSparseMatrixVector", "as_block_sparse"]
