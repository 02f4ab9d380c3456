"""A single block-sparse network layer."""

from __future__ import annotations

import math

import numpy as np

from .matrix import BlockSparseMatrix
from .types import Array


class Layer:
    """One layer of a block-sparse network.

    Weights are row sparse with ``(block_output, block_input)`` blocks, so rows
    correspond to output neurons and columns to input weights. The bias holds
    one ``(1, block_output)`` row per block. An input with more blocks than the
    layer reuses the weight blocks cyclically.
    """

    def __init__(self, total_blocks: int = 0, block_input: int = 0, block_output: int = 0) -> None:
        self.weights = BlockSparseMatrix(total_blocks, block_output, block_input, is_row_sparse=True)
        self.bias = BlockSparseMatrix(total_blocks, 1, block_output, is_row_sparse=False)

    def initialize_randomly(self, rng: np.random.Generator, epsilon: float | None = None) -> None:
        if epsilon is None:
            epsilon = math.sqrt(6.0) / math.sqrt(self.input_count + self.output_count + 1)
        self.weights.data = rng.uniform(-epsilon, epsilon, size=self.weights.data.shape)
        self.bias.data = np.zeros_like(self.bias.data)

    def run_inputs(self, m: BlockSparseMatrix) -> BlockSparseMatrix:
        return (
            m.convolutional_multiply(self.weights.transpose())
            .convolutional_add_broadcast_row(self.bias)
            .sigmoid()
        )

    def run_reverse(self, m: BlockSparseMatrix) -> BlockSparseMatrix:
        return m.convolutional_multiply(self.weights)

    @property
    def blocks(self) -> int:
        return self.weights.blocks

    @property
    def block_input(self) -> int:
        return self.weights.columns_per_block

    @property
    def block_output(self) -> int:
        return self.weights.rows_per_block

    @property
    def input_count(self) -> int:
        return self.blocks * self.block_input

    @property
    def output_count(self) -> int:
        return self.blocks * self.block_output

    @property
    def blocking_factor(self) -> int:
        return self.block_input

    @property
    def total_weights(self) -> int:
        return self.weights.size

    def get_weights_without_bias(self) -> BlockSparseMatrix:
        return self.weights.copy()

    def get_bias(self) -> BlockSparseMatrix:
        return self.bias.copy()

    def set_weights(self, weights: BlockSparseMatrix) -> None:
        if weights.data.shape != self.weights.data.shape:
            raise ValueError(
                f"Weights {weights.shape_string()} do not match layer {self.weights.shape_string()}"
            )
        self.weights = BlockSparseMatrix.from_blocks(weights.data, is_row_sparse=True)

    def set_bias(self, bias: BlockSparseMatrix) -> None:
        if bias.data.shape != self.bias.data.shape:
            raise ValueError(f"Bias {bias.shape_string()} does not match layer {self.bias.shape_string()}")
        self.bias = BlockSparseMatrix.from_blocks(bias.data, is_row_sparse=False)

    def get_flattened_weights(self) -> Array:
        return self.weights.to_vector()

    def set_flattened_weights(self, flattened: Array) -> None:
        self.weights = BlockSparseMatrix.from_vector(flattened, self.weights.format)

    def copy(self) -> "Layer":
        layer = Layer()
        layer.weights = self.weights.copy()
        layer.bias = self.bias.copy()
        return layer

    def __repr__(self) -> str:
        return (
            f"Layer(blocks={self.blocks}, block_input={self.block_input}, "
            f"block_output={self.block_output})"
        )


__all__ = ["Layer"]
