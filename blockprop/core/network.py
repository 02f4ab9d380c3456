"""Feed-forward network built from block-sparse layers."""

from __future__ import annotations

from typing import Iterable, Iterator, List

import numpy as np

from .layer import Layer
from .matrix import BlockSparseMatrix, BlockSparseMatrixVector, as_block_sparse


class NeuralNetwork:
    """An ordered sequence of :class:`Layer` objects."""

    def __init__(self, layers: Iterable[Layer] = ()) -> None:
        self.layers: List[Layer] = list(layers)

    def add_layer(self, layer: Layer) -> None:
        self.layers.append(layer)

    def initialize_randomly(self, seed: int = 0) -> None:
        rng = np.random.default_rng(seed)
        for layer in self.layers:
            layer.initialize_randomly(rng)

    def run_inputs(self, m) -> BlockSparseMatrix:
        output = as_block_sparse(m)
        for layer in self.layers:
            output = layer.run_inputs(self.format_input_for_layer(layer, output))
        return output

    # ------------------------------------------------------------------
    # Block layout reconciliation

    def format_input_for_layer(self, layer: Layer, m: BlockSparseMatrix) -> BlockSparseMatrix:
        """Re-block ``m`` so that its blocks match the layer's input width."""

        return _reblock(m, layer.block_input, layer.blocks, "input", layer)

    def format_output_for_layer(self, layer: Layer, m: BlockSparseMatrix) -> BlockSparseMatrix:
        """Re-block ``m`` so that its blocks match the layer's output width."""

        return _reblock(m, layer.block_output, layer.blocks, "output", layer)

    # ------------------------------------------------------------------
    # Parameters

    def get_parameters(self) -> BlockSparseMatrixVector:
        parameters = BlockSparseMatrixVector()
        for layer in self.layers:
            parameters.append(layer.get_weights_without_bias())
            parameters.append(layer.get_bias())
        return parameters

    def set_parameters(self, parameters: BlockSparseMatrixVector) -> None:
        if len(parameters) != 2 * len(self.layers):
            raise ValueError(
                f"Expected {2 * len(self.layers)} parameter matrices, got {len(parameters)}"
            )
        for index, layer in enumerate(self.layers):
            layer.set_weights(parameters[2 * index])
            layer.set_bias(parameters[2 * index + 1])

    @property
    def input_count(self) -> int:
        return self.layers[0].input_count if self.layers else 0

    @property
    def output_count(self) -> int:
        return self.layers[-1].output_count if self.layers else 0

    @property
    def total_weights(self) -> int:
        return sum(layer.total_weights for layer in self.layers)

    def copy(self) -> "NeuralNetwork":
        return NeuralNetwork(layer.copy() for layer in self.layers)

    def back(self) -> Layer:
        return self.layers[-1]

    def __len__(self) -> int:
        return len(self.layers)

    def __iter__(self) -> Iterator[Layer]:
        return iter(self.layers)

    def __getitem__(self, index: int) -> Layer:
        return self.layers[index]


def _reblock(
    m: BlockSparseMatrix, columns_per_block: int, layer_blocks: int, side: str, layer: Layer
) -> BlockSparseMatrix:
    if m.columns_per_block == columns_per_block and m.is_column_sparse:
        reblocked = m
    else:
        try:
            reblocked = m.reshape_columns(columns_per_block)
        except ValueError as exc:
            raise ValueError(f"Cannot format {m.shape_string()} as {side} of {layer!r}") from exc
    if reblocked.blocks % layer_blocks:
        raise ValueError(
            f"{side.capitalize()} with {reblocked.blocks} blocks is not a multiple of "
            f"the {layer_blocks} blocks of {layer!r}"
        )
    return reblocked


__all__ = ["NeuralNetwork"]
