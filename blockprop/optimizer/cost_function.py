"""Cost-and-gradient oracles consumed by the optimizers."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from ..core.matrix import BlockSparseMatrix, BlockSparseMatrixVector
from ..core.types import Array, SparseMatrixFormat, SparseMatrixVectorFormat


def convert_to_format(value) -> SparseMatrixVectorFormat:
    """Derive a shape descriptor from formats, a vector, a matrix or an array."""

    if isinstance(value, (BlockSparseMatrix, np.ndarray)):
        return (SparseMatrixFormat.from_matrix(value),)
    formats = []
    for item in value:
        if isinstance(item, SparseMatrixFormat):
            formats.append(item)
        else:
            formats.append(SparseMatrixFormat.from_matrix(item))
    return tuple(formats)


class CostAndGradientFunction:
    """A function returning a scalar cost and a gradient shaped like its input.

    ``format`` fixes, for the lifetime of an optimization run, how a flat
    parameter vector maps onto block-sparse matrices. Subclasses implement
    :meth:`compute_cost_and_gradient`.
    """

    def __init__(self, initial_cost: float, cost_reduction_factor: float, format) -> None:
        self.initial_cost = float(initial_cost)
        self.cost_reduction_factor = float(cost_reduction_factor)
        self._format = convert_to_format(format)

    @property
    def format(self) -> SparseMatrixVectorFormat:
        return self._format

    def compute_cost_and_gradient(
        self, inputs: BlockSparseMatrixVector
    ) -> tuple[float, BlockSparseMatrixVector]:
        raise NotImplementedError

    def get_uninitialized_data_structure(self) -> BlockSparseMatrixVector:
        return BlockSparseMatrixVector(BlockSparseMatrix.from_format(fmt) for fmt in self._format)

    def flatten(self, vector: Sequence[BlockSparseMatrix]) -> Array:
        vector = BlockSparseMatrixVector(vector)
        if vector.format != self._format:
            raise ValueError("Vector does not match the function's format")
        return vector.to_vector()

    def unflatten(self, flattened: Array) -> BlockSparseMatrixVector:
        return BlockSparseMatrixVector.from_vector(flattened, self._format)


class NeuralNetworkCostFunction(CostAndGradientFunction):
    """Evaluate a back-propagation strategy at a vector of network parameters.

    The parameters alternate weights and bias per layer, matching
    :meth:`blockprop.core.network.NeuralNetwork.get_parameters`. Evaluation
    happens on a copy of the network.
    """

    def __init__(self, back_propagation, cost_reduction_factor: float = 0.0) -> None:
        self.back_propagation = back_propagation
        parameters = back_propagation.network.get_parameters()
        super().__init__(back_propagation.get_cost(), cost_reduction_factor, parameters)

    def compute_cost_and_gradient(
        self, inputs: BlockSparseMatrixVector
    ) -> tuple[float, BlockSparseMatrixVector]:
        network = self.back_propagation.network.copy()
        network.set_parameters(inputs)
        cost = self.back_propagation.get_cost(network)
        gradient = self.back_propagation.get_cost_derivative(network)
        return cost, gradient


__all__ = ["CostAndGradientFunction", "NeuralNetworkCostFunction", "convert_to_format"]
