"""blockprop public API."""

from .config import Knobs
from .core import activations  # noqa: F401
from .core import types  # noqa: F401
from .core.layer import Layer
from .core.matrix import BlockSparseMatrix, BlockSparseMatrixVector, as_block_sparse
from .core.network import NeuralNetwork
from .optimizer.cost_function import CostAndGradientFunction, NeuralNetworkCostFunction
from .optimizer.line_search import LineSearchError, MoreThuenteLineSearch
from .optimizer.solver import GradientDescentSolver
from .training.backprop import (
    DenseBackPropagation,
    GradientCheckingError,
    SparseBackPropagation,
    make_back_propagation,
)
from .training.trainer import Trainer

__all__ = [
    "BlockSparseMatrix",
    "BlockSparseMatrixVector",
    "CostAndGradientFunction",
    "DenseBackPropagation",
    "GradientCheckingError",
    "GradientDescentSolver",
    "Knobs",
    "Layer",
    "LineSearchError",
    "MoreThuenteLineSearch",
    "NeuralNetwork",
    "NeuralNetworkCostFunction",
    "SparseBackPropagation",
    "Trainer",
    "activations",
    "as_block_sparse",
    "make_back_propagation",
    "types",
]
