"""Back-propagation strategies for block-sparse networks."""

from __future__ import annotations

import logging
from typing import List, Protocol

import numpy as np

from ..config import Knobs
from ..core.layer import Layer
from ..core.matrix import BlockSparseMatrix, BlockSparseMatrixVector, as_block_sparse
from ..core.network import NeuralNetwork
from ..core.types import Array
from .costs import REGISTRY as COST_REGISTRY
from .costs import Cost

logger = logging.getLogger(__name__)


class GradientCheckingError(AssertionError):
    """Analytic gradients disagree with their finite-difference estimates."""


class BackPropagation(Protocol):
    """Protocol implemented by back-propagation strategies.

    Every method falls back to the network, input batch and reference output
    supplied at construction time when an argument is omitted.
    """

    def get_cost_derivative(
        self,
        network: NeuralNetwork | None = None,
        inputs: BlockSparseMatrix | None = None,
        reference: BlockSparseMatrix | None = None,
    ) -> BlockSparseMatrixVector:
        """Return alternating (weight, bias) gradients in layer order."""

    def get_input_derivative(
        self,
        network: NeuralNetwork | None = None,
        inputs: BlockSparseMatrix | None = None,
        reference: BlockSparseMatrix | None = None,
    ) -> BlockSparseMatrix:
        """Return the gradient of the input cost with respect to the input."""

    def get_cost(
        self,
        network: NeuralNetwork | None = None,
        inputs: BlockSparseMatrix | None = None,
        reference: BlockSparseMatrix | None = None,
    ) -> float:
        """Return the regularized cost of the network on the batch."""

    def get_input_cost(
        self,
        network: NeuralNetwork | None = None,
        inputs: BlockSparseMatrix | None = None,
        reference: BlockSparseMatrix | None = None,
    ) -> float:
        """Return the unregularized cost of the network on the batch."""


class DenseBackPropagation:
    """Back propagation of a sigmoid network with an L2 weight penalty."""

    def __init__(
        self,
        network: NeuralNetwork,
        inputs,
        reference,
        knobs: Knobs | None = None,
    ) -> None:
        self.network = network
        self.inputs = as_block_sparse(inputs)
        self.reference = as_block_sparse(reference)
        self.knobs = knobs if knobs is not None else Knobs()
        self.lambda_ = self.knobs.get_knob_value("NeuralNetwork::Lambda", 0.01)
        self.cost = COST_REGISTRY.get(
            self.knobs.get_knob_value("NeuralNetwork::CostFunction", "squared_error")
        )

    # ------------------------------------------------------------------
    # Public API

    def get_cost_derivative(
        self,
        network: NeuralNetwork | None = None,
        inputs: BlockSparseMatrix | None = None,
        reference: BlockSparseMatrix | None = None,
    ) -> BlockSparseMatrixVector:
        network, inputs, reference = self._resolve(network, inputs, reference)
        activations = self.get_activations(network, inputs)
        deltas = self.get_deltas(network, activations, reference)

        samples = inputs.rows
        partial_derivatives = BlockSparseMatrixVector()

        # One fewer delta than activations; the output activation has no layer.
        for index, (layer, delta, activation) in enumerate(zip(network, deltas, activations)):
            transposed_delta = delta.transpose()

            logger.debug(
                "computing derivative for layer %d: activation %s, delta-transposed %s",
                index,
                activation.shape_string(),
                transposed_delta.shape_string(),
            )

            unnormalized = transposed_delta.reverse_convolutional_multiply(activation)
            normalized = unnormalized.multiply(1.0 / samples)

            weights = layer.get_weights_without_bias()
            lambda_term = weights.multiply(self.lambda_)

            bias_derivative = transposed_delta.reduce_sum_along_columns().multiply(1.0 / samples)

            normalized = coalesce_neuron_outputs(normalized, weights.blocks)
            bias_derivative = coalesce_neuron_outputs(bias_derivative, layer.blocks)

            partial_derivatives.append(lambda_term.add(normalized))
            partial_derivatives.append(bias_derivative.transpose())

        if self.knobs.get_knob_value("NeuralNetwork::DoGradientChecking", False):
            epsilon = self.knobs.get_knob_value("NeuralNetwork::GradientCheckingEpsilon", 0.05)
            in_range = gradient_checking(
                partial_derivatives[-2],
                network.back(),
                activations[-2],
                reference,
                epsilon,
                self.lambda_,
                cost=self.cost,
            )
            if not in_range:
                raise GradientCheckingError("Gradient checking indicates gradient descent is wrong")

        return partial_derivatives

    def get_input_derivative(
        self,
        network: NeuralNetwork | None = None,
        inputs: BlockSparseMatrix | None = None,
        reference: BlockSparseMatrix | None = None,
    ) -> BlockSparseMatrix:
        network, inputs, reference = self._resolve(network, inputs, reference)
        activations = self.get_activations(network, inputs)
        delta = self.get_input_delta(network, activations, reference)
        derivative = delta.multiply(1.0 / inputs.rows)
        logger.debug("input derivative %s", derivative.shape_string())
        return derivative.reshape_columns(inputs.columns_per_block)

    def get_cost(
        self,
        network: NeuralNetwork | None = None,
        inputs: BlockSparseMatrix | None = None,
        reference: BlockSparseMatrix | None = None,
    ) -> float:
        network, inputs, reference = self._resolve(network, inputs, reference)
        return compute_cost_for_network(network, inputs, reference, self.lambda_, self.cost)

    def get_input_cost(
        self,
        network: NeuralNetwork | None = None,
        inputs: BlockSparseMatrix | None = None,
        reference: BlockSparseMatrix | None = None,
    ) -> float:
        network, inputs, reference = self._resolve(network, inputs, reference)
        return compute_cost_for_network(network, inputs, reference, 0.0, self.cost)

    # ------------------------------------------------------------------
    # Forward and backward passes

    def get_activations(self, network: NeuralNetwork, inputs: BlockSparseMatrix) -> List[BlockSparseMatrix]:
        activations = [as_block_sparse(inputs)]
        for layer in network:
            activations[-1] = network.format_input_for_layer(layer, activations[-1])
            activations.append(layer.run_inputs(activations[-1]))

        logger.debug("final output %s", activations[-1].shape_string())
        return activations

    def get_deltas(
        self,
        network: NeuralNetwork,
        activations: List[BlockSparseMatrix],
        reference: BlockSparseMatrix | None = None,
    ) -> List[BlockSparseMatrix]:
        delta = self._output_delta(activations, reference)
        deltas: List[BlockSparseMatrix] = []
        for index in range(len(network) - 1, 0, -1):
            layer = network[index]
            delta = network.format_output_for_layer(layer, delta)
            deltas.append(delta)
            delta = self._hidden_delta(layer.run_reverse(delta), activations[index])
        deltas.append(network.format_output_for_layer(network[0], delta))
        deltas.reverse()

        for delta in deltas:
            logger.debug("delta %s", delta.shape_string())
        return deltas

    def get_input_delta(
        self,
        network: NeuralNetwork,
        activations: List[BlockSparseMatrix],
        reference: BlockSparseMatrix | None = None,
    ) -> BlockSparseMatrix:
        delta = self._output_delta(activations, reference)
        for index in range(len(network) - 1, 0, -1):
            layer = network[index]
            delta = network.format_output_for_layer(layer, delta)
            delta = layer.run_reverse(delta).element_multiply(activations[index].sigmoid_derivative())
            logger.debug("computing input delta for layer %d", index)

        # The raw input has no sigmoid applied, so the first layer skips the derivative.
        first = network[0]
        return first.run_reverse(network.format_output_for_layer(first, delta))

    # ------------------------------------------------------------------
    # Helpers

    def _resolve(self, network, inputs, reference):
        network = network if network is not None else self.network
        inputs = as_block_sparse(inputs) if inputs is not None else self.inputs
        reference = as_block_sparse(reference) if reference is not None else self.reference
        return network, inputs, reference

    def _output_delta(
        self, activations: List[BlockSparseMatrix], reference: BlockSparseMatrix | None
    ) -> BlockSparseMatrix:
        output = activations[-1]
        reference = as_block_sparse(reference) if reference is not None else self.reference
        _, delta = self.cost(output, reference.reshape_columns(output.columns_per_block))
        return delta

    def _hidden_delta(self, propagated: BlockSparseMatrix, activation: BlockSparseMatrix) -> BlockSparseMatrix:
        return propagated.element_multiply(activation.sigmoid_derivative())


class SparseBackPropagation(DenseBackPropagation):
    """Dense back propagation plus a sparsity penalty on hidden activations.

    ``NeuralNetwork::Sparsity`` is the target firing rate of each hidden
    neuron and ``NeuralNetwork::SparsityWeight`` scales the KL-divergence
    penalty that pushes the batch-mean activation towards it.
    """

    def __init__(self, network, inputs, reference, knobs: Knobs | None = None) -> None:
        super().__init__(network, inputs, reference, knobs)
        self.sparsity = self.knobs.get_knob_value("NeuralNetwork::Sparsity", 0.01)
        self.sparsity_weight = self.knobs.get_knob_value("NeuralNetwork::SparsityWeight", 1.0)

    def get_cost(
        self,
        network: NeuralNetwork | None = None,
        inputs: BlockSparseMatrix | None = None,
        reference: BlockSparseMatrix | None = None,
    ) -> float:
        network, inputs, reference = self._resolve(network, inputs, reference)
        activations = self.get_activations(network, inputs)
        cost = compute_cost_for_network(network, inputs, reference, self.lambda_, self.cost)
        rho = self.sparsity
        for activation in activations[1:-1]:
            rho_hat = _mean_activation(activation)
            divergence = rho * np.log(rho / rho_hat) + (1.0 - rho) * np.log((1.0 - rho) / (1.0 - rho_hat))
            cost += self.sparsity_weight * float(divergence.sum())
        return cost

    def _hidden_delta(self, propagated: BlockSparseMatrix, activation: BlockSparseMatrix) -> BlockSparseMatrix:
        rho = self.sparsity
        rho_hat = _mean_activation(activation)
        penalty = self.sparsity_weight * (-rho / rho_hat + (1.0 - rho) / (1.0 - rho_hat))
        penalty_row = BlockSparseMatrix.from_blocks(penalty, is_row_sparse=False)
        return propagated.convolutional_add_broadcast_row(penalty_row).element_multiply(
            activation.sigmoid_derivative()
        )


def make_back_propagation(
    name: str,
    network: NeuralNetwork,
    inputs,
    reference,
    knobs: Knobs | None = None,
) -> DenseBackPropagation:
    if name == "dense":
        return DenseBackPropagation(network, inputs, reference, knobs)
    if name == "sparse":
        return SparseBackPropagation(network, inputs, reference, knobs)
    raise ValueError(f"Unknown back propagation strategy: {name}")


# ----------------------------------------------------------------------
# Cost and gradient helpers


def coalesce_neuron_outputs(derivative: BlockSparseMatrix, blocks: int) -> BlockSparseMatrix:
    """Fold a derivative with extra blocks back onto ``blocks`` weight blocks.

    Needed when one physical neuron produced several logical outputs, or when
    an input was spread over more blocks than the layer has.
    """

    if derivative.blocks == blocks:
        return derivative
    return derivative.reduce_tile_sum_along_rows(blocks)


def compute_cost_for_layer(
    layer: Layer,
    layer_input: BlockSparseMatrix,
    layer_output: BlockSparseMatrix,
    lambda_: float,
    cost: Cost | None = None,
) -> float:
    cost = cost or COST_REGISTRY.get("squared_error")
    hx = layer.run_inputs(layer_input)
    value, _ = cost(hx, as_block_sparse(layer_output).reshape_columns(hx.columns_per_block))
    weights = layer.get_weights_without_bias()
    return value + (lambda_ / 2.0) * weights.element_multiply(weights).reduce_sum()


def compute_cost_for_network(
    network: NeuralNetwork,
    inputs: BlockSparseMatrix,
    reference: BlockSparseMatrix,
    lambda_: float,
    cost: Cost | None = None,
) -> float:
    cost = cost or COST_REGISTRY.get("squared_error")
    hx = network.run_inputs(inputs)
    value, _ = cost(hx, as_block_sparse(reference).reshape_columns(hx.columns_per_block))
    if lambda_ > 0.0:
        for layer in network:
            weights = layer.get_weights_without_bias()
            value += (lambda_ / 2.0) * weights.element_multiply(weights).reduce_sum()
    return value


def gradient_checking(
    partial_derivatives: BlockSparseMatrix,
    layer: Layer,
    layer_input: BlockSparseMatrix,
    layer_output: BlockSparseMatrix,
    epsilon: float,
    lambda_: float,
    cost: Cost | None = None,
) -> bool:
    """Compare analytic weight gradients of ``layer`` with centered differences.

    Each weight is perturbed by ``+epsilon`` and ``-epsilon`` on copies of the
    layer, so ``layer`` itself is never modified. Returns False as soon as one
    estimate differs from its analytic value by more than ``epsilon``, or when
    the summed absolute difference exceeds ``epsilon`` per weight.
    """

    layer_weights = layer.get_flattened_weights()
    analytic = partial_derivatives.to_vector()
    if layer_weights.size != analytic.size:
        raise ValueError(
            f"Layer has {layer_weights.size} weights, but the partial derivatives have {analytic.size}"
        )

    logger.info("Running gradient checking on %d weights", layer_weights.size)

    estimate = np.zeros_like(analytic)
    for index in range(layer_weights.size):
        layer_plus = layer.copy()
        plus_weights = layer_weights.copy()
        plus_weights[index] += epsilon
        layer_plus.set_flattened_weights(plus_weights)

        layer_minus = layer.copy()
        minus_weights = layer_weights.copy()
        minus_weights[index] -= epsilon
        layer_minus.set_flattened_weights(minus_weights)

        derivative = (
            compute_cost_for_layer(layer_plus, layer_input, layer_output, lambda_, cost)
            - compute_cost_for_layer(layer_minus, layer_input, layer_output, lambda_, cost)
        ) / (2.0 * epsilon)
        estimate[index] = derivative

        logger.debug(
            "gradient of weight %d out of %d is %f, compared to computed %f",
            index,
            layer_weights.size,
            derivative,
            analytic[index],
        )
        if abs(derivative - analytic[index]) > epsilon:
            return False

    return _is_in_margin(analytic, estimate, epsilon)


def _is_in_margin(reference: Array, output: Array, epsilon: float) -> bool:
    return float(np.abs(output - reference).sum()) < reference.size * epsilon


def _mean_activation(activation: BlockSparseMatrix) -> Array:
    rho_hat = activation.reduce_sum_along_rows().data / activation.rows
    return np.clip(rho_hat, 1e-12, 1.0 - 1e-12)


__all__ = [
    "BackPropagation",
    "DenseBackPropagation",
    "GradientCheckingError",
    "SparseBackPropagation",
    "coalesce_neuron_outputs",
    "compute_cost_for_layer",
    "compute_cost_for_network",
    "gradient_checking",
    "make_back_propagation",
]
