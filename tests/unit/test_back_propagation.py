import inspect

import numpy as np
import pytest

from blockprop.config import Knobs
from blockprop.core.layer import Layer
from blockprop.core.matrix import BlockSparseMatrix, BlockSparseMatrixVector, as_block_sparse
from blockprop.core.network import NeuralNetwork
from blockprop.training import backprop
from blockprop.training.backprop import (
    BackPropagation,
    DenseBackPropagation,
    GradientCheckingError,
    SparseBackPropagation,
    coalesce_neuron_outputs,
    gradient_checking,
    make_back_propagation,
)


def _network(*shapes, seed=0):
    network = NeuralNetwork(Layer(*shape) for shape in shapes)
    network.initialize_randomly(seed)
    return network


def _batch(rows, inputs, outputs, seed=1):
    rng = np.random.default_rng(seed)
    return rng.uniform(-1.0, 1.0, size=(rows, inputs)), rng.uniform(0.1, 0.9, size=(rows, outputs))


def _numeric_gradient(strategy, network, h=1e-5):
    parameters = network.get_parameters()
    flat = parameters.to_vector()
    estimate = np.zeros_like(flat)
    for index in range(flat.size):
        costs = []
        for sign in (1.0, -1.0):
            perturbed = flat.copy()
            perturbed[index] += sign * h
            candidate = network.copy()
            candidate.set_parameters(BlockSparseMatrixVector.from_vector(perturbed, parameters.format))
            costs.append(strategy.get_cost(candidate))
        estimate[index] = (costs[0] - costs[1]) / (2.0 * h)
    return estimate


def _scenario():
    layer = Layer(1, 2, 1)
    layer.set_weights(BlockSparseMatrix.from_blocks([[[0.5, 0.5]]], is_row_sparse=True))
    return NeuralNetwork([layer]), np.array([[1.0, 1.0]]), np.array([[1.0]])


def test_zero_weights_cost_uses_midpoint_output():
    network = NeuralNetwork([Layer(2, 2, 1)])
    inputs, reference = _batch(4, 4, 2)
    strategy = DenseBackPropagation(network, inputs, reference, Knobs({"NeuralNetwork::Lambda": 0.0}))
    expected = np.sum((reference - 0.5) ** 2) / (2.0 * 4)
    assert strategy.get_cost() == pytest.approx(expected)


def test_single_layer_scenario():
    network, inputs, reference = _scenario()
    strategy = DenseBackPropagation(network, inputs, reference, Knobs({"NeuralNetwork::Lambda": 0.0}))

    output = 1.0 / (1.0 + np.exp(-1.0))
    assert network.run_inputs(inputs).to_dense()[0, 0] == pytest.approx(0.7311, abs=1e-4)
    assert strategy.get_cost() == pytest.approx(0.0362, abs=1e-4)

    delta = (output - 1.0) * output * (1.0 - output)
    weights, bias = strategy.get_cost_derivative()
    assert np.allclose(weights.to_dense(), [[delta, delta]])
    assert np.allclose(bias.to_dense(), [[delta]])


def test_regularization_adds_weight_penalty():
    network, inputs, reference = _scenario()
    plain = DenseBackPropagation(network, inputs, reference, Knobs({"NeuralNetwork::Lambda": 0.0}))
    regularized = DenseBackPropagation(network, inputs, reference, Knobs({"NeuralNetwork::Lambda": 0.1}))
    assert regularized.get_cost() - plain.get_cost() == pytest.approx(0.05 * 0.5)
    assert regularized.get_input_cost() == pytest.approx(plain.get_cost())


def test_dense_gradient_matches_finite_differences():
    network = _network((2, 3, 2), (1, 4, 2))
    inputs, reference = _batch(5, 6, 2)
    strategy = DenseBackPropagation(network, inputs, reference, Knobs({"NeuralNetwork::Lambda": 0.05}))

    gradient = strategy.get_cost_derivative()
    assert gradient.format == network.get_parameters().format
    assert np.allclose(gradient.to_vector(), _numeric_gradient(strategy, network), rtol=1e-4, atol=1e-7)


def test_shared_blocks_gradient_matches_finite_differences():
    # A one-block first layer applied to an input spread over two blocks.
    network = _network((1, 2, 2), (1, 4, 1), seed=3)
    inputs, reference = _batch(6, 4, 1, seed=4)
    strategy = DenseBackPropagation(network, inputs, reference, Knobs({"NeuralNetwork::Lambda": 0.01}))

    gradient = strategy.get_cost_derivative()
    assert gradient[0].blocks == 1
    assert np.allclose(gradient.to_vector(), _numeric_gradient(strategy, network), rtol=1e-4, atol=1e-7)


def test_sparse_gradient_matches_finite_differences():
    network = _network((2, 3, 2), (1, 4, 2), seed=5)
    inputs, reference = _batch(5, 6, 2, seed=6)
    knobs = Knobs(
        {
            "NeuralNetwork::Lambda": 0.01,
            "NeuralNetwork::Sparsity": 0.1,
            "NeuralNetwork::SparsityWeight": 0.5,
        }
    )
    strategy = SparseBackPropagation(network, inputs, reference, knobs)
    dense = DenseBackPropagation(network, inputs, reference, knobs)

    assert strategy.get_cost() > dense.get_cost()
    assert np.allclose(
        strategy.get_cost_derivative().to_vector(),
        _numeric_gradient(strategy, network),
        rtol=1e-4,
        atol=1e-7,
    )


def test_cross_entropy_gradient_matches_finite_differences():
    network = _network((2, 3, 2), (1, 4, 2), seed=7)
    inputs, reference = _batch(5, 6, 2, seed=8)
    knobs = Knobs({"NeuralNetwork::Lambda": 0.02, "NeuralNetwork::CostFunction": "cross_entropy"})
    strategy = DenseBackPropagation(network, inputs, reference, knobs)

    assert strategy.cost.name == "cross_entropy"
    assert np.allclose(
        strategy.get_cost_derivative().to_vector(),
        _numeric_gradient(strategy, network),
        rtol=1e-4,
        atol=1e-7,
    )


def test_unknown_cost_function_is_rejected():
    network, inputs, reference = _scenario()
    with pytest.raises(KeyError):
        DenseBackPropagation(network, inputs, reference, Knobs({"NeuralNetwork::CostFunction": "hinge"}))


def test_input_derivative_matches_finite_differences():
    network = _network((2, 3, 2), (1, 4, 2), seed=9)
    inputs, reference = _batch(3, 6, 2, seed=10)
    strategy = DenseBackPropagation(network, inputs, reference)

    derivative = strategy.get_input_derivative()
    assert derivative.columns_per_block == 6

    h = 1e-5
    estimate = np.zeros_like(inputs)
    for index in np.ndindex(*inputs.shape):
        plus = inputs.copy()
        minus = inputs.copy()
        plus[index] += h
        minus[index] -= h
        estimate[index] = (strategy.get_input_cost(inputs=plus) - strategy.get_input_cost(inputs=minus)) / (2.0 * h)
    assert np.allclose(derivative.to_dense(), estimate, rtol=1e-4, atol=1e-8)


def test_cost_derivative_is_deterministic():
    network = _network((2, 3, 2), (1, 4, 2), seed=11)
    inputs, reference = _batch(5, 6, 2, seed=12)
    strategy = DenseBackPropagation(network, inputs, reference)

    first = strategy.get_cost_derivative().to_vector()
    second = strategy.get_cost_derivative().to_vector()
    assert np.array_equal(first, second)


def test_gradient_checking_detects_wrong_sign():
    network, inputs, reference = _scenario()
    strategy = DenseBackPropagation(network, inputs, reference, Knobs({"NeuralNetwork::Lambda": 0.0}))
    weights_gradient = strategy.get_cost_derivative()[-2]
    layer_input = as_block_sparse(inputs)
    before = network.back().get_flattened_weights()

    assert gradient_checking(weights_gradient, network.back(), layer_input, reference, 0.05, 0.0)

    flipped = weights_gradient.copy()
    flipped[0] = flipped[0] * np.array([[-1.0, 1.0]])
    assert not gradient_checking(flipped, network.back(), layer_input, reference, 0.05, 0.0)

    assert np.array_equal(network.back().get_flattened_weights(), before)


def test_gradient_checking_rejects_mismatched_sizes():
    network, inputs, reference = _scenario()
    wrong = BlockSparseMatrix(1, 1, 3)
    with pytest.raises(ValueError):
        gradient_checking(wrong, network.back(), as_block_sparse(inputs), reference, 0.05, 0.0)


def test_gradient_checking_knob(monkeypatch):
    network = _network((2, 3, 2), (1, 4, 2), seed=13)
    inputs, reference = _batch(5, 6, 2, seed=14)
    knobs = Knobs({"NeuralNetwork::DoGradientChecking": "true"})
    strategy = DenseBackPropagation(network, inputs, reference, knobs)

    assert len(strategy.get_cost_derivative()) == 4

    monkeypatch.setattr(backprop, "gradient_checking", lambda *args, **kwargs: False)
    with pytest.raises(GradientCheckingError):
        strategy.get_cost_derivative()


def test_coalesce_neuron_outputs():
    derivative = BlockSparseMatrix.from_blocks(np.arange(8, dtype=float).reshape(4, 1, 2))
    assert coalesce_neuron_outputs(derivative, 4) is derivative
    coalesced = coalesce_neuron_outputs(derivative, 2)
    assert np.allclose(coalesced.data, [[[4.0, 6.0]], [[8.0, 10.0]]])


def test_make_back_propagation():
    network, inputs, reference = _scenario()
    assert isinstance(make_back_propagation("sparse", network, inputs, reference), SparseBackPropagation)
    assert type(make_back_propagation("dense", network, inputs, reference)) is DenseBackPropagation
    with pytest.raises(ValueError):
        make_back_propagation("momentum", network, inputs, reference)


@pytest.mark.parametrize("strategy", [DenseBackPropagation, SparseBackPropagation])
@pytest.mark.parametrize("name", ["get_cost_derivative", "get_input_derivative", "get_cost", "get_input_cost"])
def test_strategies_match_protocol_signatures(strategy, name):
    assert inspect.signature(getattr(strategy, name)) == inspect.signature(getattr(BackPropagation, name))
