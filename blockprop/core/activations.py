"""Activation utilities for blockprop."""

from __future__ import annotations

import numpy as np

from .types import Array


def sigmoid(x: Array) -> Array:
    """Return the logistic sigmoid of ``x``."""

    # Split on sign so that neither branch overflows in ``exp``.
    out = np.empty_like(x, dtype=np.float64)
    positive = x >= 0.0
    out[positive] = 1.0 / (1.0 + np.exp(-x[positive]))
    exp_x = np.exp(x[~positive])
    out[~positive] = exp_x / (1.0 + exp_x)
    return out


def sigmoid_derivative(activation: Array) -> Array:
    """Derivative of the sigmoid expressed through its output ``activation``."""

    return activation * (1.0 - activation)
