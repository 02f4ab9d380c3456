"""Core numerical primitives for blockprop."""

from . import activations, layer, matrix, network, types

__all__ = ["activations", "layer", "matrix", "network", "types"]
