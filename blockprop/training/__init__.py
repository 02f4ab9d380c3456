"""Back propagation, cost registry and training loops."""

from . import backprop, costs, trainer

__all__ = ["backprop", "costs", "trainer"]
