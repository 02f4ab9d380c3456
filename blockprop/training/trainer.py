"""Deterministic training loops for block-sparse networks."""

from __future__ import annotations

import logging
import random
from typing import Iterable, Mapping, Sequence

import numpy as np

from ..config import Knobs
from ..core.network import NeuralNetwork
from ..core.types import Batch, RunResult
from ..optimizer.cost_function import NeuralNetworkCostFunction
from ..optimizer.solver import GradientDescentSolver
from .backprop import make_back_propagation

logger = logging.getLogger(__name__)


class Trainer:
    """Fit a network batch by batch with a line-search solver."""

    def __init__(
        self,
        network: NeuralNetwork,
        solver: GradientDescentSolver,
        back_propagation: str = "dense",
        knobs: Knobs | None = None,
        callbacks: Sequence[object] | None = None,
    ) -> None:
        self.network = network
        self.solver = solver
        self.back_propagation = back_propagation
        self.knobs = knobs if knobs is not None else Knobs()
        self.callbacks = list(callbacks or [])

    def run(
        self,
        dataloader: Iterable[Batch],
        epochs: int,
        seed: int,
        *,
        determinism: bool = True,
        initialize: bool = True,
    ) -> RunResult:
        self._set_seed(seed, determinism)
        if initialize:
            self.network.initialize_randomly(seed)

        total_steps = 0
        failures = 0
        epoch_cost = float("nan")
        for epoch in range(1, epochs + 1):
            costs: list[float] = []
            for batch in dataloader:
                cost, failed = self._run_batch(batch)
                costs.append(cost)
                failures += int(failed)
                total_steps += 1
            epoch_cost = float(np.mean(costs)) if costs else 0.0
            logger.info("epoch %d: loss %f", epoch, epoch_cost)
            self._emit_epoch(epoch, {"loss": epoch_cost})

        return RunResult(steps=total_steps, final_cost=epoch_cost, failures=failures)

    # ------------------------------------------------------------------
    # Internal helpers

    def _run_batch(self, batch: Batch) -> tuple[float, bool]:
        back_propagation = make_back_propagation(
            self.back_propagation, self.network, batch.inputs, batch.targets, self.knobs
        )
        cost_function = NeuralNetworkCostFunction(back_propagation)
        result = self.solver.solve(cost_function, self.network.get_parameters())
        self.network.set_parameters(result.inputs)
        return result.cost, result.failure is not None

    def _emit_epoch(self, epoch: int, metrics: Mapping[str, float]) -> None:
        for callback in self.callbacks:
            if hasattr(callback, "on_epoch"):
                callback.on_epoch(epoch, metrics)  # type: ignore[attr-defined]
            elif callable(callback):
                callback(epoch, metrics)

    @staticmethod
    def _set_seed(seed: int, determinism: bool) -> None:
        if determinism:
            random.seed(seed)
            np.random.seed(seed)


__all__ = ["Trainer"]
