"""Learning configuration and loss nodes."""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Any, Sequence

import jax
import jax.numpy as jnp
import numpy as np

from declgraph.config import LearningOptimizer
from declgraph.errors import VariableLearningNodeMustBeNamedError
from declgraph.graph.node import BinaryNode, Node

if TYPE_CHECKING:
    from declgraph.backend.program import SymbolicTensor
    from declgraph.graph.graph import Graph

__all__ = [
    "Learning",
    "LearningOptimizer",
    "LossReduction",
    "MeanAbsoluteErrorLoss",
    "MeanSquaredErrorLoss",
    "SoftMaxCrossEntropy",
]


class Learning(Node):
    """Learning setup for the graph: rate, learning modes and Adam parameters.

    At most one per graph. A constant rate is baked into the program; a
    variable rate is fed on every run (see Graph.run_one new_learning_rate)
    and needs a name. Never counted as unreferenced.

    Args:
        constant: Keep the learning rate fixed
        learning_rate: The rate, or the initial value of a variable rate
        learning_modes: Modes that apply a learning step after computing targets
        beta1: Adam first moment decay
        beta2: Adam second moment decay
        epsilon: Adam denominator offset
        name: Node name (required for a variable rate)

    Example:
        >>> Learning(constant=False, learning_rate=0.01, learning_modes=["train"], name="rate")
    """

    def __init__(
        self,
        constant: bool = True,
        learning_rate: float = 0.05,
        learning_modes: Sequence[str] = (),
        beta1: float = 0.9,
        beta2: float = 0.999,
        epsilon: float = 1.0e-7,
        name: str | None = None
    ):
        super().__init__(name)
        self.constant = constant
        self.learning_rate = learning_rate
        self.learning_modes = list(learning_modes)
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon
        if not constant and name is None:
            self.fail(VariableLearningNodeMustBeNamedError())

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        if not self.constant and self.name is None:
            raise VariableLearningNodeMustBeNamedError()
        return [graph.configure_learning(self)]

    def check_referenced(self) -> None:
        pass


class MeanSquaredErrorLoss(BinaryNode):
    """Mean over the first axis of (actual - predicted)²."""

    def __init__(self, actual: str | None = None, predicted: str | None = None, name: str | None = None):
        super().__init__(actual, predicted, name)

    def operation(self, actual: Any, predicted: Any) -> Any:
        return jnp.mean(jnp.square(actual - predicted), axis=0, keepdims=True)


class MeanAbsoluteErrorLoss(BinaryNode):
    """Mean over the first axis of |actual - predicted|."""

    def __init__(self, actual: str | None = None, predicted: str | None = None, name: str | None = None):
        super().__init__(actual, predicted, name)

    def operation(self, actual: Any, predicted: Any) -> Any:
        return jnp.mean(jnp.abs(actual - predicted), axis=0, keepdims=True)


class LossReduction(enum.Enum):
    NONE = "none"
    SUM = "sum"
    MEAN = "mean"


class SoftMaxCrossEntropy(BinaryNode):
    """Softmax cross-entropy of logits against label probabilities.

    In a batch graph the loss is divided by the batch size, and the node
    emits the raw loss (`_softMaxCrossEntropy`), the batch-size constant and
    the mean loss under the node name; only the mean loss is a target.
    """

    def __init__(
        self,
        input_name: str | None = None,
        labels: str | None = None,
        axis: int = -1,
        reduction: LossReduction = LossReduction.SUM,
        name: str | None = None
    ):
        super().__init__(input_name, labels, name)
        self.axis = axis
        self.reduction = reduction
        self._suffixes = [""]
        self._target_indices = [0]

    def output_suffixes(self) -> list[str]:
        return self._suffixes

    def target_indices(self) -> list[int] | None:
        return self._target_indices

    def operation(self, logits: Any, labels: Any) -> Any:
        losses = -jnp.sum(labels * jax.nn.log_softmax(logits, axis=self.axis), axis=self.axis)
        if self.reduction == LossReduction.SUM:
            return jnp.sum(losses)
        if self.reduction == LossReduction.MEAN:
            return jnp.mean(losses)
        return losses

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        logits, labels = self.resolve_inputs(graph)
        full_name = graph.full_name(self.name)
        if not graph.batch_graph:
            self._suffixes, self._target_indices = [""], [0]
            return [graph.program.apply(self.operation, [logits, labels], name=full_name)]

        raw_name = "softMaxCrossEntropy" if full_name is None else full_name + "_softMaxCrossEntropy"
        raw = graph.program.apply(self.operation, [logits, labels], name=raw_name)
        batch_size = graph.program.constant(np.array([graph.batch_size], raw.dtype))
        mean = graph.program.apply(jnp.divide, [raw, batch_size], name=full_name)
        self._suffixes = ["_softMaxCrossEntropy", "_*Unnamable constant*", ""]
        self._target_indices = [2]
        return [raw, batch_size, mean]

    def primary_output_index(self) -> int:
        return len(self._suffixes) - 1
