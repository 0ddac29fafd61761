"""Three-input nodes."""

from __future__ import annotations

from typing import Any

import jax.numpy as jnp

from declgraph.graph.node import TernaryNode


class Clamp(TernaryNode):
    """Clamp `input_name` between the `min_tensor` and `max_tensor` values."""

    def __init__(
        self,
        input_name: str | None = None,
        min_tensor: str | None = None,
        max_tensor: str | None = None,
        name: str | None = None
    ):
        super().__init__(input_name, min_tensor, max_tensor, name)

    def operation(self, x: Any, low: Any, high: Any) -> Any:
        return jnp.minimum(jnp.maximum(x, low), high)


class Select(TernaryNode):
    """Element-wise choice: `true_tensor` where `predicate` holds, else `false_tensor`."""

    def __init__(
        self,
        predicate: str | None = None,
        true_tensor: str | None = None,
        false_tensor: str | None = None,
        name: str | None = None
    ):
        super().__init__(predicate, true_tensor, false_tensor, name)

    def operation(self, predicate: Any, on_true: Any, on_false: Any) -> Any:
        return jnp.where(predicate.astype(bool), on_true, on_false)
