"""Training configuration and metric types (pure data structures)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import jax.numpy as jnp


@dataclass(frozen=True)
class TrainingConfig:
    """Immutable training configuration.

    Args:
        num_epochs: Number of training epochs
        batch_size: Samples per batch (None = one sample per run, non-batch graph)
        num_batches: Batches per epoch (None = enough to cover the data set once)
        shuffle: Draw random batches instead of walking the data set in order
        seed: Random seed for batch selection
        checkpoint_dir: Directory to save variables after training (None = no checkpoints)
        checkpoint_every: Save variables every N epochs (None = only final)
        log_every: Log metrics every N batches (None = only epoch summary)
    """
    num_epochs: int
    batch_size: int | None = None
    num_batches: int | None = None
    shuffle: bool = True
    seed: int = 42
    checkpoint_dir: str | None = None
    checkpoint_every: int | None = None
    log_every: int | None = None


@dataclass(frozen=True)
class Metrics:
    """Immutable metrics container.

    All values are Python scalars (not arrays).
    """
    values: dict[str, float]

    def __getitem__(self, key: str) -> float:
        return self.values[key]

    def keys(self) -> list[str]:
        return list(self.values.keys())


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of a classifier test run."""
    fraction_correct: float
    total_correct: int


def to_scalar(x: Any) -> float:
    """Reduce a tensor result to a Python float (mean over all elements)."""
    if isinstance(x, (int, float)):
        return float(x)
    return float(jnp.mean(jnp.asarray(x)).item())


def create_metrics(raw_metrics: dict[str, Any]) -> Metrics:
    """Convert raw results (arrays or Tensors) to immutable Metrics."""
    scalar_metrics = {
        k: to_scalar(getattr(v, 'array', v)) for k, v in raw_metrics.items()
    }
    return Metrics(values=scalar_metrics)
