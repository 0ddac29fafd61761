"""Training utilities for declgraph graphs.

- Immutable training configuration and metrics
- Pure metric functions
- Run helpers for DataSets (training, classifier tests)
- Epoch loop with variable checkpoints
"""

from declgraph.training.types import (
    ClassificationResult,
    Metrics,
    TrainingConfig,
    create_metrics,
)

from declgraph.training.metrics import (
    accumulate_history,
    average_metrics,
    format_metrics,
)

from declgraph.training.loop import (
    batch_indices,
    run_batch_training,
    run_batched_classifier_test,
    run_classifier_test,
    run_training,
    train_epoch,
    train_loop,
)

__all__ = [
    # Types
    "ClassificationResult",
    "Metrics",
    "TrainingConfig",
    "create_metrics",
    # Metrics
    "accumulate_history",
    "average_metrics",
    "format_metrics",
    # Run helpers
    "batch_indices",
    "run_batch_training",
    "run_batched_classifier_test",
    "run_classifier_test",
    "run_training",
    "train_epoch",
    "train_loop",
]
