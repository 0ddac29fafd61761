"""Run helpers: feed a DataSet through a graph to train or to test a classifier."""

from __future__ import annotations

from typing import Iterator

import numpy as np
from tqdm import tqdm

from declgraph.checkpoint import save_variables
from declgraph.data.dataset import DataSet
from declgraph.errors import InvalidValueError, ResultTensorNotFoundError
from declgraph.graph.graph import Graph
from declgraph.training.metrics import accumulate_history, average_metrics, format_metrics, prefix_metrics
from declgraph.training.types import ClassificationResult, Metrics, TrainingConfig, create_metrics


def batch_indices(
    num_samples: int,
    batch_size: int,
    num_batches: int,
    shuffle: bool = True,
    seed: int = 42
) -> Iterator[list[int]]:
    """Sample indices for each batch.

    Shuffled batches hold distinct random samples; ordered batches walk the
    data set, wrapping to the start.
    """
    if batch_size > num_samples:
        raise InvalidValueError(f"Batch size {batch_size} is larger than the {num_samples} samples")
    rng = np.random.default_rng(seed)
    position = 0
    for _ in range(num_batches):
        if shuffle:
            yield [int(i) for i in rng.choice(num_samples, size=batch_size, replace=False)]
        else:
            indices = []
            for _ in range(batch_size):
                indices.append(position)
                position = (position + 1) % num_samples
            yield indices


def run_training(
    graph: Graph,
    mode: str,
    training_data: DataSet,
    input_name: str,
    expected_name: str
) -> list[dict]:
    """Run every sample of a data set through a non-batch graph in a learning mode.

    Returns:
        The results of each run, in sample order
    """
    results = []
    for sample in training_data:
        results.append(graph.run_one(mode, {input_name: sample.inputs, expected_name: sample.outputs}))
    return results


def run_batch_training(
    graph: Graph,
    mode: str,
    training_data: DataSet,
    input_name: str,
    expected_name: str,
    num_batches: int,
    shuffle: bool = True,
    seed: int = 42
) -> list[dict]:
    """Run batches of a data set through a batch graph in a learning mode.

    The batch size is the graph's batch size.

    Returns:
        The results of each run, in batch order
    """
    if graph.batch_size is None:
        raise InvalidValueError("Batch training needs a graph built with a batch size")
    results = []
    for indices in batch_indices(training_data.num_samples, graph.batch_size, num_batches, shuffle, seed):
        inputs, outputs = training_data.get_batch(indices)
        results.append(graph.run_one(mode, {input_name: inputs, expected_name: outputs}))
    return results


def _result(results: dict, name: str):
    if name not in results:
        raise ResultTensorNotFoundError(name)
    return results[name]


def run_classifier_test(
    graph: Graph,
    mode: str,
    test_data: DataSet,
    input_name: str,
    result_name: str
) -> ClassificationResult:
    """Classify every sample and compare the argmax of the result with its class.

    Raises:
        ResultTensorNotFoundError: `result_name` is not a target of the mode
    """
    correct = 0
    for sample in test_data:
        result = _result(graph.run_one(mode, {input_name: sample.inputs}), result_name)
        if result.classification() == sample.output_class:
            correct += 1
    return ClassificationResult(correct / test_data.num_samples, correct)


def run_batched_classifier_test(
    graph: Graph,
    mode: str,
    test_data: DataSet,
    input_name: str,
    result_name: str
) -> ClassificationResult:
    """Batched classifier test over as many whole batches as the data set holds.

    Samples left over after the last whole batch are not tested.
    """
    if graph.batch_size is None:
        raise InvalidValueError("Batched classifier test needs a graph built with a batch size")
    batch_size = graph.batch_size
    num_batches = test_data.num_samples // batch_size
    if num_batches == 0:
        raise InvalidValueError(f"Data set has fewer than {batch_size} samples")

    correct = 0
    for indices in batch_indices(test_data.num_samples, batch_size, num_batches, shuffle=False):
        inputs, _ = test_data.get_batch(indices)
        result = _result(graph.run_one(mode, {input_name: inputs}), result_name)
        for index, predicted in zip(indices, result.batch_classifications()):
            if predicted == test_data.get_sample(index).output_class:
                correct += 1
    return ClassificationResult(correct / (num_batches * batch_size), correct)


def train_epoch(
    graph: Graph,
    mode: str,
    training_data: DataSet,
    input_name: str,
    expected_name: str,
    num_batches: int,
    config: TrainingConfig,
    seed: int
) -> Metrics:
    """Train for one epoch and average the mode's target results.

    Every target of the mode becomes a metric (its mean value).
    """
    batch_metrics = []

    if config.batch_size is None:
        runs = (
            (s.inputs, s.outputs) for s in training_data.samples[:num_batches]
        )
    else:
        runs = (
            training_data.get_batch(indices)
            for indices in batch_indices(
                training_data.num_samples, config.batch_size, num_batches, config.shuffle, seed
            )
        )

    for batch_idx, (inputs, outputs) in enumerate(runs):
        raw_metrics = graph.run_one(mode, {input_name: inputs, expected_name: outputs})
        metrics = create_metrics(raw_metrics)
        batch_metrics.append(metrics)

        if config.log_every is not None and (batch_idx + 1) % config.log_every == 0:
            print(f"  Batch {batch_idx + 1}/{num_batches} | {format_metrics(metrics)}")

    return average_metrics(batch_metrics)


def train_loop(
    graph: Graph,
    mode: str,
    training_data: DataSet,
    input_name: str,
    expected_name: str,
    config: TrainingConfig,
    validation_mode: str | None = None,
    validation_data: DataSet | None = None
) -> dict[str, list[float]]:
    """Complete training loop with logging and variable checkpoints.

    Args:
        graph: Graph with a learning mode; a batch graph when config.batch_size is set
        mode: Learning mode to run
        training_data: Training samples
        input_name: Placeholder fed the sample inputs
        expected_name: Placeholder fed the expected outputs
        config: Epochs, batching, logging and checkpoint settings
        validation_mode: Optional mode run over the validation data after each epoch
        validation_data: Optional validation samples

    Returns:
        Metrics history, keys prefixed with `train_` / `val_`
    """
    if config.batch_size is not None and config.batch_size != graph.batch_size:
        raise InvalidValueError(
            f"Training batch size {config.batch_size} does not match the graph batch size {graph.batch_size}"
        )
    per_batch = config.batch_size or 1
    num_batches = config.num_batches or max(training_data.num_samples // per_batch, 1)
    history: dict[str, list[float]] = {}

    for epoch in tqdm(range(config.num_epochs), desc="Training"):
        train_metrics = train_epoch(
            graph, mode, training_data, input_name, expected_name,
            num_batches, config, seed=config.seed + epoch,
        )
        history = accumulate_history(history, prefix_metrics(train_metrics, "train_"))

        if validation_mode is not None and validation_data is not None:
            val_batches = max(validation_data.num_samples // per_batch, 1)
            val_config = TrainingConfig(num_epochs=1, batch_size=config.batch_size, shuffle=False)
            val_metrics = train_epoch(
                graph, validation_mode, validation_data, input_name, expected_name,
                val_batches, val_config, seed=config.seed,
            )
            history = accumulate_history(history, prefix_metrics(val_metrics, "val_"))

        print(f"Epoch {epoch + 1}/{config.num_epochs} | {format_metrics(train_metrics)}")

        if config.checkpoint_dir is not None and config.checkpoint_every is not None:
            if (epoch + 1) % config.checkpoint_every == 0:
                save_variables(graph, f"{config.checkpoint_dir}/epoch_{epoch + 1}")

    if config.checkpoint_dir is not None:
        save_variables(graph, f"{config.checkpoint_dir}/final")

    return history
