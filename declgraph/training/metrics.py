"""Metrics aggregation (pure functions)."""

from __future__ import annotations

from declgraph.training.types import Metrics


def average_metrics(metrics_list: list[Metrics]) -> Metrics:
    """Average metrics across batches or epochs.

    Args:
        metrics_list: Metrics to average; all share the keys of the first

    Returns:
        New Metrics with averaged values
    """
    if not metrics_list:
        return Metrics(values={})

    averaged = {}
    for key in metrics_list[0].keys():
        values = [m[key] for m in metrics_list]
        averaged[key] = sum(values) / len(values)

    return Metrics(values=averaged)


def prefix_metrics(metrics: Metrics, prefix: str) -> Metrics:
    return Metrics(values={f"{prefix}{k}": v for k, v in metrics.values.items()})


def format_metrics(metrics: Metrics, precision: int = 4) -> str:
    """Format metrics as a log line."""
    parts = [f"{k}: {v:.{precision}f}" for k, v in metrics.values.items()]
    return " | ".join(parts)


def accumulate_history(
    history: dict[str, list[float]],
    metrics: Metrics
) -> dict[str, list[float]]:
    """Append metrics to a history dict, returning a new dict."""
    new_history = {k: v.copy() for k, v in history.items()}

    for key in metrics.keys():
        new_history.setdefault(key, []).append(metrics[key])

    return new_history
