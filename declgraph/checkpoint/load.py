"""Load saved learning variables back into a graph."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import numpy as np
import orbax.checkpoint as ocp

from declgraph.config import GraphConfig, load_config
from declgraph.graph.graph import Graph


def read_variables(path: str | Path) -> dict[str, np.ndarray]:
    """Read a saved variable dictionary without a graph.

    Args:
        path: Checkpoint directory written by save_variables

    Returns:
        Variable name -> numpy array
    """
    path = Path(path).absolute()
    variables_path = path / 'variables'
    if not variables_path.exists():
        raise FileNotFoundError(f"No variables checkpoint found in {path}")

    metadata = read_metadata(path)
    checkpointer = ocp.Checkpointer(ocp.PyTreeCheckpointHandler())
    restored = checkpointer.restore(variables_path)

    arrays = {name: np.asarray(value) for name, value in restored.items()}
    for name, shape in metadata['shapes'].items():
        if name not in arrays:
            raise ValueError(f"Checkpoint metadata lists '{name}' but no values were saved")
        arrays[name] = arrays[name].reshape(shape).astype(metadata['dtypes'][name])
    return arrays


def read_metadata(path: str | Path) -> dict[str, Any]:
    metadata_path = Path(path) / 'metadata.json'
    if not metadata_path.exists():
        raise FileNotFoundError(f"No metadata.json found in {path}")
    with open(metadata_path) as f:
        return json.load(f)


def read_graph_config(path: str | Path) -> GraphConfig:
    """GraphConfig the saved graph was built with."""
    return load_config(Path(path) / 'graph_config.json')


def load_variables(graph: Graph, path: str | Path) -> None:
    """Restore saved learning variables into a graph built with load assigns.

    Raises:
        GraphNotBuiltForOperationError: The graph has no load assignments
        SavedCountMismatchError / SavedVariableNotFoundError: The saved
            variables do not match the graph's learning variables
    """
    graph.load_variables(read_variables(path))
