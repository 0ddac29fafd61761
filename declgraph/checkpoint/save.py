"""Save a graph's learning variables with metadata.

Creates directory structure:
    path/
      ├─ graph_config.json    # GraphConfig the graph was built with
      ├─ metadata.json        # Variable names, shapes and dtypes
      └─ variables/           # orbax PyTree checkpoint of the values
"""

from __future__ import annotations

import json
from pathlib import Path

import orbax.checkpoint as ocp

from declgraph.config import save_config
from declgraph.graph.graph import Graph

CHECKPOINT_VERSION = "1.0"


def save_variables(graph: Graph, path: str | Path) -> dict[str, list[int]]:
    """Save the current values of every learning variable in the graph.

    Args:
        graph: Built graph with learning variables
        path: Checkpoint directory (created if missing, overwritten if present)

    Returns:
        Saved variable names mapped to their shapes

    Raises:
        NoLearningVariablesInGraphError: The graph has nothing to save
    """
    path = Path(path).absolute()
    path.mkdir(parents=True, exist_ok=True)

    data = graph.get_variable_data()
    arrays = {name: tensor.array for name, tensor in data.items()}

    metadata = {
        'variables': list(arrays.keys()),
        'shapes': {name: list(array.shape) for name, array in arrays.items()},
        'dtypes': {name: str(array.dtype) for name, array in arrays.items()},
        'version': CHECKPOINT_VERSION,
    }
    with open(path / 'metadata.json', 'w') as f:
        json.dump(metadata, f, indent=2)

    save_config(graph.config, path / 'graph_config.json')

    checkpointer = ocp.Checkpointer(ocp.PyTreeCheckpointHandler())
    checkpointer.save(path / 'variables', arrays, force=True)

    return metadata['shapes']
