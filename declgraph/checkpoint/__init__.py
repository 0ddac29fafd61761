"""Checkpoint utilities for a graph's learning variables.

Key features:
- Values saved through orbax with name / shape / dtype metadata
- The graph configuration saved beside the values
- Loading validated against the graph's learning variables
"""

from .save import save_variables
from .load import (
    load_variables,
    read_graph_config,
    read_metadata,
    read_variables,
)

__all__ = [
    'save_variables',
    'load_variables',
    'read_graph_config',
    'read_metadata',
    'read_variables',
]
