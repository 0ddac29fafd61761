"""declgraph: declarative computation graphs on JAX.

A graph is declared as an ordered list of named nodes. Construction resolves
names, validates shapes, allocates learnable variables and lowers everything
into a program that is then run in modes ("train", "infer").
"""

# Graph engine
from declgraph.graph import (
    Graph,
    SubGraph,
    SubGraphDefinition,
    graph_nodes,
)

# Configuration
from declgraph.config import (
    BuildOptions,
    GraphConfig,
    LearningOptimizer,
    config_hash,
    load_config,
    save_config,
)

# Data
from declgraph.data import (
    DataSet,
    DataType,
    ParameterRange,
    Sample,
    Tensor,
    TensorShape,
)

# Node library
from declgraph.nodes import *  # noqa: F401,F403
from declgraph.nodes import __all__ as _node_names

# Errors
from declgraph.errors import DeclGraphError

# Checkpoints
from declgraph.checkpoint import load_variables, save_variables

# Training
from declgraph.training import (
    TrainingConfig,
    run_batch_training,
    run_batched_classifier_test,
    run_classifier_test,
    run_training,
    train_loop,
)

__version__ = "0.1.0"

__all__ = [
    # Graph
    "Graph",
    "SubGraph",
    "SubGraphDefinition",
    "graph_nodes",

    # Configuration
    "BuildOptions",
    "GraphConfig",
    "config_hash",
    "load_config",
    "save_config",

    # Data
    "DataSet",
    "DataType",
    "ParameterRange",
    "Sample",
    "Tensor",
    "TensorShape",

    # Errors
    "DeclGraphError",

    # Checkpoints
    "load_variables",
    "save_variables",

    # Training
    "TrainingConfig",
    "run_batch_training",
    "run_batched_classifier_test",
    "run_classifier_test",
    "run_training",
    "train_loop",
] + list(_node_names)
