"""Graph engine: nodes, resolution scopes, sub-graphs.

Key components:
- Node: declaration of one step, with Unary / Binary / Ternary helpers
- Graph: resolves a node list into a runnable program
- SubGraphDefinition / SubGraph: reusable node lists under a name prefix
"""

from declgraph.graph.node import BinaryNode, Node, TernaryNode, UnaryNode
from declgraph.graph.builder import flatten_nodes, graph_nodes
from declgraph.graph.graph import Graph
from declgraph.graph.subgraph import SubGraph, SubGraphDefinition

__all__ = [
    "Node",
    "UnaryNode",
    "BinaryNode",
    "TernaryNode",
    "Graph",
    "SubGraph",
    "SubGraphDefinition",
    "flatten_nodes",
    "graph_nodes",
]
