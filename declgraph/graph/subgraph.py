"""Reusable node lists inlined into a graph under a name prefix."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable

from declgraph.errors import NodeCannotBeTargetError
from declgraph.graph.builder import flatten_nodes
from declgraph.graph.context import declared_names
from declgraph.graph.node import Node

if TYPE_CHECKING:
    from declgraph.backend.program import SymbolicTensor
    from declgraph.data.types import Tensor
    from declgraph.graph.context import ReferenceMarker
    from declgraph.graph.graph import Graph


class SubGraphDefinition:
    """An ordered node list that can be instantiated several times.

    Inner nodes read the instance's inputs through SubGraphPlaceHolder nodes,
    and data tensors through Constant / Variable tensor references.
    """

    def __init__(self, nodes: Iterable[Any]):
        self.nodes: list[Node] = flatten_nodes(nodes)

    def clear_referenced_flags(self) -> None:
        for node in self.nodes:
            node.clear_referenced_flag()

    def check_nodes_referenced(self) -> None:
        for node in self.nodes:
            node.check_referenced()


class SubGraph(Node):
    """Instance of a SubGraphDefinition.

    Inner tensors are bound as `<name>_<inner name>`; nested instances chain
    outer to inner (`Outer_Inner_leaf`). The instance itself emits no tensor
    and cannot be a target; its inner nodes can.

    Args:
        definition: Node list to inline
        name: Instance name, used as the prefix of every inner name
        input_map: SubGraphPlaceHolder name -> outer node name, or None for the
            output of the node before this instance
        data_tensor_map: Reference name -> Tensor for inner tensor references
    """

    def __init__(
        self,
        definition: SubGraphDefinition,
        name: str,
        input_map: dict[str, str | None] | None = None,
        data_tensor_map: dict[str, Tensor] | None = None
    ):
        super().__init__(name)
        self.definition = definition
        self.input_map = dict(input_map or {})
        self.data_tensor_map = dict(data_tensor_map or {})

    @property
    def binds_outputs(self) -> bool:
        return False

    def target_for_modes(self, modes) -> Node:
        self.build_error = NodeCannotBeTargetError(self.type_name, self.name)
        return self

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        with graph.sub_graph_scope(self.name, self.input_map, self.data_tensor_map):
            graph.emit_nodes(self.definition.nodes)
        return [None]

    def mark_references(self, marker: ReferenceMarker) -> Node | None:
        return marker.walk(self.definition.nodes, self.input_map)

    def declared_children(self) -> dict[str, Node] | None:
        return declared_names(self.definition.nodes)

    def clear_referenced_flag(self) -> None:
        self.referenced = False
        self.definition.clear_referenced_flags()

    def check_referenced(self) -> None:
        self.definition.check_nodes_referenced()
