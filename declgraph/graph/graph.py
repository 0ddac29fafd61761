"""Graph: resolves a declared node list into a runnable Program.

Handles:
- Reference marking and the unreferenced-node check
- Emission in declaration order (names, previous output, suffixes, sub-graphs)
- Per-mode targets and feeds
- Learning operations, node update operations and load / reset assignments
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Iterator, Sequence

import jax.random as random
import numpy as np
import optax

from declgraph.backend.program import (
    AssignOperation,
    LearningOperation,
    Operation,
    Program,
    SymbolicTensor,
    VariableUpdate,
)
from declgraph.config import BuildOptions, GraphConfig, LearningOptimizer
from declgraph.data.types import Tensor
from declgraph.errors import (
    GraphNotBuiltForOperationError,
    MoreThanOneLearningNodeError,
    NamedTensorNotFoundError,
    NoConfiguredTargetTensorsError,
    NoLearningVariablesInGraphError,
    NoTargetsInGraphError,
    PlaceHolderInputNotFoundError,
    PlaceHolderShapeMismatchError,
    ReferencedDataTensorNotFoundError,
    SavedCountMismatchError,
    SavedVariableNotFoundError,
    UNNAMED,
    UnknownShapeError,
)
from declgraph.graph.builder import flatten_nodes
from declgraph.graph.context import ReferenceMarker, ResolutionContext
from declgraph.graph.node import Node

if TYPE_CHECKING:
    from declgraph.nodes.leaf import Variable
    from declgraph.nodes.learning import Learning


DEFAULT_LEARNING_RATE = 0.05


@dataclass(frozen=True)
class EmittedTensor:
    name: str | None
    node: Node
    tensor: SymbolicTensor


@dataclass(frozen=True)
class TargetTensor:
    name: str
    modes: tuple[str, ...]
    tensor: SymbolicTensor


@dataclass(frozen=True)
class FeedTensor:
    name: str
    tensor: SymbolicTensor
    modes: tuple[str, ...] = ()

    def needed_for_mode(self, mode: str) -> bool:
        return not self.modes or mode in self.modes


@dataclass(frozen=True)
class LearningVariable:
    name: str
    tensor: SymbolicTensor
    loss: str
    prefixes: tuple[str, ...]
    optimizer: LearningOptimizer
    clipping: tuple[float, float] | None = None


@dataclass
class LoadResetEntry:
    name: str
    node: Variable
    tensor: SymbolicTensor
    source: SymbolicTensor | None = None
    placeholder: SymbolicTensor | None = None
    load_operation: AssignOperation | None = None
    reset_operation: AssignOperation | None = None


class Graph:
    """A declared list of nodes, resolved into a runnable program.

    Construction resolves the whole declaration and fails with the first
    error found.

    Args:
        nodes: Node declarations (nested lists, generators and None allowed)
        batch_size: Batch size for a batch graph (None = no batch dimension)
        build_options: Load / reset assignment options
        seed: Seed for random variable initialization
        config: GraphConfig, overrides the three arguments above

    Example:
        >>> graph = Graph([
        ...     PlaceHolder(shape=[4], name="x"),
        ...     Variable.constant(2.0, shape=[4], name="w"),
        ...     Multiplication("x", "w", name="y").target_for_modes(["infer"]),
        ... ])
        >>> graph.run_one("infer", {"x": Tensor.from_values([1, 2, 3, 4])})["y"]
    """

    def __init__(
        self,
        nodes: Iterable[Any],
        batch_size: int | None = None,
        build_options: BuildOptions = BuildOptions.NONE,
        seed: int = 0,
        config: GraphConfig | None = None
    ):
        if config is None:
            config = GraphConfig(batch_size=batch_size, build_options=build_options, seed=seed)
        self.config = config
        self.nodes: list[Node] = flatten_nodes(nodes)
        self.build()

    @property
    def batch_graph(self) -> bool:
        return self.config.batch_graph

    @property
    def batch_size(self) -> int | None:
        return self.config.batch_size

    @property
    def build_options(self) -> BuildOptions:
        return self.config.build_options

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _reset(self) -> None:
        self.program = Program()
        self.context = ResolutionContext()
        self._key = random.PRNGKey(self.config.seed)
        self._emitted: list[EmittedTensor] = []
        self._targets: list[TargetTensor] = []
        self._feeds: list[FeedTensor] = []
        self._learning_variables: list[LearningVariable] = []
        self._load_reset_entries: list[LoadResetEntry] = []
        self._update_operations: list[Operation] = []
        self._learning_operations: list[LearningOperation] = []
        self._learning_node: Learning | None = None
        self._learning_rate_tensor: SymbolicTensor | None = None
        self._learning_rate_placeholder: SymbolicTensor | None = None
        self._learning_rate = DEFAULT_LEARNING_RATE
        self._training_mode_tensor: SymbolicTensor | None = None

    def build(self) -> None:
        """(Re)build the program from the declaration.

        Raises:
            DeclGraphError: The first declaration, resolution or shape error
        """
        self._reset()
        for node in self.nodes:
            node.clear_referenced_flag()
        ReferenceMarker().walk(self.nodes)

        self.emit_nodes(self.nodes)

        for node in self.nodes:
            node.check_referenced()

        self._add_learning_operations()
        self._add_load_reset_operations()

        if not self._targets:
            raise NoTargetsInGraphError()

    def emit_nodes(self, nodes: Sequence[Node]) -> None:
        """Emit `nodes` in order into the current scope."""
        for node in nodes:
            if node.build_error is not None:
                raise node.build_error

            outputs = node.resolve(self)
            if not node.binds_outputs:
                continue

            suffixes = node.output_suffixes()
            if len(suffixes) != len(outputs):
                raise ValueError(
                    f"{node.type_name} '{node.name}' emitted {len(outputs)} tensors "
                    f"but declares {len(suffixes)} name suffixes"
                )

            full_name = self.full_name(node.name)
            for tensor, suffix in zip(outputs, suffixes):
                if tensor is None:
                    continue
                tensor_name = None if full_name is None else full_name + suffix
                if tensor.shape is None:
                    raise UnknownShapeError(tensor_name)
                if tensor_name is not None:
                    self.context.bind(tensor_name, tensor)
                self._emitted.append(EmittedTensor(tensor_name, node, tensor))

            primary = outputs[node.primary_output_index()]
            if primary is not None:
                self.context.cursor = primary

            if node.target_modes:
                self._add_targets(node, outputs, suffixes, full_name)

    def _add_targets(self, node, outputs, suffixes, full_name) -> None:
        indices = node.target_indices()
        if indices is None:
            indices = range(len(outputs))
        elif not indices:
            raise NoConfiguredTargetTensorsError(node.type_name, node.name)
        modes = tuple(node.target_modes)
        for index in indices:
            tensor = outputs[index]
            if tensor is not None:
                self._targets.append(TargetTensor(full_name + suffixes[index], modes, tensor))

    # ------------------------------------------------------------------
    # Resolution interface used by nodes
    # ------------------------------------------------------------------

    def full_name(self, name: str | None) -> str | None:
        return self.context.full_name(name)

    def resolve(self, name: str | None) -> SymbolicTensor:
        return self.context.resolve(name)

    def resolve_mapped_input(self, placeholder_name: str) -> SymbolicTensor:
        return self.context.resolve_mapped_input(placeholder_name)

    def data_tensor(self, reference: str) -> Tensor:
        if reference not in self.context.data_map:
            raise ReferencedDataTensorNotFoundError(reference)
        return self.context.data_map[reference]

    @contextmanager
    def sub_graph_scope(
        self,
        name: str,
        input_map: dict[str, str | None],
        data_map: dict[str, Tensor]
    ) -> Iterator[None]:
        with self.context.scope(name, input_map, data_map):
            yield

    def next_key(self):
        self._key, key = random.split(self._key)
        return key

    def add_feed(self, name: str, tensor: SymbolicTensor, modes: Sequence[str] = ()) -> None:
        self._feeds.append(FeedTensor(name, tensor, tuple(modes)))

    def add_learning_variable(
        self,
        name: str,
        tensor: SymbolicTensor,
        loss: str,
        optimizer: LearningOptimizer,
        clipping: tuple[float, float] | None = None
    ) -> None:
        self._learning_variables.append(LearningVariable(
            name=name,
            tensor=tensor,
            loss=loss,
            prefixes=tuple(self.context.prefix_stack),
            optimizer=optimizer,
            clipping=clipping,
        ))

    def add_load_reset_entry(
        self,
        name: str,
        node: Variable,
        tensor: SymbolicTensor,
        source: SymbolicTensor | None = None
    ) -> None:
        if self.build_options & BuildOptions.VARIABLE_ASSIGNS:
            self._load_reset_entries.append(LoadResetEntry(name, node, tensor, source))

    def add_update_operation(self, operation: Operation) -> None:
        """Operation run alongside learning in the learning modes."""
        self._update_operations.append(operation)

    def training_mode_tensor(self) -> SymbolicTensor:
        """Boolean scalar, true while a learning mode runs."""
        if self._training_mode_tensor is None:
            self._training_mode_tensor = self.program.placeholder((), np.bool_, name="trainingMode")
        return self._training_mode_tensor

    def configure_learning(self, node: Learning) -> SymbolicTensor:
        """Register the Learning node and create the learning rate tensor."""
        if self._learning_node is not None:
            raise MoreThanOneLearningNodeError()
        self._learning_node = node
        self._learning_rate = node.learning_rate
        rate_name = self.full_name(node.name)
        if node.constant:
            tensor = self.program.constant(np.array([node.learning_rate], np.float32), name=rate_name)
        else:
            tensor = self.program.placeholder((1,), np.float32, name=rate_name)
            self._learning_rate_placeholder = tensor
        self._learning_rate_tensor = tensor
        return tensor

    @property
    def learning_modes(self) -> tuple[str, ...]:
        if self._learning_node is None:
            return ()
        return tuple(self._learning_node.learning_modes)

    # ------------------------------------------------------------------
    # Learning and load / reset wiring
    # ------------------------------------------------------------------

    def _loss_tensor(self, variable: LearningVariable) -> SymbolicTensor:
        for prefix in reversed(variable.prefixes):
            tensor = self.context.symbols.get(prefix + variable.loss)
            if tensor is not None:
                return tensor
        raise NamedTensorNotFoundError(variable.loss)

    def _add_learning_operations(self) -> None:
        if not self._learning_variables:
            return
        if self._learning_rate_tensor is None:
            self._learning_rate_tensor = self.program.constant(
                np.array([DEFAULT_LEARNING_RATE], np.float32), name="learningRate"
            )

        groups: dict[SymbolicTensor, list[LearningVariable]] = {}
        for variable in self._learning_variables:
            groups.setdefault(self._loss_tensor(variable), []).append(variable)

        for loss, variables in groups.items():
            entries = [
                VariableUpdate(
                    variable=v.tensor,
                    optimizer=self._optimizer_transform(v.optimizer),
                    clipping=v.clipping,
                )
                for v in variables
            ]
            self._learning_operations.append(
                self.program.learning_step(loss, self._learning_rate_tensor, entries, name=loss.name)
            )

    def _optimizer_transform(self, optimizer: LearningOptimizer) -> optax.GradientTransformation:
        if optimizer == LearningOptimizer.ADAM:
            node = self._learning_node
            if node is None:
                return optax.scale_by_adam()
            return optax.scale_by_adam(b1=node.beta1, b2=node.beta2, eps=node.epsilon)
        return optax.identity()

    def _add_load_reset_operations(self) -> None:
        for entry in self._load_reset_entries:
            placeholder_name = entry.name + "_loadAssignPlaceHolder"
            entry.placeholder = self.program.placeholder(
                entry.tensor.shape, entry.tensor.dtype, name=placeholder_name
            )
            entry.load_operation = self.program.assign(
                entry.tensor, entry.placeholder, name=entry.name + "_loadAssign"
            )
            if entry.source is not None:
                entry.reset_operation = self.program.assign(
                    entry.tensor, entry.source, name=entry.name + "_resetAssign"
                )
            else:
                entry.reset_operation = entry.load_operation

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def targets_for_mode(self, mode: str) -> dict[str, SymbolicTensor]:
        return {t.name: t.tensor for t in self._targets if mode in t.modes}

    def feeds_for_mode(self, mode: str) -> list[FeedTensor]:
        return [f for f in self._feeds if f.needed_for_mode(mode)]

    @property
    def target_tensors(self) -> list[TargetTensor]:
        return list(self._targets)

    @property
    def learning_variables(self) -> list[LearningVariable]:
        return list(self._learning_variables)

    def run_one(
        self,
        mode: str,
        input_tensors: dict[str, Any],
        new_learning_rate: float | None = None
    ) -> dict[str, Tensor]:
        """Run one mode with the given inputs.

        Args:
            mode: Mode to run; learning happens when it is a learning mode
            input_tensors: Placeholder name -> Tensor (or array-like)
            new_learning_rate: New value for a variable learning rate

        Returns:
            Result tensors keyed by their bound name

        Raises:
            PlaceHolderInputNotFoundError: A placeholder needed by the mode has no input
            NoTargetsInGraphError: The mode has no targets
        """
        if new_learning_rate is not None:
            self._learning_rate = new_learning_rate

        feeds: dict[SymbolicTensor, np.ndarray] = {}
        for feed in self._feeds:
            if feed.name in input_tensors:
                value = _as_array(input_tensors[feed.name])
                if value.shape != feed.tensor.shape:
                    raise PlaceHolderShapeMismatchError(feed.name, feed.tensor.shape, value.shape)
                feeds[feed.tensor] = value
            elif feed.needed_for_mode(mode):
                raise PlaceHolderInputNotFoundError(feed.name, mode)

        learning = mode in self.learning_modes
        if self._learning_rate_placeholder is not None:
            feeds[self._learning_rate_placeholder] = np.array([self._learning_rate], np.float32)
        if self._training_mode_tensor is not None:
            feeds[self._training_mode_tensor] = np.array(learning)

        targets = self.targets_for_mode(mode)
        if not targets:
            raise NoTargetsInGraphError(mode)

        operations: list[Operation] = []
        if learning:
            operations = list(self._learning_operations) + list(self._update_operations)

        results = self.program.run(feeds, list(targets.values()), operations)
        return {name: Tensor(results[tensor]) for name, tensor in targets.items()}

    # ------------------------------------------------------------------
    # Variable persistence
    # ------------------------------------------------------------------

    def get_variable_data(self) -> dict[str, Tensor]:
        """Current values of the learning variables, keyed by name."""
        if not self._learning_variables:
            raise NoLearningVariablesInGraphError()
        return {
            v.name: Tensor(self.program.variable_value(v.tensor))
            for v in self._learning_variables
        }

    def load_variables(self, data: dict[str, Any]) -> None:
        """Assign saved learning-variable values back into the graph."""
        if not self.build_options & BuildOptions.ADD_LOAD_ASSIGNS:
            raise GraphNotBuiltForOperationError("Load Variables")
        if len(data) != len(self._learning_variables):
            raise SavedCountMismatchError(len(data), len(self._learning_variables))

        entries = {e.name: e for e in self._load_reset_entries}
        feeds = {}
        operations = []
        for name, value in data.items():
            entry = entries.get(name)
            if entry is None:
                raise SavedVariableNotFoundError(name)
            feeds[entry.placeholder] = _as_array(value).reshape(entry.tensor.shape)
            operations.append(entry.load_operation)
        self.program.run(feeds, [], operations)

    def reset_variables(self) -> None:
        """Return every variable to freshly initialized values."""
        if not self.build_options & BuildOptions.ADD_RESET_ASSIGNS:
            raise GraphNotBuiltForOperationError("Variable Reset")

        feeds = {}
        operations = []
        for entry in self._load_reset_entries:
            if entry.source is not None:
                operations.append(entry.reset_operation)
                continue
            data = entry.node.reset_data(self)
            if data is not None:
                feeds[entry.placeholder] = data.array.reshape(entry.tensor.shape)
                operations.append(entry.reset_operation)
        for operation in self._learning_operations:
            self.program.reset_operation_state(operation)
        self.program.run(feeds, [], operations)

    # ------------------------------------------------------------------
    # Debugging
    # ------------------------------------------------------------------

    def shape_list(self) -> list[str]:
        return [f"{list(e.tensor.shape)} - {e.name or UNNAMED}" for e in self._emitted]

    def print_shape_list(self) -> None:
        for line in self.shape_list():
            print(line)

    def __repr__(self) -> str:
        return (
            f"Graph({len(self.nodes)} nodes, {len(self._emitted)} tensors, "
            f"{len(self._targets)} targets, {len(self._feeds)} feeds)"
        )


def _as_array(value: Any) -> np.ndarray:
    if isinstance(value, Tensor):
        return value.array
    return np.asarray(value)
