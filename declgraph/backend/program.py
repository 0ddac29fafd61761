"""Build-then-run dataflow program over JAX.

The graph engine emits symbolic tensors into a Program and later runs it:
- placeholder / constant / variable leaves
- operations built from jax.numpy callables (shapes inferred with jax.eval_shape)
- assign and learning operations that update the variable store on run

Evaluation is a pure function of (feeds, variable state), so gradients of a
loss with respect to the variables come straight from jax.grad, and each run
is a jax.jit-compiled step over (feeds, variables, optimizer states).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Sequence

import jax
import jax.numpy as jnp
import numpy as np
import optax

from declgraph.data.types import DataType
from declgraph.errors import InputShapeError, RunError


@dataclass(eq=False)
class SymbolicTensor:
    """Handle to a tensor in a Program (identity-hashed).

    Args:
        index: Creation order within the program, inputs always precede users
        shape: Static shape
        dtype: numpy dtype of the elements
        name: Optional debugging name
    """
    index: int
    shape: tuple[int, ...]
    dtype: np.dtype
    name: str | None = None

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def data_type(self) -> DataType:
        return DataType.from_dtype(self.dtype)

    def __repr__(self) -> str:
        return f"SymbolicTensor({self.name or '#' + str(self.index)}, {list(self.shape)}, {self.dtype})"


@dataclass(eq=False)
class _Producer:
    kind: str
    inputs: tuple[SymbolicTensor, ...] = ()
    fn: Callable[..., Any] | None = None
    value: Any = None
    num_outputs: int = 1


class Operation:
    """Target operation: run for its effect on the variable store.

    Operations are pure: `updates` maps the pre-run variables and the
    operation's own carried state to new variable values and a new state, so
    a whole run can be compiled with jax.jit.
    """

    name: str | None = None

    def dependencies(self) -> list[SymbolicTensor]:
        raise NotImplementedError

    def initial_state(self, variables: dict[int, jax.Array]) -> Any:
        return None

    def updates(
        self,
        program: Program,
        feeds: dict[int, jax.Array],
        variables: dict[int, jax.Array],
        state: Any
    ) -> tuple[dict[int, jax.Array], Any]:
        """New variable values and operation state, from the pre-run values."""
        raise NotImplementedError


@dataclass(eq=False)
class AssignOperation(Operation):
    variable: SymbolicTensor
    value: SymbolicTensor
    name: str | None = None

    def dependencies(self) -> list[SymbolicTensor]:
        return [self.value]

    def updates(self, program, feeds, variables, state):
        (value,) = program.evaluate([self.value], feeds, variables)
        return {self.variable.index: jnp.asarray(value, dtype=self.variable.dtype)}, state


@dataclass(eq=False)
class VariableUpdate:
    """One learned variable: its optax transform and optional gradient clip."""
    variable: SymbolicTensor
    optimizer: optax.GradientTransformation
    clipping: tuple[float, float] | None = None


@dataclass(eq=False)
class LearningOperation(Operation):
    """Gradient step on `entries` minimising the summed `loss`.

    Each variable's gradient is clipped, passed through its optax transform,
    scaled by -learning_rate and applied with optax.apply_updates. The
    carried state is the list of optimizer states, one per entry.
    """
    loss: SymbolicTensor
    learning_rate: SymbolicTensor
    entries: list[VariableUpdate]
    name: str | None = None

    def dependencies(self) -> list[SymbolicTensor]:
        return [self.loss, self.learning_rate] + [e.variable for e in self.entries]

    def initial_state(self, variables):
        return [e.optimizer.init(variables[e.variable.index]) for e in self.entries]

    def updates(self, program, feeds, variables, state):
        indices = [e.variable.index for e in self.entries]
        params = [variables[i] for i in indices]

        def loss_fn(values):
            trial = dict(variables)
            trial.update(zip(indices, values))
            (loss,) = program.evaluate([self.loss], feeds, trial)
            return jnp.sum(loss)

        grads = jax.grad(loss_fn)(params)
        (rate,) = program.evaluate([self.learning_rate], feeds, variables)
        rate = jnp.reshape(rate, ())

        new_values, new_state = {}, []
        for entry, index, param, grad, opt_state in zip(self.entries, indices, params, grads, state):
            if entry.clipping is not None:
                grad = jnp.clip(grad, entry.clipping[0], entry.clipping[1])
            update, opt_state = entry.optimizer.update(grad, opt_state, param)
            new_state.append(opt_state)
            step = jax.tree_util.tree_map(lambda u: -rate * u, update)
            new_values[index] = optax.apply_updates(param, step)
        return new_values, new_state


class Program:
    """Symbolic program: leaves, operations and a mutable variable store.

    Example:
        >>> program = Program()
        >>> x = program.placeholder((4,), np.float32, name="x")
        >>> w = program.variable(np.full((4,), 2.0, np.float32), name="w")
        >>> y = program.apply(jnp.multiply, [x, w], name="y")
        >>> program.run({x: np.arange(1, 5)}, [y])[y]
        array([2., 4., 6., 8.], dtype=float32)
    """

    def __init__(self):
        self._tensors: list[SymbolicTensor] = []
        self._producers: dict[int, tuple[_Producer, int]] = {}
        self._variables: dict[int, jax.Array] = {}
        self._variable_sources: dict[int, SymbolicTensor] = {}
        self._operation_states: dict[Operation, Any] = {}
        self._compiled: dict[tuple, Callable[..., Any]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _new_tensor(self, shape, dtype, name, producer: _Producer, position: int = 0) -> SymbolicTensor:
        tensor = SymbolicTensor(
            index=len(self._tensors),
            shape=tuple(int(d) for d in shape),
            dtype=np.dtype(dtype),
            name=name,
        )
        self._tensors.append(tensor)
        self._producers[tensor.index] = (producer, position)
        return tensor

    def placeholder(self, shape: Sequence[int], dtype: Any, name: str | None = None) -> SymbolicTensor:
        dtype = DataType.from_dtype(dtype).numpy_dtype
        return self._new_tensor(shape, dtype, name, _Producer(kind="placeholder"))

    def constant(self, value: Any, dtype: Any = None, name: str | None = None) -> SymbolicTensor:
        array = np.asarray(value)
        dtype = DataType.from_dtype(dtype if dtype is not None else array.dtype).numpy_dtype
        array = jnp.asarray(array, dtype=dtype)
        return self._new_tensor(array.shape, dtype, name, _Producer(kind="constant", value=array))

    def variable(self, initial_value: Any, dtype: Any = None, name: str | None = None) -> SymbolicTensor:
        array = np.asarray(initial_value)
        dtype = DataType.from_dtype(dtype if dtype is not None else array.dtype).numpy_dtype
        tensor = self._new_tensor(array.shape, dtype, name, _Producer(kind="variable"))
        self._variables[tensor.index] = jnp.asarray(array, dtype=dtype)
        return tensor

    def variable_from_tensor(self, source: SymbolicTensor, name: str | None = None) -> SymbolicTensor:
        """Variable initialised from `source` the first time a run needs it."""
        tensor = self._new_tensor(source.shape, source.dtype, name, _Producer(kind="variable"))
        self._variable_sources[tensor.index] = source
        return tensor

    def apply_multi(
        self,
        fn: Callable[..., Any],
        inputs: Sequence[SymbolicTensor],
        num_outputs: int,
        name: str | None = None
    ) -> list[SymbolicTensor]:
        """Add an operation producing `num_outputs` tensors.

        Raises:
            InputShapeError: If `fn` rejects the input shapes or dtypes
        """
        inputs = tuple(inputs)
        specs = [jax.ShapeDtypeStruct(t.shape, t.dtype) for t in inputs]
        try:
            result = jax.eval_shape(fn, *specs)
        except (TypeError, ValueError) as err:
            label = name or getattr(fn, "__name__", "operation")
            raise InputShapeError(
                f"Operation '{label}' cannot be applied to input shapes "
                f"{[list(t.shape) for t in inputs]}: {err}"
            ) from err

        outputs = tuple(result) if isinstance(result, (tuple, list)) else (result,)
        if len(outputs) != num_outputs:
            raise ValueError(
                f"Operation '{name}' produced {len(outputs)} outputs, expected {num_outputs}"
            )

        producer = _Producer(kind="op", inputs=inputs, fn=fn, num_outputs=num_outputs)
        return [
            self._new_tensor(spec.shape, spec.dtype, name, producer, position)
            for position, spec in enumerate(outputs)
        ]

    def apply(
        self,
        fn: Callable[..., Any],
        inputs: Sequence[SymbolicTensor],
        name: str | None = None
    ) -> SymbolicTensor:
        """Add a single-output operation."""
        return self.apply_multi(fn, inputs, 1, name)[0]

    def assign(self, variable: SymbolicTensor, value: SymbolicTensor, name: str | None = None) -> AssignOperation:
        if self._producers[variable.index][0].kind != "variable":
            raise ValueError(f"Assign target {variable} is not a variable")
        if variable.shape != value.shape:
            raise InputShapeError(
                f"Cannot assign shape {list(value.shape)} to variable of shape {list(variable.shape)}"
            )
        return AssignOperation(variable=variable, value=value, name=name)

    def learning_step(
        self,
        loss: SymbolicTensor,
        learning_rate: SymbolicTensor,
        entries: list[VariableUpdate],
        name: str | None = None
    ) -> LearningOperation:
        return LearningOperation(loss=loss, learning_rate=learning_rate, entries=entries, name=name)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _needed(self, roots: Sequence[SymbolicTensor]) -> list[int]:
        seen: set[int] = set()
        stack = [t.index for t in roots]
        while stack:
            index = stack.pop()
            if index in seen:
                continue
            seen.add(index)
            producer, _ = self._producers[index]
            if producer.kind == "op":
                stack.extend(t.index for t in producer.inputs)
            elif producer.kind == "variable" and index not in self._variables:
                stack.append(self._variable_sources[index].index)
        return sorted(seen)

    def evaluate(
        self,
        targets: Sequence[SymbolicTensor],
        feeds: dict[int, jax.Array],
        state: dict[int, jax.Array]
    ) -> list[jax.Array]:
        """Pure evaluation of `targets` given feeds and variable values (traced under jit)."""
        env: dict[int, Any] = {}
        results: dict[int, tuple] = {}
        for index in self._needed(targets):
            producer, position = self._producers[index]
            if producer.kind == "placeholder":
                if index not in feeds:
                    raise RunError(f"No value fed for placeholder '{self._tensors[index].name}'")
                env[index] = feeds[index]
            elif producer.kind == "constant":
                env[index] = producer.value
            elif producer.kind == "variable":
                env[index] = state[index]
            else:
                key = id(producer)
                if key not in results:
                    out = producer.fn(*[env[t.index] for t in producer.inputs])
                    results[key] = tuple(out) if isinstance(out, (tuple, list)) else (out,)
                env[index] = results[key][position]
        return [env[t.index] for t in targets]

    def _initialize_variables(self, roots: Sequence[SymbolicTensor], feeds: dict[int, jax.Array]) -> None:
        for index in self._needed(roots):
            if index in self._variable_sources and index not in self._variables:
                (value,) = self.evaluate([self._variable_sources[index]], feeds, self._variables)
                self._variables[index] = value

    def _compile(self, targets: tuple[SymbolicTensor, ...], operations: tuple[Operation, ...]):
        key = (tuple(t.index for t in targets), operations)
        step = self._compiled.get(key)
        if step is None:
            @jax.jit
            def step(feeds, variables, states):
                values = self.evaluate(targets, feeds, variables)
                updates: dict[int, jax.Array] = {}
                new_states = []
                for op, state in zip(operations, states):
                    op_updates, state = op.updates(self, feeds, variables, state)
                    updates.update(op_updates)
                    new_states.append(state)
                return values, updates, new_states

            self._compiled[key] = step
        return step

    def run(
        self,
        feeds: dict[SymbolicTensor, Any],
        targets: Sequence[SymbolicTensor],
        target_operations: Sequence[Operation] = ()
    ) -> dict[SymbolicTensor, np.ndarray]:
        """Evaluate targets, then apply target operations to the variable store.

        Targets see the variable values from before this run's updates. The
        run is compiled once per (targets, operations) pair and cached.
        """
        targets, operations = tuple(targets), tuple(target_operations)
        with self._lock:
            feed_values = {t.index: jnp.asarray(v, dtype=t.dtype) for t, v in feeds.items()}
            roots = list(targets)
            for op in operations:
                roots.extend(op.dependencies())
            self._initialize_variables(roots, feed_values)

            for op in operations:
                if op not in self._operation_states:
                    self._operation_states[op] = op.initial_state(self._variables)
            states = [self._operation_states[op] for op in operations]

            step = self._compile(targets, operations)
            values, updates, new_states = step(feed_values, dict(self._variables), states)
            self._variables.update(updates)
            self._operation_states.update(zip(operations, new_states))

        return {t: np.asarray(v) for t, v in zip(targets, values)}

    def reset_operation_state(self, operation: Operation) -> None:
        """Forget carried state (optimizer moments) so it is re-initialised on next run."""
        with self._lock:
            self._operation_states.pop(operation, None)

    def variable_value(self, variable: SymbolicTensor) -> np.ndarray:
        with self._lock:
            self._initialize_variables([variable], {})
            return np.asarray(self._variables[variable.index])

    @property
    def tensors(self) -> list[SymbolicTensor]:
        return list(self._tensors)
