"""Tests for the symbolic program the graph lowers into."""

from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import optax
import pytest

from declgraph.backend.program import Program, VariableUpdate
from declgraph.errors import InputShapeError, RunError


def test_apply_infers_shapes():
    program = Program()
    a = program.placeholder((2, 3), np.float32, name="a")
    b = program.placeholder((3, 4), np.float32, name="b")

    product = program.apply(jnp.matmul, [a, b], name="product")

    assert product.shape == (2, 4)
    assert product.dtype == np.float32


def test_apply_rejects_bad_shapes():
    program = Program()
    a = program.placeholder((2, 3), np.float32)
    b = program.placeholder((2, 3), np.float32)

    with pytest.raises(InputShapeError):
        program.apply(jnp.matmul, [a, b], name="product")


def test_apply_multi_output_count():
    program = Program()
    x = program.placeholder((4,), np.float32)

    low, high = program.apply_multi(lambda v: (v[:2], v[2:]), [x], 2)
    assert low.shape == high.shape == (2,)

    with pytest.raises(ValueError):
        program.apply_multi(lambda v: (v, v, v), [x], 2)


def test_run_feeds_placeholders():
    program = Program()
    x = program.placeholder((4,), np.float32, name="x")
    w = program.variable(np.full((4,), 2.0, np.float32), name="w")
    y = program.apply(jnp.multiply, [x, w], name="y")

    np.testing.assert_allclose(program.run({x: np.arange(1, 5)}, [y])[y], [2.0, 4.0, 6.0, 8.0])


def test_missing_feed_fails():
    program = Program()
    x = program.placeholder((2,), np.float32, name="x")
    y = program.apply(jnp.negative, [x])

    with pytest.raises(RunError):
        program.run({}, [y])


def test_assign_applies_after_targets():
    program = Program()
    counter = program.variable(np.zeros((1,), np.float32), name="counter")
    one = program.constant(np.ones((1,), np.float32))
    incremented = program.apply(jnp.add, [counter, one])
    assign = program.assign(counter, incremented)

    first = program.run({}, [counter], [assign])[counter]
    second = program.run({}, [counter], [assign])[counter]

    np.testing.assert_array_equal(first, [0.0])
    np.testing.assert_array_equal(second, [1.0])
    np.testing.assert_array_equal(program.variable_value(counter), [2.0])


def test_assign_shape_checked():
    program = Program()
    v = program.variable(np.zeros((2,), np.float32))
    value = program.constant(np.zeros((3,), np.float32))

    with pytest.raises(InputShapeError):
        program.assign(v, value)


def test_variable_from_tensor_initialised_on_first_run():
    program = Program()
    x = program.placeholder((2,), np.float32)
    state = program.variable_from_tensor(x)
    doubled = program.apply(lambda v: v * 2, [state])

    np.testing.assert_allclose(program.run({x: [1.0, 2.0]}, [doubled])[doubled], [2.0, 4.0])
    np.testing.assert_allclose(program.run({x: [5.0, 5.0]}, [doubled])[doubled], [2.0, 4.0])


def test_learning_step_clips_gradient():
    program = Program()
    w = program.variable(np.zeros((2,), np.float32), name="w")
    target = program.constant(np.array([10.0, -10.0], np.float32))
    loss = program.apply(lambda v, t: jnp.sum(jnp.square(v - t)), [w, target])
    rate = program.constant(np.array([1.0], np.float32))
    step = program.learning_step(
        loss, rate, [VariableUpdate(w, optax.identity(), clipping=(-0.5, 0.5))]
    )

    program.run({}, [], [step])

    np.testing.assert_allclose(program.variable_value(w), [0.5, -0.5])


def test_run_is_compiled_once_per_signature():
    traces = []

    def double(v):
        traces.append(v.shape)
        return v * 2

    program = Program()
    x = program.placeholder((2,), np.float32, name="x")
    y = program.apply(double, [x], name="y")
    assert len(traces) == 1

    for value in ([1.0, 2.0], [3.0, 4.0], [5.0, 6.0]):
        np.testing.assert_allclose(program.run({x: value}, [y])[y], np.multiply(value, 2))

    assert len(traces) == 2


def test_reset_operation_state_restarts_optimizer():
    program = Program()
    w = program.variable(np.zeros((1,), np.float32), name="w")
    loss = program.apply(lambda v: jnp.sum(jnp.square(v - 100.0)), [w])
    rate = program.constant(np.array([1.0], np.float32))
    momentum = optax.trace(decay=0.9)
    step = program.learning_step(loss, rate, [VariableUpdate(w, momentum, clipping=(-1.0, 1.0))])

    program.run({}, [], [step])
    program.run({}, [], [step])
    np.testing.assert_allclose(program.variable_value(w), [2.9], rtol=1e-6)

    program.reset_operation_state(step)
    program.run({}, [], [step])
    np.testing.assert_allclose(program.variable_value(w), [3.9], rtol=1e-6)
