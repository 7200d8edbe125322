import numpy as np
import pytest

from llmarch.dense import (
    Activation,
    activate,
    apply_dense_weight_only,
    apply_dense_with_bias,
    dense_weight_only,
    dense_with_bias,
    dense_with_bias_and_activation,
    gelu,
    gelu_approximate,
    mlp,
    mlp_with_gelu,
    swish,
)
from llmarch.scope import MissingVariableError, Scope


@pytest.fixture
def x():
    return np.random.default_rng(1).normal(size=(2, 3, 4)).astype(np.float32)


def _identity_scope(root, name, size):
    scope = root.in_(name)
    scope.set("weights", np.eye(size, dtype=np.float32))
    scope.set("biases", np.zeros(size, np.float32))
    return scope


def test_identity_weights_return_input(x):
    out = apply_dense_with_bias(x, np.eye(4), np.zeros(4))
    np.testing.assert_allclose(out, x, rtol=1e-6)


def test_bias_is_added(x):
    bias = np.arange(4.0)
    out = apply_dense_with_bias(x, np.eye(4), bias)
    np.testing.assert_allclose(out - x, np.broadcast_to(bias, x.shape), rtol=1e-6, atol=1e-6)


def test_weight_layout_is_out_by_in(x):
    weights = np.zeros((5, 4), np.float32)
    out = apply_dense_with_bias(x, weights, np.zeros(5))
    assert out.shape == (2, 3, 5)
    swapped = np.zeros((4, 5), np.float32)
    swapped[0, 2] = 1.0
    out2 = apply_dense_weight_only(x, swapped)
    np.testing.assert_allclose(out2[..., 0], x[..., 2])


def test_weight_only_converts_dtype(x):
    out = apply_dense_weight_only(x, np.eye(4, dtype=np.float16))
    assert out.dtype == np.float32
    np.testing.assert_allclose(out, x, rtol=1e-6)


def test_relu_zeroes_negatives(x):
    out = activate(x, Activation.RELU)
    assert (out >= 0).all()
    np.testing.assert_array_equal(out[x > 0], x[x > 0])


def test_activation_by_name(x):
    np.testing.assert_allclose(activate(x, "swish"), swish(x))
    np.testing.assert_array_equal(activate(x, "none"), x)
    with pytest.raises(ValueError):
        activate(x, "unknown")


def test_gelu_odd_identity(x):
    np.testing.assert_allclose(gelu(x) - gelu(-x), x, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(swish(x) - swish(-x), x, rtol=1e-5, atol=1e-6)


def test_gelu_approximation_close(x):
    np.testing.assert_allclose(gelu_approximate(x), gelu(x), atol=1e-3)
    assert gelu(np.array([0.0]))[0] == 0.0


def test_gelu_large_values():
    big = np.array([10.0, -10.0])
    np.testing.assert_allclose(gelu(big), [10.0, 0.0], atol=1e-6)


def test_dense_with_bias_scope(x):
    root = Scope()
    scope = _identity_scope(root, "dense", 4)
    np.testing.assert_allclose(dense_with_bias(scope, x), x, rtol=1e-6)
    np.testing.assert_allclose(
        dense_with_bias_and_activation(scope, x, Activation.RELU), np.maximum(x, 0)
    )


def test_dense_with_bias_missing_biases(x):
    scope = Scope().in_("dense")
    scope.set("weights", np.eye(4))
    with pytest.raises(MissingVariableError) as info:
        dense_with_bias(scope, x)
    assert "dense_with_bias" in str(info.value)
    assert "biases" in str(info.value)


def test_dense_weight_only_missing(x):
    with pytest.raises(MissingVariableError):
        dense_weight_only(Scope().in_("q"), x)


def test_mlp_uses_scopes_zero_and_three(x):
    root = Scope().in_("mlp")
    _identity_scope(root, "0", 4)
    _identity_scope(root, "3", 4)
    np.testing.assert_allclose(mlp(root, x), np.maximum(x, 0), rtol=1e-6)
    np.testing.assert_allclose(mlp_with_gelu(root, x), gelu_approximate(x), rtol=1e-6)