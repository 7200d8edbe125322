"""Dense (linear) layers with weights in [out_features, in_features] layout."""

from __future__ import annotations

import math
from enum import Enum

import numpy as np

from llmarch.scope import Scope

_erf = np.vectorize(math.erf, otypes=[np.float64])


class Activation(str, Enum):
    """Activation functions a dense layer can apply to its output."""

    NONE = "none"
    RELU = "relu"
    GELU = "gelu"
    GELU_APPROX = "gelu_approx"
    SWISH = "swish"


def _as_float_array(x) -> np.ndarray:
    x = np.asarray(x)
    if not np.issubdtype(x.dtype, np.floating):
        x = x.astype(np.float32)
    return x


def gelu(x) -> np.ndarray:
    """Exact GELU: x * Phi(x)."""
    x = _as_float_array(x)
    return (0.5 * x * (1.0 + _erf(x / math.sqrt(2.0)))).astype(x.dtype, copy=False)


def gelu_approximate(x) -> np.ndarray:
    """GELU using the tanh approximation."""
    x = _as_float_array(x)
    inner = math.sqrt(2.0 / math.pi) * (x + 0.044715 * x**3)
    return (0.5 * x * (1.0 + np.tanh(inner))).astype(x.dtype, copy=False)


def swish(x) -> np.ndarray:
    """Swish (SiLU): x * sigmoid(x)."""
    x = _as_float_array(x)
    return (x / (1.0 + np.exp(-x))).astype(x.dtype, copy=False)


def activate(x, activation: Activation | str) -> np.ndarray:
    """Apply the named activation to ``x``."""
    activation = Activation(activation)
    if activation is Activation.NONE:
        return np.asarray(x)
    if activation is Activation.RELU:
        return np.maximum(np.asarray(x), 0)
    if activation is Activation.GELU:
        return gelu(x)
    if activation is Activation.GELU_APPROX:
        return gelu_approximate(x)
    return swish(x)


def apply_dense_with_bias(
    x, weights, biases, activation: Activation | str = Activation.NONE
) -> np.ndarray:
    """Compute ``activation(x @ weights.T + biases)`` for weights shaped [out, in]."""
    x = _as_float_array(x)
    weights = np.asarray(weights)
    result = x @ weights.T
    if biases is not None:
        result = result + np.asarray(biases)
    return activate(result, activation)


def dense_with_bias(scope: Scope, x) -> np.ndarray:
    """Dense layer using the ``weights`` and ``biases`` variables of ``scope``."""
    weights = scope.require("weights", "dense_with_bias")
    biases = scope.require("biases", "dense_with_bias")
    return apply_dense_with_bias(x, weights, biases)


def dense_with_bias_and_activation(
    scope: Scope, x, activation: Activation | str
) -> np.ndarray:
    """Dense layer with bias followed by ``activation``."""
    weights = scope.require("weights", "dense_with_bias_and_activation")
    biases = scope.require("biases", "dense_with_bias_and_activation")
    return apply_dense_with_bias(x, weights, biases, activation)


def apply_dense_weight_only(x, weights) -> np.ndarray:
    """Compute ``x @ weights.T``, converting the weights to the dtype of ``x``."""
    x = _as_float_array(x)
    weights = np.asarray(weights)
    if weights.dtype != x.dtype:
        weights = weights.astype(x.dtype)
    return x @ weights.T


def dense_weight_only(scope: Scope, x) -> np.ndarray:
    """Bias-free dense layer using the ``weights`` variable of ``scope``."""
    weights = scope.require("weights", "dense_weight_only")
    return apply_dense_weight_only(x, weights)


def mlp(scope: Scope, x) -> np.ndarray:
    """Two-layer MLP with ReLU; layers live in sub-scopes ``0`` and ``3``."""
    x = dense_with_bias_and_activation(scope.in_("0"), x, Activation.RELU)
    return dense_with_bias(scope.in_("3"), x)


def mlp_with_gelu(scope: Scope, x) -> np.ndarray:
    """Two-layer MLP with approximate GELU; layers live in sub-scopes ``0`` and ``3``."""
    x = dense_with_bias_and_activation(scope.in_("0"), x, Activation.GELU_APPROX)
    return dense_with_bias(scope.in_("3"), x)