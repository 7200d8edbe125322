"""Layer normalization and RMS normalization."""

from __future__ import annotations

import numpy as np

from llmarch.scope import Scope


def _as_float_array(x) -> np.ndarray:
    x = np.asarray(x)
    if not np.issubdtype(x.dtype, np.floating):
        x = x.astype(np.float32)
    return x


def apply_layer_norm(x, gain, offset, epsilon: float) -> np.ndarray:
    """Normalize ``x`` over its last axis, then scale by ``gain`` and shift by ``offset``."""
    x = _as_float_array(x)
    mean = x.mean(axis=-1, keepdims=True)
    variance = np.square(x - mean).mean(axis=-1, keepdims=True)
    normalized = (x - mean) / np.sqrt(variance + epsilon)
    result = normalized * np.asarray(gain) + np.asarray(offset)
    return result.astype(x.dtype, copy=False)


def layer_norm(scope: Scope, x, epsilon: float) -> np.ndarray:
    """Layer normalization using the ``gain`` and ``offset`` variables of ``scope``."""
    gain = scope.require("gain", "layer_norm")
    offset = scope.require("offset", "layer_norm")
    return apply_layer_norm(x, gain, offset, epsilon)


def apply_rms_norm(x, weight, epsilon: float) -> np.ndarray:
    """Divide ``x`` by the root mean square of its last axis and scale by ``weight``."""
    x = _as_float_array(x)
    variance = np.square(x).mean(axis=-1, keepdims=True)
    rms = np.sqrt(variance + x.dtype.type(epsilon))
    normalized = x / rms
    weight = np.asarray(weight)
    if weight.dtype != x.dtype:
        weight = weight.astype(x.dtype)
    weight = weight.reshape((1,) * (x.ndim - 1) + (weight.shape[0],))
    return (normalized * weight).astype(x.dtype, copy=False)


def rms_norm(scope: Scope, x, epsilon: float) -> np.ndarray:
    """RMS normalization using the ``weight`` variable of ``scope``."""
    weight = scope.require("weight", "rms_norm")
    return apply_rms_norm(x, weight, epsilon)