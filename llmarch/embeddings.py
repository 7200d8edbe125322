"""Token embeddings, absolute/relative/rotary position encodings and position ids."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from llmarch.scope import Scope

MAX_RELATIVE_POSITIONS = 256


def embedding_from_table(input_ids, table) -> np.ndarray:
    """Look up rows of ``table`` for ``input_ids``; the result is float32.

    A trailing axis of size 1 on ``input_ids`` is taken as the index axis.
    Two-dimensional results gain a sequence axis so that the output is
    [batch, seq, hidden].
    """
    table = np.asarray(table)
    ids = np.asarray(input_ids)
    if not np.issubdtype(ids.dtype, np.integer):
        raise TypeError(f"input ids must be integers, not {ids.dtype}")
    if ids.ndim > 0 and ids.shape[-1] == 1:
        ids = ids[..., 0]
    vocab_size = table.shape[0]
    if ids.size and (ids.min() < 0 or ids.max() >= vocab_size):
        raise IndexError(f"token id out of range for a vocabulary of {vocab_size}")
    embeddings = table[ids]
    if embeddings.dtype != np.float32:
        embeddings = embeddings.astype(np.float32)
    if embeddings.ndim == 2:
        embeddings = embeddings[:, None, :]
    return embeddings


def embedding(scope: Scope, input_ids) -> np.ndarray:
    """Look up ``input_ids`` in the ``embeddings`` variable of ``scope``."""
    table = scope.require("embeddings", "embedding")
    return embedding_from_table(input_ids, table)


def absolute_position_embedding(scope: Scope, x, seq_len: int) -> np.ndarray:
    """Add the first ``seq_len`` rows of ``position_embeddings`` to ``x``, if present."""
    pos_emb = scope.get("position_embeddings")
    x = np.asarray(x)
    if pos_emb is None:
        return x
    if seq_len > pos_emb.shape[0]:
        raise ValueError(
            f"sequence length {seq_len} exceeds {pos_emb.shape[0]} position embeddings"
        )
    return x + pos_emb[:seq_len]


def build_relative_position_embeddings(rel_embeddings, seq_len: int) -> np.ndarray:
    """Return [seq, seq, hidden] embeddings of the relative position ``query - key``.

    Relative positions are clamped to [-256, 255] and shifted into [0, 511].
    """
    rel_embeddings = np.asarray(rel_embeddings)
    positions = np.arange(seq_len)
    relative = positions[:, None] - positions[None, :]
    relative = np.clip(relative, -MAX_RELATIVE_POSITIONS, MAX_RELATIVE_POSITIONS - 1)
    indices = relative + MAX_RELATIVE_POSITIONS
    if rel_embeddings.shape[0] <= int(indices.max(initial=0)):
        raise IndexError(
            f"relative embeddings have {rel_embeddings.shape[0]} rows, "
            f"need {2 * MAX_RELATIVE_POSITIONS}"
        )
    return rel_embeddings[indices]


@dataclass
class RoPEConfig:
    """Settings of a rotary position embedding.

    ``rotary_dim`` of 0 rotates the whole head. ``long_factors`` and
    ``short_factors`` are per-frequency divisors chosen by comparing the
    sequence length with ``orig_max_seq_len``; otherwise a ``scaling_factor``
    above 1 divides every frequency.
    """

    theta: float
    head_dim: int
    rotary_dim: int = 0
    scaling_factor: float = 0.0
    long_factors: Sequence[float] | None = None
    short_factors: Sequence[float] | None = None
    orig_max_seq_len: int = 0


def _divide_by_factors(inv_freq: np.ndarray, factors: Sequence[float]) -> np.ndarray:
    factors = np.asarray(factors, dtype=np.float32)
    if factors.shape[0] < inv_freq.shape[0]:
        raise ValueError(
            f"need {inv_freq.shape[0]} RoPE factors, got {factors.shape[0]}"
        )
    return inv_freq / factors[: inv_freq.shape[0]]


def _rotate(x: np.ndarray, sin: np.ndarray, cos: np.ndarray, rotary_dim: int) -> np.ndarray:
    half = rotary_dim // 2
    x1 = x[..., :half]
    x2 = x[..., half:rotary_dim]
    parts = [x1 * cos - x2 * sin, x2 * cos + x1 * sin]
    if rotary_dim < x.shape[-1]:
        parts.append(x[..., rotary_dim:])
    return np.concatenate(parts, axis=-1)


def rope_with_config(query, key, position_ids, seq_len: int, cfg: RoPEConfig):
    """Apply rotary position embedding to [batch, heads, seq, head_dim] tensors.

    ``position_ids`` is [batch, seq], or None for positions 0..seq_len-1.
    Returns the rotated (query, key).
    """
    query = np.asarray(query)
    key = np.asarray(key)
    rotary_dim = cfg.rotary_dim if cfg.rotary_dim > 0 else cfg.head_dim
    half = rotary_dim // 2

    exponents = np.arange(half, dtype=np.float64) * 2 / rotary_dim
    inv_freq = (1.0 / np.power(float(cfg.theta), exponents)).astype(np.float32)

    if cfg.long_factors is not None and seq_len > cfg.orig_max_seq_len:
        inv_freq = _divide_by_factors(inv_freq, cfg.long_factors)
    elif cfg.short_factors is not None and seq_len <= cfg.orig_max_seq_len:
        inv_freq = _divide_by_factors(inv_freq, cfg.short_factors)
    elif cfg.scaling_factor > 1.0:
        inv_freq = inv_freq / np.float32(cfg.scaling_factor)

    if position_ids is not None:
        positions = np.asarray(position_ids).astype(np.float32)
        positions = positions.reshape(positions.shape[0], seq_len, 1)
    else:
        positions = np.arange(seq_len, dtype=np.float32).reshape(1, seq_len, 1)

    freqs = positions * inv_freq.reshape(1, 1, half)
    sin = np.sin(freqs)[:, None]
    cos = np.cos(freqs)[:, None]

    def rotate(x: np.ndarray) -> np.ndarray:
        dtype = x.dtype if np.issubdtype(x.dtype, np.floating) else np.float32
        return _rotate(x.astype(dtype, copy=False), sin.astype(dtype), cos.astype(dtype), rotary_dim)

    return rotate(query), rotate(key)


def rope(query, key, position_ids, theta: float, seq_len: int, head_dim: int,
         scaling_factor: float = 0.0):
    """Apply rotary position embedding with base ``theta`` and optional linear scaling."""
    cfg = RoPEConfig(theta=theta, head_dim=head_dim, scaling_factor=scaling_factor)
    return rope_with_config(query, key, position_ids, seq_len, cfg)


def get_position_ids(batch_size: int, seq_len: int) -> np.ndarray:
    """Return int32 position ids 0..seq_len-1 repeated for each batch row."""
    positions = np.arange(seq_len, dtype=np.int32).reshape(1, seq_len)
    return np.broadcast_to(positions, (batch_size, seq_len)).copy()


def create_sinusoidal_position_embedding(max_len: int, hidden_size: int,
                                         dtype=np.float32) -> np.ndarray:
    """Return [max_len, hidden_size] sinusoidal embeddings: sine on even, cosine on odd columns."""
    pos = np.arange(max_len, dtype=np.float64)[:, None]
    columns = np.arange(hidden_size)
    even_exponent = (columns - columns % 2) / hidden_size
    angles = pos / np.power(10000.0, even_exponent)[None, :]
    table = np.where(columns % 2 == 0, np.sin(angles), np.cos(angles)).astype(np.float32)
    return table.reshape(max_len, hidden_size).astype(dtype)


def get_or_create_variable(scope: Scope, name: str, shape) -> np.ndarray:
    """Return the variable ``name`` of ``scope``, creating it zero-filled with ``shape`` if absent."""
    existing = scope.get(name)
    if existing is not None:
        return existing
    if isinstance(shape, int):
        shape = (shape,)
    return scope.set(name, np.zeros(tuple(shape), dtype=np.float32))