"""Attention masks, grouped-query head expansion and scaled dot-product attention."""

from __future__ import annotations

import numpy as np

NEG_INF = -1e9


def create_sliding_window_causal_mask(seq_len: int, window_size: int, dtype=np.float32) -> np.ndarray:
    """Additive mask [1, 1, seq, seq]: 0 where ``j <= i`` and ``i - j < window_size``, -1e9 elsewhere."""
    i = np.arange(seq_len)[:, None]
    j = np.arange(seq_len)[None, :]
    blocked = (j > i) | (i - j >= window_size)
    mask = np.where(blocked, np.float32(NEG_INF), np.float32(0.0)).astype(np.float32)
    return mask.reshape(1, 1, seq_len, seq_len).astype(dtype)


def create_causal_mask(seq_len: int, dtype=np.float32) -> np.ndarray:
    """Additive causal mask [1, 1, seq, seq]: 0 where ``j <= i``, -1e9 elsewhere."""
    i = np.arange(seq_len)[:, None]
    j = np.arange(seq_len)[None, :]
    mask = np.where(j > i, np.float32(NEG_INF), np.float32(0.0)).astype(np.float32)
    return mask.reshape(1, 1, seq_len, seq_len).astype(dtype)


def expand_attention_mask(mask, dtype=np.float32) -> np.ndarray:
    """Turn a [batch, seq] 1/0 padding mask into an additive [batch, 1, 1, seq] mask."""
    mask = np.expand_dims(np.asarray(mask), (1, 2)).astype(dtype)
    one = np.asarray(1.0, dtype=dtype)
    neg_inf = np.asarray(NEG_INF, dtype=dtype)
    return ((one - mask) * neg_inf).astype(dtype, copy=False)


def repeat_kv(x, repeats: int) -> np.ndarray:
    """Repeat key/value heads: [batch, kv_heads, seq, dim] -> [batch, kv_heads*repeats, seq, dim]."""
    x = np.asarray(x)
    if repeats == 1:
        return x
    if x.ndim != 4:
        raise ValueError(f"repeat_kv expects a rank-4 tensor, got shape {x.shape}")
    batch, kv_heads, seq_len, head_dim = x.shape
    expanded = np.broadcast_to(x[:, :, None], (batch, kv_heads, repeats, seq_len, head_dim))
    return expanded.reshape(batch, kv_heads * repeats, seq_len, head_dim)


def _softmax(scores: np.ndarray) -> np.ndarray:
    shifted = scores - scores.max(axis=-1, keepdims=True)
    exps = np.exp(shifted)
    return exps / exps.sum(axis=-1, keepdims=True)


def scaled_dot_product_attention(
    query, key, value, scale: float, mask=None, causal: bool = False
) -> np.ndarray:
    """Multi-head attention over [batch, heads, seq, dim] tensors.

    Key and value may have fewer heads than the query (grouped-query attention).
    A boolean ``mask`` marks positions to attend to; a numeric one is added to the scores.
    """
    query = np.asarray(query)
    key = np.asarray(key)
    value = np.asarray(value)
    heads, kv_heads = query.shape[1], key.shape[1]
    if kv_heads == 0 or heads % kv_heads:
        raise ValueError(f"query heads ({heads}) must be a multiple of key/value heads ({kv_heads})")
    key = repeat_kv(key, heads // kv_heads)
    value = repeat_kv(value, heads // kv_heads)

    scores = np.einsum("bhqd,bhkd->bhqk", query, key) * scale
    if causal:
        q_len, k_len = scores.shape[-2:]
        allowed = np.tril(np.ones((q_len, k_len), dtype=bool))
        scores = np.where(allowed, scores, NEG_INF)
    if mask is not None:
        mask = np.asarray(mask)
        if mask.dtype == np.bool_:
            scores = np.where(mask, scores, NEG_INF)
        else:
            scores = scores + mask
    weights = _softmax(scores)
    output = np.einsum("bhqk,bhkd->bhqd", weights, value)
    return output.astype(np.result_type(query.dtype, value.dtype), copy=False)