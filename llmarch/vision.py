"""CLIP/SigLIP-style vision encoders and the MLP projectors that follow them."""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from llmarch.attention import scaled_dot_product_attention
from llmarch.dense import apply_dense_with_bias, dense_with_bias, gelu, gelu_approximate
from llmarch.modelconfig import ModelConfig
from llmarch.normalization import layer_norm
from llmarch.scope import Scope


@dataclass
class VisionConfig:
    """Hyper-parameters of a vision transformer encoder."""

    hidden_size: int = 0
    num_layers: int = 0
    num_heads: int = 0
    mlp_dim: int = 0
    image_size: int = 0
    patch_size: int = 0
    num_channels: int = 3
    layer_norm_eps: float = 1e-6
    use_gelu: bool = False

    def patches_per_side(self) -> int:
        """Number of patches along one side of the image."""
        if self.patch_size <= 0:
            raise ValueError("patch_size must be positive")
        return self.image_size // self.patch_size

    def num_patches(self) -> int:
        """Total number of image patches."""
        side = self.patches_per_side()
        return side * side

    def head_dim(self) -> int:
        """Per-head dimension of the vision attention."""
        if self.num_heads <= 0:
            raise ValueError("num_heads must be positive")
        return self.hidden_size // self.num_heads


def parse_vision_config(config: ModelConfig, use_gelu: bool = True) -> VisionConfig | None:
    """Read ``vision.*`` settings from ``config``; None when it has no vision encoder."""
    num_layers = config.get_int("vision.block_count")
    if num_layers is None:
        return None
    vc = VisionConfig(num_layers=num_layers, use_gelu=use_gelu)
    for key, attr in (
        ("vision.embedding_length", "hidden_size"),
        ("vision.attention.head_count", "num_heads"),
        ("vision.feed_forward_length", "mlp_dim"),
        ("vision.image_size", "image_size"),
        ("vision.patch_size", "patch_size"),
        ("vision.num_channels", "num_channels"),
    ):
        value = config.get_int(key)
        if value is not None:
            setattr(vc, attr, value)
    eps = config.get_float("vision.attention.layer_norm_epsilon")
    if eps is not None:
        vc.layer_norm_eps = eps
    return vc


def _float32(x) -> np.ndarray:
    x = np.asarray(x)
    return x if x.dtype == np.float32 else x.astype(np.float32)


def patch_embed(scope: Scope, pixel_values, vc: VisionConfig) -> np.ndarray:
    """Cut [batch, channels, height, width] images into patches and project them.

    Uses ``patch_embedding/weights`` shaped [hidden, channels, patch, patch] and
    optional ``patch_embedding/biases``. Returns [batch, num_patches, hidden].
    """
    patch_scope = scope.in_("patch_embedding")
    weights = _float32(patch_scope.require("weights", "patch_embed"))
    biases = patch_scope.get("biases")
    if biases is not None:
        biases = _float32(biases)

    pixels = _float32(pixel_values)
    batch_size = pixels.shape[0]
    patch = vc.patch_size
    grid = vc.patches_per_side()
    channels = vc.num_channels
    patch_dim = patch * patch * channels

    x = pixels.reshape(batch_size, channels, grid, patch, grid, patch)
    x = x.transpose(0, 2, 4, 1, 3, 5).reshape(batch_size, grid * grid, patch_dim)
    weights = weights.reshape(vc.hidden_size, patch_dim)
    return apply_dense_with_bias(x, weights, biases)


def vision_attention(scope: Scope, hidden, vc: VisionConfig) -> np.ndarray:
    """Bidirectional multi-head self-attention with biased projections."""
    hidden = np.asarray(hidden)
    batch_size, seq_len = hidden.shape[0], hidden.shape[1]
    heads = vc.num_heads
    head_dim = vc.head_dim()

    def split_heads(x: np.ndarray) -> np.ndarray:
        return x.reshape(batch_size, seq_len, heads, head_dim).transpose(0, 2, 1, 3)

    query = split_heads(dense_with_bias(scope.in_("attn_q"), hidden))
    key = split_heads(dense_with_bias(scope.in_("attn_k"), hidden))
    value = split_heads(dense_with_bias(scope.in_("attn_v"), hidden))

    output = scaled_dot_product_attention(query, key, value, 1.0 / math.sqrt(head_dim))
    output = output.transpose(0, 2, 1, 3).reshape(batch_size, seq_len, heads * head_dim)
    return dense_with_bias(scope.in_("attn_output"), output)


def vision_mlp(scope: Scope, hidden, vc: VisionConfig) -> np.ndarray:
    """fc1, GELU (approximate when ``vc.use_gelu``), then fc2."""
    hidden = dense_with_bias(scope.in_("fc1"), hidden)
    hidden = gelu_approximate(hidden) if vc.use_gelu else gelu(hidden)
    return dense_with_bias(scope.in_("fc2"), hidden)


def vision_encoder_layer(scope: Scope, hidden, vc: VisionConfig) -> np.ndarray:
    """Pre-norm encoder layer: attention and MLP, each added back to the input."""
    hidden = np.asarray(hidden)
    normalized = layer_norm(scope.in_("layer_norm1"), hidden, vc.layer_norm_eps)
    hidden = hidden + vision_attention(scope, normalized, vc)
    normalized = layer_norm(scope.in_("layer_norm2"), hidden, vc.layer_norm_eps)
    return hidden + vision_mlp(scope.in_("mlp"), normalized, vc)


def build_clip_vision_encoder(scope: Scope, pixel_values, vc: VisionConfig) -> np.ndarray:
    """Encode [batch, channels, height, width] images into [batch, num_patches, hidden]."""
    v_scope = scope.in_("vision")
    hidden = patch_embed(v_scope, pixel_values, vc)

    pos_emb = v_scope.get("position_embeddings")
    if pos_emb is not None:
        pos_emb = _float32(pos_emb)
        num_patches = vc.num_patches()
        if pos_emb.shape[0] != num_patches and pos_emb.shape[1] == num_patches:
            pos_emb = pos_emb.T
        hidden = hidden + pos_emb[None]

    layers = v_scope.in_("layers")
    for i in range(vc.num_layers):
        hidden = vision_encoder_layer(layers.in_(i), hidden, vc)

    return layer_norm(v_scope.in_("post_layernorm"), hidden, vc.layer_norm_eps)


def mlp_projector(
    scope: Scope, hidden, num_layers: int, activation: Callable[[np.ndarray], np.ndarray]
) -> np.ndarray:
    """Stack of biased dense layers in sub-scopes 0, 2, 4, ... with ``activation`` between."""
    for i in range(num_layers):
        hidden = dense_with_bias(scope.in_(i * 2), hidden)
        if i < num_layers - 1:
            hidden = activation(hidden)
    return np.asarray(hidden)