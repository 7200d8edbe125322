"""Llama/Mistral decoders with rotary positions, RMS norm, SwiGLU and grouped-query attention."""

from __future__ import annotations

import math

import numpy as np

from llmarch.attention import (
    create_causal_mask,
    expand_attention_mask,
    scaled_dot_product_attention,
)
from llmarch.dense import dense_weight_only, gelu_approximate, swish
from llmarch.embeddings import embedding, get_position_ids, rope
from llmarch.llama_config import LlamaConfig, gguf_weight_mapping, hf_weight_mapping
from llmarch.modelconfig import ModelConfig
from llmarch.normalization import rms_norm
from llmarch.scope import MissingVariableError, Scope
from llmarch.vision import (
    VisionConfig,
    build_clip_vision_encoder,
    mlp_projector,
    parse_vision_config,
)

_DEFAULT_PROJECTOR_LAYERS = 2


class LlamaBuilder:
    """Builds the forward pass of a Llama decoder (optionally with a LLaVA vision tower)."""

    def __init__(self, base: ModelConfig) -> None:
        self.config = LlamaConfig.from_base(base)
        self.vision_config: VisionConfig | None = parse_vision_config(base, use_gelu=True)
        self.projector_layers = 0
        self.image_token_id = 0
        if self.vision_config is not None:
            self.projector_layers = _DEFAULT_PROJECTOR_LAYERS
            token_id = base.get_int("image_token_id")
            if token_id is not None:
                self.image_token_id = token_id

    @property
    def base(self) -> ModelConfig:
        return self.config.base

    def name(self) -> str:
        """Return the architecture name."""
        return "Llama"

    def weight_mapping(self, gguf: bool = True) -> dict[str, str]:
        """Return the GGUF (default) or Hugging Face tensor-name to scope-path mapping."""
        if gguf:
            return gguf_weight_mapping(self.config, self.vision_config, self.projector_layers)
        return hf_weight_mapping(self.config)

    def build_embeddings(self, scope: Scope, input_ids) -> np.ndarray:
        """Token embeddings [batch, seq, hidden] from ``embeddings/embeddings``."""
        return embedding(scope.in_("embeddings"), input_ids)

    def build_attention(
        self, scope: Scope, hidden, attention_mask=None, position_ids=None
    ) -> np.ndarray:
        """Causal self-attention with rotary positions and grouped key/value heads."""
        cfg = self.config
        base = self.base
        hidden = np.asarray(hidden)
        attn_scope = scope.in_("attention")

        batch_size, seq_len = hidden.shape[0], hidden.shape[1]
        heads = base.num_attention_heads
        head_dim = base.head_dim()
        kv_heads = cfg.kv_heads()

        def split_heads(x: np.ndarray, count: int) -> np.ndarray:
            return x.reshape(batch_size, seq_len, count, head_dim).transpose(0, 2, 1, 3)

        query = split_heads(dense_weight_only(attn_scope.in_("query"), hidden), heads)
        key = split_heads(dense_weight_only(attn_scope.in_("key"), hidden), kv_heads)
        value = split_heads(dense_weight_only(attn_scope.in_("value"), hidden), kv_heads)

        query, key = rope(query, key, position_ids, cfg.rope_theta, seq_len, head_dim)

        dtype = query.dtype
        mask = create_causal_mask(seq_len, dtype)
        if attention_mask is not None:
            mask = mask + expand_attention_mask(attention_mask, dtype)

        output = scaled_dot_product_attention(
            query, key, value, 1.0 / math.sqrt(head_dim), mask
        )
        output = output.transpose(0, 2, 1, 3).reshape(batch_size, seq_len, base.hidden_size)
        return dense_weight_only(attn_scope.in_("output"), output)

    def build_mlp(self, scope: Scope, hidden) -> np.ndarray:
        """SwiGLU feed-forward: down(swish(gate(x)) * up(x))."""
        mlp_scope = scope.in_("mlp")
        gate = dense_weight_only(mlp_scope.in_("gate"), hidden)
        up = dense_weight_only(mlp_scope.in_("up"), hidden)
        return dense_weight_only(mlp_scope.in_("down"), swish(gate) * up)

    def build_decoder_layer(
        self, scope: Scope, hidden, attention_mask=None, position_ids=None
    ) -> np.ndarray:
        """Pre-norm decoder layer: attention and MLP, each added back to the input."""
        eps = self.config.rms_norm_eps
        hidden = np.asarray(hidden)
        normalized = rms_norm(scope.in_("input_norm"), hidden, eps)
        hidden = hidden + self.build_attention(scope, normalized, attention_mask, position_ids)
        normalized = rms_norm(scope.in_("post_attn_norm"), hidden, eps)
        return hidden + self.build_mlp(scope, normalized)

    def build_decoder(
        self, scope: Scope, hidden, attention_mask=None, position_ids=None
    ) -> np.ndarray:
        """Run every decoder layer, then the final RMS norm."""
        layers = scope.in_("layers")
        for i in range(self.base.num_hidden_layers):
            hidden = self.build_decoder_layer(layers.in_(i), hidden, attention_mask, position_ids)
        return rms_norm(scope.in_("norm"), hidden, self.config.rms_norm_eps)

    def forward(
        self, scope: Scope, input_ids, attention_mask=None, position_ids=None
    ) -> np.ndarray:
        """Return the final normalized hidden state [batch, seq, hidden]."""
        ids = np.asarray(input_ids)
        hidden = self.build_embeddings(scope, ids)
        if position_ids is None:
            position_ids = get_position_ids(ids.shape[0], ids.shape[1])
        return self.build_decoder(scope, hidden, attention_mask, position_ids)

    def apply_lm_head(self, scope: Scope, hidden) -> np.ndarray:
        """Project hidden states to vocabulary logits, falling back to tied embeddings."""
        lm_head_scope = scope.in_("lm_head")
        if lm_head_scope.get("weights") is not None:
            return dense_weight_only(lm_head_scope, hidden)

        emb_scope = scope.in_("embeddings")
        table = emb_scope.get("embeddings")
        if table is None:
            raise MissingVariableError("apply_lm_head", "embeddings", emb_scope.path)
        hidden = np.asarray(hidden)
        table = np.asarray(table)
        if table.dtype != hidden.dtype:
            table = table.astype(hidden.dtype)
        batch_size, seq_len = hidden.shape[0], hidden.shape[1]
        flat = hidden.reshape(batch_size * seq_len, self.base.hidden_size)
        logits = flat @ table.T
        return logits.reshape(batch_size, seq_len, table.shape[0])

    def variable_shape(self, name: str) -> tuple[int, ...]:
        """Return the expected shape of a checkpoint tensor by name, or () when unknown."""
        base = self.base
        if "embed_tokens" in name:
            return (base.vocab_size, base.hidden_size)
        if "q_proj" in name:
            return (base.hidden_size, base.hidden_size)
        if "k_proj" in name or "v_proj" in name:
            return (self.config.kv_heads() * base.head_dim(), base.hidden_size)
        if "gate_proj" in name or "up_proj" in name:
            return (base.intermediate_size, base.hidden_size)
        if "down_proj" in name:
            return (base.hidden_size, base.intermediate_size)
        return ()

    def has_vision(self) -> bool:
        """Whether the configuration describes a vision encoder."""
        return self.vision_config is not None

    def num_image_tokens(self) -> int:
        """Number of image placeholder tokens: every patch, or 0 without vision."""
        if self.vision_config is None:
            return 0
        return self.vision_config.num_patches()

    def _require_vision(self) -> VisionConfig:
        if self.vision_config is None:
            raise ValueError("this model has no vision encoder")
        return self.vision_config

    def build_vision_encoder(self, scope: Scope, pixel_values) -> np.ndarray:
        """Encode [batch, channels, height, width] images into [batch, patches, vision_hidden]."""
        return build_clip_vision_encoder(scope, pixel_values, self._require_vision())

    def build_multimodal_projector(self, scope: Scope, vision_features) -> np.ndarray:
        """Project vision features into the text embedding space with the MLP projector."""
        self._require_vision()
        return mlp_projector(
            scope.in_("mm"), vision_features, self.projector_layers, gelu_approximate
        )