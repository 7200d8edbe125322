"""DeBERTa v2/v3 encoders with disentangled content/position attention."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from llmarch.attention import expand_attention_mask
from llmarch.dense import dense_with_bias, gelu_approximate
from llmarch.embeddings import (
    MAX_RELATIVE_POSITIONS,
    build_relative_position_embeddings,
    embedding,
)
from llmarch.modelconfig import ModelConfig
from llmarch.normalization import layer_norm
from llmarch.scope import Scope

_PREFIX = "deberta"


def _softmax(scores: np.ndarray) -> np.ndarray:
    shifted = scores - scores.max(axis=-1, keepdims=True)
    exps = np.exp(shifted)
    return exps / exps.sum(axis=-1, keepdims=True)


@dataclass
class DebertaConfig:
    """DeBERTa-specific settings on top of the common model configuration."""

    base: ModelConfig
    relative_attention: bool = False
    pos_att_type: list[str] = field(default_factory=lambda: ["c2p", "p2c"])
    max_relative_positions: int = MAX_RELATIVE_POSITIONS
    norm_rel_ebd: list[str] = field(default_factory=list)
    share_att_key: bool = False
    position_biased_input: bool = False
    position_buckets: int = 0

    @classmethod
    def from_base(cls, base: ModelConfig) -> DebertaConfig:
        """Read the DeBERTa fields from the raw configuration of ``base``."""
        config = cls(base=base)
        value = base.get_bool("relative_attention")
        if value is not None:
            config.relative_attention = value
        pos_att_type = base.get_string_list("pos_att_type")
        if pos_att_type is not None:
            config.pos_att_type = pos_att_type
        max_rel = base.get_int("max_relative_positions")
        if max_rel is not None:
            config.max_relative_positions = max_rel
        norm_rel = base.get_string_list("norm_rel_ebd")
        if norm_rel is not None:
            config.norm_rel_ebd = norm_rel
        value = base.get_bool("share_att_key")
        if value is not None:
            config.share_att_key = value
        value = base.get_bool("position_biased_input")
        if value is not None:
            config.position_biased_input = value
        buckets = base.get_int("position_buckets")
        if buckets is not None:
            config.position_buckets = buckets
        return config

    def uses_c2p(self) -> bool:
        """Whether content-to-position attention is enabled."""
        return "c2p" in self.pos_att_type

    def uses_p2c(self) -> bool:
        """Whether position-to-content attention is enabled."""
        return "p2c" in self.pos_att_type

    def normalize_relative_embeddings(self) -> bool:
        """Whether relative embeddings pass through a layer norm."""
        return "layer_norm" in self.norm_rel_ebd

    def num_attention_components(self) -> int:
        """Number of attention score components (content-to-content always counts)."""
        return 1 + int(self.uses_c2p()) + int(self.uses_p2c())


class DebertaBuilder:
    """Builds the forward pass of a DeBERTa encoder from variables held in a Scope."""

    def __init__(self, base: ModelConfig) -> None:
        self.config = DebertaConfig.from_base(base)

    @property
    def base(self) -> ModelConfig:
        return self.config.base

    def name(self) -> str:
        """Return the architecture name."""
        return "DeBERTa"

    def weight_mapping(self) -> dict[str, str]:
        """Return the mapping from checkpoint tensor names to scope paths."""
        prefix = _PREFIX
        mapping = {
            f"{prefix}.embeddings.word_embeddings.weight": "embeddings/embeddings",
            f"{prefix}.embeddings.LayerNorm.weight": "embeddings/layer_norm/gain",
            f"{prefix}.embeddings.LayerNorm.bias": "embeddings/layer_norm/offset",
            f"{prefix}.encoder.rel_embeddings.weight": "encoder/rel_embeddings/embeddings",
        }
        if self.config.normalize_relative_embeddings():
            mapping[f"{prefix}.encoder.LayerNorm.weight"] = "encoder/layer_norm/gain"
            mapping[f"{prefix}.encoder.LayerNorm.bias"] = "encoder/layer_norm/offset"

        layer_parts = {
            "attention.self.query_proj.weight": "attention/query/weights",
            "attention.self.query_proj.bias": "attention/query/biases",
            "attention.self.key_proj.weight": "attention/key/weights",
            "attention.self.key_proj.bias": "attention/key/biases",
            "attention.self.value_proj.weight": "attention/value/weights",
            "attention.self.value_proj.bias": "attention/value/biases",
            "attention.output.dense.weight": "attention/output/dense/weights",
            "attention.output.dense.bias": "attention/output/dense/biases",
            "attention.output.LayerNorm.weight": "attention/output/layer_norm/gain",
            "attention.output.LayerNorm.bias": "attention/output/layer_norm/offset",
            "intermediate.dense.weight": "ff/intermediate/weights",
            "intermediate.dense.bias": "ff/intermediate/biases",
            "output.dense.weight": "ff/output/weights",
            "output.dense.bias": "ff/output/biases",
            "output.LayerNorm.weight": "ff/layer_norm/gain",
            "output.LayerNorm.bias": "ff/layer_norm/offset",
        }
        for i in range(self.base.num_hidden_layers):
            layer_prefix = f"{prefix}.encoder.layer.{i}"
            layer_scope = f"encoder/layer/{i}"
            for source, destination in layer_parts.items():
                mapping[f"{layer_prefix}.{source}"] = f"{layer_scope}/{destination}"
        return mapping

    def build_embeddings(self, scope: Scope, input_ids) -> np.ndarray:
        """Word embeddings followed by layer norm (no absolute positions)."""
        emb_scope = scope.in_("embeddings")
        hidden = embedding(emb_scope, input_ids)
        return layer_norm(emb_scope.in_("layer_norm"), hidden, self.base.layer_norm_eps)

    def build_relative_embeddings(self, scope: Scope, seq_len: int) -> np.ndarray:
        """Return [seq, seq, hidden] relative position embeddings, normalized if configured."""
        enc_scope = scope.in_("encoder")
        rel_emb = enc_scope.in_("rel_embeddings").require(
            "embeddings", "build_relative_embeddings"
        )
        if self.config.normalize_relative_embeddings():
            rel_emb = layer_norm(enc_scope.in_("layer_norm"), rel_emb, self.base.layer_norm_eps)
        return build_relative_position_embeddings(rel_emb, seq_len)

    def build_disentangled_attention(
        self, scope: Scope, hidden, attention_mask, rel_pos_emb
    ) -> np.ndarray:
        """Self-attention summing content and relative-position score components.

        Returns the attention output before its output projection: [batch, seq, hidden].
        """
        cfg = self.config
        base = self.base
        hidden = np.asarray(hidden)
        attn_scope = scope.in_("attention")
        query_scope = attn_scope.in_("query")
        key_scope = attn_scope.in_("key")

        batch_size, seq_len = hidden.shape[0], hidden.shape[1]
        heads = base.num_attention_heads
        head_dim = base.head_dim()

        def split_heads(x: np.ndarray) -> np.ndarray:
            return x.reshape(batch_size, seq_len, heads, head_dim).transpose(0, 2, 1, 3)

        query = split_heads(dense_with_bias(query_scope, hidden))
        key = split_heads(dense_with_bias(key_scope, hidden))
        value = split_heads(dense_with_bias(attn_scope.in_("value"), hidden))

        scores = np.einsum("bhqd,bhkd->bhqk", query, key)

        if cfg.uses_c2p() or cfg.uses_p2c():
            rel = np.asarray(rel_pos_emb)
            caller = "build_disentangled_attention"
            query_weights = query_scope.require("weights", caller)
            query_biases = query_scope.require("biases", caller)
            key_weights = key_scope.require("weights", caller)
            key_biases = key_scope.require("biases", caller)

            rel_key = np.einsum("qkh,oh->qko", rel, key_weights) + np.asarray(key_biases)
            rel_query = np.einsum("qkh,oh->qko", rel, query_weights) + np.asarray(query_biases)
            rel_key = rel_key.reshape(seq_len, seq_len, heads, head_dim)
            rel_query = rel_query.reshape(seq_len, seq_len, heads, head_dim)

            if cfg.uses_c2p():
                scores = scores + np.einsum("bhqd,qkhd->bhqk", query, rel_key)
            if cfg.uses_p2c():
                scores = scores + np.einsum("qkhd,bhkd->bhqk", rel_query, key)

        scale = np.sqrt(1.0 / (head_dim * cfg.num_attention_components()))
        scores = scores * scores.dtype.type(scale)

        if attention_mask is not None:
            scores = scores + expand_attention_mask(attention_mask, scores.dtype)

        weights = _softmax(scores)
        output = np.einsum("bhqk,bhkd->bhqd", weights, value)
        output = output.transpose(0, 2, 1, 3).reshape(batch_size, seq_len, base.hidden_size)
        return output.astype(hidden.dtype, copy=False)

    def build_encoder_layer(
        self, scope: Scope, hidden, attention_mask, rel_pos_emb
    ) -> np.ndarray:
        """One encoder layer: disentangled attention and feed-forward, each with residual."""
        eps = self.base.layer_norm_eps
        hidden = np.asarray(hidden)

        residual = hidden
        attn_output = self.build_disentangled_attention(scope, hidden, attention_mask, rel_pos_emb)
        output_scope = scope.in_("attention").in_("output")
        attn_output = dense_with_bias(output_scope.in_("dense"), attn_output)
        hidden = layer_norm(output_scope.in_("layer_norm"), residual + attn_output, eps)

        ff_scope = scope.in_("ff")
        residual = hidden
        hidden = dense_with_bias(ff_scope.in_("intermediate"), hidden)
        hidden = gelu_approximate(hidden)
        hidden = dense_with_bias(ff_scope.in_("output"), hidden)
        return layer_norm(ff_scope.in_("layer_norm"), residual + hidden, eps)

    def build_encoder(self, scope: Scope, hidden, attention_mask=None) -> np.ndarray:
        """Build relative embeddings once and run every encoder layer."""
        hidden = np.asarray(hidden)
        rel_pos_emb = self.build_relative_embeddings(scope, hidden.shape[1])
        layers = scope.in_("encoder").in_("layer")
        for i in range(self.base.num_hidden_layers):
            hidden = self.build_encoder_layer(layers.in_(i), hidden, attention_mask, rel_pos_emb)
        return hidden

    def forward(self, scope: Scope, input_ids, attention_mask=None) -> np.ndarray:
        """Return the last hidden state [batch, seq, hidden]."""
        hidden = self.build_embeddings(scope, input_ids)
        return self.build_encoder(scope, hidden, attention_mask)

    def variable_shape(self, name: str) -> tuple[int, ...]:
        """Return the expected shape of a variable by name, or () when unknown."""
        base = self.base
        if "word_embeddings" in name:
            return (base.vocab_size, base.hidden_size)
        if "rel_embeddings" in name:
            return (2 * MAX_RELATIVE_POSITIONS, base.hidden_size)
        if "query" in name or "key" in name or "value" in name:
            if name.endswith("weights"):
                return (base.hidden_size, base.hidden_size)
            return (base.hidden_size,)
        if "intermediate" in name:
            if name.endswith("weights"):
                return (base.intermediate_size, base.hidden_size)
            return (base.intermediate_size,)
        return ()