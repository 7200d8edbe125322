"""BERT-style encoders (BERT, RoBERTa, DistilBERT) with absolute position embeddings."""

from __future__ import annotations

import numpy as np

from llmarch.attention import expand_attention_mask, scaled_dot_product_attention
from llmarch.dense import Activation, dense_with_bias, dense_with_bias_and_activation
from llmarch.embeddings import embedding, embedding_from_table, get_position_ids
from llmarch.modelconfig import ModelConfig
from llmarch.normalization import layer_norm
from llmarch.scope import Scope

_PREFIX = "bert"


class BertBuilder:
    """Builds the forward pass of a BERT encoder from variables held in a Scope."""

    def __init__(self, config: ModelConfig, is_distilbert: bool = False) -> None:
        self.config = config
        self.is_distilbert = is_distilbert

    def name(self) -> str:
        """Return the architecture name."""
        return "DistilBERT" if self.is_distilbert else "BERT"

    def weight_mapping(self) -> dict[str, str]:
        """Return the mapping from checkpoint tensor names to scope paths."""
        prefix = _PREFIX
        mapping = {
            f"{prefix}.embeddings.word_embeddings.weight": "embeddings/embeddings",
            f"{prefix}.embeddings.position_embeddings.weight": "embeddings/position_embeddings",
            f"{prefix}.embeddings.token_type_embeddings.weight": "embeddings/token_type_embeddings",
            f"{prefix}.embeddings.LayerNorm.weight": "embeddings/layer_norm/gain",
            f"{prefix}.embeddings.LayerNorm.bias": "embeddings/layer_norm/offset",
        }
        layer_parts = {
            "attention.self.query.weight": "attention/query/weights",
            "attention.self.query.bias": "attention/query/biases",
            "attention.self.key.weight": "attention/key/weights",
            "attention.self.key.bias": "attention/key/biases",
            "attention.self.value.weight": "attention/value/weights",
            "attention.self.value.bias": "attention/value/biases",
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
        for i in range(self.config.num_hidden_layers):
            layer_prefix = f"{prefix}.encoder.layer.{i}"
            layer_scope = f"encoder/layer/{i}"
            for source, destination in layer_parts.items():
                mapping[f"{layer_prefix}.{source}"] = f"{layer_scope}/{destination}"

        mapping[f"{prefix}.pooler.dense.weight"] = "pooler/weights"
        mapping[f"{prefix}.pooler.dense.bias"] = "pooler/biases"
        return mapping

    def build_embeddings(
        self, scope: Scope, input_ids, token_type_ids=None, position_ids=None
    ) -> np.ndarray:
        """Word + position (+ token type) embeddings, layer-normalized: [batch, seq, hidden]."""
        emb_scope = scope.in_("embeddings")
        ids = np.asarray(input_ids)
        batch_size, seq_len = ids.shape[0], ids.shape[1]

        hidden = embedding(emb_scope, ids)

        if position_ids is None:
            position_ids = get_position_ids(batch_size, seq_len)
        position_table = emb_scope.require("position_embeddings", "build_embeddings")
        positions = np.asarray(position_ids).reshape(batch_size, seq_len)
        hidden = hidden + embedding_from_table(positions, position_table)

        if token_type_ids is not None:
            type_table = emb_scope.require("token_type_embeddings", "build_embeddings")
            types = np.asarray(token_type_ids).reshape(batch_size, seq_len)
            hidden = hidden + embedding_from_table(types, type_table)

        return layer_norm(emb_scope.in_("layer_norm"), hidden, self.config.layer_norm_eps)

    def build_encoder_layer(self, scope: Scope, hidden, attention_mask=None) -> np.ndarray:
        """One encoder layer: self-attention and feed-forward, each with residual and layer norm."""
        cfg = self.config
        hidden = np.asarray(hidden)
        attn_scope = scope.in_("attention")
        residual = hidden

        batch_size, seq_len = hidden.shape[0], hidden.shape[1]
        heads = cfg.num_attention_heads
        head_dim = cfg.head_dim()

        def split_heads(x: np.ndarray) -> np.ndarray:
            return x.reshape(batch_size, seq_len, heads, head_dim).transpose(0, 2, 1, 3)

        query = split_heads(dense_with_bias(attn_scope.in_("query"), hidden))
        key = split_heads(dense_with_bias(attn_scope.in_("key"), hidden))
        value = split_heads(dense_with_bias(attn_scope.in_("value"), hidden))

        mask = None
        if attention_mask is not None:
            mask = expand_attention_mask(attention_mask, query.dtype)
        scale = float(np.sqrt(1.0 / head_dim))
        attn_output = scaled_dot_product_attention(query, key, value, scale, mask)

        attn_output = attn_output.transpose(0, 2, 1, 3).reshape(batch_size, seq_len, cfg.hidden_size)
        output_scope = attn_scope.in_("output")
        attn_output = dense_with_bias(output_scope.in_("dense"), attn_output)
        hidden = layer_norm(output_scope.in_("layer_norm"), residual + attn_output, cfg.layer_norm_eps)

        ff_scope = scope.in_("ff")
        residual = hidden
        hidden = dense_with_bias_and_activation(
            ff_scope.in_("intermediate"), hidden, Activation.GELU_APPROX
        )
        hidden = dense_with_bias(ff_scope.in_("output"), hidden)
        return layer_norm(ff_scope.in_("layer_norm"), residual + hidden, cfg.layer_norm_eps)

    def build_encoder(self, scope: Scope, hidden, attention_mask=None) -> np.ndarray:
        """Run every encoder layer in turn."""
        layers = scope.in_("encoder").in_("layer")
        for i in range(self.config.num_hidden_layers):
            hidden = self.build_encoder_layer(layers.in_(i), hidden, attention_mask)
        return np.asarray(hidden)

    def build_pooler(self, scope: Scope, hidden) -> np.ndarray | None:
        """Project the first (CLS) token through dense + tanh; None without pooler weights."""
        pooler_scope = scope.in_("pooler")
        if pooler_scope.get("weights") is None:
            return None
        hidden = np.asarray(hidden)
        cls_output = hidden[:, 0, :].reshape(hidden.shape[0], self.config.hidden_size)
        return np.tanh(dense_with_bias(pooler_scope, cls_output))

    def forward(
        self, scope: Scope, input_ids, attention_mask=None, token_type_ids=None, position_ids=None
    ) -> tuple[np.ndarray, np.ndarray | None]:
        """Return (last hidden state, pooled output or None)."""
        hidden = self.build_embeddings(scope, input_ids, token_type_ids, position_ids)
        hidden = self.build_encoder(scope, hidden, attention_mask)
        return hidden, self.build_pooler(scope, hidden)

    def variable_shape(self, name: str) -> tuple[int, ...]:
        """Return the expected shape of a variable by name, or () when unknown."""
        cfg = self.config
        if "embeddings" in name:
            return (cfg.vocab_size, cfg.hidden_size)
        if "position_embeddings" in name:
            return (cfg.max_position_embeddings, cfg.hidden_size)
        if "query" in name or "key" in name or "value" in name:
            if name.endswith("weights"):
                return (cfg.hidden_size, cfg.hidden_size)
            return (cfg.hidden_size,)
        if "intermediate" in name:
            if name.endswith("weights"):
                return (cfg.intermediate_size, cfg.hidden_size)
            return (cfg.intermediate_size,)
        return ()