"""Llama/Mistral configuration and checkpoint weight name mappings."""

from __future__ import annotations

from dataclasses import dataclass

from llmarch.modelconfig import ModelConfig
from llmarch.vision import VisionConfig


@dataclass
class LlamaConfig:
    """Llama-specific settings on top of the common model configuration."""

    base: ModelConfig
    rope_theta: float = 10000.0
    rms_norm_eps: float = 1e-5
    num_key_value_heads: int = 0
    mlp_bias: bool = False

    @classmethod
    def from_base(cls, base: ModelConfig) -> LlamaConfig:
        """Read the Llama fields from the raw configuration of ``base``."""
        config = cls(base=base)
        theta = base.get_float("rope_theta")
        if theta is not None:
            config.rope_theta = theta
        eps = base.get_float("rms_norm_eps")
        if eps is not None:
            config.rms_norm_eps = eps
        kv_heads = base.get_int("num_key_value_heads")
        if kv_heads is not None:
            config.num_key_value_heads = kv_heads
        mlp_bias = base.get_bool("mlp_bias")
        if mlp_bias is not None:
            config.mlp_bias = mlp_bias
        return config

    def kv_heads(self) -> int:
        """Number of key/value heads; equal to the attention heads unless set."""
        if self.num_key_value_heads > 0:
            return self.num_key_value_heads
        return self.base.num_attention_heads

    def kv_head_dim(self) -> int:
        """Dimension of each key/value head."""
        return self.base.head_dim()

    def heads_per_kv_group(self) -> int:
        """How many query heads share each key/value head."""
        kv_heads = self.kv_heads()
        if kv_heads <= 0:
            raise ValueError("number of key/value heads must be positive")
        return self.base.num_attention_heads // kv_heads


_GGUF_LAYER = {
    "attn_norm.weight": "input_norm/weight",
    "attn_q.weight": "attention/query/weights",
    "attn_k.weight": "attention/key/weights",
    "attn_v.weight": "attention/value/weights",
    "attn_output.weight": "attention/output/weights",
    "ffn_norm.weight": "post_attn_norm/weight",
    "ffn_gate.weight": "mlp/gate/weights",
    "ffn_up.weight": "mlp/up/weights",
    "ffn_down.weight": "mlp/down/weights",
}

_GGUF_VISION_LAYER = {
    "layer_norm1.weight": "layer_norm1/gain",
    "layer_norm1.bias": "layer_norm1/offset",
    "layer_norm2.weight": "layer_norm2/gain",
    "layer_norm2.bias": "layer_norm2/offset",
    "attn_q.weight": "attn_q/weights",
    "attn_q.bias": "attn_q/biases",
    "attn_k.weight": "attn_k/weights",
    "attn_k.bias": "attn_k/biases",
    "attn_v.weight": "attn_v/weights",
    "attn_v.bias": "attn_v/biases",
    "attn_output.weight": "attn_output/weights",
    "attn_output.bias": "attn_output/biases",
    "mlp.fc1.weight": "mlp/fc1/weights",
    "mlp.fc1.bias": "mlp/fc1/biases",
    "mlp.fc2.weight": "mlp/fc2/weights",
    "mlp.fc2.bias": "mlp/fc2/biases",
}

_HF_LAYER = {
    "input_layernorm.weight": "input_norm/weight",
    "self_attn.q_proj.weight": "attention/query/weights",
    "self_attn.k_proj.weight": "attention/key/weights",
    "self_attn.v_proj.weight": "attention/value/weights",
    "self_attn.o_proj.weight": "attention/output/weights",
    "post_attention_layernorm.weight": "post_attn_norm/weight",
    "mlp.gate_proj.weight": "mlp/gate/weights",
    "mlp.up_proj.weight": "mlp/up/weights",
    "mlp.down_proj.weight": "mlp/down/weights",
}


def gguf_weight_mapping(
    config: LlamaConfig,
    vision_config: VisionConfig | None = None,
    projector_layers: int = 2,
) -> dict[str, str]:
    """Map GGUF tensor names to scope paths, including the vision tower when given."""
    mapping = {"token_embd.weight": "embeddings/embeddings"}
    for i in range(config.base.num_hidden_layers):
        for source, destination in _GGUF_LAYER.items():
            mapping[f"blk.{i}.{source}"] = f"layers/{i}/{destination}"

    mapping["output_norm.weight"] = "norm/weight"
    mapping["output.weight"] = "lm_head/weights"

    if vision_config is not None:
        mapping["v.patch_embedding.weight"] = "vision/patch_embedding/weights"
        mapping["v.patch_embedding.bias"] = "vision/patch_embedding/biases"
        mapping["v.position_embedding.weight"] = "vision/position_embeddings"
        for i in range(vision_config.num_layers):
            for source, destination in _GGUF_VISION_LAYER.items():
                mapping[f"v.blk.{i}.{source}"] = f"vision/layers/{i}/{destination}"
        mapping["v.post_layernorm.weight"] = "vision/post_layernorm/gain"
        mapping["v.post_layernorm.bias"] = "vision/post_layernorm/offset"
        for i in range(projector_layers):
            idx = i * 2
            mapping[f"mm.{idx}.weight"] = f"mm/{idx}/weights"
            mapping[f"mm.{idx}.bias"] = f"mm/{idx}/biases"
    return mapping


def hf_weight_mapping(config: LlamaConfig) -> dict[str, str]:
    """Map Hugging Face checkpoint tensor names to scope paths."""
    prefix = "model"
    mapping = {f"{prefix}.embed_tokens.weight": "embeddings/embeddings"}
    for i in range(config.base.num_hidden_layers):
        for source, destination in _HF_LAYER.items():
            mapping[f"{prefix}.layers.{i}.{source}"] = f"layers/{i}/{destination}"
    mapping[f"{prefix}.norm.weight"] = "norm/weight"
    mapping["lm_head.weight"] = "lm_head/weights"
    return mapping