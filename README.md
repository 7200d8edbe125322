# llmarch

Forward passes of common transformer architectures, written on plain NumPy
arrays. Weights live in a flat variable store (a dict) and are addressed by
slash-separated scope paths such as `encoder/layer/0/attention/query/weights`.
Each architecture supplies a mapping from checkpoint tensor names to those
paths.

## Supported architectures

- **BERT / RoBERTa / DistilBERT**: `llmarch.bert.BertBuilder`. `forward` returns
  the last hidden state and the pooled CLS output (or `None` when the store has
  no pooler weights).
- **DeBERTa v2/v3** with disentangled attention: `llmarch.deberta.DebertaBuilder`.
  `DebertaConfig.from_base` reads `pos_att_type` (default `["c2p", "p2c"]`),
  `norm_rel_ebd`, `max_relative_positions` and related keys.
- **Llama / Mistral**: `llmarch.llama.LlamaBuilder`, with rotary positions, RMS
  norm, SwiGLU and grouped-query attention. `forward` returns the final
  normalized hidden state; `apply_lm_head` turns it into vocabulary logits,
  using `lm_head/weights` or, if absent, the tied token embeddings.
  `weight_mapping(gguf=True)` gives GGUF tensor names, `weight_mapping(gguf=False)`
  Hugging Face names. Settings come from `llmarch.llama_config.LlamaConfig`
  (`rope_theta`, `rms_norm_eps`, `num_key_value_heads`, `mlp_bias`).
  When the configuration holds `vision.block_count`, the builder also has a
  LLaVA-style CLIP vision tower: `has_vision`, `num_image_tokens`,
  `build_vision_encoder` and `build_multimodal_projector`.

## Shared building blocks

- `llmarch.scope`: `Scope` (`in_`, `get`, `require`, `set`, `load_mapping`) and
  `MissingVariableError`
- `llmarch.modelconfig`: `ModelConfig.from_dict` and typed lookups
  (`get_int`, `get_float`, `get_bool`, `get_string_list`); dotted keys also
  reach nested maps
- `llmarch.normalization`: `layer_norm`, `rms_norm` and their `apply_*` forms
- `llmarch.dense`: dense layers with weights in `[out, in]` layout, the
  `Activation` enum, `gelu`, `gelu_approximate`, `swish`, `mlp`, `mlp_with_gelu`
- `llmarch.attention`: causal and sliding-window masks, padding-mask expansion,
  `repeat_kv` for grouped-query heads, `scaled_dot_product_attention`
- `llmarch.embeddings`: token lookup, absolute and relative position embeddings,
  rotary embeddings (`rope`, `rope_with_config` with `RoPEConfig` for partial
  rotary and LongRoPE factors), position ids, sinusoidal tables
- `llmarch.multimodal`: `merge_image_features`, which replaces image placeholder
  tokens with projected vision features, the n-th placeholder of a row getting
  feature n
- `llmarch.vision`: `VisionConfig`, `parse_vision_config`, a CLIP/SigLIP style
  encoder (`build_clip_vision_encoder`) and `mlp_projector`

## Installation

```
pip install .
```

To run the tests, install the `test` extra and run pytest:

```
pip install ".[test]"
pytest
```

## Example

```python
import numpy as np
from llmarch.modelconfig import ModelConfig
from llmarch.scope import Scope
from llmarch.bert import BertBuilder

config = ModelConfig.from_dict({
    "model_type": "bert",
    "vocab_size": 100,
    "hidden_size": 8,
    "num_hidden_layers": 1,
    "num_attention_heads": 2,
    "intermediate_size": 16,
    "max_position_embeddings": 32,
})
builder = BertBuilder(config, False)

# A dict from checkpoint tensor names (such as
# "bert.embeddings.word_embeddings.weight") to NumPy arrays.
checkpoint_tensors = dict(np.load("bert_weights.npz"))

root = Scope({}, "")
missing = root.load_mapping(checkpoint_tensors, builder.weight_mapping())

input_ids = np.array([[1, 5, 7, 2]])
attention_mask = np.ones_like(input_ids)
hidden, pooled = builder.forward(root, input_ids, attention_mask, None, None)
```

`load_mapping` copies every tensor it finds and returns the sorted names of
those the checkpoint lacks. A layer whose variables are missing raises
`MissingVariableError`, which names the variable and the scope.

## What this package does not do

- It does not read checkpoint files (safetensors or GGUF) nor download them;
  you supply the tensors as a dict of NumPy arrays.
- It has no tokenizer and no text generation loop: there is no key/value cache
  and no sampling, only full forward passes.
- It works on float weights only; quantized weights are not supported.
- It provides no command-line tool.