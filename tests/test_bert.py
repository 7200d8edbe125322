import numpy as np
import pytest

from llmarch.bert import BertBuilder
from llmarch.modelconfig import ModelConfig
from llmarch.scope import MissingVariableError, Scope


def _config(num_layers=2):
    return ModelConfig.from_dict(
        {
            "model_type": "bert",
            "vocab_size": 20,
            "hidden_size": 8,
            "num_hidden_layers": num_layers,
            "num_attention_heads": 2,
            "intermediate_size": 16,
            "max_position_embeddings": 12,
            "layer_norm_eps": 1e-12,
        }
    )


def _tensors(config, seed=0, pooler=True):
    rng = np.random.default_rng(seed)
    hidden, inter = config.hidden_size, config.intermediate_size

    def rand(*shape):
        return rng.normal(0.0, 0.3, size=shape).astype(np.float32)

    def ones(n):
        return np.ones(n, dtype=np.float32)

    def zeros(n):
        return np.zeros(n, dtype=np.float32)

    tensors = {
        "bert.embeddings.word_embeddings.weight": rand(config.vocab_size, hidden),
        "bert.embeddings.position_embeddings.weight": rand(config.max_position_embeddings, hidden),
        "bert.embeddings.token_type_embeddings.weight": rand(2, hidden),
        "bert.embeddings.LayerNorm.weight": ones(hidden),
        "bert.embeddings.LayerNorm.bias": zeros(hidden),
    }
    for i in range(config.num_hidden_layers):
        p = f"bert.encoder.layer.{i}"
        for proj in ("query", "key", "value"):
            tensors[f"{p}.attention.self.{proj}.weight"] = rand(hidden, hidden)
            tensors[f"{p}.attention.self.{proj}.bias"] = rand(hidden)
        tensors[f"{p}.attention.output.dense.weight"] = rand(hidden, hidden)
        tensors[f"{p}.attention.output.dense.bias"] = rand(hidden)
        tensors[f"{p}.attention.output.LayerNorm.weight"] = ones(hidden)
        tensors[f"{p}.attention.output.LayerNorm.bias"] = zeros(hidden)
        tensors[f"{p}.intermediate.dense.weight"] = rand(inter, hidden)
        tensors[f"{p}.intermediate.dense.bias"] = rand(inter)
        tensors[f"{p}.output.dense.weight"] = rand(hidden, inter)
        tensors[f"{p}.output.dense.bias"] = rand(hidden)
        tensors[f"{p}.output.LayerNorm.weight"] = ones(hidden)
        tensors[f"{p}.output.LayerNorm.bias"] = zeros(hidden)
    if pooler:
        tensors["bert.pooler.dense.weight"] = rand(hidden, hidden)
        tensors["bert.pooler.dense.bias"] = rand(hidden)
    return tensors


def _loaded(pooler=True, num_layers=2):
    config = _config(num_layers)
    builder = BertBuilder(config)
    scope = Scope()
    missing = scope.load_mapping(_tensors(config, pooler=pooler), builder.weight_mapping())
    return builder, scope, missing


def test_names():
    assert BertBuilder(_config()).name() == "BERT"
    assert BertBuilder(_config(), is_distilbert=True).name() == "DistilBERT"


def test_weight_mapping_entries():
    mapping = BertBuilder(_config()).weight_mapping()
    assert mapping["bert.embeddings.word_embeddings.weight"] == "embeddings/embeddings"
    assert mapping["bert.encoder.layer.1.attention.self.query.weight"] == "encoder/layer/1/attention/query/weights"
    assert mapping["bert.encoder.layer.0.output.LayerNorm.bias"] == "encoder/layer/0/ff/layer_norm/offset"
    assert mapping["bert.pooler.dense.bias"] == "pooler/biases"
    assert not any(".layer.2." in key for key in mapping)


def test_mapping_covers_all_test_tensors():
    _, _, missing = _loaded(pooler=True)
    assert missing == []
    _, _, missing = _loaded(pooler=False)
    assert missing == ["bert.pooler.dense.bias", "bert.pooler.dense.weight"]


def test_forward_shapes_and_layer_norm_invariant():
    builder, scope, _ = _loaded()
    ids = np.array([[1, 2, 3, 4, 5], [6, 7, 8, 9, 10]], dtype=np.int32)
    hidden, pooled = builder.forward(scope, ids)
    assert hidden.shape == (2, 5, 8)
    assert pooled.shape == (2, 8)
    np.testing.assert_allclose(hidden.mean(axis=-1), 0.0, atol=1e-5)
    np.testing.assert_allclose(hidden.var(axis=-1), 1.0, atol=1e-3)
    assert np.all(np.abs(pooled) < 1.0)


def test_pooler_absent_returns_none():
    builder, scope, _ = _loaded(pooler=False)
    hidden, pooled = builder.forward(scope, np.array([[1, 2, 3]], dtype=np.int32))
    assert pooled is None
    assert hidden.shape == (1, 3, 8)


def test_padding_mask_hides_masked_token():
    builder, scope, _ = _loaded()
    mask = np.array([[1, 1, 1, 0]], dtype=np.int32)
    first, _ = builder.forward(scope, np.array([[1, 2, 3, 4]], dtype=np.int32), mask)
    second, _ = builder.forward(scope, np.array([[1, 2, 3, 17]], dtype=np.int32), mask)
    np.testing.assert_allclose(first[0, :3], second[0, :3], atol=1e-5)
    assert not np.allclose(first[0, 3], second[0, 3])


def test_full_mask_equals_no_mask():
    builder, scope, _ = _loaded()
    ids = np.array([[3, 1, 4, 1]], dtype=np.int32)
    without, _ = builder.forward(scope, ids)
    with_mask, _ = builder.forward(scope, ids, np.ones((1, 4), dtype=np.int32))
    np.testing.assert_allclose(without, with_mask, atol=1e-5)


def test_default_position_ids_match_explicit():
    builder, scope, _ = _loaded()
    ids = np.array([[5, 6, 7]], dtype=np.int32)
    default, _ = builder.forward(scope, ids)
    explicit, _ = builder.forward(scope, ids, position_ids=np.array([[0, 1, 2]]))
    np.testing.assert_allclose(default, explicit, atol=1e-6)
    shifted, _ = builder.forward(scope, ids, position_ids=np.array([[3, 4, 5]]))
    assert not np.allclose(default, shifted)


def test_zero_token_type_row_changes_nothing():
    builder, scope, _ = _loaded()
    scope.set("embeddings/token_type_embeddings", np.zeros((2, 8), dtype=np.float32))
    ids = np.array([[2, 4, 6]], dtype=np.int32)
    plain = builder.build_embeddings(scope, ids)
    typed = builder.build_embeddings(scope, ids, token_type_ids=np.zeros((1, 3), dtype=np.int32))
    np.testing.assert_allclose(plain, typed, atol=1e-6)


def test_batch_rows_are_independent():
    builder, scope, _ = _loaded()
    ids = np.array([[1, 2, 3], [4, 5, 6]], dtype=np.int32)
    both, pooled = builder.forward(scope, ids)
    alone, pooled_alone = builder.forward(scope, ids[1:])
    np.testing.assert_allclose(both[1], alone[0], atol=1e-5)
    np.testing.assert_allclose(pooled[1], pooled_alone[0], atol=1e-5)


def test_single_token_sequence():
    builder, scope, _ = _loaded()
    hidden, pooled = builder.forward(scope, np.array([[7], [8]], dtype=np.int32))
    assert hidden.shape == (2, 1, 8)
    assert pooled.shape == (2, 8)


def test_missing_position_embeddings_raises():
    builder, scope, _ = _loaded()
    del scope.variables["embeddings/position_embeddings"]
    with pytest.raises(MissingVariableError):
        builder.forward(scope, np.array([[1, 2]], dtype=np.int32))


def test_variable_shape():
    config = _config()
    builder = BertBuilder(config)
    assert builder.variable_shape("embeddings/embeddings") == (config.vocab_size, config.hidden_size)
    assert builder.variable_shape("embeddings/position_embeddings") == (
        config.vocab_size,
        config.hidden_size,
    )
    assert builder.variable_shape("encoder/layer/0/attention/query/weights") == (
        config.hidden_size,
        config.hidden_size,
    )
    assert builder.variable_shape("encoder/layer/0/attention/value/biases") == (config.hidden_size,)
    assert builder.variable_shape("encoder/layer/0/ff/intermediate/weights") == (
        config.intermediate_size,
        config.hidden_size,
    )
    assert builder.variable_shape("encoder/layer/0/ff/intermediate/biases") == (
        config.intermediate_size,
    )
    assert builder.variable_shape("pooler/weights") == ()