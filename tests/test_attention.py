import numpy as np
import pytest

from llmarch.attention import (
    create_causal_mask,
    create_sliding_window_causal_mask,
    expand_attention_mask,
    repeat_kv,
    scaled_dot_product_attention,
)


@pytest.fixture
def rng():
    return np.random.default_rng(2)


def test_causal_mask_layout():
    mask = create_causal_mask(4)
    assert mask.shape == (1, 1, 4, 4)
    grid = mask[0, 0]
    upper = np.triu_indices(4, 1)
    lower = np.tril_indices(4)
    assert (grid[upper] == -1e9).all()
    assert (grid[lower] == 0).all()


def test_sliding_window_wide_equals_causal():
    np.testing.assert_array_equal(
        create_sliding_window_causal_mask(5, 5), create_causal_mask(5)
    )
    np.testing.assert_array_equal(
        create_sliding_window_causal_mask(5, 100), create_causal_mask(5)
    )


def test_sliding_window_one_keeps_only_diagonal():
    grid = create_sliding_window_causal_mask(4, 1)[0, 0]
    assert np.count_nonzero(grid == 0) == 4
    assert (np.diag(grid) == 0).all()


def test_sliding_window_two():
    grid = create_sliding_window_causal_mask(4, 2)[0, 0]
    assert grid[2, 1] == 0
    assert grid[2, 0] == -1e9
    assert grid[1, 2] == -1e9


def test_mask_dtype_conversion():
    mask = create_causal_mask(3, np.float16)
    assert mask.dtype == np.float16
    assert mask[0, 0, 0, 1] < 0
    assert mask[0, 0, 1, 0] == 0


def test_expand_attention_mask():
    out = expand_attention_mask(np.array([[1, 0, 1], [0, 1, 1]]))
    assert out.shape == (2, 1, 1, 3)
    np.testing.assert_array_equal(out[0, 0, 0], [0.0, -1e9, 0.0])
    np.testing.assert_array_equal(out[1, 0, 0], [-1e9, 0.0, 0.0])


def test_repeat_kv(rng):
    x = rng.normal(size=(2, 3, 4, 5))
    out = repeat_kv(x, 2)
    assert out.shape == (2, 6, 4, 5)
    for head in range(3):
        for r in range(2):
            np.testing.assert_array_equal(out[:, head * 2 + r], x[:, head])


def test_repeat_kv_one_is_identity(rng):
    x = rng.normal(size=(1, 2, 3, 4))
    assert repeat_kv(x, 1) is x


def test_repeat_kv_rank_error():
    with pytest.raises(ValueError):
        repeat_kv(np.zeros((2, 3, 4)), 2)


def test_zero_query_averages_values(rng):
    query = np.zeros((1, 2, 3, 4))
    key = rng.normal(size=(1, 2, 5, 4))
    value = rng.normal(size=(1, 2, 5, 4))
    out = scaled_dot_product_attention(query, key, value, 0.5)
    expected = np.broadcast_to(value.mean(axis=2, keepdims=True), out.shape)
    np.testing.assert_allclose(out, expected, rtol=1e-6)


def test_causal_first_row_sees_only_first_value(rng):
    q = rng.normal(size=(1, 1, 4, 8))
    k = rng.normal(size=(1, 1, 4, 8))
    v = rng.normal(size=(1, 1, 4, 8))
    out = scaled_dot_product_attention(q, k, v, 1.0, causal=True)
    np.testing.assert_allclose(out[0, 0, 0], v[0, 0, 0], rtol=1e-6)


def test_boolean_mask_selects_position(rng):
    q = rng.normal(size=(1, 1, 1, 4))
    k = rng.normal(size=(1, 1, 5, 4))
    v = rng.normal(size=(1, 1, 5, 4))
    mask = np.zeros((1, 1, 1, 5), dtype=bool)
    mask[..., 2] = True
    out = scaled_dot_product_attention(q, k, v, 1.0, mask=mask)
    np.testing.assert_allclose(out[0, 0, 0], v[0, 0, 2], rtol=1e-6)


def test_additive_mask_matches_boolean(rng):
    q = rng.normal(size=(2, 2, 3, 4))
    k = rng.normal(size=(2, 2, 3, 4))
    v = rng.normal(size=(2, 2, 3, 4))
    pad = np.array([[1, 1, 0], [1, 0, 0]])
    additive = expand_attention_mask(pad, np.float64)
    boolean = pad.astype(bool)[:, None, None, :]
    np.testing.assert_allclose(
        scaled_dot_product_attention(q, k, v, 0.5, mask=additive),
        scaled_dot_product_attention(q, k, v, 0.5, mask=boolean),
        rtol=1e-6,
    )


def test_grouped_query_matches_repeated(rng):
    q = rng.normal(size=(1, 4, 3, 2))
    k = rng.normal(size=(1, 2, 3, 2))
    v = rng.normal(size=(1, 2, 3, 2))
    grouped = scaled_dot_product_attention(q, k, v, 0.7, causal=True)
    full = scaled_dot_product_attention(q, repeat_kv(k, 2), repeat_kv(v, 2), 0.7, causal=True)
    np.testing.assert_allclose(grouped, full, rtol=1e-6)


def test_incompatible_heads_raise(rng):
    q = rng.normal(size=(1, 3, 2, 2))
    k = rng.normal(size=(1, 2, 2, 2))
    with pytest.raises(ValueError):
        scaled_dot_product_attention(q, k, k, 1.0)