"""Merging projected image features into a text embedding sequence."""

from __future__ import annotations

import numpy as np


def merge_image_features(hidden, image_features, tokens, image_token_id: int) -> np.ndarray:
    """Replace the embeddings at image placeholder tokens with image features.

    ``hidden`` is [batch, seq, hidden], ``image_features`` is
    [batch, patches, hidden] and ``tokens`` is [batch, seq]. The n-th
    placeholder token of a row (counting from zero) receives feature n of that
    row. The index is clamped to the available patches. Other positions keep
    their embedding.
    """
    hidden = np.asarray(hidden)
    features = np.asarray(image_features)
    tokens = np.asarray(tokens)

    if hidden.ndim != 3:
        raise ValueError(f"hidden must be [batch, seq, hidden], got shape {hidden.shape}")
    batch_size, seq_len, hidden_size = hidden.shape
    if tokens.shape != (batch_size, seq_len):
        raise ValueError(
            f"tokens shape {tokens.shape} does not match hidden shape {hidden.shape}"
        )
    if features.ndim != 3 or features.shape[0] != batch_size or features.shape[2] != hidden_size:
        raise ValueError(
            f"image features shape {features.shape} does not match hidden shape {hidden.shape}"
        )
    num_patches = features.shape[1]
    if num_patches == 0:
        raise ValueError("image features hold no patches")

    is_image = tokens == image_token_id
    feature_index = np.clip(np.cumsum(is_image, axis=1) - 1, 0, num_patches - 1)

    if features.dtype != hidden.dtype:
        features = features.astype(hidden.dtype)

    gathered = np.take_along_axis(features, feature_index[..., None], axis=1)
    return np.where(is_image[..., None], gathered, hidden)