"""Model configuration shared by every architecture, read from a config dictionary."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

_MISSING = object()


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


@dataclass
class ModelConfig:
    """Common transformer hyper-parameters plus the raw configuration they came from."""

    model_type: str = ""
    vocab_size: int = 0
    hidden_size: int = 0
    num_hidden_layers: int = 0
    num_attention_heads: int = 0
    intermediate_size: int = 0
    max_position_embeddings: int = 0
    layer_norm_eps: float = 1e-12
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ModelConfig:
        """Build a configuration from a parsed ``config.json``-style mapping."""
        if not isinstance(raw, Mapping):
            raise TypeError(f"configuration must be a mapping, not {type(raw).__name__}")
        config = cls(raw=dict(raw))
        model_type = raw.get("model_type")
        if isinstance(model_type, str):
            config.model_type = model_type
        for name in (
            "vocab_size",
            "hidden_size",
            "num_hidden_layers",
            "num_attention_heads",
            "intermediate_size",
            "max_position_embeddings",
        ):
            value = config.get_int(name)
            if value is not None:
                setattr(config, name, value)
        eps = config.get_float("layer_norm_eps")
        if eps is not None:
            config.layer_norm_eps = eps
        return config

    def head_dim(self) -> int:
        """Return the per-head dimension: hidden size divided by attention heads."""
        if self.num_attention_heads <= 0:
            raise ValueError("num_attention_heads must be positive to compute head_dim")
        return self.hidden_size // self.num_attention_heads

    def _lookup(self, key: str) -> Any:
        if key in self.raw:
            return self.raw[key]
        node: Any = self.raw
        for part in key.split("."):
            if not isinstance(node, Mapping) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def get_int(self, key: str) -> int | None:
        """Return the integer under ``key`` (dotted keys reach nested maps), or None."""
        value = self._lookup(key)
        return None if value is _MISSING else _as_int(value)

    def get_float(self, key: str) -> float | None:
        """Return the number under ``key`` as a float, or None."""
        value = self._lookup(key)
        return None if value is _MISSING else _as_float(value)

    def get_bool(self, key: str) -> bool | None:
        """Return the boolean under ``key``, or None."""
        value = self._lookup(key)
        return value if isinstance(value, bool) else None

    def get_string_list(self, key: str) -> list[str] | None:
        """Return the list of strings under ``key``, or None."""
        value = self._lookup(key)
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
            return list(value)
        return None