"""Transformer architectures (BERT, DeBERTa, Llama, CLIP vision) and their building blocks on NumPy arrays."""

__version__ = "0.1.0"

__all__ = [
    "attention",
    "bert",
    "deberta",
    "dense",
    "embeddings",
    "llama",
    "llama_config",
    "modelconfig",
    "multimodal",
    "normalization",
    "scope",
    "vision",
]