"""Normalizers translating raw backend events into unified mutations."""

from .base import Normalizer, NormalizerRegistry, require, require_int
from .local import LocalNormalizer
from .matrix import MatrixNormalizer
from .signal import SignalNormalizer

__all__ = [
    "LocalNormalizer",
    "MatrixNormalizer",
    "Normalizer",
    "NormalizerRegistry",
    "SignalNormalizer",
    "require",
    "require_int",
]

# Register normalizers
NormalizerRegistry.register(LocalNormalizer)
NormalizerRegistry.register(MatrixNormalizer)
NormalizerRegistry.register(SignalNormalizer)
