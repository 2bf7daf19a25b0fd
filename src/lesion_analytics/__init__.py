"""Lesion-to-symptom mapping with patch aggregation and permutation correction."""

__version__ = "0.1.0"

from .core import LesionMapper, MappingResult, run_mapping, METHOD_REGISTRY
from .config import MappingConfig

__all__ = [
    "LesionMapper",
    "MappingResult",
    "MappingConfig",
    "run_mapping",
    "METHOD_REGISTRY",
    "__version__",
]
