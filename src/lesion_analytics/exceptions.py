"""Error taxonomy for lesion mapping runs.

Configuration, input-shape and build errors are raised before any expensive
computation starts. Numeric anomalies are non-fatal and surface as warnings.
"""

from __future__ import annotations


class LesionAnalyticsError(Exception):
    """Base exception for all lesion-analytics errors."""


class ConfigurationError(LesionAnalyticsError, ValueError):
    """Invalid method/correction combination or parameter value."""


class InputShapeError(LesionAnalyticsError, ValueError):
    """Lesion data, behavior or covariates have incompatible shapes or values."""


class BuildError(LesionAnalyticsError, ValueError):
    """Lesion matrix or patch structure cannot be built from the inputs."""


class HeaderMismatchError(BuildError):
    """Volumes do not share the same spatial geometry (shape, affine)."""


class EmptyMaskError(BuildError, InputShapeError):
    """The analysis mask contains no locations."""


class NumericAnomalyWarning(UserWarning):
    """NaN or infinite values were found and the affected columns zeroed."""
