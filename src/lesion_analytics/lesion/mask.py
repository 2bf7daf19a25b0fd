"""Analysis mask derivation from lesion frequency."""

from __future__ import annotations

import logging

import numpy as np

from ..exceptions import ConfigurationError, EmptyMaskError
from .volumes import LesionSet

logger = logging.getLogger(__name__)


def min_subjects_fraction(min_subjects_per_voxel: str | int | float, n_subjects: int) -> float:
    """Convert ``"10%"`` or an absolute subject count into a fraction of subjects."""
    if isinstance(min_subjects_per_voxel, str):
        text = min_subjects_per_voxel.strip()
        try:
            if text.endswith("%"):
                fraction = float(text[:-1]) / 100.0
            else:
                fraction = float(text) / n_subjects
        except ValueError as e:
            raise ConfigurationError(
                f"Cannot parse min_subjects_per_voxel={min_subjects_per_voxel!r}"
            ) from e
    else:
        fraction = float(min_subjects_per_voxel) / n_subjects

    if not 0.0 <= fraction <= 0.5:
        raise ConfigurationError(
            f"min_subjects_per_voxel={min_subjects_per_voxel!r} gives fraction {fraction:.3f}; "
            "it must lie in [0, 0.5]"
        )
    return fraction


def average_lesion_map(lesions: LesionSet) -> np.ndarray:
    """Fraction of subjects lesioned at every location."""
    return lesions.data.mean(axis=0)


def compute_mask(
    lesions: LesionSet,
    min_subjects_per_voxel: str | int | float = "10%",
) -> tuple[np.ndarray, np.ndarray]:
    """Keep locations lesioned in neither too few nor too many subjects.

    Locations whose lesion frequency lies in ``[t, 1 - t]`` are kept, where
    ``t`` is derived from ``min_subjects_per_voxel``. With ``t == 0`` the
    never-lesioned locations are still excluded.

    Returns
    -------
    mask : ndarray of bool
    average : ndarray of float
        The average lesion map the mask was derived from.
    """
    fraction = min_subjects_fraction(min_subjects_per_voxel, lesions.n_subjects)
    average = average_lesion_map(lesions)

    # small tolerance so "10%" of 20 subjects keeps voxels hit exactly twice
    eps = 1e-9
    mask = (average >= fraction - eps) & (average <= 1.0 - fraction + eps)
    if fraction == 0:
        mask &= average > 0

    n_kept = int(mask.sum())
    logger.info(
        "Searching voxels lesioned in >= %s subjects: %d found",
        min_subjects_per_voxel, n_kept,
    )
    if n_kept == 0:
        raise EmptyMaskError("Mask is empty. No voxels to run the analysis on.")
    return mask, average


def lesion_sizes(lesions: LesionSet) -> np.ndarray:
    """Number of lesioned voxels per subject (whole volume, not only the mask)."""
    sizes = lesions.data.reshape(lesions.n_subjects, -1).sum(axis=1).astype(float)
    return sizes
