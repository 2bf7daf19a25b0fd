"""Rebuild spatial images from masked-location values."""

from __future__ import annotations

import numpy as np

from ..exceptions import BuildError
from ..lesion.volumes import VolumeGeometry


def fill_volume(mask: np.ndarray, location_values: np.ndarray, fill: float = 0.0) -> np.ndarray:
    """Place masked-location values (C order) into a volume shaped like ``mask``."""
    mask = np.asarray(mask, dtype=bool)
    location_values = np.asarray(location_values)
    if location_values.shape[0] != int(mask.sum()):
        raise BuildError(
            f"Got {location_values.shape[0]} values for {int(mask.sum())} masked locations"
        )
    volume = np.full(mask.shape, fill, dtype=np.result_type(location_values.dtype, np.float32))
    volume[mask] = location_values
    return volume


def make_image(
    mask: np.ndarray,
    geometry: VolumeGeometry,
    location_values: np.ndarray,
    dtype=np.float32,
    fill: float = 0.0,
):
    """NIfTI image with ``location_values`` inside ``mask`` and ``fill`` elsewhere."""
    import nibabel as nib

    volume = fill_volume(mask, location_values, fill).astype(dtype)
    img = nib.Nifti1Image(volume, geometry.affine)
    img.header.set_data_dtype(dtype)
    return img


def volume_image(volume: np.ndarray, geometry: VolumeGeometry, dtype=np.float32):
    """NIfTI image of a full spatial array."""
    import nibabel as nib

    img = nib.Nifti1Image(np.asarray(volume).astype(dtype), geometry.affine)
    img.header.set_data_dtype(dtype)
    return img
