"""Unique lesion patches: grouping voxels with identical lesion patterns.

Voxels inside the analysis mask that are lesioned in exactly the same set of
subjects carry identical information for every column-wise test. They are
grouped into a single *patch* and tested once, which reduces both run time
and the number of multiple comparisons. Results are broadcast back to every
member voxel with :meth:`PatchInfo.expand`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from ..exceptions import BuildError, EmptyMaskError, HeaderMismatchError
from .volumes import LesionSet, VolumeGeometry

logger = logging.getLogger(__name__)


@dataclass
class PatchInfo:
    """Patch metadata and the location -> column index.

    Masked locations are enumerated in C order of the spatial array; all
    per-location vectors below follow that order.
    """

    mask: np.ndarray  # spatial bool array
    geometry: VolumeGeometry
    location_to_column: np.ndarray  # (n_voxels,) column index of each masked location
    representatives: np.ndarray  # (n_patches,) masked-location index of first member
    voxel_counts: np.ndarray  # (n_patches,) member count per patch
    patched: bool = True

    @property
    def n_patches(self) -> int:
        return int(len(self.representatives))

    @property
    def n_voxels(self) -> int:
        return int(len(self.location_to_column))

    @property
    def patch_volumes(self) -> np.ndarray:
        """Volume (mm^3) of each patch."""
        return self.voxel_counts * self.geometry.voxel_volume

    @property
    def compression(self) -> float:
        return self.n_voxels / max(self.n_patches, 1)

    def expand(self, values: np.ndarray) -> np.ndarray:
        """Broadcast per-column values to every masked location."""
        values = np.asarray(values)
        if values.shape[0] != self.n_patches:
            raise BuildError(
                f"Got {values.shape[0]} column values for {self.n_patches} patches"
            )
        return values[self.location_to_column]

    def members(self, column: int) -> np.ndarray:
        """Masked-location indices belonging to ``column``."""
        return np.flatnonzero(self.location_to_column == column)

    def patch_image(self) -> np.ndarray:
        """Spatial int array holding the 1-based patch number of each voxel."""
        img = np.zeros(self.geometry.shape, dtype=np.int32)
        img[self.mask] = self.location_to_column + 1
        return img

    def size_image(self) -> np.ndarray:
        """Spatial array with the member count of the patch at each voxel."""
        img = np.zeros(self.geometry.shape, dtype=np.int32)
        img[self.mask] = self.voxel_counts[self.location_to_column]
        return img

    def to_frame(self) -> pd.DataFrame:
        """One row per patch with representative index, voxel count and volume."""
        return pd.DataFrame({
            "patch": np.arange(1, self.n_patches + 1),
            "representative": self.representatives,
            "n_voxels": self.voxel_counts,
            "volume_mm3": self.patch_volumes,
        })


def _check_inputs(lesions: LesionSet, mask: np.ndarray, mask_geometry: VolumeGeometry | None):
    mask = np.asarray(mask)
    lesions.check_mask(mask, mask_geometry)
    if not np.array_equal(mask, mask.astype(bool)):
        raise BuildError("Mask is not binary. Must have only 0 and 1 values")
    mask = mask.astype(bool)
    if not mask.any():
        raise EmptyMaskError("Mask is empty. No voxels to run the analysis on.")
    return mask


def build_patches(
    lesions: LesionSet | list[np.ndarray],
    mask: np.ndarray,
    no_patch: bool = False,
    mask_geometry: VolumeGeometry | None = None,
) -> tuple[np.ndarray, PatchInfo]:
    """Build the subjects x patches lesion matrix.

    Parameters
    ----------
    lesions : LesionSet or list of ndarray
        Binary lesion volumes. Plain arrays must all have the same shape.
    mask : ndarray of bool
        Analysis domain, same spatial geometry as the lesions.
    no_patch : bool
        Skip grouping and return one column per masked location.
    mask_geometry : VolumeGeometry, optional
        Geometry of the mask; defaults to the lesion affine with the mask shape.

    Returns
    -------
    lesion_matrix : ndarray, shape (n_subjects, n_patches)
    patch_info : PatchInfo

    Raises
    ------
    BuildError
        Geometry mismatch between volumes or between volumes and mask.
    EmptyMaskError
        The mask selects no location.
    """
    if not isinstance(lesions, LesionSet):
        lesions = LesionSet.from_arrays(lesions)
    mask = _check_inputs(lesions, mask, mask_geometry)

    voxels = lesions.data[:, mask]  # (n_subjects, n_voxels), C-order traversal
    n_voxels = voxels.shape[1]

    if no_patch:
        location_to_column = np.arange(n_voxels)
        info = PatchInfo(
            mask=mask,
            geometry=lesions.geometry,
            location_to_column=location_to_column,
            representatives=location_to_column.copy(),
            voxel_counts=np.ones(n_voxels, dtype=int),
            patched=False,
        )
        logger.info("Patches not used: %d voxels tested individually", n_voxels)
        return voxels.astype(float), info

    # one row of packed bits per voxel; equal rows == equal lesion pattern
    patterns = np.packbits(voxels, axis=0).T
    _, first_index, inverse = np.unique(
        patterns, axis=0, return_index=True, return_inverse=True,
    )
    inverse = np.asarray(inverse).reshape(-1)

    # renumber patches by first appearance in traversal order
    order = np.argsort(first_index, kind="stable")
    rank = np.empty_like(order)
    rank[order] = np.arange(len(order))

    location_to_column = rank[inverse]
    representatives = first_index[order]
    voxel_counts = np.bincount(location_to_column, minlength=len(order))

    info = PatchInfo(
        mask=mask,
        geometry=lesions.geometry,
        location_to_column=location_to_column,
        representatives=representatives,
        voxel_counts=voxel_counts,
    )
    logger.info(
        "Found %d patches in %d voxels - %.1f times more voxels",
        info.n_patches, info.n_voxels, info.compression,
    )
    return voxels[:, representatives].astype(float), info


def lesion_matrix_from_patches(lesions: LesionSet, patch_info: PatchInfo) -> np.ndarray:
    """Rebuild the lesion matrix for new lesions using existing patch information."""
    if not lesions.geometry.matches(patch_info.geometry):
        raise HeaderMismatchError("Patch image header is different from lesion header.")
    voxels = lesions.data[:, patch_info.mask]
    return voxels[:, patch_info.representatives].astype(float)
