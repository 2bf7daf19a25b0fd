"""Connected-component clustering over the spatial domain."""

from __future__ import annotations

import logging
from typing import Callable

import numpy as np
from scipy.ndimage import generate_binary_structure, label

from .patches import PatchInfo

logger = logging.getLogger(__name__)


def label_clusters(volume: np.ndarray, connectivity: int = 1) -> tuple[np.ndarray, np.ndarray]:
    """Label connected supra-threshold voxels.

    Parameters
    ----------
    volume : ndarray of bool
        Thresholded spatial volume.
    connectivity : int
        1 = faces, 2 = faces + edges, 3 = faces + edges + corners (in 3-D).

    Returns
    -------
    labels : ndarray of int
        0 = background, 1..K = cluster id.
    sizes : ndarray of int, shape (K,)
        Voxel count of each cluster.
    """
    volume = np.asarray(volume, dtype=bool)
    structure = generate_binary_structure(volume.ndim, min(connectivity, volume.ndim))
    labels, n_clusters = label(volume, structure=structure)
    sizes = np.bincount(labels.ravel(), minlength=n_clusters + 1)[1:]
    return labels, sizes


def max_cluster_size(volume: np.ndarray, connectivity: int = 1) -> int:
    """Size of the largest connected cluster (0 if nothing survives)."""
    _, sizes = label_clusters(volume, connectivity)
    return int(sizes.max()) if sizes.size else 0


def remove_small_clusters(
    volume: np.ndarray,
    min_size: float,
    connectivity: int = 1,
) -> tuple[np.ndarray, int, int]:
    """Drop whole clusters smaller than ``min_size`` voxels.

    Returns the surviving voxel mask and the number of clusters kept and dropped.
    """
    labels, sizes = label_clusters(volume, connectivity)
    keep_ids = np.flatnonzero(sizes >= min_size) + 1
    keep = np.isin(labels, keep_ids)
    return keep, int(len(keep_ids)), int(len(sizes) - len(keep_ids))


def make_cluster_sizer(
    patch_info: PatchInfo,
    connectivity: int = 1,
) -> Callable[[np.ndarray], int]:
    """Return a callable mapping surviving columns to the largest cluster size.

    Surviving columns are expanded to their member voxels before labelling,
    so clusters are measured in voxels regardless of patching.
    """

    def sizer(surviving_columns: np.ndarray) -> int:
        volume = np.zeros(patch_info.geometry.shape, dtype=bool)
        volume[patch_info.mask] = patch_info.expand(np.asarray(surviving_columns, dtype=bool))
        return max_cluster_size(volume, connectivity)

    return sizer


def make_cluster_filter(
    patch_info: PatchInfo,
    connectivity: int = 1,
) -> Callable[[np.ndarray, float], tuple[np.ndarray, int, int]]:
    """Return a callable dropping whole clusters of surviving columns.

    The callable takes a boolean vector of surviving columns and a minimum
    cluster size in voxels. It returns the columns with at least one member
    voxel left after the small clusters are removed, and the number of
    clusters kept and dropped.
    """

    def cluster_filter(surviving_columns: np.ndarray, min_size: float):
        volume = np.zeros(patch_info.geometry.shape, dtype=bool)
        volume[patch_info.mask] = patch_info.expand(np.asarray(surviving_columns, dtype=bool))
        keep, n_kept, n_dropped = remove_small_clusters(volume, min_size, connectivity)
        voxel_hits = np.bincount(
            patch_info.location_to_column,
            weights=keep[patch_info.mask].astype(float),
            minlength=patch_info.n_patches,
        )
        logger.info("Cluster size threshold %.1f voxels: %d clusters kept, %d dropped",
                    min_size, n_kept, n_dropped)
        return voxel_hits > 0, n_kept, n_dropped

    return cluster_filter
