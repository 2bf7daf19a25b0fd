"""Lesion volumes, analysis masks, patches and spatial clusters."""

from .volumes import LesionSet, VolumeGeometry
from .mask import average_lesion_map, compute_mask, lesion_sizes, min_subjects_fraction
from .patches import PatchInfo, build_patches, lesion_matrix_from_patches
from .clusters import (
    label_clusters,
    make_cluster_filter,
    make_cluster_sizer,
    max_cluster_size,
    remove_small_clusters,
)

__all__ = [
    "LesionSet",
    "VolumeGeometry",
    "average_lesion_map",
    "compute_mask",
    "lesion_sizes",
    "min_subjects_fraction",
    "PatchInfo",
    "build_patches",
    "lesion_matrix_from_patches",
    "label_clusters",
    "make_cluster_filter",
    "make_cluster_sizer",
    "max_cluster_size",
    "remove_small_clusters",
]
