"""In-memory lesion volumes and their spatial geometry."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..exceptions import HeaderMismatchError, InputShapeError


@dataclass(frozen=True)
class VolumeGeometry:
    """Shape and voxel-to-world affine shared by a set of volumes."""

    shape: tuple[int, ...]
    affine: np.ndarray = field(default_factory=lambda: np.eye(4), compare=False)

    def __post_init__(self):
        object.__setattr__(self, "shape", tuple(int(s) for s in self.shape))
        object.__setattr__(self, "affine", np.asarray(self.affine, dtype=float))

    def matches(self, other: VolumeGeometry, atol: float = 1e-4) -> bool:
        """True if shapes are equal and affines agree within ``atol``."""
        return self.shape == other.shape and np.allclose(self.affine, other.affine, atol=atol)

    @property
    def voxel_volume(self) -> float:
        """Volume of one voxel in mm^3."""
        return float(abs(np.linalg.det(self.affine[:3, :3])))


@dataclass
class LesionSet:
    """N binary lesion volumes stacked along the first axis.

    Attributes
    ----------
    data : ndarray of bool, shape (n_subjects, *geometry.shape)
    geometry : VolumeGeometry
    subject_ids : list[str]
    """

    data: np.ndarray
    geometry: VolumeGeometry
    subject_ids: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.data = np.asarray(self.data)
        if self.data.ndim < 2:
            raise InputShapeError("Lesion data must be (n_subjects, *spatial_shape)")
        if tuple(self.data.shape[1:]) != self.geometry.shape:
            raise HeaderMismatchError(
                f"Lesion volume shape {self.data.shape[1:]} does not match "
                f"geometry shape {self.geometry.shape}"
            )
        if not self.subject_ids:
            self.subject_ids = [f"sub-{i + 1:03d}" for i in range(self.data.shape[0])]
        elif len(self.subject_ids) != self.data.shape[0]:
            raise InputShapeError(
                f"{len(self.subject_ids)} subject ids for {self.data.shape[0]} lesion volumes"
            )
        self.data = self.data.astype(bool)

    @classmethod
    def from_arrays(
        cls,
        volumes: list[np.ndarray] | np.ndarray,
        affine: np.ndarray | None = None,
        subject_ids: list[str] | None = None,
    ) -> LesionSet:
        """Stack equally-shaped arrays into a LesionSet.

        Raises HeaderMismatchError if the arrays differ in shape.
        """
        volumes = [np.asarray(v) for v in volumes]
        if not volumes:
            raise InputShapeError("No lesion volumes supplied")
        shapes = {v.shape for v in volumes}
        if len(shapes) != 1:
            raise HeaderMismatchError(f"Lesion volumes have differing shapes: {sorted(shapes)}")
        geometry = VolumeGeometry(volumes[0].shape, np.eye(4) if affine is None else affine)
        return cls(np.stack(volumes) != 0, geometry, list(subject_ids or []))

    @property
    def n_subjects(self) -> int:
        return int(self.data.shape[0])

    def __len__(self) -> int:
        return self.n_subjects

    def check_mask(self, mask: np.ndarray, mask_geometry: VolumeGeometry | None = None) -> None:
        """Raise HeaderMismatchError unless ``mask`` lives in this set's space."""
        mask_geometry = mask_geometry or VolumeGeometry(np.shape(mask), self.geometry.affine)
        if not self.geometry.matches(mask_geometry):
            raise HeaderMismatchError(
                f"Mask geometry {mask_geometry.shape} does not match lesion geometry "
                f"{self.geometry.shape} (or affines differ)"
            )
