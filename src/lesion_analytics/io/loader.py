"""Read lesion volumes, masks, behavioral scores and covariates from disk."""

from __future__ import annotations

import glob
import logging
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd

from ..exceptions import HeaderMismatchError, InputShapeError
from ..lesion.volumes import LesionSet, VolumeGeometry

logger = logging.getLogger(__name__)

BINARIZE_THRESHOLD = 0.1

# comma, semicolon, tab or runs of spaces
TABLE_DELIMITER = r"\s*[,;\t]\s*|\s+"


def resolve_paths(lesions: str | Path | Sequence[str | Path]) -> list[Path]:
    """Expand a glob pattern or a list of files into existing paths.

    Glob matches are sorted so subject order is reproducible.
    """
    if isinstance(lesions, (str, Path)):
        text = str(lesions)
        if any(ch in text for ch in "*?["):
            paths = [Path(p) for p in sorted(glob.glob(text))]
            if not paths:
                raise FileNotFoundError(f"No lesion files match {text}")
            return paths
        lesions = [lesions]
    paths = [Path(p) for p in lesions]
    missing = [str(p) for p in paths if not p.exists()]
    if missing:
        raise FileNotFoundError(f"Lesion files not found: {', '.join(missing)}")
    return paths


def _binarize(data: np.ndarray, path: Path, threshold: float) -> np.ndarray:
    data = np.asarray(data)
    if np.isin(data, (0, 1)).all():
        return data.astype(bool)
    logger.warning("Non-binary values in %s; setting values >= %g to 1", path.name, threshold)
    return data >= threshold


def load_volume(path: str | Path) -> tuple[np.ndarray, VolumeGeometry]:
    """Load one NIfTI image as an array plus its geometry."""
    import nibabel as nib

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")
    img = nib.load(str(path))
    data = np.asanyarray(img.dataobj)
    return data, VolumeGeometry(shape=tuple(data.shape[:3]), affine=img.affine)


def load_lesions(
    lesions: str | Path | Sequence[str | Path],
    binarize_threshold: float = BINARIZE_THRESHOLD,
) -> LesionSet:
    """Load binary lesion maps into a :class:`LesionSet`.

    Parameters
    ----------
    lesions : str, Path or list
        A glob pattern, a list of 3-D NIfTI files, or a single 4-D file
        holding one volume per subject.
    binarize_threshold : float
        Non-binary images are rebinarized at this value.

    Returns
    -------
    LesionSet
        Subject identifiers are the file names without NIfTI extensions
        (or ``<file>_<index>`` for 4-D files).
    """
    paths = resolve_paths(lesions)
    volumes = []
    subject_ids = []
    reference: VolumeGeometry | None = None

    for path in paths:
        data, geometry = load_volume(path)
        if reference is None:
            reference = geometry
        elif not geometry.matches(reference):
            raise HeaderMismatchError(
                f"{path.name} has different dimensions or orientation than {paths[0].name}"
            )
        stem = path.name.split(".nii")[0]
        if data.ndim == 4:
            for i in range(data.shape[3]):
                volumes.append(_binarize(data[..., i], path, binarize_threshold))
                subject_ids.append(f"{stem}_{i + 1:03d}")
        else:
            volumes.append(_binarize(data, path, binarize_threshold))
            subject_ids.append(stem)

    logger.info("Loaded %d lesion maps of shape %s", len(volumes), reference.shape)
    return LesionSet(data=np.stack(volumes), geometry=reference, subject_ids=subject_ids)


def load_mask(path: str | Path, geometry: VolumeGeometry | None = None) -> tuple[np.ndarray, VolumeGeometry]:
    """Load an analysis mask, checking it against ``geometry`` when given."""
    data, mask_geometry = load_volume(path)
    if geometry is not None and not mask_geometry.matches(geometry):
        raise HeaderMismatchError(f"Mask {Path(path).name} does not match the lesion geometry")
    return data != 0, mask_geometry


def _read_table(path: Path, header) -> pd.DataFrame:
    return pd.read_csv(path, sep=TABLE_DELIMITER, engine="python", header=header, comment="#")


def load_behavior(path: str | Path, column: str | int | None = None) -> np.ndarray:
    """Read one behavioral score per subject.

    Plain files with one number per line are accepted, as are delimited
    tables with a header; ``column`` then selects the score by name or
    position.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Behavior file not found: {path}")

    frame = _read_table(path, header=None)
    first_row = pd.to_numeric(frame.iloc[0], errors="coerce")
    if first_row.isna().any():
        frame = _read_table(path, header=0)

    if column is None:
        if frame.shape[1] != 1:
            raise InputShapeError(
                f"{path.name} has {frame.shape[1]} columns; select one with 'column'"
            )
        series = frame.iloc[:, 0]
    elif isinstance(column, int):
        series = frame.iloc[:, column]
    else:
        series = frame[column]

    values = pd.to_numeric(series, errors="coerce").to_numpy(dtype=float)
    if np.isnan(values).any():
        raise InputShapeError(f"Non-numeric or missing behavioral scores in {path.name}")
    return values


def load_covariates(path: str | Path, columns: Sequence[str] | None = None) -> pd.DataFrame:
    """Read a table of numeric covariates (one row per subject, with header)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Covariate file not found: {path}")
    frame = _read_table(path, header=0)
    if columns is not None:
        frame = frame[list(columns)]
    frame = frame.apply(pd.to_numeric, errors="coerce")
    if frame.isna().any().any():
        bad = frame.columns[frame.isna().any()].tolist()
        raise InputShapeError(f"Non-numeric or missing covariate values in {bad}")
    return frame
