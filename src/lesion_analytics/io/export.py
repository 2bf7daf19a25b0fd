"""Write a mapping result to an output directory."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd
import yaml

from ..stats.permutation import peak_statistic
from .images import make_image, volume_image

if TYPE_CHECKING:
    from ..core import MappingResult

logger = logging.getLogger(__name__)


def _plain(value):
    """Convert numpy scalars and arrays into YAML-friendly Python values."""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    return value


def save_result(result: MappingResult, output_dir: str | Path) -> dict[str, Path]:
    """Save maps, call information, the null distribution and the run log.

    Spatial maps (``stat``, ``pval``, ``zmap``, ``mask``, ``average``) are
    written as NIfTI when the result carries patch information; otherwise
    the column values go to ``columns.csv``.

    Returns
    -------
    dict[str, Path]
        Written files keyed by output name.
    """
    import nibabel as nib

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    written: dict[str, Path] = {}

    info = result.patch_info
    if result.statistic is not None:
        if info is not None:
            for name, kind in (("stat", "statistic"), ("pval", "pvalue"), ("zmap", "zscore")):
                if getattr(result, kind) is None:
                    continue
                path = output_dir / f"{name}.nii.gz"
                nib.save(result.image(kind), str(path))
                written[name] = path
        else:
            path = output_dir / "columns.csv"
            result.to_frame().to_csv(path, index=False)
            written["columns"] = path

    if info is not None:
        path = output_dir / "mask.nii.gz"
        nib.save(make_image(info.mask, info.geometry, np.ones(info.n_voxels), dtype=np.uint8), str(path))
        written["mask"] = path
        if result.average is not None:
            path = output_dir / "average.nii.gz"
            nib.save(volume_image(result.average, info.geometry), str(path))
            written["average"] = path
        if info.patched:
            path = output_dir / "patches.csv"
            info.to_frame().to_csv(path, index=False)
            written["patches"] = path
            for name, volume in (("patch_labels", info.patch_image()), ("patch_sizes", info.size_image())):
                path = output_dir / f"{name}.nii.gz"
                nib.save(volume_image(volume, info.geometry, dtype=np.int32), str(path))
                written[name] = path

    path = output_dir / "callinfo.yaml"
    call_info = dict(result.call_info)
    call_info["null_result"] = result.null_result
    if result.message:
        call_info["message"] = result.message
    if result.anomalies:
        call_info["anomalies"] = result.anomalies
    with open(path, "w") as f:
        yaml.safe_dump(_plain(call_info), f, sort_keys=False)
    written["callinfo"] = path

    if result.null is not None:
        path = output_dir / "null_distribution.csv"
        pd.DataFrame({"value": result.null.values}).to_csv(path, index=False)
        written["null_distribution"] = path

        from ..viz.null_distribution import plot_null_distribution

        observed = None
        if result.null.mode == "fwer" and result.raw is not None:
            observed = peak_statistic(result.raw.statistic, result.raw.alternative, result.null.peak_rank)
            if not np.isfinite(observed):
                observed = None
        path = output_dir / "null_distribution.png"
        plot_null_distribution(result.null, path, threshold=result.threshold, observed=observed)
        written["null_plot"] = path

    if result.log:
        path = output_dir / "mapping.log"
        path.write_text("\n".join(result.log) + "\n")
        written["log"] = path

    logger.info("Saved %d files to %s", len(written), output_dir)
    return written
