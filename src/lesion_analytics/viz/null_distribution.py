"""Histogram of a permutation null distribution."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from ..stats.permutation import NullDistribution
from .style import NULL_COLOR, OBSERVED_COLOR, THRESHOLD_COLOR, apply_style

logger = logging.getLogger(__name__)

_XLABELS = {
    "fwer": "Peak statistic",
    "cluster": "Largest cluster size (voxels)",
}


def plot_null_distribution(
    null: NullDistribution,
    output_path: Path,
    threshold: float | None = None,
    observed: float | None = None,
    title: str | None = None,
) -> None:
    """Save a histogram of the permutation values.

    Parameters
    ----------
    null : NullDistribution
    output_path : Path
        Image file to write.
    threshold : float, optional
        Correction threshold, drawn as a vertical line.
    observed : float, optional
        Observed peak statistic or cluster size.
    title : str, optional
    """
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    apply_style()
    fig, ax = plt.subplots()
    values = null.values[np.isfinite(null.values)]
    n_bins = int(np.clip(np.sqrt(values.size), 10, 60))
    ax.hist(values, bins=n_bins, color=NULL_COLOR, alpha=0.8)

    if threshold is not None:
        ax.axvline(threshold, color=THRESHOLD_COLOR, linestyle="--", label=f"threshold {threshold:.3g}")
    if observed is not None:
        ax.axvline(observed, color=OBSERVED_COLOR, label=f"observed {observed:.3g}")
    if threshold is not None or observed is not None:
        ax.legend()

    ax.set_xlabel(_XLABELS.get(null.mode, "Value"))
    ax.set_ylabel("Permutations")
    ax.set_title(title or f"Null distribution ({null.completed} permutations)")

    fig.tight_layout()
    fig.savefig(output_path)
    plt.close(fig)
    logger.info("Saved null distribution plot: %s", output_path)
