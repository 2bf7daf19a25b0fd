"""Plot defaults for figures saved next to mapping results."""

from __future__ import annotations

import matplotlib as mpl


HISTOGRAM_PARAMS = {
    "figure.figsize": (6, 4),
    "figure.dpi": 120,
    "savefig.dpi": 200,
    "savefig.bbox": "tight",
    "font.size": 9,
    "axes.titlesize": 11,
    "axes.spines.top": False,
    "axes.spines.right": False,
    "patch.edgecolor": "white",
    "legend.frameon": False,
}

NULL_COLOR = "#3498DB"
THRESHOLD_COLOR = "#E74C3C"
OBSERVED_COLOR = "#2ECC71"


def apply_style():
    """Apply histogram defaults to matplotlib."""
    mpl.rcParams.update(HISTOGRAM_PARAMS)
