"""Reading lesion data and writing mapping results."""

from .loader import load_behavior, load_covariates, load_lesions, load_mask, load_volume
from .images import fill_volume, make_image, volume_image
from .export import save_result

__all__ = [
    "load_behavior",
    "load_covariates",
    "load_lesions",
    "load_mask",
    "load_volume",
    "fill_volume",
    "make_image",
    "volume_image",
    "save_result",
]
