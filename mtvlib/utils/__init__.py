"""Boundary utilities: file I/O, quality metrics and worker pools."""

from .parallel import (
    MAX_WORKERS,
    effective_workers,
    map_channels,
)
from .metrics import (
    psnr,
    ssim,
    compare_channels,
)
from .nifti import (
    load_volume,
    load_channels,
    save_volume,
    output_path,
    write_reconstruction,
)

__all__ = [
    # Worker pool
    "MAX_WORKERS",
    "effective_workers",
    "map_channels",
    # Metrics
    "psnr",
    "ssim",
    "compare_channels",
    # NIfTI
    "load_volume",
    "load_channels",
    "save_volume",
    "output_path",
    "write_reconstruction",
]
