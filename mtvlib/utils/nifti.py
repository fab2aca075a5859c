"""NIfTI input/output at the boundary of the reconstruction."""

import os
from typing import List, Optional, Sequence, Union

import nibabel as nib
import numpy as np
import torch

from ..core.volume import Volume

__all__ = [
    "load_volume",
    "load_channels",
    "save_volume",
    "output_path",
    "write_reconstruction",
]


def load_volume(
    path: str,
    dtype: torch.dtype = torch.float32,
    paged: bool = False,
    directory: Optional[str] = None,
) -> Volume:
    """Read a NIfTI file into a :class:`Volume`.

    The volume keeps the file name (without directory) as its name, so
    outputs can be written as ``{prefix}_{name}``. 4D files must have a
    single volume.
    """
    img = nib.load(path)
    data = np.asarray(img.get_fdata(dtype=np.float32))
    if data.ndim == 4 and data.shape[3] == 1:
        data = data[..., 0]
    if data.ndim not in (2, 3):
        raise ValueError(f"Expected a 2D or 3D image in {path}, got shape {data.shape}")
    return Volume.from_array(
        data, img.affine, name=os.path.basename(path),
        paged=paged, directory=directory, dtype=dtype,
    )


def load_channels(
    paths: Sequence[Union[str, Sequence[str]]],
    dtype: torch.dtype = torch.float32,
) -> List[List[Volume]]:
    """Load one list of volumes per channel.

    Args:
        paths: Per channel, either a single path or a list of repeats.
    """
    channels = []
    for entry in paths:
        entry = [entry] if isinstance(entry, str) else list(entry)
        channels.append([load_volume(p, dtype) for p in entry])
    return channels


def save_volume(
    volume: Volume,
    path: str,
    description: str = "MTV recovered",
) -> str:
    """Write a volume as float32 NIfTI with its affine as qform and sform."""
    data = volume.data.detach().cpu().numpy().astype(np.float32)
    img = nib.Nifti1Image(data, volume.affine)
    img.header.set_xyzt_units(2)
    img.header["descrip"] = description.encode()[:80]
    img.set_qform(volume.affine, code=1)
    img.set_sform(volume.affine, code=1)
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    nib.save(img, path)
    return path


def output_path(directory: str, prefix: str, name: str) -> str:
    """``{directory}/{prefix}_{name}``, defaulting to a ``.nii`` extension."""
    if not (name.endswith(".nii") or name.endswith(".nii.gz")):
        name = f"{name}.nii"
    return os.path.join(directory, f"{prefix}_{name}")


def write_reconstruction(result, directory: str, prefix: str) -> List[str]:
    """Write every reconstructed channel of a ``ReconstructionResult``.

    Returns:
        Paths of the written files.
    """
    paths = []
    for c, vol in enumerate(result.volumes):
        name = vol.name if vol.name is not None else f"channel{c:02d}"
        paths.append(save_volume(vol, output_path(directory, prefix, name)))
    return paths
