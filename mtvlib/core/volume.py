"""Volumes and their backing storage.

A :class:`Volume` couples voxel data with the affine of its lattice. The
data lives behind a :class:`VolumeStorage`, either resident in memory or
paged to a ``.npy`` file between accesses. Algorithmic code only ever calls
``read``/``write`` and never knows which backend is active.

Volumes may carry leading non-spatial axes (e.g. gradient components with
shape (3, nx, ny, nz)); the last three axes are always spatial.
"""

import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import numpy as np
import torch

from .lattice import Lattice, voxel_size

__all__ = [
    "VolumeStorage",
    "InMemoryStorage",
    "PagedStorage",
    "make_storage",
    "Volume",
]


class VolumeStorage(ABC):
    """Read/write access to the voxel data of one volume."""

    @abstractmethod
    def read(self) -> torch.Tensor:
        """Return the stored data as a tensor."""

    @abstractmethod
    def write(self, data: torch.Tensor) -> None:
        """Replace the stored data."""

    @property
    @abstractmethod
    def shape(self) -> Tuple[int, ...]:
        """Shape of the stored data."""

    def release(self) -> None:
        """Free any resources held by the storage."""


class InMemoryStorage(VolumeStorage):
    """Storage holding a resident tensor."""

    def __init__(self, data: torch.Tensor):
        self._data = data

    def read(self) -> torch.Tensor:
        return self._data

    def write(self, data: torch.Tensor) -> None:
        if tuple(data.shape) != tuple(self._data.shape):
            raise ValueError(
                f"Cannot write data of shape {tuple(data.shape)} into storage "
                f"of shape {tuple(self._data.shape)}"
            )
        self._data = data

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self._data.shape)

    def release(self) -> None:
        self._data = torch.empty(0)


class PagedStorage(VolumeStorage):
    """Storage backed by a ``.npy`` file.

    Each ``read`` loads the file into a fresh tensor on the configured
    device; each ``write`` copies the tensor to host memory and saves it.

    Args:
        data: Initial contents.
        directory: Directory for the backing file (created if needed).
        name: Optional file stem; a random one is used otherwise.
    """

    def __init__(
        self,
        data: torch.Tensor,
        directory: str,
        name: Optional[str] = None,
    ):
        os.makedirs(directory, exist_ok=True)
        stem = name if name is not None else uuid.uuid4().hex
        self.path = os.path.join(directory, f"{stem}.npy")
        self._shape = tuple(data.shape)
        self._dtype = data.dtype
        self._device = data.device
        self.write(data)

    def read(self) -> torch.Tensor:
        arr = np.load(self.path)
        return torch.from_numpy(arr).to(device=self._device, dtype=self._dtype)

    def write(self, data: torch.Tensor) -> None:
        if tuple(data.shape) != self._shape:
            raise ValueError(
                f"Cannot write data of shape {tuple(data.shape)} into storage "
                f"of shape {self._shape}"
            )
        np.save(self.path, data.detach().cpu().numpy())

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._shape

    def release(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)


def make_storage(
    data: torch.Tensor,
    paged: bool = False,
    directory: Optional[str] = None,
    name: Optional[str] = None,
) -> VolumeStorage:
    """Select a storage backend.

    Args:
        data: Initial contents.
        paged: If True, use file-backed storage in ``directory``.
        directory: Required when ``paged`` is True.
        name: Optional file stem for paged storage.
    """
    if paged:
        if directory is None:
            raise ValueError("Paged storage requires a directory")
        return PagedStorage(data, directory, name)
    return InMemoryStorage(data)


@dataclass
class Volume:
    """Voxel data plus orientation.

    Attributes:
        storage: Backend holding the data.
        affine: 4x4 voxel-to-world matrix of the spatial axes.
        name: Optional identifier (file name for loaded volumes).
    """

    storage: VolumeStorage
    affine: np.ndarray
    name: Optional[str] = None

    def __post_init__(self) -> None:
        self.affine = np.array(self.affine, dtype=np.float64)
        if self.affine.shape != (4, 4):
            raise ValueError(f"Affine must be 4x4, got {self.affine.shape}")

    @classmethod
    def from_array(
        cls,
        data: Union[np.ndarray, torch.Tensor],
        affine: Optional[np.ndarray] = None,
        name: Optional[str] = None,
        paged: bool = False,
        directory: Optional[str] = None,
        dtype: Optional[torch.dtype] = None,
        device: Union[str, torch.device, None] = None,
    ) -> "Volume":
        """Wrap an array. 2D arrays get a trailing singleton slice axis."""
        if isinstance(data, np.ndarray):
            data = torch.from_numpy(np.ascontiguousarray(data))
        if data.ndim == 2:
            data = data[..., None]
        if dtype is not None or device is not None:
            data = data.to(dtype=dtype, device=device)
        if affine is None:
            affine = np.eye(4)
        return cls(make_storage(data, paged, directory, name), affine, name)

    @property
    def data(self) -> torch.Tensor:
        return self.storage.read()

    def assign(self, data: torch.Tensor) -> None:
        """Overwrite the voxel data."""
        self.storage.write(data)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.storage.shape

    @property
    def spatial_shape(self) -> Tuple[int, int, int]:
        return tuple(self.shape[-3:])

    @property
    def voxel_size(self) -> np.ndarray:
        return voxel_size(self.affine)

    def lattice(self, bound: str = "neumann") -> Lattice:
        return Lattice(self.spatial_shape, self.affine, bound)

    def release(self) -> None:
        self.storage.release()
