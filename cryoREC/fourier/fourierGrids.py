from functools import lru_cache
from typing import Tuple

import einops
import torch


def centered_freqs(size: int, device="cpu", dtype=torch.float64) -> torch.Tensor:
    """Logical frequency index of each position of a centered axis: -size//2 ... (size-1)//2."""
    return torch.arange(size, device=device, dtype=dtype) - size // 2


def half_freqs(size: int, device="cpu", dtype=torch.float64) -> torch.Tensor:
    """Logical frequency index of each position of the non-redundant (last) axis of a half spectrum."""
    return torch.arange(size // 2 + 1, device=device, dtype=dtype)


def half_shape(size: int, ndim: int) -> Tuple[int, ...]:
    return (size,) * (ndim - 1) + (size // 2 + 1,)


@lru_cache(maxsize=16)
def _half_grid_cached(size: int, ndim: int, device: str, dtype: torch.dtype) -> torch.Tensor:
    axes = [centered_freqs(size, device, dtype)] * (ndim - 1) + [half_freqs(size, device, dtype)]
    grids = torch.meshgrid(*axes, indexing="ij")  # array order: [z,] y, x
    return einops.rearrange(list(grids[::-1]), "c ... -> ... c")


def half_grid(size: int, ndim: int, device="cpu", dtype=torch.float64) -> torch.Tensor:
    """
    Logical (x, y[, z]) frequency coordinates of every element of a centered half spectrum.

    :return: tensor of shape half_shape(size, ndim) + (ndim,), last axis ordered x, y, z
    """
    return _half_grid_cached(size, ndim, str(device), dtype)


def half_radius(size: int, ndim: int, device="cpu", dtype=torch.float64) -> torch.Tensor:
    return half_grid(size, ndim, device, dtype).pow(2).sum(-1).sqrt()


def logical_to_index(coords: torch.Tensor, size: int) -> torch.Tensor:
    """
    Map logical (x, y[, z]) coordinates of a half spectrum of side `size` to fractional array indices
    in array order ([z,] y, x).
    """
    offsets = torch.zeros(coords.shape[-1], dtype=coords.dtype, device=coords.device)
    offsets[1:] = size // 2
    return (coords + offsets).flip(-1)


def azimuth_degrees(coords: torch.Tensor, decimals: int = 6) -> torch.Tensor:
    """Azimuth in [0, 360) of (x, y) coordinates, snapped to `decimals` so that boundary ties are exact."""
    theta = torch.rad2deg(torch.atan2(coords[..., 1], coords[..., 0]))
    return torch.round(theta, decimals=decimals) % 360
