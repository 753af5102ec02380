import itertools
from enum import Enum
from functools import lru_cache
from typing import Optional, Tuple

import einops
import torch

from cryoREC.fourier.fourierGrids import logical_to_index


class Interpolator(Enum):
    NEAREST = "nearest"
    TRILINEAR = "trilinear"


@lru_cache(maxsize=4)
def _corner_offsets(ndim: int, device: str) -> torch.Tensor:
    return torch.tensor(list(itertools.product((0, 1), repeat=ndim)), dtype=torch.long, device=device)


def _flat_index(idx: torch.Tensor, shape) -> torch.Tensor:
    flat = torch.zeros(idx.shape[:-1], dtype=torch.long, device=idx.device)
    for axis, n in enumerate(shape):
        flat = flat * n + idx[..., axis]
    return flat


def _in_bounds(idx: torch.Tensor, shape) -> torch.Tensor:
    dims = torch.tensor(shape, device=idx.device)
    return ((idx >= 0) & (idx < dims)).all(dim=-1)


def _kernel_corners(coords: torch.Tensor, interpolator: Interpolator) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Integer corners (B, C, d) and kernel weights (B, C) of fractional coordinates (B, d).
    C is 1 for nearest neighbour and 2^d for the multilinear kernel.
    """
    if interpolator == Interpolator.NEAREST:
        corner = torch.round(coords).to(torch.long).unsqueeze(1)
        return corner, torch.ones(corner.shape[:2], dtype=coords.dtype, device=coords.device)
    elif interpolator == Interpolator.TRILINEAR:
        base = torch.floor(coords)
        frac = coords - base
        offs = _corner_offsets(coords.shape[-1], str(coords.device))
        corner = base.to(torch.long).unsqueeze(1) + offs
        # For each axis, t where the offset bit is 1 and (1 - t) where it is 0
        per_axis = torch.where(offs.bool(), frac.unsqueeze(1), 1 - frac.unsqueeze(1))
        return corner, einops.reduce(per_axis, "b c d -> b c", "prod")
    else:
        raise ValueError(f"Unknown interpolator {interpolator}")


def _index_add(signal: torch.Tensor, weight: torch.Tensor, idx: torch.Tensor, values: torch.Tensor,
               weights: torch.Tensor) -> torch.Tensor:
    """Add at integer array indices (N, d), dropping the out-of-bounds ones. Returns the in-bounds mask."""
    valid = _in_bounds(idx, weight.shape)
    flat = _flat_index(idx[valid], weight.shape)
    signal.view(-1).index_add_(0, flat, values[valid])
    weight.view(-1).index_add_(0, flat, weights[valid])
    return valid


def scatter_add(signal: torch.Tensor, weight: torch.Tensor, coords: torch.Tensor, values: torch.Tensor,
                weights: torch.Tensor, interpolator: Interpolator, mirror: Optional[torch.Tensor] = None) -> int:
    """
    Add samples into a centered half spectrum (x >= 0 stored) and its weight.

    Each sample, at logical coordinates (x, y[, z]) given by `coords` (B, d), is spread with the interpolation
    kernel. The kernel corners c with x >= 0 receive (value, weight); when the sample is flagged in `mirror`
    (default: all), the corners with x <= 0 also send (conj(value), weight) to -c, which is where the Hermitian
    mate of the sample lands. Corners outside the arrays are dropped.

    :return: number of samples that touched the arrays
    """
    size = weight.shape[0]
    values = values.to(signal.dtype)
    weights = weights.to(weight.dtype)
    if mirror is None:
        mirror = torch.ones(coords.shape[0], dtype=torch.bool, device=coords.device)
    corner, cw = _kernel_corners(coords, interpolator)
    corner_values = values.unsqueeze(1) * cw.to(signal.dtype)
    corner_weights = weights.unsqueeze(1) * cw.to(weight.dtype)

    hit = torch.zeros(corner.shape[:2], dtype=torch.bool, device=coords.device)
    direct = corner[..., 0] >= 0
    hit[direct] = _index_add(signal, weight, logical_to_index(corner[direct], size),
                             corner_values[direct], corner_weights[direct])
    mirrored = (corner[..., 0] <= 0) & mirror.unsqueeze(1)
    hit_mirror = _index_add(signal, weight, logical_to_index(-corner[mirrored], size),
                            corner_values[mirrored].conj_physical(), corner_weights[mirrored])
    hit[mirrored] = hit[mirrored] | hit_mirror
    return int(hit.any(dim=1).sum())


def gather(volume: torch.Tensor, coords: torch.Tensor, interpolator: Interpolator) -> torch.Tensor:
    """Read `volume` at fractional array coordinates (B, d). Points (or corners) outside the array read as 0."""
    corner, cw = _kernel_corners(coords, interpolator)
    valid = _in_bounds(corner, volume.shape)
    corner = torch.where(valid.unsqueeze(-1), corner, torch.zeros_like(corner))
    vals = volume.reshape(-1)[_flat_index(corner, volume.shape)]
    cw = (cw * valid).to(vals.real.dtype)
    return (vals * cw).sum(dim=1)


@lru_cache(maxsize=8)
def kernel_transform(ori_size: int, pad_size: int, ndim: int, interpolator: Interpolator,
                     device: str = "cpu", dtype: torch.dtype = torch.float64, eps: float = 1e-3) -> torch.Tensor:
    """
    Real-space transform of the interpolation kernel on the centered ori_size^ndim window of the padded grid:
    prod_i sinc(r_i/pad_size) for nearest neighbour and prod_i sinc^2(r_i/pad_size) for trilinear.
    torch.sinc(x) = sin(pi*x)/(pi*x).
    """
    r = (torch.arange(ori_size, device=device, dtype=dtype) - ori_size // 2) / pad_size
    k1 = torch.sinc(r)
    if interpolator == Interpolator.TRILINEAR:
        k1 = k1.pow(2)
    kernel = k1
    for _ in range(ndim - 1):
        kernel = kernel.unsqueeze(-1) * k1
    return kernel.clamp_min(eps)
