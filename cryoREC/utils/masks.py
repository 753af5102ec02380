import math

import torch


def radial_distance(size: int, ndim: int, device="cpu", dtype=torch.float64) -> torch.Tensor:
    """Distance of every voxel of a size^ndim real-space array to its center (size//2)."""
    axes = [torch.arange(size, device=device, dtype=dtype) - size // 2] * ndim
    grids = torch.meshgrid(*axes, indexing="ij")
    return torch.stack(grids, dim=0).pow(2).sum(0).sqrt()


def raised_cosine_mask(size: int, ndim: int, radius: float, width: float, device="cpu",
                       dtype=torch.float64) -> torch.Tensor:
    """1 inside `radius`, 0 beyond `radius + width`, raised-cosine edge in between."""
    r = radial_distance(size, ndim, device, dtype)
    if width <= 0:
        return (r <= radius).to(dtype)
    edge = 0.5 * (1. + torch.cos(math.pi * (r - radius) / width))
    mask = torch.where(r <= radius, torch.ones_like(r), edge)
    return torch.where(r >= radius + width, torch.zeros_like(r), mask)


def soft_mask_outside(img: torch.Tensor, radius: float, width: float) -> torch.Tensor:
    """
    Soft-mask the last two axes of `img` with a raised-cosine circle, filling the outside with the mean
    value of the image beyond `radius + width`.
    """
    size = img.shape[-1]
    r = radial_distance(size, 2, img.device)
    mask = raised_cosine_mask(size, 2, radius, width, img.device).to(img.real.dtype)
    outside = r >= radius + width
    if bool(outside.any()):
        background = img[..., outside].mean(-1)[..., None, None]
    else:
        background = torch.zeros_like(img[..., :1, :1])
    return img * mask + background * (1 - mask)
