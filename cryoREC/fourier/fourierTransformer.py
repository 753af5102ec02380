"""
Fourier transform provider shared by the worker threads of one reconstruction.

Transforms are described by plans keyed on (kind, shape, dtype, device). torch.fft keeps its own backend plans
(the cuFFT plan cache on GPU, pocketfft/MKL descriptors on CPU); an FFTPlan here validates the request and runs one
transform of the real shape when it is first created, so backend failures surface before any data is touched and
the backend plan is already warm. Creating a plan is serialized with a lock; executing a plan is lock-free.
All spectra use the centered layouts: the half axis (last one) of real-to-complex transforms is never shifted, every
other transformed axis has its DC at index size//2.
"""
import threading
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import torch

from cryoREC.utils.exceptions import FourierTransformError

_SUPPORTED_REAL = (torch.float32, torch.float64)
_SUPPORTED_COMPLEX = (torch.complex64, torch.complex128)


@dataclass(frozen=True)
class FFTPlan:
    kind: str
    shape: Tuple[int, ...]
    dtype: torch.dtype
    device: str

    @property
    def dims(self) -> Tuple[int, ...]:
        return tuple(range(-len(self.shape), 0))

    @property
    def shifted_dims(self) -> Tuple[int, ...]:
        return self.dims[:-1]


class FourierTransformer:
    """Thread-safe provider of centered real <-> half-complex transforms."""

    def __init__(self):
        self._plans: Dict[tuple, FFTPlan] = {}
        self._lock = threading.Lock()

    @property
    def n_plans(self) -> int:
        return len(self._plans)

    def get_plan(self, kind: str, shape: Sequence[int], dtype: torch.dtype, device="cpu") -> FFTPlan:
        key = (kind, tuple(int(s) for s in shape), dtype, str(device))
        plan = self._plans.get(key)
        if plan is not None:
            return plan
        with self._lock:
            plan = self._plans.get(key)
            if plan is None:
                plan = self._create_plan(*key)
                self._plans[key] = plan
        return plan

    @staticmethod
    def _create_plan(kind, shape, dtype, device) -> FFTPlan:
        if kind not in ("rfft", "irfft"):
            raise FourierTransformError(f"Unknown transform kind {kind}")
        if not 1 <= len(shape) <= 3 or any(s < 1 for s in shape):
            raise FourierTransformError(f"Cannot create a {kind} plan for shape {shape}")
        supported = _SUPPORTED_REAL if kind == "rfft" else _SUPPORTED_COMPLEX
        if dtype not in supported:
            raise FourierTransformError(f"Cannot create a {kind} plan for dtype {dtype}")
        try:
            if kind == "rfft":
                torch.fft.rfftn(torch.zeros(shape, dtype=dtype, device=device))
            else:
                half = shape[:-1] + (shape[-1] // 2 + 1,)
                torch.fft.irfftn(torch.zeros(half, dtype=dtype, device=device), s=shape)
        except RuntimeError as e:
            raise FourierTransformError(f"Failed to create {kind} plan for {shape} {dtype} on {device}: {e}") from e
        return FFTPlan(kind, shape, dtype, device)

    def rfft(self, x: torch.Tensor, ndim: int) -> torch.Tensor:
        """Centered real-to-half-complex transform over the last ndim axes (real-space origin at size//2)."""
        plan = self.get_plan("rfft", x.shape[-ndim:], x.dtype, x.device)
        x = torch.fft.ifftshift(x, dim=plan.dims)
        x = torch.fft.rfftn(x, dim=plan.dims)
        if plan.shifted_dims:
            x = torch.fft.fftshift(x, dim=plan.shifted_dims)
        return x

    def irfft(self, x: torch.Tensor, real_shape: Sequence[int]) -> torch.Tensor:
        """Inverse of :meth:`rfft`; real_shape gives the real-space size of the transformed axes."""
        real_shape = tuple(real_shape)
        plan = self.get_plan("irfft", real_shape, x.dtype, x.device)
        if plan.shifted_dims:
            x = torch.fft.ifftshift(x, dim=plan.shifted_dims)
        x = torch.fft.irfftn(x, s=real_shape, dim=plan.dims)
        return torch.fft.fftshift(x, dim=plan.dims)



def pad_centered(x: torch.Tensor, size: int, ndim: int) -> torch.Tensor:
    """Zero-pad the last ndim axes to `size`, keeping the voxel at n//2 at size//2."""
    n = x.shape[-1]
    if size == n:
        return x
    start = size // 2 - n // 2
    out = x.new_zeros((*x.shape[:-ndim], *(size,) * ndim))
    out[(Ellipsis,) + (slice(start, start + n),) * ndim] = x
    return out


def window_centered(x: torch.Tensor, size: int, ndim: int) -> torch.Tensor:
    """Extract the centered size^ndim block of the last ndim axes (inverse of :func:`pad_centered`)."""
    n = x.shape[-1]
    if size == n:
        return x
    start = n // 2 - size // 2
    return x[(Ellipsis,) + (slice(start, start + size),) * ndim]
