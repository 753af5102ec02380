import math
from enum import Enum
from typing import Optional

import torch
from torch import nn

from cryoREC.configManager.inject_defaults import inject_defaults_from_config, CONFIG_PARAM
from cryoREC.configs.mainConfig import main_config
from cryoREC.fourier.fourierGrids import half_radius, half_shape
from cryoREC.reconstruction.interpolation import Interpolator
from cryoREC.utils.exceptions import AccumulatorStateError, ConfigurationError


class AccumulatorState(Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    SYMMETRIZED = "symmetrized"
    RECONSTRUCTING = "reconstructing"
    FINAL = "final"
    RELEASED = "released"


_ORDER = [AccumulatorState.EMPTY, AccumulatorState.ACCUMULATING, AccumulatorState.SYMMETRIZED,
          AccumulatorState.RECONSTRUCTING, AccumulatorState.FINAL]


class FourierAccumulator(nn.Module):
    """
    Padded, oversampled half-spectrum holding the CTF-weighted signal (complex) and the CTF^2 weight (real)
    of every inserted projection. Layout: (P, P, P//2+1) for 3D and (P, P//2+1) for 2D, with P the padded size
    and the DC component at (P//2, P//2, 0).
    """

    @inject_defaults_from_config(main_config.reconstruct)
    def __init__(self,
                 ori_size: int,
                 padding_factor: float = CONFIG_PARAM(),
                 interpolator: Interpolator = CONFIG_PARAM(),
                 ndim: int = 3,
                 max_radius: Optional[int] = None,
                 dtype: torch.dtype = torch.float32,
                 device: str = "cpu"):
        super().__init__()
        if ori_size < 2:
            raise ConfigurationError(f"ori_size must be >= 2, got {ori_size}")
        if padding_factor < 1:
            raise ConfigurationError(f"padding_factor must be >= 1, got {padding_factor}")
        if ndim not in (2, 3):
            raise ConfigurationError(f"ndim must be 2 or 3, got {ndim}")
        if dtype not in (torch.float32, torch.float64):
            raise ConfigurationError(f"dtype must be float32 or float64, got {dtype}")
        self.ori_size = ori_size
        self.padding_factor = padding_factor
        self.pad_size = int(round(padding_factor * ori_size))
        if self.pad_size < ori_size:
            raise ConfigurationError(f"The padded size {self.pad_size} is smaller than the box {ori_size}")
        self.interpolator = interpolator
        self.ndim = ndim
        self.dtype = dtype
        self.register_buffer("signal", None)
        self.register_buffer("weight", None)
        self.register_buffer("dummy_buffer", torch.ones(1, dtype=dtype, device=device))
        self.max_radius = None
        self._state = AccumulatorState.EMPTY
        self.init_zeros(max_radius)

    def get_device(self):
        return self.dummy_buffer.device

    @property
    def complex_dtype(self):
        return torch.complex64 if self.dtype == torch.float32 else torch.complex128

    @property
    def scale(self) -> float:
        """Padded grid pixels per image Fourier pixel."""
        return self.pad_size / self.ori_size

    @property
    def padded_max_radius(self) -> float:
        return self.max_radius * self.scale

    @property
    def support_radius(self) -> float:
        """Radius (padded pixels) beyond which no insertion can ever touch a voxel."""
        return self.padded_max_radius + math.sqrt(self.ndim)

    @property
    def shape(self):
        return half_shape(self.pad_size, self.ndim)

    @property
    def state(self) -> AccumulatorState:
        return self._state

    def init_zeros(self, max_radius: Optional[int] = None):
        """Allocate zeroed storage. `max_radius` is in unpadded pixels (default ori_size//2)."""
        if max_radius is None:
            max_radius = self.ori_size // 2
        if max_radius < 0:
            raise ConfigurationError(f"max_radius must be >= 0, got {max_radius}")
        self.max_radius = max_radius
        device = self.get_device()
        self.signal = torch.zeros(self.shape, dtype=self.complex_dtype, device=device)
        self.weight = torch.zeros(self.shape, dtype=self.dtype, device=device)
        self._state = AccumulatorState.EMPTY
        return self

    def radius_grid(self) -> torch.Tensor:
        """Distance (padded pixels) of every stored voxel to the DC component."""
        return half_radius(self.pad_size, self.ndim, self.get_device(), self.dtype)

    def _check_state(self, *allowed: AccumulatorState):
        if self._state not in allowed:
            raise AccumulatorStateError(f"Operation not allowed on an accumulator in state {self._state.value}")

    def set_state(self, state: AccumulatorState):
        """Advance the lifecycle. Moving backwards, or leaving RELEASED/FINAL, is an error."""
        if self._state == AccumulatorState.RELEASED or state == AccumulatorState.RELEASED:
            raise AccumulatorStateError(f"Cannot go from {self._state.value} to {state.value}")
        if _ORDER.index(state) < _ORDER.index(self._state):
            raise AccumulatorStateError(f"Cannot go back from {self._state.value} to {state.value}")
        self._state = state

    def start_accumulating(self):
        self._check_state(AccumulatorState.EMPTY, AccumulatorState.ACCUMULATING)
        self._state = AccumulatorState.ACCUMULATING

    def is_compatible(self, other: "FourierAccumulator") -> bool:
        return (self.ori_size, self.pad_size, self.ndim, self.max_radius, self.interpolator, self.dtype) == \
            (other.ori_size, other.pad_size, other.ndim, other.max_radius, other.interpolator, other.dtype)

    def empty_like(self) -> "FourierAccumulator":
        return FourierAccumulator(self.ori_size, padding_factor=self.padding_factor, interpolator=self.interpolator,
                                  ndim=self.ndim, max_radius=self.max_radius, dtype=self.dtype,
                                  device=str(self.get_device()))

    def merge_add(self, other: "FourierAccumulator"):
        """Element-wise add the signal and weight of `other` into this accumulator."""
        if not self.is_compatible(other):
            raise ConfigurationError("Cannot merge accumulators with different geometry")
        accepting = (AccumulatorState.EMPTY, AccumulatorState.ACCUMULATING)
        self._check_state(*accepting)
        other._check_state(*accepting)
        self.signal += other.signal.to(self.get_device())
        self.weight += other.weight.to(self.get_device())
        self._state = AccumulatorState.ACCUMULATING
        return self

    def release(self):
        """Drop the storage (e.g. of a worker accumulator after it has been merged)."""
        self.signal = None
        self.weight = None
        self._state = AccumulatorState.RELEASED

    def extra_repr(self) -> str:
        return f"ori_size={self.ori_size}, pad_size={self.pad_size}, ndim={self.ndim}, " \
               f"max_radius={self.max_radius}, interpolator={self.interpolator.value}, state={self._state.value}"
