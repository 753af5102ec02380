from typing import Optional, Sequence, Union

import torch

from cryoREC.configManager.inject_defaults import inject_defaults_from_config, CONFIG_PARAM
from cryoREC.configs.mainConfig import main_config
from cryoREC.fourier.fourierTransformer import FourierTransformer, pad_centered, window_centered
from cryoREC.reconstruction.fourierAccumulator import AccumulatorState, FourierAccumulator
from cryoREC.reconstruction.interpolation import kernel_transform
from cryoREC.utils.exceptions import ConfigurationError
from cryoREC.utils.loggers import getMainLogger
from cryoREC.utils.masks import raised_cosine_mask

TAU2_TYPE = Union[torch.Tensor, Sequence[float]]
_TINY_TAU2 = 1e-20
# In units of the machine epsilon of the weight dtype
_FILTERED_WEIGHT_RTOL = 1e3


class GriddingReconstructor:
    """
    Turns a finished accumulator into a real-space volume: optional Wiener regularization, division of signal
    by weight and iterative correction of the interpolation kernel bias.
    """

    @inject_defaults_from_config(main_config.reconstruct)
    def __init__(self,
                 grid_iters: int = CONFIG_PARAM(),
                 skip_gridding: bool = CONFIG_PARAM(),
                 tau2_fudge: float = CONFIG_PARAM(),
                 filter_mask_diameter: float = CONFIG_PARAM(),
                 filter_mask_softness: float = CONFIG_PARAM(),
                 transformer: Optional[FourierTransformer] = None,
                 verbose: bool = CONFIG_PARAM()):
        if grid_iters < 0:
            raise ConfigurationError(f"grid_iters must be >= 0, got {grid_iters}")
        if tau2_fudge <= 0:
            raise ConfigurationError(f"tau2_fudge must be > 0, got {tau2_fudge}")
        self.grid_iters = grid_iters
        self.skip_gridding = skip_gridding
        self.tau2_fudge = tau2_fudge
        self.filter_mask_diameter = filter_mask_diameter
        self.filter_mask_softness = filter_mask_softness
        self.transformer = transformer if transformer is not None else FourierTransformer()
        self.verbose = verbose

    def shell_index(self, acc: FourierAccumulator) -> torch.Tensor:
        """Shell (in unpadded pixels) of every stored voxel."""
        return torch.round(acc.radius_grid() / acc.scale).long()

    def regularised_weight(self, acc: FourierAccumulator, tau2: Optional[TAU2_TYPE] = None) -> torch.Tensor:
        """weight + 1/(tau2_fudge * tau2(shell)). Shells with a zero tau2, or beyond the tau2 array, are left as is."""
        if tau2 is None:
            return acc.weight
        tau2 = torch.as_tensor(tau2, dtype=acc.dtype, device=acc.get_device()) * self.tau2_fudge
        shells = self.shell_index(acc)
        in_range = shells < tau2.numel()
        shell_tau2 = tau2[shells.clamp(max=tau2.numel() - 1)]
        usable = in_range & (shell_tau2 > _TINY_TAU2)
        inv_tau2 = torch.where(usable, 1. / torch.where(usable, shell_tau2, torch.ones_like(shell_tau2)),
                               torch.zeros_like(shell_tau2))
        return acc.weight + inv_tau2

    def _filter_mask(self, acc: FourierAccumulator, signal: torch.Tensor, weight: torch.Tensor):
        """Multiply signal and weight, in real space, by a raised-cosine envelope."""
        shape = (acc.pad_size,) * acc.ndim
        mask = raised_cosine_mask(acc.pad_size, acc.ndim, self.filter_mask_diameter / 2., self.filter_mask_softness,
                                  acc.get_device(), acc.dtype)
        signal = self.transformer.rfft(self.transformer.irfft(signal, shape) * mask, acc.ndim)
        weight = self.transformer.rfft(self.transformer.irfft(weight.to(acc.complex_dtype), shape) * mask,
                                       acc.ndim).real
        return signal, weight

    def quotient(self, acc: FourierAccumulator, tau2: Optional[TAU2_TYPE] = None) -> torch.Tensor:
        """
        V0 = signal / (regularised) weight; exactly 0 wherever the regularised weight is not positive.
        With the filter mask, the filtered weight must also exceed a round-off threshold relative to its maximum.
        """
        signal = acc.signal
        weight = self.regularised_weight(acc, tau2)
        positive = weight > 0
        if self.filter_mask_diameter > 0:
            signal, weight = self._filter_mask(acc, signal, weight)
            threshold = _FILTERED_WEIGHT_RTOL * torch.finfo(weight.dtype).eps * weight.abs().max()
            positive = positive & (weight > threshold)
        safe = torch.where(positive, weight, torch.ones_like(weight))
        return torch.where(positive, signal / safe, torch.zeros_like(signal))

    def reconstruct(self, acc: FourierAccumulator, tau2: Optional[TAU2_TYPE] = None) -> torch.Tensor:
        """
        Real-space volume of side acc.ori_size.

        The quotient V0 is transformed to real space on the padded grid and windowed. Unless gridding is skipped,
        the result x is then refined grid_iters times with
        x += (target - window(ifft(support * fft(pad(x * k))))) / k, where target is the windowed transform of V0
        and k the real-space transform of the interpolation kernel.

        The correction assumes V0 is the transform of volume * k restricted to the support, which is what the
        weight-normalised insertion tends to when the samples cover the padded grid densely and evenly (many views).
        It undoes that real-space apodization only. Errors from sparse or uneven sampling are left as they are, and
        for objects close to the box center (where k ~ 1) the iterations change little.
        """
        acc.set_state(AccumulatorState.RECONSTRUCTING)
        logger = getMainLogger(self.verbose)
        n, p, ndim = acc.ori_size, acc.pad_size, acc.ndim
        padded_shape = (p,) * ndim

        v0 = self.quotient(acc, tau2)
        target = window_centered(self.transformer.irfft(v0, padded_shape), n, ndim)
        if self.skip_gridding or self.grid_iters == 0:
            acc.set_state(AccumulatorState.FINAL)
            return target.contiguous()

        kernel = kernel_transform(n, p, ndim, acc.interpolator, str(acc.get_device()), acc.dtype)
        support = (acc.radius_grid() <= acc.support_radius).to(acc.dtype)
        x = target / kernel
        for i in range(self.grid_iters):
            spectrum = self.transformer.rfft(pad_centered(x * kernel, p, ndim), ndim) * support
            predicted = window_centered(self.transformer.irfft(spectrum, padded_shape), n, ndim)
            residual = target - predicted
            x = x + residual / kernel
            logger.info(f"Gridding iteration {i + 1}/{self.grid_iters}: residual norm "
                        f"{residual.norm().item() / max(target.norm().item(), 1e-30):.3e}")
        acc.set_state(AccumulatorState.FINAL)
        return x.contiguous()
