"""
Resolution-dependent signal to noise estimates used for Wiener-style regularization.
"""
import torch

from cryoREC.reconstruction.fourierAccumulator import FourierAccumulator


def _shells(acc: FourierAccumulator) -> torch.Tensor:
    return torch.round(acc.radius_grid() / acc.scale).long()


def _shell_sum(values: torch.Tensor, shells: torch.Tensor, n_shells: int) -> torch.Tensor:
    out = torch.zeros(n_shells, dtype=values.dtype, device=values.device)
    keep = shells < n_shells
    return out.index_add_(0, shells[keep], values[keep])


def _half_multiplicity(acc: FourierAccumulator) -> torch.Tensor:
    """Voxels of the x = 0 plane (and the Nyquist plane) of a half spectrum stand for one full-spectrum voxel, the
    others for two."""
    mult = torch.full(acc.shape, 2., dtype=acc.dtype, device=acc.get_device())
    mult[..., 0] = 1.
    if acc.pad_size % 2 == 0:
        mult[..., -1] = 1.
    return mult


def fourier_shell_correlation(acc1: FourierAccumulator, acc2: FourierAccumulator, quotient=True) -> torch.Tensor:
    """
    FSC between two accumulators, per shell of the unpadded grid (shells 0 .. ori_size//2).

    :param quotient: correlate signal/weight (the half-map estimates) instead of the raw signals
    """
    def values(acc):
        if not quotient:
            return acc.signal
        w = acc.weight
        return torch.where(w > 0, acc.signal / torch.where(w > 0, w, torch.ones_like(w)), torch.zeros_like(acc.signal))

    f1, f2 = values(acc1), values(acc2)
    shells = _shells(acc1)
    mult = _half_multiplicity(acc1)
    n_shells = acc1.ori_size // 2 + 1
    num = _shell_sum(mult * (f1 * f2.conj()).real, shells, n_shells)
    d1 = _shell_sum(mult * f1.abs() ** 2, shells, n_shells)
    d2 = _shell_sum(mult * f2.abs() ** 2, shells, n_shells)
    denom = torch.sqrt(d1 * d2)
    fsc = torch.where(denom > 0, num / torch.where(denom > 0, denom, torch.ones_like(denom)), torch.zeros_like(num))
    fsc[0] = 1.
    return fsc


def tau2_from_fsc(acc: FourierAccumulator, fsc: torch.Tensor, min_fsc: float = 1e-3,
                  max_fsc: float = 0.999) -> torch.Tensor:
    """
    tau2 per shell = SSNR * sigma2, with SSNR = FSC / (1 - FSC) and sigma2 the mean of 1/weight over the voxels
    of the shell that received data. Shells with FSC below min_fsc get tau2 = 0.
    """
    shells = _shells(acc)
    n_shells = fsc.numel()
    has_data = (acc.weight > 0).to(acc.dtype)
    inv_weight = torch.where(acc.weight > 0, 1. / torch.where(acc.weight > 0, acc.weight,
                                                              torch.ones_like(acc.weight)),
                             torch.zeros_like(acc.weight))
    counts = _shell_sum(has_data, shells, n_shells)
    sigma2 = _shell_sum(inv_weight, shells, n_shells) / counts.clamp(min=1.)
    fsc = fsc.to(acc.dtype).clamp(max=max_fsc)
    ssnr = torch.where(fsc > min_fsc, fsc / (1. - fsc), torch.zeros_like(fsc))
    return ssnr * sigma2
