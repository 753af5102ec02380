import math
from typing import List

import torch

from cryoREC.fourier.fourierGrids import half_grid, logical_to_index
from cryoREC.geometry.symmetry import SymmetryOperator, SymmetryOperatorSet
from cryoREC.reconstruction.fourierAccumulator import AccumulatorState, FourierAccumulator
from cryoREC.reconstruction.interpolation import Interpolator, gather


def _average(acc: FourierAccumulator, operators: List[SymmetryOperator]):
    """Replace signal and weight by the weighted average of their transformed copies."""
    device = acc.get_device()
    coords = half_grid(acc.pad_size, acc.ndim, device, acc.dtype)
    target = coords.pow(2).sum(-1).sqrt() <= acc.support_radius
    v = coords[target]

    new_signal = torch.zeros(v.shape[0], dtype=acc.complex_dtype, device=device)
    new_weight = torch.zeros(v.shape[0], dtype=acc.dtype, device=device)
    total = 0.
    for op in operators:
        # Row vectors: (R^T v)^T = v^T R
        src = v @ op.rotation.to(device=device, dtype=acc.dtype)
        mirror = src[:, 0] < 0
        src = torch.where(mirror.unsqueeze(-1), -src, src)
        idx = logical_to_index(src, acc.pad_size)
        signal = gather(acc.signal, idx, Interpolator.TRILINEAR)
        signal = torch.where(mirror, signal.conj_physical(), signal)
        if op.translation is not None:
            t = op.translation.to(device=device, dtype=acc.dtype)
            phase = -2 * math.pi * (v @ t) / acc.pad_size
            signal = signal * torch.polar(torch.ones_like(phase), phase)
        new_signal += op.weight * signal
        new_weight += op.weight * gather(acc.weight, idx, Interpolator.TRILINEAR)
        total += op.weight

    acc.signal[target] = new_signal / total
    acc.weight[target] = new_weight / total


def symmetrise(accumulator: FourierAccumulator, operator_set: SymmetryOperatorSet) -> FourierAccumulator:
    """
    Average the accumulator over its symmetry copies: first over the helical operators (together with the
    identity), then over the point group. Samples rotated from beyond the stored support are dropped.
    """
    accumulator._check_state(AccumulatorState.EMPTY, AccumulatorState.ACCUMULATING)
    if operator_set.helical:
        identity = SymmetryOperator(torch.eye(accumulator.ndim, dtype=torch.float64))
        _average(accumulator, [identity] + operator_set.helical)
    _average(accumulator, operator_set.point_group)
    accumulator.set_state(AccumulatorState.SYMMETRIZED)
    return accumulator
