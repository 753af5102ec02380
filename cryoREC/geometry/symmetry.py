import math
from dataclasses import dataclass
from typing import List, Optional

import torch
from scipy.spatial.transform import Rotation as R

from cryoREC.cacheManager import get_cache
from cryoREC.utils.exceptions import ConfigurationError

cache = get_cache(cache_name=None)


@cache.cache
def getSymmetryGroup(symmetry, as_matrix=False, device: str = "cpu"):
    try:
        group = R.create_group(symmetry.upper())
    except ValueError as e:
        raise ConfigurationError(f"Unknown point group symmetry {symmetry}") from e
    if as_matrix:
        group = torch.stack([torch.from_numpy(x) for x in group.as_matrix()]).to(device)
    return group


def _planar_group(symmetry: str) -> List[torch.Tensor]:
    sym = symmetry.upper()
    if not sym.startswith("C") or not sym[1:].isdigit() or int(sym[1:]) < 1:
        raise ConfigurationError(f"Only Cn symmetries are available for 2D reconstructions, got {symmetry}")
    n = int(sym[1:])
    mats = []
    for i in range(n):
        a = 2 * math.pi * i / n
        mats.append(torch.tensor([[math.cos(a), -math.sin(a)], [math.sin(a), math.cos(a)]], dtype=torch.float64))
    return mats


@dataclass
class SymmetryOperator:
    """
    Rotation (ndim x ndim) and translation (ndim, in pixels of the unpadded box) with an averaging weight.
    Applied to a Fourier volume as  F'(k) = exp(-2*pi*i*k.t/P) F(R^T k), k in padded-grid pixels, P the padded size.
    """
    rotation: torch.Tensor
    translation: Optional[torch.Tensor] = None
    weight: float = 1.0

    @property
    def is_identity(self) -> bool:
        eye = torch.eye(self.rotation.shape[-1], dtype=self.rotation.dtype)
        no_shift = self.translation is None or bool((self.translation == 0).all())
        return bool(torch.equal(self.rotation, eye)) and no_shift


class SymmetryOperatorSet:
    """Ordered helical operators followed by the point group operators (identity included)."""

    def __init__(self, point_group: List[SymmetryOperator], helical: Optional[List[SymmetryOperator]] = None,
                 symmetry: str = "C1"):
        self.point_group = point_group
        self.helical = helical or []
        self.symmetry = symmetry

    @classmethod
    def from_config(cls, symmetry: str = "C1", helical_rise_px: float = 0., helical_twist: float = 0.,
                    nr_helical_asu: int = 1, ndim: int = 3) -> "SymmetryOperatorSet":
        """
        :param symmetry: point group name, as understood by scipy (C1, Cn, Dn, T, O, I)
        :param helical_rise_px: helical rise in pixels
        :param helical_twist: helical twist in degrees
        :param nr_helical_asu: number of helical asymmetric units. 1 means no helical symmetry
        :param ndim: 2 for in-plane (Cn only) symmetry, 3 otherwise
        """
        if nr_helical_asu < 1:
            raise ConfigurationError(f"nr_helical_asu must be >= 1, got {nr_helical_asu}")
        if ndim == 2:
            if nr_helical_asu > 1:
                raise ConfigurationError("Helical symmetry is not available for 2D reconstructions")
            mats = _planar_group(symmetry)
        elif ndim == 3:
            mats = list(getSymmetryGroup(symmetry, as_matrix=True).to(torch.float64))
        else:
            raise ConfigurationError(f"ndim must be 2 or 3, got {ndim}")
        point_group = [SymmetryOperator(m) for m in mats]
        helical = cls.helical_operators(helical_rise_px, helical_twist, nr_helical_asu)
        return cls(point_group, helical, symmetry=symmetry.upper())

    @staticmethod
    def helical_operators(rise_px: float, twist: float, nr_asu: int) -> List[SymmetryOperator]:
        """The operators i*(twist, rise) for i = +-1 ... +-(nr_asu-1)."""
        ops = []
        for i in range(-(nr_asu - 1), nr_asu):
            if i == 0:
                continue
            rot = torch.from_numpy(R.from_euler("z", i * twist, degrees=True).as_matrix())
            shift = torch.tensor([0., 0., i * rise_px], dtype=torch.float64)
            ops.append(SymmetryOperator(rot, shift))
        return ops

    @property
    def is_trivial(self) -> bool:
        return not self.helical and all(op.is_identity for op in self.point_group)

    def __len__(self):
        return len(self.helical) + len(self.point_group)

    def __repr__(self):
        return f"SymmetryOperatorSet({self.symmetry}, n_point_group={len(self.point_group)}, " \
               f"n_helical={len(self.helical)})"
