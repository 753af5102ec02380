import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import torch

from cryoREC.ctf.ctfModel import CTFModel
from cryoREC.fourier.fourierGrids import half_grid, half_shape
from cryoREC.reconstruction.ewaldSectors import EwaldSectorSplitter
from cryoREC.reconstruction.fourierAccumulator import FourierAccumulator
from cryoREC.reconstruction.interpolation import scatter_add
from cryoREC.utils.exceptions import ConfigurationError


@dataclass
class OrientedProjection:
    """
    One observed image ready to be inserted.

    fourier: centered half spectrum (N, N//2+1) of the image, complex
    rotation: (3, 3) rotation matrix, or (2, 2) for 2D reconstructions (may include an isotropic scale)
    ctf: real CTF values in the same layout as fourier. None means CTF = 1
    halfset: random subset (1 or 2) the image belongs to
    weight: per-image weight (figure of merit) multiplying both signal and weight contributions
    ctf_model: CTF parameters, needed for the Ewald sphere correction
    ewald_radius: Ewald sphere radius in Fourier pixels; overrides the one derived from ctf_model
    magnification: optional (2, 2) anisotropic magnification applied to the image coordinates before rotation
    image_id: optional name used to report the image when it is skipped
    """
    fourier: torch.Tensor
    rotation: torch.Tensor
    ctf: Optional[torch.Tensor] = None
    halfset: int = 1
    weight: float = 1.0
    ctf_model: Optional[CTFModel] = None
    ewald_radius: Optional[float] = None
    magnification: Optional[torch.Tensor] = None
    image_id: Optional[str] = None


class InsertionStatus(Enum):
    INSERTED = "inserted"
    SKIPPED = "skipped"


@dataclass
class InsertionResult:
    status: InsertionStatus
    n_samples: int = 0
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == InsertionStatus.INSERTED


def _skipped(msg) -> InsertionResult:
    return InsertionResult(InsertionStatus.SKIPPED, 0, msg)


def _all_finite(x: torch.Tensor) -> bool:
    return bool(torch.isfinite(x).all())


class ProjectionInserter:
    """
    Scatters oriented projections into one FourierAccumulator. The inserter is the only writer of its accumulator.
    """

    def __init__(self, accumulator: FourierAccumulator, ewald_splitter: Optional[EwaldSectorSplitter] = None,
                 pixel_size: Optional[float] = None):
        if ewald_splitter is not None:
            if accumulator.ndim != 3:
                raise ConfigurationError("The Ewald sphere correction requires a 3D accumulator")
            if pixel_size is None or pixel_size <= 0:
                raise ConfigurationError("A positive pixel_size is required for the Ewald sphere correction")
        self.accumulator = accumulator
        self.ewald_splitter = ewald_splitter
        self.pixel_size = pixel_size

    def expected_input_box(self, box: int) -> int:
        if self.ewald_splitter is not None:
            return self.ewald_splitter.output_box(box)
        return box

    def _validate(self, proj: OrientedProjection) -> Optional[str]:
        acc = self.accumulator
        fourier = proj.fourier
        if fourier.ndim != 2 or not fourier.is_complex():
            return f"fourier must be a 2D complex array, got {tuple(fourier.shape)} {fourier.dtype}"
        box = fourier.shape[0]
        if tuple(fourier.shape) != half_shape(box, 2):
            return f"fourier has shape {tuple(fourier.shape)}, expected {half_shape(box, 2)}"
        if self.expected_input_box(box) != acc.ori_size:
            raise ConfigurationError(f"Projection box {box} does not match the accumulator box {acc.ori_size}")
        if tuple(proj.rotation.shape) != (acc.ndim, acc.ndim):
            return f"rotation must be {acc.ndim}x{acc.ndim}, got {tuple(proj.rotation.shape)}"
        if not _all_finite(proj.rotation):
            return "rotation contains non-finite values"
        if not _all_finite(fourier):
            return "fourier contains non-finite values"
        if proj.ctf is not None:
            if proj.ctf.shape != fourier.shape:
                return f"ctf has shape {tuple(proj.ctf.shape)}, expected {tuple(fourier.shape)}"
            if proj.ctf.is_complex() or not _all_finite(proj.ctf):
                return "ctf must be real and finite"
        if not math.isfinite(proj.weight) or proj.weight < 0:
            return f"invalid image weight {proj.weight}"
        if proj.magnification is not None:
            if tuple(proj.magnification.shape) != (2, 2) or not _all_finite(proj.magnification):
                return "magnification must be a finite 2x2 matrix"
        if self.ewald_splitter is not None and proj.ctf_model is None:
            return "the Ewald sphere correction needs the CTF parameters of the image"
        return None

    def insert(self, proj: OrientedProjection) -> InsertionResult:
        """
        Insert one projection. Malformed per-image data is reported as a SKIPPED result; a box size that does not
        match the accumulator raises ConfigurationError.
        """
        msg = self._validate(proj)
        if msg is not None:
            return _skipped(msg)
        self.accumulator.start_accumulating()
        if self.ewald_splitter is None:
            n = self.backproject(proj.fourier, proj.rotation, ctf_weight=proj.ctf, weight_scale=proj.weight,
                                 magnification=proj.magnification)
            return InsertionResult(InsertionStatus.INSERTED, n)

        split = self.ewald_splitter.split(proj.fourier, proj.ctf_model, self.pixel_size)
        radius = proj.ewald_radius
        if radius is None:
            radius = proj.ctf_model.ewald_radius(self.accumulator.ori_size, self.pixel_size)
        n = 0
        for fimg, curvature_sign in ((split.p, 1), (split.q, -1)):
            n += self.backproject(fimg, proj.rotation, ctf_weight=split.weight, weight_scale=proj.weight,
                                  magnification=proj.magnification, ewald_radius=radius,
                                  curvature_sign=curvature_sign, ctf_premultiplied=True)
        return InsertionResult(InsertionStatus.INSERTED, n)

    def backproject(self, fourier: torch.Tensor, rotation: torch.Tensor, ctf_weight: Optional[torch.Tensor] = None,
                    weight_scale: float = 1.0, magnification: Optional[torch.Tensor] = None,
                    ewald_radius: Optional[float] = None, curvature_sign: int = 0,
                    ctf_premultiplied: bool = False) -> int:
        """
        Scatter a centered half spectrum into the accumulator.

        Every pixel within max_radius is mapped to the 3D (or 2D) logical coordinate
        rotation^T . (M.(x, y), z) * scale, where M is the optional magnification and z the Ewald sphere offset
        (curvature_sign * rho^2 / (R + sqrt(R^2 - rho^2)), 0 for a flat section). Each pixel also stands for its
        Hermitian mate at (-x, -y), which the scatter places at the mirrored position with the conjugated value.
        The pixels of the x = 0 column with y < 0 are the mates of the y > 0 ones and are not inserted on their own.
        The Nyquist column and row (x = box/2, y = -box/2) have no stored mate and are not inserted at all. DC is its
        own mate and is not mirrored.
        The DC value is zeroed but still contributes its weight.

        :param ctf_weight: CTF values. Unless ctf_premultiplied, signal += ctf * value and weight += ctf^2.
                           With ctf_premultiplied, fourier already contains the CTF and ctf_weight is added to
                           the weight as is
        :return: number of samples that reached the accumulator
        """
        acc = self.accumulator
        box = fourier.shape[0]
        device = acc.get_device()
        real_dtype = acc.dtype

        coords = half_grid(box, 2, device, real_dtype)
        x, y = coords[..., 0], coords[..., 1]
        radius = coords.pow(2).sum(-1).sqrt()
        nyquist = (2 * x == box) | (2 * y == -box)
        keep = (radius <= acc.max_radius) & ~nyquist & ~((x == 0) & (y < 0))
        mirror = radius > 0
        values = fourier.to(device=device, dtype=acc.complex_dtype)
        values = torch.where(radius == 0, torch.zeros_like(values), values)

        if ctf_weight is None:
            ctf_weight = torch.ones(fourier.shape, dtype=real_dtype, device=device)
        ctf_weight = ctf_weight.to(device=device, dtype=real_dtype)
        if ctf_premultiplied:
            weights = ctf_weight
        else:
            values = values * ctf_weight
            weights = ctf_weight ** 2

        coords = coords[keep]
        mirror = mirror[keep]
        values = values[keep] * weight_scale
        weights = weights[keep] * weight_scale

        if magnification is not None:
            coords = coords @ magnification.to(device=device, dtype=real_dtype).T

        if curvature_sign and ewald_radius is not None and math.isfinite(ewald_radius) and ewald_radius > 0:
            rho2 = coords.pow(2).sum(-1)
            inside = rho2 <= ewald_radius ** 2
            coords, values, weights, mirror, rho2 = \
                coords[inside], values[inside], weights[inside], mirror[inside], rho2[inside]
            z = curvature_sign * rho2 / (ewald_radius + torch.sqrt(ewald_radius ** 2 - rho2))
        else:
            z = torch.zeros(coords.shape[0], dtype=real_dtype, device=device)

        if acc.ndim == 3:
            coords = torch.cat([coords, z.unsqueeze(-1)], dim=-1)
        # Row vectors: (A^T p)^T = p^T A
        coords = coords @ rotation.to(device=device, dtype=real_dtype) * acc.scale
        return scatter_add(acc.signal, acc.weight, coords, values, weights, acc.interpolator, mirror)
