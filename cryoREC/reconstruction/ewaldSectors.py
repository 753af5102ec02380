"""
Ewald sphere curvature correction: split one projection into the CTFP and CTFQ images that are inserted on
opposite sides of the curved central section.

The azimuthal range [0, 180) is cut into nr_sectors wedges centered at 90 + j*step (step = 180/nr_sectors).
Wedge j owns the pixels of its front arc [lo_j, lo_j + step) and of its back arc [lo_j + 180, lo_j + 180 + step),
both closed-open. For each wedge the CTFP image is computed twice (pass sign s = -p and s = +p, p = +1 when
the curvature is positive): the sign s is used on the half-plane centered on the wedge axis and -s on the other
half. Each result goes through the real-space mask, and its wedge pixels are routed so that P always receives
the pixels carrying sign p and Q the ones carrying -p.
"""
from dataclasses import dataclass
from typing import List, Optional, Tuple

import torch

from cryoREC.configManager.inject_defaults import inject_defaults_from_config, CONFIG_PARAM
from cryoREC.configs.mainConfig import main_config
from cryoREC.constants import SECTOR_ANGLE_DECIMALS
from cryoREC.ctf.ctfModel import CTFModel
from cryoREC.fourier.fourierGrids import azimuth_degrees, half_grid
from cryoREC.fourier.fourierTransformer import FourierTransformer, window_centered
from cryoREC.utils.exceptions import ConfigurationError
from cryoREC.utils.masks import soft_mask_outside


@dataclass
class EwaldSplit:
    """CTF-premultiplied P and Q half spectra, each carrying half of the image, and their common weight."""
    p: torch.Tensor
    q: torch.Tensor
    weight: torch.Tensor


def sector_bounds(nr_sectors: int) -> List[Tuple[float, float]]:
    """Front arc [lo, hi) of every wedge, in degrees."""
    step = 180. / nr_sectors
    return [(90. + j * step - step / 2, 90. + j * step + step / 2) for j in range(nr_sectors)]


def sector_assignment(coords: torch.Tensor, nr_sectors: int) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Wedge owning each (x, y) coordinate and whether the coordinate lies on the wedge's front arc.

    :param coords: (..., 2) logical (x, y) coordinates
    :param nr_sectors: number of wedges
    :return: wedge index (long) and front flag (bool), both with shape coords.shape[:-1]
    """
    step = 180. / nr_sectors
    lo0 = sector_bounds(nr_sectors)[0][0]
    theta = azimuth_degrees(coords, SECTOR_ANGLE_DECIMALS)
    wedge = torch.floor(((theta - lo0) % 180.) / step).long().clamp(max=nr_sectors - 1)
    lo = lo0 + wedge * step
    front = ((theta - lo) % 360.) < 180.
    return wedge, front


def routing_masks(coords: torch.Tensor, nr_sectors: int) -> List[Tuple[torch.Tensor, torch.Tensor]]:
    """(front, back) boolean masks of every wedge. Together they partition the coordinates."""
    wedge, front = sector_assignment(coords, nr_sectors)
    return [((wedge == j) & front, (wedge == j) & ~front) for j in range(nr_sectors)]


def half_plane_sign(coords: torch.Tensor, nr_sectors: int, wedge_idx: int) -> torch.Tensor:
    """+1 on the half-plane [axis - 90, axis + 90) centered on the axis of the wedge, -1 elsewhere."""
    step = 180. / nr_sectors
    theta = azimuth_degrees(coords, SECTOR_ANGLE_DECIMALS)
    inside = ((theta - wedge_idx * step) % 360.) < 180.
    ones = torch.ones_like(theta, dtype=coords.dtype)
    return torch.where(inside, ones, -ones)


class EwaldSectorSplitter:

    @inject_defaults_from_config(main_config.ewald)
    def __init__(self,
                 nr_sectors: int = CONFIG_PARAM(),
                 is_positive: bool = CONFIG_PARAM(),
                 mask_diameter: float = CONFIG_PARAM(),
                 width_mask_edge: int = CONFIG_PARAM(),
                 newbox: int = CONFIG_PARAM(),
                 transformer: Optional[FourierTransformer] = None):
        if nr_sectors < 1:
            raise ConfigurationError(f"nr_sectors must be >= 1, got {nr_sectors}")
        if width_mask_edge < 0:
            raise ConfigurationError(f"width_mask_edge must be >= 0, got {width_mask_edge}")
        self.nr_sectors = nr_sectors
        self.is_positive = is_positive
        self.mask_diameter = mask_diameter
        self.width_mask_edge = width_mask_edge
        self.newbox = newbox
        self.transformer = transformer if transformer is not None else FourierTransformer()

    def output_box(self, box: int) -> int:
        if self.newbox <= 0:
            return box
        if self.newbox > box:
            raise ConfigurationError(f"The Ewald output box ({self.newbox}) cannot be larger than the images ({box})")
        return self.newbox

    def _mask_and_rebox(self, fimg: torch.Tensor, pixel_size: float, box: int, out_box: int) -> torch.Tensor:
        if self.mask_diameter <= 0 and out_box == box:
            return fimg
        img = self.transformer.irfft(fimg, (box, box))
        if self.mask_diameter > 0:
            img = soft_mask_outside(img, self.mask_diameter / (2. * pixel_size), self.width_mask_edge)
        img = window_centered(img, out_box, 2)
        return self.transformer.rfft(img.contiguous(), 2)

    def split(self, fourier: torch.Tensor, ctf_model: CTFModel, pixel_size: float) -> EwaldSplit:
        """
        :param fourier: Centered half spectrum (box, box//2+1) of the observed image
        :param ctf_model: CTF parameters of the image
        :param pixel_size: Angstroms per pixel
        :return: the P and Q half spectra (output_box layout) and the weight to insert each of them with
        """
        box = fourier.shape[-2]
        out_box = self.output_box(box)
        device = fourier.device
        fourier = fourier.clone()
        fourier[box // 2, 0] = 0

        in_coords = half_grid(box, 2, device)
        routes = routing_masks(half_grid(out_box, 2, device), self.nr_sectors)
        p_half = torch.zeros((out_box, out_box // 2 + 1), dtype=fourier.dtype, device=device)
        q_half = torch.zeros_like(p_half)
        positive = 1. if self.is_positive else -1.
        for j, (front, back) in enumerate(routes):
            axis_sign = half_plane_sign(in_coords, self.nr_sectors, j)
            for pass_sign in (-positive, positive):
                ctfp = ctf_model.ctfp_image(box, pixel_size, pass_sign * axis_sign, device).to(fourier.dtype)
                fimg = self._mask_and_rebox(fourier * ctfp, pixel_size, box, out_box)
                to_p, to_q = (front, back) if pass_sign == positive else (back, front)
                p_half[to_p] = fimg[to_p]
                q_half[to_q] = fimg[to_q]

        weight = ctf_model.ewald_weight(out_box, pixel_size, self.mask_diameter, device).to(fourier.real.dtype)
        return EwaldSplit(p=0.5 * p_half, q=0.5 * q_half, weight=0.5 * weight ** 2)
