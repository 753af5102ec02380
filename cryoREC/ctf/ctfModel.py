import math
from dataclasses import dataclass
from typing import Optional

import torch

from cryoREC.ctf.common import compute_ctf, compute_ctfp, defocus_at, electron_wavelength
from cryoREC.fourier.fourierGrids import half_grid


@dataclass(frozen=True)
class CTFModel:
    """Microscope/particle CTF parameters. Defocus in Angstroms, angles in degrees, voltage in kV, Cs in mm."""
    defocus_u: float
    defocus_v: float
    defocus_angle: float = 0.
    voltage: float = 300.
    spherical_aberration: float = 2.7
    amplitude_contrast: float = 0.1
    phase_shift: float = 0.
    bfactor: Optional[float] = None
    scale: float = 1.0

    @property
    def wavelength(self) -> float:
        return electron_wavelength(self.voltage)

    def ewald_radius(self, box: int, pixel_size: float) -> float:
        """Radius of the Ewald sphere in Fourier pixels of a box of side `box`."""
        return box * pixel_size / self.wavelength

    def _params(self):
        return (self.defocus_u, self.defocus_v, self.defocus_angle, self.voltage, self.spherical_aberration,
                self.amplitude_contrast, self.phase_shift, self.bfactor, self.scale)

    @staticmethod
    def half_freqs(box, pixel_size, device="cpu", dtype=torch.float64):
        return half_grid(box, 2, device, dtype) / (box * pixel_size)

    def ctf_image(self, box: int, pixel_size: float, device="cpu", dtype=torch.float64) -> torch.Tensor:
        """CTF in the centered half layout, shape (box, box//2+1)."""
        return compute_ctf(self.half_freqs(box, pixel_size, device, dtype), *self._params())

    def ctfp_image(self, box: int, pixel_size: float, sign: torch.Tensor,
                   device="cpu", dtype=torch.float64) -> torch.Tensor:
        """Complex CTFP/CTFQ in the centered half layout; `sign` selects P (+1) or Q (-1) per pixel."""
        return compute_ctfp(self.half_freqs(box, pixel_size, device, dtype), sign, *self._params())

    def ewald_weight(self, box: int, pixel_size: float, particle_diameter: float,
                     device="cpu", dtype=torch.float64) -> torch.Tensor:
        """
        Per-pixel CTF amplitude expected after the CTFP/CTFQ split, in the centered half layout.
        W = 0.5 * (1 + A * (2|CTF| - 1)), where A is the overlap of a particle of the given diameter (Angstrom)
        with its Friedel mate displaced by the defocus. A non-positive diameter means full overlap (A = 1).
        """
        freqs = self.half_freqs(box, pixel_size, device, dtype)
        abs_ctf = compute_ctf(freqs, *self._params()).abs()
        if particle_diameter <= 0:
            return abs_ctf
        k = freqs.pow(2).sum(-1).sqrt()
        df = defocus_at(freqs, self.defocus_u, self.defocus_v, self.defocus_angle)
        aux = 2. * df.abs() * self.wavelength * k / particle_diameter
        theta = torch.acos(aux.clamp(max=1.))
        overlap = torch.where(aux > 1., torch.zeros_like(aux), 2. / math.pi * (theta - aux * torch.sin(theta)))
        return 0.5 * (1. + overlap * (2. * abs_ctf - 1.))
