from dataclasses import dataclass
from typing import Optional

from cryoREC.reconstruction.interpolation import Interpolator


@dataclass
class Reconstruct_config:
    """Fourier accumulation and gridding reconstruction parameters."""

    # Centralized parameter documentation
    PARAM_DOCS = {
        'padding_factor': 'Oversampling factor of the Fourier accumulator relative to the image box (>= 1)',
        'interpolator': 'Kernel used to distribute samples into the accumulator: nearest or trilinear',
        'skip_gridding': 'If True, reconstruct by plain division and inverse transform, without iterative gridding correction',
        'grid_iters': 'Number of iterations of the gridding correction. 0 behaves like skip_gridding',
        'max_radius': 'Maximum frequency radius (in unpadded pixels) that is inserted. None means box//2',
        'max_resolution': 'Highest resolution (Angstroms) that is inserted. If set, it overrides max_radius with ceil(box * pixel_size / max_resolution)',
        'symmetry': 'Point group symmetry of the volume (e.g., C1, C4, D2, T, O, I)',
        'n_threads': 'Number of worker threads used for insertion',
        'batch_size': 'Number of projections each worker fetches from the input sequence at a time',
        'do_wiener': 'Estimate tau2 from the FSC between half-sets and use it to regularize the division',
        'tau2_fudge': 'Multiplicative factor applied to tau2 (higher values mean less regularization)',
        'filter_mask_diameter': 'Diameter (pixels) of a real-space envelope applied to signal and weight before division. <=0 disables it',
        'filter_mask_softness': 'Width (pixels) of the raised-cosine edge of the filter envelope',
        'write_weights': 'Write the weight volume of each half-set next to its half-map',
        'use_double_precision': 'Accumulate in float64/complex128 instead of float32/complex64',
        'verbose': 'Log progress information',

        # Not config parameters
        'projections': 'Sequence of OrientedProjection objects. Indexing may raise ProjectionLoadError for unreadable images',
        'ori_size': 'Side (pixels) of the square input images and of the output volumes',
        'pixel_size': 'Pixel size in Angstroms',
        'output_basename': 'If provided, the half-maps are written as <basename>_half1.mrc and <basename>_half2.mrc',
        'device': 'Torch device of the accumulators',
    }

    padding_factor: float = 2.0
    interpolator: Interpolator = Interpolator.TRILINEAR
    skip_gridding: bool = False
    grid_iters: int = 10
    max_radius: Optional[int] = None
    max_resolution: Optional[float] = None
    symmetry: str = "C1"
    n_threads: int = 1
    batch_size: int = 64
    do_wiener: bool = False
    tau2_fudge: float = 1.0
    filter_mask_diameter: float = -1.0
    filter_mask_softness: float = 30.0
    write_weights: bool = False
    use_double_precision: bool = False
    verbose: bool = True


@dataclass
class Helical_config:
    """Helical symmetry parameters."""

    PARAM_DOCS = {
        'helical_rise': 'Helical rise in Angstroms',
        'helical_twist': 'Helical twist in degrees',
        'nr_helical_asu': 'Number of helical asymmetric units averaged together. 1 disables helical symmetry',
    }

    helical_rise: float = 0.0
    helical_twist: float = 0.0
    nr_helical_asu: int = 1


@dataclass
class Ewald_config:
    """Ewald sphere curvature correction parameters."""

    PARAM_DOCS = {
        'do_ewald': 'Correct for Ewald sphere curvature by inserting CTFP and CTFQ images on curved surfaces',
        'nr_sectors': 'Number of angular sectors the CTFP/CTFQ split is computed for',
        'is_positive': 'Sign convention of the curvature. Set to False to reverse the curvature',
        'mask_diameter': 'Diameter (Angstroms) of the real-space mask applied to the sector images; also used by the curvature weight. <=0 disables masking',
        'width_mask_edge': 'Width (pixels) of the soft edge of the sector-image mask',
        'newbox': 'If >0, the sector images are re-windowed to this box before insertion',
    }

    do_ewald: bool = False
    nr_sectors: int = 2
    is_positive: bool = True
    mask_diameter: float = -1.0
    width_mask_edge: int = 3
    newbox: int = -1
