import math
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
from more_itertools import batched
from tqdm import tqdm

from cryoREC.configManager.inject_defaults import inject_defaults_from_config, inject_docs_from_config_params, \
    CONFIG_PARAM
from cryoREC.configs.mainConfig import main_config
from cryoREC.constants import HALFSET_IDS, HALFMAP_FNAME_TEMPLATE, WEIGHTS_FNAME_TEMPLATE, DEFAULT_DTYPE, \
    DOUBLE_DTYPE
from cryoREC.fourier.fourierTransformer import FourierTransformer
from cryoREC.geometry.symmetry import SymmetryOperatorSet
from cryoREC.reconstruction.ewaldSectors import EwaldSectorSplitter
from cryoREC.reconstruction.fourierAccumulator import FourierAccumulator
from cryoREC.reconstruction.griddingReconstructor import GriddingReconstructor
from cryoREC.reconstruction.interpolation import Interpolator
from cryoREC.reconstruction.projectionInserter import OrientedProjection, ProjectionInserter
from cryoREC.reconstruction.ssnr import fourier_shell_correlation, tau2_from_fsc
from cryoREC.reconstruction.symmetrizer import symmetrise
from cryoREC.utils.errorFormatting import format_exception_summary, format_full_traceback
from cryoREC.utils.exceptions import ConfigurationError, ProjectionLoadError
from cryoREC.utils.loggers import getMainLogger, getWorkerLogger
from cryoREC.utils.reconstructionUtils import write_vol


@dataclass
class HalfmapsResult:
    """
    volumes: real-space half-map of every half-set id
    weights: final (symmetrised) weight half spectrum of every half-set id
    n_inserted / n_skipped: number of images inserted / skipped over both half-sets
    fsc: FSC between the half-sets per unpadded shell, only computed for Wiener filtering
    """
    volumes: Dict[int, torch.Tensor]
    weights: Dict[int, torch.Tensor]
    n_inserted: int
    n_skipped: int
    fsc: Optional[torch.Tensor] = None
    fnames: List[str] = field(default_factory=list)


def _fetch(projections: Sequence[OrientedProjection], idx: int) -> Tuple[Optional[OrientedProjection], str]:
    try:
        return projections[idx], ""
    except (ProjectionLoadError, OSError) as e:
        return None, f"could not be loaded ({e})"


def _insert_slice(worker_id: int, projections: Sequence[OrientedProjection], idxs: np.ndarray,
                  template: FourierAccumulator, ewald_splitter: Optional[EwaldSectorSplitter],
                  pixel_size: float, batch_size: int, verbose: bool):
    """Insert the images `idxs` into private accumulators, one per half-set. Never touches shared state."""
    logger = getWorkerLogger(verbose)
    accumulators = {half: template.empty_like() for half in HALFSET_IDS}
    inserters = {half: ProjectionInserter(acc, ewald_splitter, pixel_size) for half, acc in accumulators.items()}
    n_inserted, n_skipped = 0, 0
    try:
        with tqdm(total=len(idxs), desc=f"Worker {worker_id}", position=worker_id, leave=False,
                  disable=not verbose) as pbar:
            for batch in batched(idxs.tolist(), batch_size):
                loaded = [_fetch(projections, idx) for idx in batch]
                for idx, (proj, msg) in zip(batch, loaded):
                    if proj is not None:
                        if proj.halfset not in inserters:
                            msg = f"unknown half-set {proj.halfset}"
                        else:
                            result = inserters[proj.halfset].insert(proj)
                            msg = result.message
                            if result.ok:
                                n_inserted += 1
                                continue
                    n_skipped += 1
                    name = proj.image_id if proj is not None and proj.image_id is not None else idx
                    logger.warning(f"Skipping image {name}: {msg}")
                pbar.update(len(batch))
    except Exception as e:
        logger.error(format_exception_summary(e, context=f"Worker {worker_id}"))
        logger.debug(format_full_traceback(e))
        raise
    return accumulators, n_inserted, n_skipped


def _run_per_half(func, items: Dict[int, object]) -> Dict[int, object]:
    """Run func(half, item) for every half-set, one thread each."""
    with ThreadPoolExecutor(max_workers=len(items), thread_name_prefix="half") as pool:
        futures = {half: pool.submit(func, half, item) for half, item in items.items()}
        return {half: fut.result() for half, fut in futures.items()}


@inject_docs_from_config_params
@inject_defaults_from_config(main_config.reconstruct, update_config_with_args=False)
def reconstruct_halfmaps(projections: Sequence[OrientedProjection],
                         ori_size: int,
                         pixel_size: float,
                         output_basename: Optional[str] = None,
                         padding_factor: float = CONFIG_PARAM(),
                         interpolator: Interpolator = CONFIG_PARAM(),
                         skip_gridding: bool = CONFIG_PARAM(),
                         grid_iters: int = CONFIG_PARAM(),
                         max_radius: Optional[int] = CONFIG_PARAM(),
                         max_resolution: Optional[float] = CONFIG_PARAM(),
                         symmetry: str = CONFIG_PARAM(),
                         n_threads: int = CONFIG_PARAM(),
                         batch_size: int = CONFIG_PARAM(),
                         do_wiener: bool = CONFIG_PARAM(),
                         tau2_fudge: float = CONFIG_PARAM(),
                         filter_mask_diameter: float = CONFIG_PARAM(),
                         filter_mask_softness: float = CONFIG_PARAM(),
                         write_weights: bool = CONFIG_PARAM(),
                         use_double_precision: bool = CONFIG_PARAM(),
                         helical_rise: float = CONFIG_PARAM(config=main_config.helical),
                         helical_twist: float = CONFIG_PARAM(config=main_config.helical),
                         nr_helical_asu: int = CONFIG_PARAM(config=main_config.helical),
                         do_ewald: bool = CONFIG_PARAM(config=main_config.ewald),
                         nr_sectors: int = CONFIG_PARAM(config=main_config.ewald),
                         is_positive: bool = CONFIG_PARAM(config=main_config.ewald),
                         mask_diameter: float = CONFIG_PARAM(config=main_config.ewald),
                         width_mask_edge: int = CONFIG_PARAM(config=main_config.ewald),
                         newbox: int = CONFIG_PARAM(config=main_config.ewald),
                         ndim: int = 3,
                         device: str = "cpu",
                         verbose: bool = CONFIG_PARAM()) -> HalfmapsResult:
    """
    Reconstruct the two half-maps of a set of oriented projections.

    :param projections: {projections}
    :param ori_size: {ori_size}
    :param pixel_size: {pixel_size}
    :param output_basename: {output_basename}
    :param padding_factor: {padding_factor}
    :param interpolator: {interpolator}
    :param skip_gridding: {skip_gridding}
    :param grid_iters: {grid_iters}
    :param max_radius: {max_radius}
    :param max_resolution: {max_resolution}
    :param symmetry: {symmetry}
    :param n_threads: {n_threads}
    :param batch_size: {batch_size}
    :param do_wiener: {do_wiener}
    :param tau2_fudge: {tau2_fudge}
    :param filter_mask_diameter: {filter_mask_diameter}
    :param filter_mask_softness: {filter_mask_softness}
    :param write_weights: {write_weights}
    :param use_double_precision: {use_double_precision}
    :param helical_rise: {helical_rise}
    :param helical_twist: {helical_twist}
    :param nr_helical_asu: {nr_helical_asu}
    :param do_ewald: {do_ewald}
    :param nr_sectors: {nr_sectors}
    :param is_positive: {is_positive}
    :param mask_diameter: {mask_diameter}
    :param width_mask_edge: {width_mask_edge}
    :param newbox: {newbox}
    :param ndim: 3 for volumes, 2 for 2D reconstructions from in-plane rotated images
    :param device: {device}
    :param verbose: {verbose}
    """
    logger = getMainLogger(verbose)

    # Every configuration problem is raised here, before any insertion
    if pixel_size <= 0:
        raise ConfigurationError(f"pixel_size must be > 0, got {pixel_size}")
    if n_threads < 1:
        raise ConfigurationError(f"n_threads must be >= 1, got {n_threads}")
    if batch_size < 1:
        raise ConfigurationError(f"batch_size must be >= 1, got {batch_size}")
    if do_ewald and ndim != 3:
        raise ConfigurationError("The Ewald sphere correction requires 3D reconstructions")

    transformer = FourierTransformer()
    ewald_splitter = None
    box = ori_size
    if do_ewald:
        ewald_splitter = EwaldSectorSplitter(nr_sectors=nr_sectors, is_positive=is_positive,
                                             mask_diameter=mask_diameter, width_mask_edge=width_mask_edge,
                                             newbox=newbox, transformer=transformer)
        box = ewald_splitter.output_box(ori_size)
    if max_resolution is not None:
        if max_resolution <= 0:
            raise ConfigurationError(f"max_resolution must be > 0, got {max_resolution}")
        max_radius = math.ceil(box * pixel_size / max_resolution)
        if max_radius > box // 2:
            raise ConfigurationError(f"max_resolution {max_resolution} A is beyond Nyquist "
                                     f"({2 * pixel_size} A) for box {box}")
    dtype = DOUBLE_DTYPE if use_double_precision else DEFAULT_DTYPE
    template = FourierAccumulator(box, padding_factor=padding_factor, interpolator=interpolator, ndim=ndim,
                                  max_radius=max_radius, dtype=dtype, device=device)
    operator_set = SymmetryOperatorSet.from_config(symmetry, helical_rise_px=helical_rise / pixel_size,
                                                   helical_twist=helical_twist, nr_helical_asu=nr_helical_asu,
                                                   ndim=ndim)
    reconstructor = GriddingReconstructor(grid_iters=grid_iters, skip_gridding=skip_gridding,
                                          tau2_fudge=tau2_fudge, filter_mask_diameter=filter_mask_diameter,
                                          filter_mask_softness=filter_mask_softness, transformer=transformer,
                                          verbose=verbose)

    n_images = len(projections)
    logger.info(f"Inserting {n_images} images with {n_threads} thread(s). Accumulator: {template.extra_repr()}")
    slices = np.array_split(np.arange(n_images), n_threads)
    with ThreadPoolExecutor(max_workers=n_threads, thread_name_prefix="insert") as pool:
        futures = [pool.submit(_insert_slice, worker_id, projections, idxs, template, ewald_splitter,
                               pixel_size, batch_size, verbose)
                   for worker_id, idxs in enumerate(slices)]
        worker_results = [fut.result() for fut in futures]

    logger.info("Merging the worker accumulators")
    accumulators = {half: template.empty_like() for half in HALFSET_IDS}
    n_inserted, n_skipped = 0, 0
    for worker_accs, w_inserted, w_skipped in worker_results:
        for half, acc in worker_accs.items():
            accumulators[half].merge_add(acc)
            acc.release()
        n_inserted += w_inserted
        n_skipped += w_skipped
    del worker_results
    template.release()
    logger.info(f"{n_inserted} images inserted, {n_skipped} skipped")

    logger.info(f"Symmetrising with {operator_set}")
    _run_per_half(lambda half, acc: symmetrise(acc, operator_set), accumulators)

    fsc = None
    tau2 = {half: None for half in HALFSET_IDS}
    if do_wiener:
        fsc = fourier_shell_correlation(*(accumulators[half] for half in HALFSET_IDS))
        tau2 = {half: tau2_from_fsc(acc, fsc) for half, acc in accumulators.items()}
        logger.info("Estimated tau2 from the half-set FSC")

    weights = {half: acc.weight.clone() for half, acc in accumulators.items()}
    logger.info("Reconstructing the half-maps")
    volumes = _run_per_half(lambda half, acc: reconstructor.reconstruct(acc, tau2[half]), accumulators)
    for acc in accumulators.values():
        acc.release()

    fnames = []
    if output_basename is not None:
        dirname = os.path.dirname(output_basename)
        if dirname:
            os.makedirs(dirname, exist_ok=True)
        for half in HALFSET_IDS:
            fname = HALFMAP_FNAME_TEMPLATE % dict(basename=output_basename, half=half)
            write_vol(volumes[half], fname, pixel_size)
            fnames.append(fname)
            if write_weights:
                fname = WEIGHTS_FNAME_TEMPLATE % dict(basename=output_basename, half=half)
                write_vol(weights[half], fname, pixel_size)
                fnames.append(fname)
        logger.info(f"Written {', '.join(fnames)}")

    return HalfmapsResult(volumes=volumes, weights=weights, n_inserted=n_inserted, n_skipped=n_skipped, fsc=fsc,
                          fnames=fnames)
