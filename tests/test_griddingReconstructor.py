"""
Tests for cryoREC.reconstruction.griddingReconstructor.
"""
import copy
import logging
import math

import pytest
import torch
from scipy.spatial.transform import Rotation

from cryoREC.fourier.fourierTransformer import FourierTransformer, pad_centered
from cryoREC.reconstruction.fourierAccumulator import AccumulatorState, FourierAccumulator
from cryoREC.reconstruction.griddingReconstructor import GriddingReconstructor
from cryoREC.reconstruction.interpolation import Interpolator, kernel_transform
from cryoREC.reconstruction.projectionInserter import OrientedProjection, ProjectionInserter
from cryoREC.utils.exceptions import AccumulatorStateError, ConfigurationError
from cryoREC.utils.masks import radial_distance


def _blob(size, ndim, sigma=2.):
    r = radial_distance(size, ndim)
    return torch.exp(-0.5 * (r / sigma) ** 2)


def _kernel_blurred_accumulator(volume, interpolator, padding_factor=2):
    """Accumulator holding exactly what the gridding correction undoes: the transform of the kernel-weighted
    volume, restricted to the accumulator support, with unit weights."""
    n, ndim = volume.shape[-1], volume.ndim
    acc = FourierAccumulator(n, padding_factor=padding_factor, interpolator=interpolator, ndim=ndim,
                             dtype=torch.float64)
    kernel = kernel_transform(n, acc.pad_size, ndim, acc.interpolator, "cpu", torch.float64)
    support = acc.radius_grid() <= acc.support_radius
    spectrum = FourierTransformer().rfft(pad_centered(volume * kernel, acc.pad_size, ndim), ndim)
    acc.signal = torch.where(support, spectrum, torch.zeros_like(spectrum))
    acc.weight = torch.ones(acc.shape, dtype=torch.float64)
    return acc


def _filled_accumulator(n_images=6, box=8, seed=0):
    # max_radius 3 keeps every kernel corner off the Nyquist planes
    acc = FourierAccumulator(box, padding_factor=2, interpolator="trilinear", max_radius=3, dtype=torch.float64)
    inserter = ProjectionInserter(acc)
    gen = torch.Generator().manual_seed(seed)
    transformer = FourierTransformer()
    for rot in torch.from_numpy(Rotation.random(n_images, random_state=seed).as_matrix()):
        image = torch.randn(box, box, generator=gen, dtype=torch.float64)
        assert inserter.insert(OrientedProjection(fourier=transformer.rfft(image, 2), rotation=rot)).ok
    return acc


def _relative_error(x, reference):
    return ((x - reference).norm() / reference.norm()).item()


class TestConfig:

    def test_invalid_values(self):
        with pytest.raises(ConfigurationError):
            GriddingReconstructor(grid_iters=-1)
        with pytest.raises(ConfigurationError):
            GriddingReconstructor(tau2_fudge=0.)

    def test_defaults(self):
        reconstructor = GriddingReconstructor()
        assert reconstructor.grid_iters == 10
        assert not reconstructor.skip_gridding


class TestQuotient:

    def test_zero_weight_gives_zero(self):
        acc = FourierAccumulator(8, padding_factor=2, dtype=torch.float64)
        acc.signal = torch.ones(acc.shape, dtype=torch.complex128)
        quotient = GriddingReconstructor().quotient(acc)
        assert torch.equal(quotient, torch.zeros_like(quotient))

    def test_empty_accumulator_reconstructs_to_zeros(self):
        acc = FourierAccumulator(8, padding_factor=2, dtype=torch.float64)
        volume = GriddingReconstructor(verbose=False).reconstruct(acc)
        assert volume.shape == (8, 8, 8)
        assert torch.isfinite(volume).all()
        assert volume.abs().max() == 0
        assert acc.state == AccumulatorState.FINAL

    def test_tau2_regularization(self):
        acc = FourierAccumulator(8, padding_factor=2, dtype=torch.float64)
        acc.signal = torch.full(acc.shape, 2., dtype=torch.complex128)
        acc.weight = torch.full(acc.shape, 2., dtype=torch.float64)
        reconstructor = GriddingReconstructor()
        shells = reconstructor.shell_index(acc)
        tau2 = [1.] * 5
        tau2[3] = 0.
        quotient = reconstructor.quotient(acc, tau2).real
        regularised = (shells <= 4) & (shells != 3)
        torch.testing.assert_close(quotient[regularised], torch.full_like(quotient[regularised], 2. / 3.))
        torch.testing.assert_close(quotient[~regularised], torch.ones_like(quotient[~regularised]))

    def test_tau2_fudge(self):
        acc = FourierAccumulator(8, padding_factor=2, dtype=torch.float64)
        acc.signal = torch.full(acc.shape, 2., dtype=torch.complex128)
        acc.weight = torch.full(acc.shape, 2., dtype=torch.float64)
        reconstructor = GriddingReconstructor(tau2_fudge=2.)
        quotient = reconstructor.quotient(acc, torch.ones(5, dtype=torch.float64)).real
        low = reconstructor.shell_index(acc) <= 4
        torch.testing.assert_close(quotient[low], torch.full_like(quotient[low], 0.8))

    def test_wide_filter_mask_changes_nothing(self):
        acc = _filled_accumulator()
        plain = GriddingReconstructor(filter_mask_diameter=-1).quotient(acc)
        wide = GriddingReconstructor(filter_mask_diameter=1000., filter_mask_softness=5.).quotient(acc)
        torch.testing.assert_close(wide, plain, atol=1e-8, rtol=1e-6)

    @pytest.mark.parametrize("diameter,softness", [(1000., 5.), (4., 2.)])
    def test_filter_mask_keeps_empty_voxels_zero(self, diameter, softness):
        acc = _filled_accumulator()
        empty = acc.weight == 0
        assert empty.any()
        quotient = GriddingReconstructor(filter_mask_diameter=diameter, filter_mask_softness=softness).quotient(acc)
        assert torch.equal(quotient[empty], torch.zeros_like(quotient[empty]))
        assert torch.isfinite(quotient).all()

    def test_narrow_filter_mask_smooths(self):
        acc = _filled_accumulator()
        plain = GriddingReconstructor(filter_mask_diameter=-1).quotient(acc)
        narrow = GriddingReconstructor(filter_mask_diameter=4., filter_mask_softness=2.).quotient(acc)
        assert not torch.allclose(narrow, plain)
        assert torch.isfinite(narrow).all()


class TestReconstruct:

    def test_skip_and_zero_iterations_agree(self):
        skipped = GriddingReconstructor(skip_gridding=True, verbose=False).reconstruct(_filled_accumulator())
        zero_iters = GriddingReconstructor(grid_iters=0, verbose=False).reconstruct(_filled_accumulator())
        assert torch.equal(skipped, zero_iters)

    def test_gridding_undoes_kernel_3d(self):
        blob = _blob(16, 3)
        volume = GriddingReconstructor(grid_iters=10, verbose=False).reconstruct(
            _kernel_blurred_accumulator(blob, "trilinear"))
        assert volume.shape == blob.shape
        assert _relative_error(volume, blob) < 1e-3

    def test_skipping_gridding_leaves_kernel_bias(self):
        blob = _blob(16, 3)
        volume = GriddingReconstructor(skip_gridding=True, verbose=False).reconstruct(
            _kernel_blurred_accumulator(blob, "trilinear"))
        assert (volume - blob).abs().max() > 1e-3

    def test_gridding_undoes_kernel_2d_nearest(self):
        blob = _blob(16, 2)
        volume = GriddingReconstructor(grid_iters=10, verbose=False).reconstruct(
            _kernel_blurred_accumulator(blob, Interpolator.NEAREST))
        assert volume.shape == (16, 16)
        assert _relative_error(volume, blob) < 1e-3

    def test_round_trip_through_the_inserter(self):
        """A zero-mean difference of Gaussians looks the same from every direction, so every view gets the same
        analytical projection. Both plain division and gridding recover the volume from many random views."""
        box, s1, s2 = 24, 1.5, 3.
        c = (s1 / s2) ** 3
        r2, r3 = radial_distance(box, 2, dtype=torch.float64), radial_distance(box, 3, dtype=torch.float64)
        volume = torch.exp(-0.5 * (r3 / s1) ** 2) - c * torch.exp(-0.5 * (r3 / s2) ** 2)
        image = math.sqrt(2 * math.pi) * (s1 * torch.exp(-0.5 * (r2 / s1) ** 2) -
                                          c * s2 * torch.exp(-0.5 * (r2 / s2) ** 2))
        fourier = FourierTransformer().rfft(image, 2)

        acc = FourierAccumulator(box, padding_factor=2, interpolator="trilinear", dtype=torch.float64)
        inserter = ProjectionInserter(acc)
        for rot in torch.from_numpy(Rotation.random(2000, random_state=7).as_matrix()):
            assert inserter.insert(OrientedProjection(fourier=fourier, rotation=rot)).ok

        skipped = GriddingReconstructor(skip_gridding=True, verbose=False).reconstruct(copy.deepcopy(acc))
        gridded = GriddingReconstructor(grid_iters=10, verbose=False).reconstruct(copy.deepcopy(acc))
        err_skipped, err_gridded = _relative_error(skipped, volume), _relative_error(gridded, volume)
        assert err_skipped < 0.06
        assert err_gridded < 0.06
        assert err_gridded < 1.05 * err_skipped

    def test_iterations_are_logged_when_verbose(self, caplog):
        with caplog.at_level(logging.INFO):
            GriddingReconstructor(grid_iters=3, verbose=True).reconstruct(_filled_accumulator(n_images=2))
        assert sum("Gridding iteration" in r.getMessage() for r in caplog.records) == 3

    def test_reconstruct_is_final(self):
        acc = _filled_accumulator(n_images=2)
        reconstructor = GriddingReconstructor(grid_iters=2, verbose=False)
        reconstructor.reconstruct(acc)
        assert acc.state == AccumulatorState.FINAL
        with pytest.raises(AccumulatorStateError):
            reconstructor.reconstruct(acc)
