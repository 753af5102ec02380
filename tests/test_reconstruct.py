"""
End-to-end tests of cryoREC.reconstruction.reconstruct.reconstruct_halfmaps.
"""
import logging
import math
import os

import pytest
import torch
from scipy.spatial.transform import Rotation

from cryoREC.ctf.ctfModel import CTFModel
from cryoREC.fourier.fourierTransformer import FourierTransformer
from cryoREC.reconstruction.projectionInserter import OrientedProjection
from cryoREC.reconstruction.reconstruct import reconstruct_halfmaps
from cryoREC.utils.exceptions import ConfigurationError, ProjectionLoadError
from cryoREC.utils.masks import radial_distance
from cryoREC.utils.reconstructionUtils import get_vol

PIXEL_SIZE = 1.5


def _random_projections(n, box=8, seed=0, ndim=3, with_ctf_model=False):
    gen = torch.Generator().manual_seed(seed)
    transformer = FourierTransformer()
    if ndim == 3:
        rots = torch.from_numpy(Rotation.random(n, random_state=seed).as_matrix())
    else:
        angles = torch.rand(n, generator=gen, dtype=torch.float64) * 2 * math.pi
        rots = torch.stack([torch.stack([torch.cos(angles), -torch.sin(angles)], -1),
                            torch.stack([torch.sin(angles), torch.cos(angles)], -1)], -2)
    ctf_model = CTFModel(defocus_u=15000., defocus_v=14000., defocus_angle=10.) if with_ctf_model else None
    projections = []
    for i in range(n):
        image = torch.randn(box, box, generator=gen, dtype=torch.float64)
        projections.append(OrientedProjection(fourier=transformer.rfft(image, 2), rotation=rots[i],
                                              halfset=1 + i % 2, ctf_model=ctf_model, image_id=f"img{i}"))
    return projections


class FlakyProjections:
    """Sequence of projections whose reads fail (or raise a given exception) at some indices."""

    def __init__(self, projections, failing=(), exception=ProjectionLoadError):
        self.projections = projections
        self.failing = set(failing)
        self.exception = exception
        self.n_reads = 0

    def __len__(self):
        return len(self.projections)

    def __getitem__(self, idx):
        self.n_reads += 1
        if idx in self.failing:
            raise self.exception(f"Image {idx} is unreadable")
        return self.projections[idx]


class TestReconstructHalfmaps:

    def test_basic_run(self):
        result = reconstruct_halfmaps(_random_projections(10), ori_size=8, pixel_size=PIXEL_SIZE, grid_iters=2,
                                      verbose=False)
        assert set(result.volumes) == {1, 2}
        assert result.volumes[1].shape == (8, 8, 8)
        assert result.weights[1].shape == (16, 16, 9)
        assert result.n_inserted == 10 and result.n_skipped == 0
        assert result.fsc is None and result.fnames == []
        assert all(torch.isfinite(v).all() for v in result.volumes.values())
        assert not torch.allclose(result.volumes[1], result.volumes[2])

    def test_thread_count_does_not_change_the_result(self):
        projections = _random_projections(12)
        kwargs = dict(ori_size=8, pixel_size=PIXEL_SIZE, grid_iters=3, use_double_precision=True, verbose=False)
        single = reconstruct_halfmaps(projections, n_threads=1, **kwargs)
        multi = reconstruct_halfmaps(projections, n_threads=3, batch_size=2, **kwargs)
        for half in (1, 2):
            torch.testing.assert_close(multi.volumes[half], single.volumes[half])
            torch.testing.assert_close(multi.weights[half], single.weights[half])

    def test_bad_images_are_skipped(self, caplog):
        projections = _random_projections(10)
        projections[3].fourier[2, 2] = float("nan")
        projections[4].halfset = 3
        source = FlakyProjections(projections, failing={2})
        with caplog.at_level(logging.WARNING):
            result = reconstruct_halfmaps(source, ori_size=8, pixel_size=PIXEL_SIZE, grid_iters=1, n_threads=2,
                                          verbose=False)
        assert result.n_skipped == 3
        assert result.n_inserted == 7
        assert source.n_reads == 10
        skipped = sorted(r.getMessage().split(":")[0] for r in caplog.records if "Skipping image" in r.getMessage())
        # Unreadable images have no id and are reported by index
        assert skipped == ["Skipping image 2", "Skipping image img3", "Skipping image img4"]

    def test_max_resolution_sets_the_radius(self):
        projections = _random_projections(6)
        kwargs = dict(ori_size=8, pixel_size=PIXEL_SIZE, grid_iters=1, use_double_precision=True, verbose=False)
        # 8 px * 1.5 A / 4 A = 3 Fourier pixels
        by_resolution = reconstruct_halfmaps(projections, max_resolution=4., **kwargs)
        by_radius = reconstruct_halfmaps(projections, max_radius=3, **kwargs)
        full = reconstruct_halfmaps(projections, **kwargs)
        for half in (1, 2):
            assert torch.equal(by_resolution.weights[half], by_radius.weights[half])
            assert full.weights[half].sum() > by_resolution.weights[half].sum()

    def test_worker_errors_propagate(self):
        source = FlakyProjections(_random_projections(6), failing={1}, exception=RuntimeError)
        with pytest.raises(RuntimeError):
            reconstruct_halfmaps(source, ori_size=8, pixel_size=PIXEL_SIZE, n_threads=2, verbose=False)

    def test_box_mismatch_is_fatal(self):
        with pytest.raises(ConfigurationError):
            reconstruct_halfmaps(_random_projections(4, box=10), ori_size=8, pixel_size=PIXEL_SIZE, verbose=False)

    @pytest.mark.parametrize("kwargs", [dict(pixel_size=0.), dict(n_threads=0), dict(batch_size=0),
                                        dict(symmetry="X7"), dict(padding_factor=0.5), dict(grid_iters=-1),
                                        dict(do_ewald=True, ndim=2), dict(max_resolution=0.),
                                        dict(max_resolution=2.)])
    def test_configuration_errors_before_any_read(self, kwargs):
        source = FlakyProjections(_random_projections(4))
        params = dict(ori_size=8, pixel_size=PIXEL_SIZE, verbose=False)
        params.update(kwargs)
        with pytest.raises(ConfigurationError):
            reconstruct_halfmaps(source, **params)
        assert source.n_reads == 0

    def test_written_files(self, tmp_path):
        basename = os.path.join(str(tmp_path), "maps", "run1")
        result = reconstruct_halfmaps(_random_projections(6), ori_size=8, pixel_size=PIXEL_SIZE, grid_iters=1,
                                      output_basename=basename, write_weights=True, verbose=False)
        assert result.fnames == [basename + "_half1.mrc", basename + "_half1_weights.mrc",
                                 basename + "_half2.mrc", basename + "_half2_weights.mrc"]
        for half in (1, 2):
            vol, pixel_size = get_vol(basename + f"_half{half}.mrc")
            assert pixel_size == pytest.approx(PIXEL_SIZE)
            torch.testing.assert_close(vol, result.volumes[half].float())
            weights, _ = get_vol(basename + f"_half{half}_weights.mrc")
            assert weights.shape == (16, 16, 9)

    def test_weights_not_written_by_default(self, tmp_path):
        basename = str(tmp_path / "run")
        result = reconstruct_halfmaps(_random_projections(4), ori_size=8, pixel_size=PIXEL_SIZE, grid_iters=1,
                                      output_basename=basename, verbose=False)
        assert sorted(os.listdir(tmp_path)) == ["run_half1.mrc", "run_half2.mrc"]
        assert len(result.fnames) == 2

    def test_wiener(self):
        result = reconstruct_halfmaps(_random_projections(10), ori_size=8, pixel_size=PIXEL_SIZE, grid_iters=1,
                                      do_wiener=True, verbose=False)
        assert result.fsc.shape == (5,)
        assert result.fsc[0] == 1.
        assert all(torch.isfinite(v).all() for v in result.volumes.values())

    def test_symmetry_and_helix(self):
        result = reconstruct_halfmaps(_random_projections(6), ori_size=8, pixel_size=PIXEL_SIZE, grid_iters=1,
                                      symmetry="C2", helical_rise=3., helical_twist=30., nr_helical_asu=3,
                                      verbose=False)
        assert all(torch.isfinite(v).all() for v in result.volumes.values())

    def test_2d(self):
        result = reconstruct_halfmaps(_random_projections(6, ndim=2), ori_size=8, pixel_size=PIXEL_SIZE, ndim=2,
                                      grid_iters=2, interpolator="nearest", verbose=False)
        assert result.volumes[1].shape == (8, 8)
        assert result.weights[2].shape == (16, 9)

    def test_ewald(self):
        result = reconstruct_halfmaps(_random_projections(6, with_ctf_model=True), ori_size=8,
                                      pixel_size=PIXEL_SIZE, do_ewald=True, nr_sectors=3, newbox=6, grid_iters=1,
                                      verbose=False)
        assert result.volumes[1].shape == (6, 6, 6)
        assert result.n_inserted == 6
        assert all(torch.isfinite(v).all() for v in result.volumes.values())

    def test_ewald_without_ctf_model_skips(self):
        result = reconstruct_halfmaps(_random_projections(4), ori_size=8, pixel_size=PIXEL_SIZE, do_ewald=True,
                                      grid_iters=1, verbose=False)
        assert result.n_inserted == 0 and result.n_skipped == 4

    def test_gaussian_blob(self):
        """Every projection of a spherical Gaussian is the same 2D Gaussian; the half-maps recover the blob."""
        box, sigma = 16, 2.
        image = sigma * math.sqrt(2 * math.pi) * torch.exp(-0.5 * (radial_distance(box, 2) / sigma) ** 2)
        fourier = FourierTransformer().rfft(image, 2)
        rots = torch.from_numpy(Rotation.random(60, random_state=3).as_matrix())
        projections = [OrientedProjection(fourier=fourier, rotation=rot, halfset=1 + i % 2)
                       for i, rot in enumerate(rots)]
        result = reconstruct_halfmaps(projections, ori_size=box, pixel_size=PIXEL_SIZE, n_threads=2,
                                      use_double_precision=True, verbose=False)
        blob = torch.exp(-0.5 * (radial_distance(box, 3) / sigma) ** 2)
        for volume in result.volumes.values():
            corr = torch.corrcoef(torch.stack([volume.flatten(), blob.flatten()]))[0, 1]
            assert corr > 0.9
