"""
Tests for cryoREC.fourier.fourierGrids.
"""
import pytest
import torch

from cryoREC.fourier.fourierGrids import azimuth_degrees, half_grid, half_radius, half_shape, logical_to_index


class TestHalfGrid:

    def test_shape(self):
        assert half_shape(6, 2) == (6, 4)
        assert half_shape(7, 3) == (7, 7, 4)
        assert half_grid(6, 2).shape == (6, 4, 2)
        assert half_grid(4, 3).shape == (4, 4, 3, 3)

    def test_2d_coordinates(self):
        grid = half_grid(6, 2)
        assert grid[3, 0].tolist() == [0, 0]
        assert grid[0, 0].tolist() == [0, -3]
        assert grid[3, 2].tolist() == [2, 0]
        assert grid[5, 1].tolist() == [1, 2]

    def test_3d_coordinates(self):
        grid = half_grid(4, 3)
        for i, j, k in [(0, 0, 0), (2, 2, 0), (1, 3, 2), (3, 0, 1)]:
            assert grid[i, j, k].tolist() == [k, j - 2, i - 2]

    def test_radius(self):
        r = half_radius(8, 3)
        assert r[4, 4, 0] == 0
        assert r[4, 4, 3] == pytest.approx(3.)
        assert r[0, 4, 0] == pytest.approx(4.)


class TestLogicalToIndex:

    def test_3d(self):
        idx = logical_to_index(torch.tensor([[1., -1., 2.]]), 4)
        assert idx.tolist() == [[4., 1., 1.]]

    def test_inverse_of_half_grid(self):
        grid = half_grid(6, 3)
        idx = logical_to_index(grid.reshape(-1, 3), 6).long()
        expected = torch.stack(torch.meshgrid(torch.arange(6), torch.arange(6), torch.arange(4), indexing="ij"),
                               -1).reshape(-1, 3)
        assert torch.equal(idx, expected)

    def test_integer_coordinates(self):
        idx = logical_to_index(torch.tensor([[0, 2]]), 8)
        assert idx.dtype == torch.long
        assert idx.tolist() == [[6, 0]]


class TestAzimuth:

    def test_quadrants(self):
        coords = torch.tensor([[1., 0.], [0., 1.], [-1., 0.], [0., -1.], [1., 1.], [1., -1.]],
                              dtype=torch.float64)
        assert azimuth_degrees(coords).tolist() == [0., 90., 180., 270., 45., 315.]

    def test_snapping_makes_ties_exact(self):
        a = torch.deg2rad(torch.tensor(135., dtype=torch.float64))
        coords = torch.stack([torch.cos(a), torch.sin(a)]).unsqueeze(0) * 3
        assert azimuth_degrees(coords).item() == 135.
