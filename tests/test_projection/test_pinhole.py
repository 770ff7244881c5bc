"""Tests for the pinhole projection model."""

import pytest
import torch

from mvsrefine.projection import PinholeProjectionModel
from mvsrefine.synthetic import look_at, make_intrinsics


@pytest.fixture
def verged_model(device):
    K = make_intrinsics(64, 48, 80.0)
    R, t = look_at((0.5, -0.2, 0.0), (0.0, 0.0, 2.0))
    return PinholeProjectionModel(K, R, t).to(device)


class TestPinholeProjectionModel:
    """Tests for PinholeProjectionModel."""

    def test_center(self, verged_model, device):
        """The camera center is recovered from R and t."""
        expected = torch.tensor([0.5, -0.2, 0.0], device=device)
        assert torch.allclose(verged_model.center(), expected, atol=1e-6)

    def test_principal_point_ray(self):
        """The principal point casts the optical axis."""
        model = PinholeProjectionModel(make_intrinsics(65, 49, 50.0), torch.eye(3), torch.zeros(3))
        origins, directions = model.cast_ray(torch.tensor([[32.0, 24.0]]))
        assert torch.allclose(origins, torch.zeros(1, 3))
        assert torch.allclose(directions, torch.tensor([[0.0, 0.0, 1.0]]), atol=1e-6)

    def test_cast_then_project(self, verged_model, device):
        """Points along cast rays project back to their pixels."""
        pixels = torch.tensor(
            [[0.0, 0.0], [31.5, 23.5], [63.0, 47.0], [10.25, 40.75]], device=device
        )
        origins, directions = verged_model.cast_ray(pixels)
        assert torch.allclose(
            torch.linalg.norm(directions, dim=-1), torch.ones(4, device=device), atol=1e-6
        )

        points = origins + 2.5 * directions
        projected, valid = verged_model.project(points)
        assert valid.all()
        assert torch.allclose(projected, pixels, atol=1e-3)

    def test_ray_depth_is_distance(self, verged_model, device):
        """Ray depth equals the Euclidean distance to the center."""
        pixels = torch.tensor([[5.0, 7.0]], device=device)
        origins, directions = verged_model.cast_ray(pixels)
        point = origins + 3.0 * directions
        distance = torch.linalg.norm(point - verged_model.center(), dim=-1)
        assert distance.item() == pytest.approx(3.0, abs=1e-5)

    def test_behind_camera_invalid(self):
        """Points behind the camera are flagged invalid."""
        model = PinholeProjectionModel(make_intrinsics(16, 16, 10.0), torch.eye(3), torch.zeros(3))
        _, valid = model.project(torch.tensor([[0.0, 0.0, -1.0], [0.0, 0.0, 1.0]]))
        assert valid.tolist() == [False, True]

    def test_scaled_pixel_centers(self):
        """Downscaling maps pixel centers consistently."""
        model = PinholeProjectionModel(make_intrinsics(64, 48, 80.0), torch.eye(3), torch.zeros(3))
        half = model.scaled(2)
        point = torch.tensor([[0.3, -0.1, 2.0]])
        full_px, _ = model.project(point)
        half_px, _ = half.project(point)
        # Pixel p at full resolution sits at (p + 0.5) / 2 - 0.5 at half resolution
        assert torch.allclose(half_px, (full_px + 0.5) / 2 - 0.5, atol=1e-5)

    def test_scaled_identity(self):
        """Scale 1 returns the model itself."""
        model = PinholeProjectionModel(torch.eye(3), torch.eye(3), torch.zeros(3))
        assert model.scaled(1) is model
