"""Tests for the color-guided depth map optimization kernels."""

import torch

from mvsrefine.camera_cache import DeviceCameraCache
from mvsrefine.kernels import compute_image_variance, optimize_depth_sim_map
from mvsrefine.projection import PinholeProjectionModel
from mvsrefine.roi import ROI
from mvsrefine.synthetic import make_intrinsics


def _camera(image, device):
    h, w = image.shape
    cache = DeviceCameraCache(device=device, pyramid_levels=2)
    model = PinholeProjectionModel(make_intrinsics(w, h, 50.0), torch.eye(3), torch.zeros(3))
    cache.register_view(0, model, image)
    return cache.request_camera(0, 1)


def _optimize(refined, pix_size, variance, nb_iterations):
    H, W, _ = refined.shape
    depth_pix_size = torch.stack([refined[..., 0], torch.full((H, W), pix_size, device=refined.device)], dim=-1)
    out = torch.zeros_like(refined)
    tmp = torch.zeros(H, W, device=refined.device)
    optimize_depth_sim_map(out, variance, tmp, depth_pix_size, refined, nb_iterations)
    return out


def _map(depth, sim, device):
    return torch.stack([depth, torch.full_like(depth, sim)], dim=-1).to(device)


class TestComputeImageVariance:
    """Tests for compute_image_variance."""

    def test_constant_image(self, device):
        """A constant image has no variance."""
        camera = _camera(torch.full((16, 16), 0.5), device)
        out = torch.full((8, 8), -1.0, device=device)
        compute_image_variance(out, camera, ROI(0, 8, 0, 8), 2)
        assert torch.allclose(out, torch.zeros_like(out), atol=1e-6)

    def test_textured_image(self, device):
        """Textured images produce positive variance."""
        generator = torch.Generator().manual_seed(0)
        camera = _camera(torch.rand((16, 16), generator=generator), device)
        out = torch.zeros(16, 16, device=device)
        compute_image_variance(out, camera, ROI(0, 16, 0, 16), 1)
        assert torch.all(out >= 0.0)
        assert out.mean() > 0.01


class TestOptimizeDepthSimMap:
    """Tests for optimize_depth_sim_map."""

    def test_flat_map_is_fixed_point(self, device):
        """A constant depth map does not move."""
        refined = _map(torch.full((8, 8), 2.0), 0.5, device)
        variance = torch.zeros(8, 8, device=device)
        out = _optimize(refined, 0.01, variance, 10)
        assert torch.equal(out, refined)

    def test_confident_pixels_keep_photometric_depth(self, device):
        """Full confidence pins the depth to the refined value."""
        generator = torch.Generator().manual_seed(1)
        depth = 2.0 + 0.05 * torch.rand((8, 8), generator=generator)
        refined = _map(depth, 0.0, device)
        variance = torch.ones(8, 8, device=device)
        out = _optimize(refined, 0.01, variance, 5)
        assert torch.allclose(out, refined)

    def test_step_clamped_to_pix_size(self, device):
        """One iteration moves each pixel by at most one pixel size."""
        generator = torch.Generator().manual_seed(2)
        depth = 2.0 + 0.5 * torch.rand((8, 8), generator=generator)
        refined = _map(depth, 1.0, device)
        variance = torch.zeros(8, 8, device=device)
        pix_size = 0.01
        out = _optimize(refined, pix_size, variance, 1)
        delta = (out[..., 0] - refined[..., 0]).abs()
        assert delta.max() <= pix_size + 1e-6

    def test_spike_is_smoothed(self, device):
        """Unreliable outliers move toward their neighbors."""
        depth = torch.full((7, 7), 2.0)
        depth[3, 3] = 2.1
        refined = _map(depth, 1.0, device)
        variance = torch.zeros(7, 7, device=device)
        out = _optimize(refined, 0.01, variance, 3)
        assert out[3, 3, 0] < 2.1
        assert out[3, 3, 0] >= 2.1 - 3 * 0.01 - 1e-6

    def test_invalid_pixels_unchanged(self, device):
        """Sentinel depths pass through and do not pull their neighbors."""
        depth = torch.full((6, 6), 2.0)
        depth[0, :] = -1.0
        depth[:, 0] = -2.0
        refined = _map(depth, 1.0, device)
        variance = torch.zeros(6, 6, device=device)
        out = _optimize(refined, 0.01, variance, 5)
        assert torch.all(out[0, 1:, 0] == -1.0)
        assert torch.all(out[:, 0, 0] == -2.0)
        assert torch.equal(out[1:, 1:, 0], refined[1:, 1:, 0])

    def test_similarity_copied(self, device):
        """The similarity channel is the refined one."""
        refined = _map(torch.full((4, 4), 2.0), 0.3, device)
        out = _optimize(refined, 0.01, torch.zeros(4, 4, device=device), 2)
        assert torch.equal(out[..., 1], refined[..., 1])
