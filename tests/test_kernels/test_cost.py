"""Tests for patch similarity."""

import torch

from mvsrefine.kernels import compute_zncc, patch_similarity


class TestComputeZNCC:
    """Tests for compute_zncc function."""

    def test_identical_images(self, device):
        """Identical textured images correlate perfectly."""
        torch.manual_seed(42)
        ref = torch.rand(32, 40, device=device)
        ncc, valid = compute_zncc(ref, ref.clone(), window_size=7)

        assert ncc.shape == (32, 40)
        assert valid[4:-4, 4:-4].all()
        interior = ncc[4:-4, 4:-4]
        assert torch.allclose(interior, torch.ones_like(interior), atol=1e-2)

    def test_linear_intensity_change(self, device):
        """Gain and offset changes do not affect the correlation."""
        torch.manual_seed(42)
        ref = torch.rand(32, 40, device=device)
        ncc, _ = compute_zncc(ref, ref * 0.5 + 0.2, window_size=7)
        interior = ncc[4:-4, 4:-4]
        assert torch.allclose(interior, torch.ones_like(interior), atol=1e-2)

    def test_inverted_images(self, device):
        """Negated images anti-correlate."""
        torch.manual_seed(42)
        ref = torch.rand(32, 40, device=device)
        ncc, _ = compute_zncc(ref, 1.0 - ref, window_size=7)
        interior = ncc[4:-4, 4:-4]
        assert torch.allclose(interior, -torch.ones_like(interior), atol=1e-2)

    def test_textureless_window(self, device):
        """Constant windows carry no correlation."""
        ref = torch.full((16, 16), 0.5, device=device)
        ncc, _ = compute_zncc(ref, torch.rand(16, 16, device=device), window_size=5)
        assert torch.all(ncc == 0)

    def test_nan_region_invalid(self, device):
        """Windows that are mostly NaN are invalid."""
        torch.manual_seed(42)
        ref = torch.rand(32, 32, device=device)
        src = ref.clone()
        src[8:24, 8:24] = float("nan")

        _, valid = compute_zncc(ref, src, window_size=7)
        assert not valid[16, 16]
        assert valid[2, 2]


class TestPatchSimilarity:
    """Tests for patch_similarity."""

    def test_negated_ncc(self, device):
        """Similarity is -NCC: -1 for a perfect match."""
        torch.manual_seed(0)
        ref = torch.rand(24, 24, device=device)
        sim = patch_similarity(ref, ref.clone(), window_size=5)
        interior = sim[3:-3, 3:-3]
        assert torch.allclose(interior, -torch.ones_like(interior), atol=1e-2)

    def test_invalid_is_inf(self, device):
        """Invalid windows get +inf similarity."""
        ref = torch.rand(16, 16, device=device)
        src = torch.full((16, 16), float("nan"), device=device)
        sim = patch_similarity(ref, src, window_size=5)
        assert torch.isinf(sim).all()
        assert (sim > 0).all()
