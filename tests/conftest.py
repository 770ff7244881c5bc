"""Shared pytest fixtures for MVSRefine tests."""

import pytest
import torch

from mvsrefine.camera_cache import DeviceCameraCache
from mvsrefine.synthetic import create_plane_scene


@pytest.fixture(params=["cpu", "cuda"])
def device(request):
    """Parametrized device fixture for CPU and CUDA testing.

    Args:
        request: pytest fixture request object.

    Returns:
        torch.device: Device to use for testing.

    Raises:
        pytest.skip: If CUDA is requested but not available.
    """
    if request.param == "cuda" and not torch.cuda.is_available():
        pytest.skip("CUDA not available")
    return torch.device(request.param)


@pytest.fixture(scope="session")
def plane_scene():
    """Reference view 0 and one verged target view 1 of a textured plane at z=2."""
    return create_plane_scene()


@pytest.fixture
def make_cache():
    """Factory registering every view of a synthetic scene in a new cache."""

    def _make(scene, device="cpu", pyramid_levels=3):
        cache = DeviceCameraCache(device=device, pyramid_levels=pyramid_levels)
        for view_id, model in scene.models.items():
            cache.register_view(view_id, model, scene.images[view_id])
        return cache

    return _make
