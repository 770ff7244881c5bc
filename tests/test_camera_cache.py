"""Tests for the device camera cache."""

import threading

import pytest
import torch

from mvsrefine.camera_cache import CameraCacheMissError, DeviceCameraCache
from mvsrefine.projection import PinholeProjectionModel, ProjectionModel
from mvsrefine.synthetic import make_intrinsics


def _model():
    return PinholeProjectionModel(make_intrinsics(16, 12, 20.0), torch.eye(3), torch.zeros(3))


class _ShiftedModel:
    """Projection model wrapping a pinhole with a one-pixel horizontal shift."""

    def __init__(self, inner):
        self.inner = inner

    def project(self, points):
        pixels, valid = self.inner.project(points)
        return pixels + torch.tensor([1.0, 0.0], device=pixels.device), valid

    def cast_ray(self, pixels):
        return self.inner.cast_ray(pixels - torch.tensor([1.0, 0.0], device=pixels.device))

    def center(self):
        return self.inner.center()

    def to(self, device):
        return _ShiftedModel(self.inner.to(device))

    def scaled(self, scale):
        return _ShiftedModel(self.inner.scaled(scale))


class TestRequestCamera:
    """Tests for DeviceCameraCache.request_camera."""

    def test_builds_once(self, device):
        """Repeated requests return the same handle."""
        cache = DeviceCameraCache(device=device)
        cache.register_view(0, _model(), torch.rand(12, 16))

        a = cache.request_camera(0, 1)
        b = cache.request_camera(0, 1)
        assert a is b
        assert len(cache) == 1
        assert (0, 1) in cache
        assert a.image.device.type == device.type
        assert a.model.K.device.type == device.type

    def test_scales_are_separate_entries(self):
        """Each (view, scale) pair gets its own handle and slot."""
        cache = DeviceCameraCache()
        cache.register_view(0, _model(), torch.rand(12, 16))

        full = cache.request_camera(0, 1)
        half = cache.request_camera(0, 2)
        assert full.device_cam_id != half.device_cam_id
        assert (half.height, half.width) == (6, 8)
        assert half.model.K[0, 0] == pytest.approx(10.0)

    def test_pyramid(self):
        """Each pyramid level halves the resolution."""
        cache = DeviceCameraCache(pyramid_levels=3)
        cache.register_view(0, _model(), torch.rand(12, 16))

        camera = cache.request_camera(0, 1)
        assert [level.shape for level in camera.pyramid] == [(12, 16), (6, 8), (3, 4)]

    def test_mask_downscaled(self):
        """Masks follow the image downscale."""
        mask = torch.ones(12, 16, dtype=torch.bool)
        mask[:, :8] = False
        cache = DeviceCameraCache()
        cache.register_view(0, _model(), torch.rand(12, 16), mask)

        camera = cache.request_camera(0, 2)
        assert camera.mask.shape == (6, 8)
        assert not camera.mask[:, :4].any()
        assert camera.mask[:, 4:].all()

    def test_any_projection_model(self):
        """Handles are built from any model implementing the protocol."""
        cache = DeviceCameraCache()
        cache.register_view(0, _ShiftedModel(_model()), torch.rand(12, 16))

        camera = cache.request_camera(0, 2)
        assert isinstance(camera.model, _ShiftedModel)
        assert isinstance(camera.model, ProjectionModel)
        assert camera.model.inner.K[0, 0] == pytest.approx(10.0)

    def test_miss_raises(self):
        """Unknown views raise CameraCacheMissError, a KeyError."""
        cache = DeviceCameraCache()
        with pytest.raises(CameraCacheMissError) as exc:
            cache.request_camera(7, 2)
        assert isinstance(exc.value, KeyError)
        assert exc.value.view_id == 7
        assert exc.value.scale == 2
        assert "view 7" in str(exc.value)

    def test_lazy_loader(self):
        """Loaders run on first request only."""
        calls = []

        def loader():
            calls.append(1)
            return _model(), torch.rand(12, 16), None

        cache = DeviceCameraCache()
        cache.register_loader(3, loader)
        assert calls == []
        cache.request_camera(3, 1)
        cache.request_camera(3, 1)
        assert calls == [1]

    def test_concurrent_requests_build_once(self):
        """Concurrent lookups of the same key share one handle."""
        cache = DeviceCameraCache()
        cache.register_view(0, _model(), torch.rand(12, 16))
        results = []

        def worker():
            results.append(cache.request_camera(0, 1))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 8
        assert all(r is results[0] for r in results)
        assert len(cache) == 1


class TestHoldAndEvict:
    """Tests for scope-bound holds and eviction."""

    def test_hold_counts(self):
        """Holds are reference counted and released on exit."""
        cache = DeviceCameraCache()
        cache.register_view(0, _model(), torch.rand(12, 16))

        with cache.hold(0, 1) as outer:
            assert cache.hold_count(0, 1) == 1
            with cache.hold(0, 1) as inner:
                assert inner is outer
                assert cache.hold_count(0, 1) == 2
            assert cache.hold_count(0, 1) == 1
        assert cache.hold_count(0, 1) == 0

    def test_hold_released_on_error(self):
        """Holds are released when the scope raises."""
        cache = DeviceCameraCache()
        cache.register_view(0, _model(), torch.rand(12, 16))

        with pytest.raises(RuntimeError, match="boom"):
            with cache.hold(0, 1):
                raise RuntimeError("boom")
        assert cache.hold_count(0, 1) == 0

    def test_evict_refuses_held(self):
        """Held handles cannot be evicted."""
        cache = DeviceCameraCache()
        cache.register_view(0, _model(), torch.rand(12, 16))

        with cache.hold(0, 1):
            with pytest.raises(RuntimeError, match="in use"):
                cache.evict(0, 1)
        assert cache.evict(0, 1) is True
        assert (0, 1) not in cache
        assert cache.evict(0, 1) is False

    def test_evicted_handle_is_rebuilt(self):
        """Evicted views stay registered and rebuild on demand."""
        cache = DeviceCameraCache()
        cache.register_view(0, _model(), torch.rand(12, 16))

        first = cache.request_camera(0, 1)
        cache.evict(0, 1)
        second = cache.request_camera(0, 1)
        assert second is not first
        assert second.device_cam_id != first.device_cam_id

    def test_clear_keeps_held(self):
        """clear() drops only handles that are not held."""
        cache = DeviceCameraCache()
        cache.register_view(0, _model(), torch.rand(12, 16))
        cache.register_view(1, _model(), torch.rand(12, 16))
        cache.request_camera(1, 1)

        with cache.hold(0, 1):
            cache.clear()
            assert (0, 1) in cache
            assert (1, 1) not in cache

    def test_hold_miss_raises(self):
        """Holding an unknown view raises before entering the scope."""
        cache = DeviceCameraCache()
        with pytest.raises(CameraCacheMissError):
            with cache.hold(5, 1):
                pass
        assert cache.hold_count(5, 1) == 0
