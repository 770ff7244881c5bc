"""Registry of compute-device camera handles keyed by (view id, scale)."""

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import torch
import torch.nn.functional as F

from .io import load_image
from .projection.pinhole import PinholeProjectionModel
from .projection.protocol import ProjectionModel
from .scene import SceneData

logger = logging.getLogger(__name__)

# Loader returning (full-resolution projection model, grayscale image (H, W), mask or None)
ViewLoader = Callable[
    [], tuple[ProjectionModel, torch.Tensor, torch.Tensor | None]
]


class CameraCacheMissError(KeyError):
    """Raised when a requested view is unknown to the camera cache."""

    def __init__(self, view_id: int, scale: int) -> None:
        super().__init__(view_id, scale)
        self.view_id = view_id
        self.scale = scale

    def __str__(self) -> str:
        return f"view {self.view_id} (scale {self.scale}) is not registered in the camera cache"


@dataclass(frozen=True)
class DeviceCamera:
    """Read-only, device-resident camera handle.

    Attributes:
        view_id: View identifier.
        scale: Downscale factor of this handle.
        device_cam_id: Slot index assigned by the cache (stable for its lifetime).
        model: Projection model at this scale.
        pyramid: Image pyramid, level 0 at ``scale``; each next level halves
            the resolution. Grayscale float32 (H, W) in [0, 1].
        mask: Boolean validity mask at level 0 resolution, or None.
    """

    view_id: int
    scale: int
    device_cam_id: int
    model: ProjectionModel
    pyramid: tuple[torch.Tensor, ...]
    mask: torch.Tensor | None = None

    @property
    def image(self) -> torch.Tensor:
        """Level-0 grayscale image, shape (H, W)."""
        return self.pyramid[0]

    @property
    def width(self) -> int:
        return self.pyramid[0].shape[1]

    @property
    def height(self) -> int:
        return self.pyramid[0].shape[0]


class DeviceCameraCache:
    """Concurrency-safe registry of device camera handles.

    Views are registered with a loader; handles are built lazily on first
    request for a given (view id, scale) and reused afterwards. Lookups may
    come from several threads; building and bookkeeping happen under a lock.

    Args:
        device: Device the handles live on.
        pyramid_levels: Number of pyramid levels per handle.
    """

    def __init__(self, device: str | torch.device = "cpu", pyramid_levels: int = 3):
        self.device = torch.device(device)
        self.pyramid_levels = pyramid_levels
        self._loaders: dict[int, ViewLoader] = {}
        self._cameras: dict[tuple[int, int], DeviceCamera] = {}
        self._holds: dict[tuple[int, int], int] = {}
        self._next_cam_id = 0
        self._lock = threading.RLock()

    @classmethod
    def from_scene(
        cls,
        scene: SceneData,
        device: str | torch.device = "cpu",
        pyramid_levels: int = 3,
    ) -> "DeviceCameraCache":
        """Create a cache whose views load lazily from a scene's image files.

        Args:
            scene: Scene description.
            device: Device the handles live on.
            pyramid_levels: Number of pyramid levels per handle.

        Returns:
            Cache with every scene view registered.
        """
        cache = cls(device=device, pyramid_levels=pyramid_levels)
        for view_id, view in scene.views.items():

            def loader(view=view):
                image, mask = load_image(view.image_path, view.mask_path)
                return PinholeProjectionModel(view.K, view.R, view.t), image, mask

            cache.register_loader(view_id, loader)
        return cache

    def register_loader(self, view_id: int, loader: ViewLoader) -> None:
        """Register (or replace) the loader of a view."""
        with self._lock:
            self._loaders[view_id] = loader

    def register_view(
        self,
        view_id: int,
        model: ProjectionModel,
        image: torch.Tensor,
        mask: torch.Tensor | None = None,
    ) -> None:
        """Register a view from in-memory data.

        Args:
            view_id: View identifier.
            model: Full-resolution projection model.
            image: Full-resolution grayscale image, shape (H, W), float32 in [0, 1].
            mask: Optional boolean validity mask, shape (H, W).
        """
        self.register_loader(view_id, lambda: (model, image, mask))

    def request_camera(self, view_id: int, scale: int) -> DeviceCamera:
        """Resolve (view id, scale) to a device camera handle.

        Args:
            view_id: View identifier.
            scale: Integer downscale factor.

        Returns:
            The cached handle, built on first request.

        Raises:
            CameraCacheMissError: If the view is not registered.
        """
        key = (view_id, scale)
        with self._lock:
            camera = self._cameras.get(key)
            if camera is not None:
                return camera

            loader = self._loaders.get(view_id)
            if loader is None:
                raise CameraCacheMissError(view_id, scale)

            camera = self._build(view_id, scale, loader)
            self._cameras[key] = camera
            return camera

    @contextmanager
    def hold(self, view_id: int, scale: int) -> Iterator[DeviceCamera]:
        """Scope-bound access to a handle; held handles cannot be evicted.

        Args:
            view_id: View identifier.
            scale: Integer downscale factor.

        Yields:
            The device camera handle.

        Raises:
            CameraCacheMissError: If the view is not registered.
        """
        key = (view_id, scale)
        with self._lock:
            camera = self.request_camera(view_id, scale)
            self._holds[key] = self._holds.get(key, 0) + 1
        try:
            yield camera
        finally:
            with self._lock:
                self._holds[key] -= 1
                if self._holds[key] == 0:
                    del self._holds[key]

    def hold_count(self, view_id: int, scale: int) -> int:
        """Number of active holds on a handle."""
        with self._lock:
            return self._holds.get((view_id, scale), 0)

    def evict(self, view_id: int, scale: int) -> bool:
        """Drop a built handle to free device memory.

        Args:
            view_id: View identifier.
            scale: Integer downscale factor.

        Returns:
            True if a handle was dropped, False if none was built.

        Raises:
            RuntimeError: If the handle is currently held.
        """
        key = (view_id, scale)
        with self._lock:
            if self._holds.get(key, 0) > 0:
                raise RuntimeError(
                    f"Cannot evict view {view_id} (scale {scale}): handle is in use"
                )
            return self._cameras.pop(key, None) is not None

    def clear(self) -> None:
        """Drop every handle that is not held."""
        with self._lock:
            for key in list(self._cameras):
                if self._holds.get(key, 0) == 0:
                    del self._cameras[key]

    def __contains__(self, key: tuple[int, int]) -> bool:
        with self._lock:
            return key in self._cameras

    def __len__(self) -> int:
        with self._lock:
            return len(self._cameras)

    def _build(self, view_id: int, scale: int, loader: ViewLoader) -> DeviceCamera:
        """Build a handle. Must be called with the lock held."""
        model, image, mask = loader()

        image = image.to(self.device, dtype=torch.float32)
        if scale > 1:
            image = F.avg_pool2d(image[None, None], scale).squeeze(0).squeeze(0)
            if mask is not None:
                mask_f = mask.to(self.device, dtype=torch.float32)[None, None]
                mask = F.avg_pool2d(mask_f, scale).squeeze(0).squeeze(0) >= 0.5
        if mask is not None:
            mask = mask.to(self.device, dtype=torch.bool)

        pyramid = [image]
        for _ in range(1, self.pyramid_levels):
            prev = pyramid[-1]
            if min(prev.shape) < 2:
                break
            pyramid.append(F.avg_pool2d(prev[None, None], 2).squeeze(0).squeeze(0))

        camera = DeviceCamera(
            view_id=view_id,
            scale=scale,
            device_cam_id=self._next_cam_id,
            model=model.to(self.device).scaled(scale),
            pyramid=tuple(pyramid),
            mask=mask,
        )
        self._next_cam_id += 1

        logger.debug(
            "Built device camera %d for view %d at scale %d (%dx%d, %d levels)",
            camera.device_cam_id,
            view_id,
            scale,
            camera.width,
            camera.height,
            len(pyramid),
        )
        return camera
