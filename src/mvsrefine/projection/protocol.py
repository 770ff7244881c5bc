"""Protocol definition for projection models."""

from typing import Protocol, runtime_checkable

import torch


@runtime_checkable
class ProjectionModel(Protocol):
    """Protocol for geometric projection models.

    Defines the interface for mapping between 3D world points and 2D pixel
    coordinates. The camera cache and the refinement kernels only rely on
    this interface, so any camera model (pinhole, distorted, refractive) that
    can move between devices and rescale can be plugged in.

    project and cast_ray are batched (N points/pixels in, N results out) and
    device-agnostic (output tensors are on the same device as input tensors).
    """

    def project(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Project 3D world points to 2D pixel coordinates.

        Args:
            points: 3D points in world frame, shape (N, 3), float32.

        Returns:
            pixels: 2D pixel coordinates (u, v), shape (N, 2), float32.
            valid: Boolean validity mask, shape (N,). False for points that
                cannot be projected (behind the camera). Invalid entries in
                pixels are undefined.
        """
        ...

    def cast_ray(self, pixels: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Cast rays from pixel coordinates into the scene.

        A 3D point at ray depth d is recovered as: point = origin + d * direction.

        Args:
            pixels: 2D pixel coordinates (u, v), shape (N, 2), float32.

        Returns:
            origins: Ray origin points, shape (N, 3), float32.
            directions: Unit ray direction vectors, shape (N, 3), float32.
        """
        ...

    def center(self) -> torch.Tensor:
        """Camera center in world frame, shape (3,), float32."""
        ...

    def to(self, device: str | torch.device) -> "ProjectionModel":
        """Return a copy of this model with all tensors on ``device``."""
        ...

    def scaled(self, scale: int) -> "ProjectionModel":
        """Return the model for an image downsampled by an integer factor.

        The camera cache builds per-scale handles through this method.
        """
        ...
