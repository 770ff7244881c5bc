"""Pinhole projection model."""

import torch


class PinholeProjectionModel:
    """Ideal pinhole camera (post-undistortion).

    Implements the ProjectionModel protocol. Rays start at the camera center,
    so the ray depth of a point is its Euclidean distance to the center.

    Args:
        K: Intrinsic matrix, shape (3, 3), float32.
        R: Rotation matrix (world to camera), shape (3, 3), float32.
        t: Translation vector (world to camera), shape (3,), float32.
    """

    def __init__(self, K: torch.Tensor, R: torch.Tensor, t: torch.Tensor) -> None:
        self.K = K
        self.R = R
        self.t = t

        self.K_inv = torch.linalg.inv(K)
        self.C = -R.T @ t  # camera center in world frame, shape (3,)

    def center(self) -> torch.Tensor:
        """Camera center in world frame, shape (3,), float32."""
        return self.C

    def to(self, device: str | torch.device) -> "PinholeProjectionModel":
        """Return a copy of this model with all tensors on ``device``."""
        return PinholeProjectionModel(
            self.K.to(device), self.R.to(device), self.t.to(device)
        )

    def scaled(self, scale: int) -> "PinholeProjectionModel":
        """Return the model for an image area-downsampled by an integer factor.

        Pixel indices address pixel centers, so the principal point moves by
        half a pixel on each side of the rescale.

        Args:
            scale: Integer downscale factor (1 = unchanged).

        Returns:
            Projection model at the downscaled resolution.
        """
        if scale == 1:
            return self
        K = self.K.clone()
        K[0, 0] = K[0, 0] / scale
        K[1, 1] = K[1, 1] / scale
        K[0, 1] = K[0, 1] / scale
        K[0, 2] = (K[0, 2] + 0.5) / scale - 0.5
        K[1, 2] = (K[1, 2] + 0.5) / scale - 0.5
        return PinholeProjectionModel(K, self.R, self.t)

    def cast_ray(self, pixels: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Cast rays from pixel coordinates through the camera center.

        Args:
            pixels: 2D pixel coordinates (u, v), shape (N, 2), float32.

        Returns:
            origins: Camera center repeated, shape (N, 3), float32.
            directions: Unit ray direction vectors in world frame, shape (N, 3).
        """
        N = pixels.shape[0]
        ones = torch.ones(N, 1, device=pixels.device, dtype=pixels.dtype)
        pixels_h = torch.cat([pixels, ones], dim=-1)  # (N, 3)

        rays_cam = (self.K_inv @ pixels_h.T).T
        rays_world = (self.R.T @ rays_cam.T).T
        directions = rays_world / torch.linalg.norm(rays_world, dim=-1, keepdim=True)

        origins = self.C.unsqueeze(0).expand(N, 3)
        return origins, directions

    def project(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Project 3D world points to 2D pixel coordinates.

        Args:
            points: 3D points in world frame, shape (N, 3), float32.

        Returns:
            pixels: 2D pixel coordinates (u, v), shape (N, 2), float32.
            valid: True where the point lies in front of the camera, shape (N,).
        """
        p_cam = (self.R @ points.T).T + self.t.unsqueeze(0)  # (N, 3)
        z = p_cam[:, 2]
        valid = z > 1e-8

        z_safe = torch.where(valid, z, torch.ones_like(z))
        p_img = (self.K @ p_cam.T).T  # (N, 3)
        pixels = p_img[:, :2] / z_safe.unsqueeze(-1)

        return pixels, valid
