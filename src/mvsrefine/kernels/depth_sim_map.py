"""Kernels operating on depth/similarity and normal maps."""

import torch
import torch.nn.functional as F
from torch.profiler import record_function

from ..camera_cache import DeviceCamera
from ..roi import ROI
from .common import MASKED_DEPTH, NO_FUSION_SIM, roi_pixel_grid, sample_mask


def _upscale_nearest(grid: torch.Tensor, height: int, width: int) -> torch.Tensor:
    """Nearest-neighbor resize of an (h, w, C) grid to (height, width, C)."""
    if grid.shape[:2] == (height, width):
        return grid
    resized = F.interpolate(
        grid.permute(2, 0, 1).unsqueeze(0), size=(height, width), mode="nearest"
    )
    return resized.squeeze(0).permute(1, 2, 0)


def depth_sim_map_upscale_and_filter(
    out_depth_sim_map: torch.Tensor,
    in_depth_sim_map: torch.Tensor,
    rc_camera: DeviceCamera,
    roi: ROI,
    step_xy: int,
) -> None:
    """Upscale a coarse depth/sim map to the ROI and mask invalid pixels.

    Nearest-neighbor interpolation keeps sentinel depths intact. Pixels
    that fall on the reference camera's masked area become MASKED_DEPTH
    with NO_FUSION_SIM similarity.

    Args:
        out_depth_sim_map: Output region, shape (roi.height, roi.width, 2).
        in_depth_sim_map: Coarse map covering the tile ROI, shape (h, w, 2).
        rc_camera: Reference camera handle.
        roi: Downscaled ROI.
        step_xy: Sampling stride in camera pixels.
    """
    with record_function("depth_sim_map_upscale_and_filter"):
        H, W = roi.height, roi.width
        upscaled = _upscale_nearest(
            in_depth_sim_map.to(out_depth_sim_map.device, torch.float32), H, W
        )

        if rc_camera.mask is not None:
            pixels = roi_pixel_grid(roi, step_xy, device=out_depth_sim_map.device)
            valid = sample_mask(rc_camera.mask, pixels, H, W)
            masked = torch.stack(
                [
                    torch.full_like(upscaled[..., 0], MASKED_DEPTH),
                    torch.full_like(upscaled[..., 1], NO_FUSION_SIM),
                ],
                dim=-1,
            )
            upscaled = torch.where(valid.unsqueeze(-1), upscaled, masked)

        out_depth_sim_map.copy_(upscaled)


def depth_sim_map_compute_pix_size(
    depth_sim_map: torch.Tensor,
    rc_camera: DeviceCamera,
    roi: ROI,
    step_xy: int,
) -> None:
    """Replace the similarity channel with the per-pixel pixel size.

    The pixel size is the distance, at the pixel's depth, between the
    back-projections of horizontally adjacent depth map pixels. It is 0 for
    pixels without a valid depth.

    Args:
        depth_sim_map: Map region, shape (roi.height, roi.width, 2). Modified in place.
        rc_camera: Reference camera handle.
        roi: Downscaled ROI.
        step_xy: Sampling stride in camera pixels.
    """
    with record_function("depth_sim_map_compute_pix_size"):
        H, W = roi.height, roi.width
        device = depth_sim_map.device
        depth = depth_sim_map[..., 0].reshape(-1)

        pixels = roi_pixel_grid(roi, step_xy, device=device)
        neighbors = roi_pixel_grid(roi, step_xy, device=device, offset_x=float(step_xy))
        origins, directions = rc_camera.model.cast_ray(pixels)
        n_origins, n_directions = rc_camera.model.cast_ray(neighbors)

        p = origins + depth.unsqueeze(-1) * directions
        q = n_origins + depth.unsqueeze(-1) * n_directions
        pix_size = torch.linalg.norm(p - q, dim=-1)
        pix_size = torch.where(depth > 0, pix_size, torch.zeros_like(pix_size))

        depth_sim_map[..., 1].copy_(pix_size.reshape(H, W))


def normal_map_upscale(
    out_normal_map: torch.Tensor,
    in_normal_map: torch.Tensor,
    roi: ROI,
) -> None:
    """Upscale a coarse normal map to the ROI and renormalize.

    Args:
        out_normal_map: Output region, shape (roi.height, roi.width, 3).
        in_normal_map: Coarse normals covering the tile ROI, shape (h, w, 3).
        roi: Downscaled ROI.
    """
    with record_function("normal_map_upscale"):
        upscaled = _upscale_nearest(
            in_normal_map.to(out_normal_map.device, torch.float32), roi.height, roi.width
        )
        norm = torch.linalg.norm(upscaled, dim=-1, keepdim=True)
        upscaled = torch.where(norm > 0, upscaled / norm.clamp(min=1e-12), upscaled)
        out_normal_map.copy_(upscaled)


def depth_sim_map_copy_depth_only(
    out_depth_sim_map: torch.Tensor,
    in_depth_sim_map: torch.Tensor,
    default_sim: float = NO_FUSION_SIM,
) -> None:
    """Copy the depth channel and set the similarity channel to a constant.

    Args:
        out_depth_sim_map: Output region, shape (H, W, 2).
        in_depth_sim_map: Input region, shape (H, W, 2).
        default_sim: Similarity written for every pixel.
    """
    out_depth_sim_map[..., 0].copy_(in_depth_sim_map[..., 0])
    out_depth_sim_map[..., 1].fill_(default_sim)
