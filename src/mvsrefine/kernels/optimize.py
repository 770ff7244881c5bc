"""Color-guided gradient-descent optimization of a refined depth map."""

import math

import torch
import torch.nn.functional as F
from torch.profiler import record_function

from ..camera_cache import DeviceCamera
from ..roi import ROI
from .common import roi_pixel_grid, sample_image, sigmoid


def compute_image_variance(
    out_variance: torch.Tensor,
    rc_camera: DeviceCamera,
    roi: ROI,
    step_xy: int,
    window_size: int = 3,
) -> None:
    """Local intensity variance of the reference image at depth map pixels.

    Reads the pyramid level closest to ``step_xy`` so that subsampled depth
    maps see a low-passed image.

    Args:
        out_variance: Output region, shape (roi.height, roi.width).
        rc_camera: Reference camera handle.
        roi: Downscaled ROI.
        step_xy: Sampling stride in camera pixels.
        window_size: Variance window size (odd).
    """
    with record_function("compute_image_variance"):
        H, W = roi.height, roi.width
        level = min(int(math.log2(step_xy)), len(rc_camera.pyramid) - 1)
        image = rc_camera.pyramid[level]

        pixels = roi_pixel_grid(roi, step_xy, device=out_variance.device) / (2**level)
        values = sample_image(image, pixels, H, W)
        values = torch.nan_to_num(values, nan=0.0)

        pad = window_size // 2
        x = values[None, None]
        mean = F.avg_pool2d(x, window_size, stride=1, padding=pad, count_include_pad=False)
        mean_sq = F.avg_pool2d(x**2, window_size, stride=1, padding=pad, count_include_pad=False)
        variance = (mean_sq - mean**2).clamp(min=0.0)[0, 0]

        out_variance.copy_(variance)


def _neighbor_mean(depth: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """Mean of the valid (positive) 4-neighbors of each pixel.

    Returns:
        mean: Neighbor mean, shape (H, W); undefined where count is 0.
        count: Number of valid neighbors, shape (H, W).
    """
    valid = (depth > 0).to(depth.dtype)
    values = depth * valid
    kernel = torch.tensor(
        [[0.0, 1.0, 0.0], [1.0, 0.0, 1.0], [0.0, 1.0, 0.0]],
        device=depth.device,
        dtype=depth.dtype,
    )[None, None]
    total = F.conv2d(values[None, None], kernel, padding=1)[0, 0]
    count = F.conv2d(valid[None, None], kernel, padding=1)[0, 0]
    return total / count.clamp(min=1.0), count


def optimize_depth_sim_map(
    out_depth_sim_map: torch.Tensor,
    image_variance: torch.Tensor,
    tmp_depth: torch.Tensor,
    depth_pix_size_map: torch.Tensor,
    refined_depth_sim_map: torch.Tensor,
    nb_iterations: int,
    step_size: float = 0.5,
    variance_center: float = 0.001,
    variance_width: float = 0.001,
) -> None:
    """Smooth a refined depth map toward a color-consistent surface.

    Minimizes, per pixel, ``w * (d - d_refined)^2 + (1 - w) * (d - d_smooth)^2``
    by a fixed number of gradient-descent steps, where ``d_smooth`` is the
    mean of the valid 4-neighbors at the previous iterate and ``w`` is the
    photometric confidence: texture confidence (sigmoid of local image
    variance) times match confidence (``1 - similarity``). Each step is
    clamped to one pixel size. Pixels without a valid refined depth are
    copied unchanged.

    Args:
        out_depth_sim_map: Output region, shape (H, W, 2).
        image_variance: Local image variance region, shape (H, W).
        tmp_depth: Scratch region for the previous iterate, shape (H, W).
        depth_pix_size_map: Upscaled depth and pixel size, shape (H, W, 2).
        refined_depth_sim_map: Refined depth and similarity, shape (H, W, 2).
        nb_iterations: Number of iterations.
        step_size: Fraction of the gradient applied per iteration.
        variance_center: Variance at which texture confidence is 0.5.
        variance_width: Width of the texture confidence sigmoid.
    """
    with record_function("optimize_depth_sim_map"):
        photo_depth = refined_depth_sim_map[..., 0]
        photo_sim = refined_depth_sim_map[..., 1]
        pix_size = depth_pix_size_map[..., 1]
        valid = photo_depth > 0

        texture_conf = sigmoid(1.0, 0.0, variance_width, variance_center, image_variance)
        match_conf = (1.0 - photo_sim).clamp(0.0, 1.0)
        weight = texture_conf * match_conf

        out_depth = out_depth_sim_map[..., 0]
        out_depth.copy_(photo_depth)
        out_depth_sim_map[..., 1].copy_(photo_sim)

        for _ in range(nb_iterations):
            tmp_depth.copy_(out_depth)
            smooth, count = _neighbor_mean(tmp_depth)
            smooth = torch.where(count > 0, smooth, tmp_depth)

            grad = weight * (tmp_depth - photo_depth) + (1.0 - weight) * (tmp_depth - smooth)
            step = torch.maximum(torch.minimum(step_size * grad, pix_size), -pix_size)

            out_depth.copy_(torch.where(valid, tmp_depth - step, tmp_depth))
