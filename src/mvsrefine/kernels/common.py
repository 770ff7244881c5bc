"""Sampling helpers shared by the refinement kernels."""

import torch
import torch.nn.functional as F

from ..roi import ROI

# Depth map sentinels
INVALID_DEPTH = -1.0
MASKED_DEPTH = -2.0

# Similarity written where no fusion evidence exists (worst similarity)
NO_FUSION_SIM = 1.0


def roi_pixel_grid(
    roi: ROI,
    step_xy: int,
    device: str | torch.device = "cpu",
    offset_x: float = 0.0,
) -> torch.Tensor:
    """Pixel coordinates, at camera scale, of every depth map pixel of an ROI.

    Depth map pixel (x, y) of a downscaled ROI samples the camera image at
    ((roi.x_begin + x) * step_xy, (roi.y_begin + y) * step_xy).

    Args:
        roi: Downscaled ROI (depth map pixels).
        step_xy: Sampling stride in camera pixels.
        device: Device for the output tensor.
        offset_x: Extra offset added to u (camera pixels).

    Returns:
        Pixel coordinates (u, v), shape (H*W, 2), float32, row-major.
    """
    v, u = torch.meshgrid(
        torch.arange(roi.y_begin, roi.y_end, device=device, dtype=torch.float32),
        torch.arange(roi.x_begin, roi.x_end, device=device, dtype=torch.float32),
        indexing="ij",
    )
    u = u.reshape(-1) * step_xy + offset_x
    v = v.reshape(-1) * step_xy
    return torch.stack([u, v], dim=-1)


def sample_image(
    image: torch.Tensor,
    pixels: torch.Tensor,
    height: int,
    width: int,
    valid: torch.Tensor | None = None,
) -> torch.Tensor:
    """Bilinearly sample an image at pixel coordinates.

    Args:
        image: Image, shape (Hi, Wi), float32.
        pixels: Pixel coordinates (u, v), shape (height*width, 2).
        height: Output height.
        width: Output width.
        valid: Optional validity mask for ``pixels``, shape (height*width,).

    Returns:
        Sampled values, shape (height, width), float32. Pixels outside the
        image or flagged invalid are NaN.
    """
    Hi, Wi = image.shape
    u = pixels[:, 0]
    v = pixels[:, 1]

    inside = (u >= 0) & (u <= Wi - 1) & (v >= 0) & (v <= Hi - 1)
    if valid is not None:
        inside = inside & valid

    # grid_sample expects coordinates normalized to [-1, 1]
    grid_x = 2.0 * u / max(Wi - 1, 1) - 1.0
    grid_y = 2.0 * v / max(Hi - 1, 1) - 1.0
    grid = torch.stack([grid_x, grid_y], dim=-1).reshape(1, height, width, 2)

    sampled = F.grid_sample(
        image[None, None], grid, mode="bilinear", padding_mode="border", align_corners=True
    ).reshape(height, width)

    nan = torch.tensor(float("nan"), device=sampled.device)
    return torch.where(inside.reshape(height, width), sampled, nan)


def sample_mask(mask: torch.Tensor, pixels: torch.Tensor, height: int, width: int) -> torch.Tensor:
    """Nearest-neighbor sample of a boolean mask; outside the image is False.

    Args:
        mask: Boolean mask, shape (Hi, Wi).
        pixels: Pixel coordinates (u, v), shape (height*width, 2).
        height: Output height.
        width: Output width.

    Returns:
        Boolean tensor, shape (height, width).
    """
    Hi, Wi = mask.shape
    u = pixels[:, 0].round().long()
    v = pixels[:, 1].round().long()
    inside = (u >= 0) & (u < Wi) & (v >= 0) & (v < Hi)
    values = mask[v.clamp(0, Hi - 1), u.clamp(0, Wi - 1)] & inside
    return values.reshape(height, width)


def box_filter(x: torch.Tensor, window_size: int) -> torch.Tensor:
    """Local sum over a square window (zero padded).

    Args:
        x: Input map, shape (H, W).
        window_size: Odd window size.

    Returns:
        Windowed sums, shape (H, W).
    """
    pad = window_size // 2
    kernel = torch.ones(1, 1, window_size, window_size, device=x.device, dtype=x.dtype)
    return F.conv2d(x[None, None], kernel, padding=pad)[0, 0]


def sigmoid(
    zero_val: float,
    end_val: float,
    width: float,
    center: float,
    x: torch.Tensor,
) -> torch.Tensor:
    """Logistic step equal to ``end_val`` for x << center and ``zero_val`` for x >> center.

    Returns ``zero_val + (end_val - zero_val) / (1 + exp(10 * (x - center) / width))``.
    """
    return zero_val + (end_val - zero_val) * torch.sigmoid(-10.0 * (x - center) / width)
