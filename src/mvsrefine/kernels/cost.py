"""Patch similarity between a reference image and a warped target image."""

import torch

from .common import box_filter


def compute_zncc(
    ref: torch.Tensor,
    src: torch.Tensor,
    window_size: int = 7,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Compute zero-mean normalized cross-correlation in local windows.

    NCC is normalized by local mean and standard deviation, which makes it
    robust to linear intensity changes between views (exposure, vignetting).

    Args:
        ref: Reference image, shape (H, W), float32. NaN marks invalid pixels.
        src: Warped target image, shape (H, W), float32. NaN marks invalid
            (out-of-view) pixels.
        window_size: Local window size (must be odd).

    Returns:
        ncc: Correlation in [-1, 1], shape (H, W).
        valid: True where at least half of the window is valid, shape (H, W).
    """
    valid = ~(torch.isnan(src) | torch.isnan(ref))
    mask = valid.to(ref.dtype)
    ref_clean = torch.where(valid, ref, torch.zeros_like(ref))
    src_clean = torch.where(valid, src, torch.zeros_like(src))

    count = box_filter(mask, window_size)
    count_safe = count.clamp(min=1.0)

    mean_ref = box_filter(ref_clean, window_size) / count_safe
    mean_src = box_filter(src_clean, window_size) / count_safe

    # E[xy] - E[x]E[y] over valid pixels only
    var_ref = box_filter(ref_clean**2, window_size) / count_safe - mean_ref**2
    var_src = box_filter(src_clean**2, window_size) / count_safe - mean_src**2
    covar = box_filter(ref_clean * src_clean, window_size) / count_safe - mean_ref * mean_src

    eps = 1e-8
    var_prod = var_ref.clamp(min=0.0) * var_src.clamp(min=0.0)
    ncc = covar / (torch.sqrt(var_prod) + eps)
    # Textureless windows carry no correlation information
    ncc = torch.where(var_prod > 1e-12, ncc, torch.zeros_like(ncc))
    ncc = ncc.clamp(-1.0, 1.0)

    min_valid = (window_size * window_size) // 2  # require at least half the window
    window_valid = count >= min_valid

    return ncc, window_valid


def patch_similarity(
    ref: torch.Tensor,
    src: torch.Tensor,
    window_size: int = 7,
) -> torch.Tensor:
    """Raw patch similarity: negated ZNCC, lower = better.

    Args:
        ref: Reference image, shape (H, W), float32 (NaN = invalid).
        src: Warped target image, shape (H, W), float32 (NaN = invalid).
        window_size: Local window size (must be odd).

    Returns:
        Similarity in [-1, 1], shape (H, W). ``+inf`` where the window has
        too few valid pixels.
    """
    ncc, valid = compute_zncc(ref, src, window_size)
    inf = torch.tensor(float("inf"), device=ncc.device, dtype=ncc.dtype)
    return torch.where(valid, -ncc, inf)
