"""Similarity volume accumulation and best-depth extraction."""

import torch
from torch.profiler import record_function

from ..camera_cache import DeviceCamera
from ..roi import ROI
from .common import NO_FUSION_SIM, roi_pixel_grid, sample_image
from .cost import patch_similarity
from .scoring import SimilarityScorer


def volume_initialize(volume: torch.Tensor, value: float = 0.0) -> None:
    """Reset every voxel of a volume region to ``value``."""
    volume.fill_(value)


def volume_refine_similarity(
    volume: torch.Tensor,
    depth_pix_size_map: torch.Tensor,
    normal_map: torch.Tensor | None,
    rc_camera: DeviceCamera,
    tc_camera: DeviceCamera,
    scorer: SimilarityScorer,
    depth_range: tuple[int, int],
    roi: ROI,
    step_xy: int,
    half_nb_depths: int,
    window_size: int = 7,
) -> None:
    """Add one target camera's matching evidence to the similarity volume.

    For every voxel (d, y, x) with d in ``depth_range``, the candidate point
    lies on the reference ray at ``base_depth + (d - half_nb_depths) *
    pix_size``. It is projected into the target view, the target image is
    sampled there and compared with the reference patch (windowed ZNCC).
    The scorer turns the raw similarity into a score (larger = better) that
    is added to the voxel.

    Samples are invalid (scored from ``+inf`` raw similarity) where the base
    depth is invalid, the candidate leaves the target view or lies behind a
    camera, or, with a normal map, the surface faces away from the target.

    Args:
        volume: Volume region, shape (D, roi.height, roi.width). Modified in place.
        depth_pix_size_map: Base depth and pixel size, shape (roi.height, roi.width, 2).
        normal_map: Optional normals, shape (roi.height, roi.width, 3).
        rc_camera: Reference camera handle.
        tc_camera: Target camera handle.
        scorer: Raw similarity to score mapping.
        depth_range: Half-open depth index range [begin, end).
        roi: Downscaled ROI.
        step_xy: Sampling stride in camera pixels.
        half_nb_depths: Index of the base depth in the volume.
        window_size: Patch window size (odd).
    """
    with record_function("volume_refine_similarity"):
        H, W = roi.height, roi.width
        device = volume.device

        pixels = roi_pixel_grid(roi, step_xy, device=device)
        origins, directions = rc_camera.model.cast_ray(pixels)
        ref_patch = sample_image(rc_camera.image, pixels, H, W)

        base_depth = depth_pix_size_map[..., 0].reshape(-1)
        pix_size = depth_pix_size_map[..., 1].reshape(-1)
        valid_base = base_depth > 0

        if normal_map is not None:
            base_points = origins + base_depth.unsqueeze(-1) * directions
            to_target = tc_camera.model.center().unsqueeze(0) - base_points
            normals = normal_map.reshape(-1, 3)
            facing = (normals * to_target).sum(dim=-1) > 0
            # Zero normals mean "unknown orientation"
            facing = facing | (normals.abs().sum(dim=-1) == 0)
            valid_base = valid_base & facing

        inf = torch.tensor(float("inf"), device=device)

        for d in range(*depth_range):
            depth = base_depth + (d - half_nb_depths) * pix_size
            points = origins + depth.unsqueeze(-1) * directions

            tc_pixels, valid = tc_camera.model.project(points)
            valid = valid & valid_base & (depth > 0)

            warped = sample_image(tc_camera.image, tc_pixels, H, W, valid=valid)
            sim = patch_similarity(ref_patch, warped, window_size)
            sim = torch.where(valid.reshape(H, W), sim, inf)

            volume[d] += scorer(sim)


def volume_refine_best_depth(
    out_depth_sim_map: torch.Tensor,
    depth_pix_size_map: torch.Tensor,
    volume: torch.Tensor,
    half_nb_depths: int,
    nb_target_cameras: int,
) -> None:
    """Extract the best sub-voxel depth and its similarity from the volume.

    Takes the first maximal depth index per pixel, then fits a parabola
    through it and its two neighbors along depth. The offset is clamped to
    [-0.5, 0.5] and is 0 on the volume borders.

    The output similarity is ``1 - best_score / nb_target_cameras`` in
    [0, 1] (lower = better). Pixels with an invalid base depth or a flat
    score profile (no evidence) keep the base depth with NO_FUSION_SIM.
    A one-sample volume always keeps the base depth and reports its score.

    Args:
        out_depth_sim_map: Output region, shape (H, W, 2).
        depth_pix_size_map: Base depth and pixel size, shape (H, W, 2).
        volume: Accumulated volume region, shape (D, H, W).
        half_nb_depths: Index of the base depth in the volume.
        nb_target_cameras: Number of target cameras fused into the volume.
    """
    with record_function("volume_refine_best_depth"):
        D = volume.shape[0]
        base_depth = depth_pix_size_map[..., 0]
        pix_size = depth_pix_size_map[..., 1]

        # argmax returns the first maximal index
        best_idx = torch.argmax(volume, dim=0)  # (H, W)
        best = torch.gather(volume, 0, best_idx.unsqueeze(0)).squeeze(0)
        # A single depth sample has no profile to be flat against
        if D > 1:
            flat = best <= volume.min(dim=0).values
        else:
            flat = torch.zeros_like(best, dtype=torch.bool)

        idx_minus = (best_idx - 1).clamp(min=0)
        idx_plus = (best_idx + 1).clamp(max=D - 1)
        s_minus = torch.gather(volume, 0, idx_minus.unsqueeze(0)).squeeze(0)
        s_plus = torch.gather(volume, 0, idx_plus.unsqueeze(0)).squeeze(0)

        # Parabola vertex; curvature is negative around a strict maximum
        denom = s_minus - 2.0 * best + s_plus
        curved = denom < 0
        offset = 0.5 * (s_minus - s_plus) / torch.where(curved, denom, -torch.ones_like(denom))
        offset = torch.where(curved, offset, torch.zeros_like(offset)).clamp(-0.5, 0.5)

        boundary = (best_idx == 0) | (best_idx == D - 1)
        offset = torch.where(boundary, torch.zeros_like(offset), offset)

        depth = base_depth + (best_idx.to(base_depth.dtype) + offset - half_nb_depths) * pix_size
        sim = (1.0 - best / max(nb_target_cameras, 1)).clamp(0.0, 1.0)

        keep_base = flat | (base_depth <= 0)
        depth = torch.where(keep_base, base_depth, depth)
        sim = torch.where(keep_base, torch.full_like(sim, NO_FUSION_SIM), sim)

        out_depth_sim_map[..., 0].copy_(depth)
        out_depth_sim_map[..., 1].copy_(sim)
