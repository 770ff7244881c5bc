"""Numeric kernels of the refinement stage."""

from .common import INVALID_DEPTH, MASKED_DEPTH, NO_FUSION_SIM
from .cost import compute_zncc, patch_similarity
from .depth_sim_map import (
    depth_sim_map_compute_pix_size,
    depth_sim_map_copy_depth_only,
    depth_sim_map_upscale_and_filter,
    normal_map_upscale,
)
from .optimize import compute_image_variance, optimize_depth_sim_map
from .scoring import SigmoidInvertScorer, SimilarityScorer
from .volume import (
    volume_initialize,
    volume_refine_best_depth,
    volume_refine_similarity,
)

__all__ = [
    "INVALID_DEPTH",
    "MASKED_DEPTH",
    "NO_FUSION_SIM",
    "compute_zncc",
    "patch_similarity",
    "depth_sim_map_upscale_and_filter",
    "depth_sim_map_compute_pix_size",
    "normal_map_upscale",
    "depth_sim_map_copy_depth_only",
    "compute_image_variance",
    "optimize_depth_sim_map",
    "SimilarityScorer",
    "SigmoidInvertScorer",
    "volume_initialize",
    "volume_refine_similarity",
    "volume_refine_best_depth",
]
