"""Multi-view stereo depth map refinement: upscale, refine and fuse, optimize."""

from .buffers import BufferAllocationError, DeviceGrid, RefineBuffers
from .camera_cache import CameraCacheMissError, DeviceCamera, DeviceCameraCache
from .config import (
    RefineConfig,
    RefinePipelineConfig,
    RuntimeConfig,
    TileParamsConfig,
)
from .export import FileExporter, NullObserver, RefineObserver
from .kernels import (
    INVALID_DEPTH,
    MASKED_DEPTH,
    NO_FUSION_SIM,
    SigmoidInvertScorer,
    SimilarityScorer,
)
from .projection import PinholeProjectionModel, ProjectionModel
from .refine import Refine
from .roi import ROI, Tile, downscale_roi
from .runner import build_refine_context, refine_view, run_refinement
from .scene import SceneData, ViewData, load_scene, save_scene
from .tiling import build_tiles, compute_tile_rois

__version__ = "0.1.0"

__all__ = [
    "RefineConfig",
    "TileParamsConfig",
    "RuntimeConfig",
    "RefinePipelineConfig",
    "ROI",
    "Tile",
    "downscale_roi",
    "compute_tile_rois",
    "build_tiles",
    "ProjectionModel",
    "PinholeProjectionModel",
    "ViewData",
    "SceneData",
    "load_scene",
    "save_scene",
    "DeviceCamera",
    "DeviceCameraCache",
    "CameraCacheMissError",
    "DeviceGrid",
    "RefineBuffers",
    "BufferAllocationError",
    "INVALID_DEPTH",
    "MASKED_DEPTH",
    "NO_FUSION_SIM",
    "SimilarityScorer",
    "SigmoidInvertScorer",
    "RefineObserver",
    "NullObserver",
    "FileExporter",
    "Refine",
    "build_refine_context",
    "refine_view",
    "run_refinement",
]
