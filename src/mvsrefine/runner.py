"""Scene runner: refines the coarse depth map of every view of a scene."""

import logging
import math
import sys
from dataclasses import dataclass
from pathlib import Path

import torch
import torch.nn.functional as F
from tqdm import tqdm

from .camera_cache import DeviceCameraCache
from .config import RefinePipelineConfig
from .io import load_depth_sim_map, save_depth_sim_map
from .kernels import INVALID_DEPTH, NO_FUSION_SIM
from .refine import Refine
from .roi import Tile, downscale_roi
from .scene import SceneData, load_scene
from .tiling import build_tiles

logger = logging.getLogger(__name__)


@dataclass
class RefineRunContext:
    """Data constant across every view of a run.

    Created once by build_refine_context() and reused for every view.
    """

    config: RefinePipelineConfig
    scene: SceneData
    camera_cache: DeviceCameraCache
    engine: Refine
    device: str


def build_refine_context(config: RefinePipelineConfig) -> RefineRunContext:
    """Perform one-time initialization: scene, camera cache, engine.

    Args:
        config: Full pipeline configuration.

    Returns:
        RefineRunContext with the allocated engine.
    """
    device = config.runtime.device

    logger.info("Loading scene from %s", config.scene_path)
    scene = load_scene(config.scene_path)
    logger.info(
        "Found %d views, %d with refinement target cameras",
        len(scene.views),
        len(scene.target_cameras),
    )

    camera_cache = DeviceCameraCache.from_scene(
        scene, device=device, pyramid_levels=config.runtime.pyramid_levels
    )

    stream = None
    if device.startswith("cuda") and config.runtime.use_stream:
        stream = torch.cuda.Stream(device=device)

    output_dir = Path(config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    engine = Refine(
        camera_cache,
        config.tiles,
        config.refine,
        device=device,
        stream=stream,
        output_dir=output_dir / "intermediate",
        pitch_alignment=config.runtime.pitch_alignment,
        quiet=config.runtime.quiet,
    )
    logger.info(
        "Refine buffers: %.2f MB (%.2f MB unpadded)",
        engine.device_memory_consumption(),
        engine.device_memory_consumption_unpadded(),
    )

    config.to_yaml(output_dir / "config.yaml")
    logger.info("Config saved to %s", output_dir / "config.yaml")

    return RefineRunContext(
        config=config,
        scene=scene,
        camera_cache=camera_cache,
        engine=engine,
        device=device,
    )


def resample_to_grid(grid: torch.Tensor, height: int, width: int) -> torch.Tensor:
    """Nearest-neighbor resample of an (h, w, C) map to (height, width, C)."""
    if grid.shape[:2] == (height, width):
        return grid
    resized = F.interpolate(
        grid.permute(2, 0, 1).unsqueeze(0), size=(height, width), mode="nearest"
    )
    return resized.squeeze(0).permute(1, 2, 0)


def refine_view(
    rc: int,
    coarse_depth_sim_map: torch.Tensor,
    coarse_normal_map: torch.Tensor | None,
    ctx: RefineRunContext,
) -> torch.Tensor:
    """Refine the full depth map of one reference view, tile by tile.

    The coarse map may come at any resolution covering the full image; it
    is resampled to the refinement grid (full resolution divided by
    ``scale * step_xy``) before tiling.

    Args:
        rc: Reference view id.
        coarse_depth_sim_map: Coarse depth/sim map, shape (h, w, 2).
        coarse_normal_map: Optional coarse normals, shape (h, w, 3).
        ctx: Run context.

    Returns:
        Refined depth/sim map on CPU, shape (ceil(H / downscale), ceil(W / downscale), 2).
    """
    config = ctx.config
    refine_config = config.refine
    downscale = refine_config.downscale
    target_cameras = ctx.scene.target_cameras.get(rc, [])

    rc_camera = ctx.camera_cache.request_camera(rc, refine_config.scale)
    full_width = rc_camera.width * refine_config.scale
    full_height = rc_camera.height * refine_config.scale
    grid_width = math.ceil(full_width / downscale)
    grid_height = math.ceil(full_height / downscale)

    coarse = resample_to_grid(coarse_depth_sim_map.float(), grid_height, grid_width)
    normals = None
    if coarse_normal_map is not None:
        normals = resample_to_grid(coarse_normal_map.float(), grid_height, grid_width)

    result = torch.empty((grid_height, grid_width, 2), dtype=torch.float32)
    result[..., 0] = INVALID_DEPTH
    result[..., 1] = NO_FUSION_SIM

    tiles = build_tiles(
        rc, full_width, full_height, config.tiles, target_cameras, align=downscale
    )
    pad = config.tiles.padding // downscale
    for tile in tiles:
        roi = downscale_roi(tile.roi, downscale)
        tile_normals = None
        if normals is not None:
            tile_normals = normals[roi.y_begin : roi.y_end, roi.x_begin : roi.x_end]

        ctx.engine.refine(
            tile,
            coarse[roi.y_begin : roi.y_end, roi.x_begin : roi.x_end],
            tile_normals,
        )
        tile_result = ctx.engine.get_optimized_depth_sim_map()
        _stitch(result, tile_result, tile, roi.x_begin, roi.y_begin, pad)

    return result


def _stitch(
    result: torch.Tensor,
    tile_result: torch.Tensor,
    tile: Tile,
    x_begin: int,
    y_begin: int,
    pad: int,
) -> None:
    """Write a tile into the view map, dropping its leading padding.

    Tiles arrive in row-major order, so each tile overwrites the trailing
    overlap of the previous one.
    """
    skip_x = pad if x_begin > 0 else 0
    skip_y = pad if y_begin > 0 else 0
    h, w = tile_result.shape[:2]
    result[y_begin + skip_y : y_begin + h, x_begin + skip_x : x_begin + w] = tile_result[
        skip_y:, skip_x:
    ]


def run_refinement(config: RefinePipelineConfig) -> dict[int, Path]:
    """Refine the coarse depth maps of every view of a scene.

    Reads ``{depth_map_dir}/{view_id}.npz`` for each view with target
    cameras and writes ``{output_dir}/{view_id}_depthSimMap_refined.npz``.
    Views without a coarse map are skipped with a warning; a view that
    fails is logged and skipped.

    Args:
        config: Full pipeline configuration.

    Returns:
        Mapping of refined view id to output path.
    """
    ctx = build_refine_context(config)
    output_dir = Path(config.output_dir)
    depth_map_dir = Path(config.depth_map_dir)

    view_ids = [v for v in ctx.scene.view_ids if v in ctx.scene.target_cameras]
    outputs: dict[int, Path] = {}

    for rc in tqdm(
        view_ids,
        desc="Refining views",
        disable=config.runtime.quiet or not sys.stderr.isatty(),
        unit="view",
    ):
        coarse_path = depth_map_dir / f"{rc}.npz"
        if not coarse_path.exists():
            logger.warning("View %d: no coarse depth map at %s, skipping", rc, coarse_path)
            continue

        try:
            coarse, normals = load_depth_sim_map(coarse_path)
            if not config.refine.use_normal_map:
                normals = None
            refined = refine_view(rc, coarse, normals, ctx)
        except Exception:
            logger.exception("View %d: refinement failed, skipping", rc)
            continue

        out_path = output_dir / f"{rc}_depthSimMap_refined.npz"
        save_depth_sim_map(refined, out_path)
        outputs[rc] = out_path
        logger.info("View %d: refined depth map saved to %s", rc, out_path)

        # Keep handles still used as target cameras
        if all(rc not in tcs for tcs in ctx.scene.target_cameras.values()):
            ctx.camera_cache.evict(rc, config.refine.scale)

    if torch.cuda.is_available():
        torch.cuda.empty_cache()

    logger.info("Refinement complete: %d/%d views", len(outputs), len(view_ids))
    return outputs
