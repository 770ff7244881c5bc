"""Named refinement stages: UPSCALE -> FUSE -> OPTIMIZE.

Each stage reads and writes named regions of the shared RefineBuffers. A
disabled stage runs its ``bypass`` transition instead of ``run``, so the
pass-through behavior of every stage is explicit.
"""

import logging
import sys
from dataclasses import dataclass

import torch
from tqdm import tqdm

from .buffers import RefineBuffers
from .camera_cache import DeviceCameraCache
from .config import RefineConfig
from .export import RefineObserver
from .kernels import (
    NO_FUSION_SIM,
    SimilarityScorer,
    compute_image_variance,
    depth_sim_map_compute_pix_size,
    depth_sim_map_copy_depth_only,
    depth_sim_map_upscale_and_filter,
    normal_map_upscale,
    optimize_depth_sim_map,
    volume_initialize,
    volume_refine_best_depth,
    volume_refine_similarity,
)
from .roi import ROI, Tile

logger = logging.getLogger(__name__)

# Neutral similarity volume value before accumulation
VOLUME_NEUTRAL_VALUE = 0.0


@dataclass
class RefineContext:
    """Everything a stage needs to process one tile.

    Attributes:
        tile: Tile being refined.
        roi: Downscaled ROI (depth map pixels) of the tile.
        config: Refinement configuration.
        buffers: Shared engine buffers.
        camera_cache: Device camera cache.
        scorer: Raw similarity to volume score mapping.
        observer: Diagnostics observer.
        coarse_depth_sim_map: Upstream depth/sim map covering the tile, (h, w, 2).
        coarse_normal_map: Upstream normal map, (h, w, 3), or None.
        quiet: Disable progress bars.
    """

    tile: Tile
    roi: ROI
    config: RefineConfig
    buffers: RefineBuffers
    camera_cache: DeviceCameraCache
    scorer: SimilarityScorer
    observer: RefineObserver
    coarse_depth_sim_map: torch.Tensor
    coarse_normal_map: torch.Tensor | None = None
    quiet: bool = True
    normal_map_ready: bool = False

    def region(self, buffer_name: str) -> torch.Tensor:
        """Leading region of a named buffer covering this tile's ROI."""
        grid = getattr(self.buffers, buffer_name)
        if grid is None:
            raise RuntimeError(f"Buffer {buffer_name!r} is not allocated")
        return grid.region(self.roi.width, self.roi.height)

    def emit_depth_sim_map(self, name: str, buffer_name: str) -> None:
        """Hand a depth/sim map to the observer; failures are logged only."""
        try:
            self.observer.on_depth_sim_map(self.tile, name, self.region(buffer_name))
        except Exception:
            logger.warning(
                "%sFailed to export depth/sim map (%s)", self.tile, name, exc_info=True
            )

    def emit_volume(self, name: str) -> None:
        """Hand the similarity volume to the observer; failures are logged only."""
        try:
            self.observer.on_similarity_volume(
                self.tile,
                name,
                self.region("volume_sim"),
                self.region("upscaled_depth_pix_size"),
            )
        except Exception:
            logger.warning(
                "%sFailed to export similarity volume (%s)", self.tile, name, exc_info=True
            )


class RefineStage:
    """Base class of a named stage with typed buffer inputs and outputs."""

    name: str = ""
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    checkpoint: str | None = None

    def enabled(self, config: RefineConfig) -> bool:
        return True

    def run(self, ctx: RefineContext) -> None:
        raise NotImplementedError

    def bypass(self, ctx: RefineContext) -> None:
        raise NotImplementedError

    def __call__(self, ctx: RefineContext) -> None:
        if self.enabled(ctx.config):
            self.run(ctx)
        else:
            self.bypass(ctx)
        if self.checkpoint is not None:
            ctx.emit_depth_sim_map(self.checkpoint, self.outputs[0])


class UpscaleStage(RefineStage):
    """Upscale the coarse map, mask invalid pixels, compute pixel sizes."""

    name = "upscale"
    outputs = ("upscaled_depth_pix_size", "normal_map")

    def run(self, ctx: RefineContext) -> None:
        config = ctx.config
        with ctx.camera_cache.hold(ctx.tile.rc, config.scale) as rc_camera:
            upscaled = ctx.region("upscaled_depth_pix_size")
            depth_sim_map_upscale_and_filter(
                upscaled, ctx.coarse_depth_sim_map, rc_camera, ctx.roi, config.step_xy
            )

            ctx.emit_depth_sim_map("sgmUpscaled", "upscaled_depth_pix_size")

            depth_sim_map_compute_pix_size(upscaled, rc_camera, ctx.roi, config.step_xy)

        ctx.normal_map_ready = False
        if config.use_normal_map:
            if ctx.coarse_normal_map is not None and ctx.coarse_normal_map.numel() > 0:
                normal_map_upscale(ctx.region("normal_map"), ctx.coarse_normal_map, ctx.roi)
                ctx.normal_map_ready = True
            else:
                logger.debug("%sNo input normal map, refining without normals.", ctx.tile)


class FuseStage(RefineStage):
    """Accumulate every target camera into the volume and extract the best depth."""

    name = "refine_fuse"
    inputs = ("upscaled_depth_pix_size", "normal_map")
    outputs = ("refined_depth_sim", "volume_sim")
    checkpoint = "refinedFused"

    def enabled(self, config: RefineConfig) -> bool:
        return config.use_refine_fuse

    def run(self, ctx: RefineContext) -> None:
        config = ctx.config
        tile = ctx.tile
        logger.info("%sRefine and fuse depth/sim map volume.", tile)

        volume = ctx.region("volume_sim")
        depth_pix_size = ctx.region("upscaled_depth_pix_size")
        normal_map = ctx.region("normal_map") if ctx.normal_map_ready else None
        depth_range = (0, volume.shape[0])

        volume_initialize(volume, VOLUME_NEUTRAL_VALUE)

        with ctx.camera_cache.hold(tile.rc, config.scale) as rc_camera:
            target_cameras = tile.refine_target_cameras
            for tci, tc in enumerate(
                tqdm(
                    target_cameras,
                    desc=f"Refine view {tile.rc}",
                    disable=ctx.quiet or not sys.stderr.isatty(),
                    unit="camera",
                    leave=False,
                )
            ):
                with ctx.camera_cache.hold(tc, config.scale) as tc_camera:
                    logger.debug(
                        "%sRefine similarity volume: rc %d (device cam %d), "
                        "tc %d (%d/%d, device cam %d), x range %d-%d, y range %d-%d",
                        tile,
                        tile.rc,
                        rc_camera.device_cam_id,
                        tc,
                        tci + 1,
                        len(target_cameras),
                        tc_camera.device_cam_id,
                        ctx.roi.x_begin,
                        ctx.roi.x_end,
                        ctx.roi.y_begin,
                        ctx.roi.y_end,
                    )
                    volume_refine_similarity(
                        volume,
                        depth_pix_size,
                        normal_map,
                        rc_camera,
                        tc_camera,
                        ctx.scorer,
                        depth_range,
                        ctx.roi,
                        config.step_xy,
                        config.half_nb_depths,
                        config.window_size,
                    )

        ctx.emit_volume("afterRefine")

        volume_refine_best_depth(
            ctx.region("refined_depth_sim"),
            depth_pix_size,
            volume,
            config.half_nb_depths,
            len(tile.refine_target_cameras),
        )
        logger.info("%sRefine and fuse depth/sim map volume done.", tile)

    def bypass(self, ctx: RefineContext) -> None:
        logger.info("%sRefine and fuse depth/sim map volume disabled.", ctx.tile)
        depth_sim_map_copy_depth_only(
            ctx.region("refined_depth_sim"),
            ctx.region("upscaled_depth_pix_size"),
            NO_FUSION_SIM,
        )


class OptimizeStage(RefineStage):
    """Color-guided gradient-descent smoothing of the refined map."""

    name = "optimize"
    inputs = ("upscaled_depth_pix_size", "refined_depth_sim")
    outputs = ("optimized_depth_sim", "opt_image_variance", "opt_tmp_depth")
    checkpoint = "optimized"

    def enabled(self, config: RefineConfig) -> bool:
        return config.use_color_optimization and config.optimization_nb_iterations > 0

    def run(self, ctx: RefineContext) -> None:
        config = ctx.config
        logger.info("%sColor optimize depth/sim map.", ctx.tile)

        image_variance = ctx.region("opt_image_variance")
        with ctx.camera_cache.hold(ctx.tile.rc, config.scale) as rc_camera:
            compute_image_variance(image_variance, rc_camera, ctx.roi, config.step_xy)

        optimize_depth_sim_map(
            ctx.region("optimized_depth_sim"),
            image_variance,
            ctx.region("opt_tmp_depth"),
            ctx.region("upscaled_depth_pix_size"),
            ctx.region("refined_depth_sim"),
            config.optimization_nb_iterations,
            step_size=config.optimization_step_size,
            variance_center=config.variance_center,
            variance_width=config.variance_width,
        )
        logger.info("%sColor optimize depth/sim map done.", ctx.tile)

    def bypass(self, ctx: RefineContext) -> None:
        logger.info("%sColor optimize depth/sim map disabled.", ctx.tile)
        ctx.region("optimized_depth_sim").copy_(ctx.region("refined_depth_sim"))


def default_stages() -> tuple[RefineStage, ...]:
    """The refinement stages in execution order."""
    return (UpscaleStage(), FuseStage(), OptimizeStage())
