"""Refinement engine: owns the device buffers and runs the stages per tile."""

import logging
from contextlib import nullcontext
from pathlib import Path

import torch

from .buffers import RefineBuffers
from .camera_cache import DeviceCameraCache
from .config import RefineConfig, TileParamsConfig
from .export import FileExporter, NullObserver, RefineObserver
from .kernels import SigmoidInvertScorer, SimilarityScorer
from .profiling import timed_stage
from .roi import ROI, Tile, downscale_roi
from .stages import RefineContext, RefineStage, default_stages

logger = logging.getLogger(__name__)


class Refine:
    """Depth/sim map refinement of tiles of reference views.

    The engine allocates every device buffer once, sized for the largest
    tile, and reuses them for each call to ``refine``. Results of the last
    call stay available through the accessors until the next call.

    Args:
        camera_cache: Shared device camera cache.
        tile_params: Tile buffer dimensions.
        config: Refinement configuration.
        device: Compute device.
        stream: CUDA stream all device work is queued on, or None for the
            current stream.
        observer: Diagnostics observer. Defaults to a FileExporter writing
            to ``output_dir`` when any export flag is set, else a no-op.
        scorer: Raw similarity to volume score mapping. Defaults to the
            inverted sigmoid built from the configuration.
        output_dir: Diagnostics directory for the default observer.
        pitch_alignment: Row alignment of device buffers (bytes).
        quiet: Disable progress bars.

    Raises:
        BufferAllocationError: If the buffers cannot be allocated.
    """

    def __init__(
        self,
        camera_cache: DeviceCameraCache,
        tile_params: TileParamsConfig,
        config: RefineConfig,
        device: str | torch.device = "cpu",
        stream: "torch.cuda.Stream | None" = None,
        observer: RefineObserver | None = None,
        scorer: SimilarityScorer | None = None,
        output_dir: str | Path | None = None,
        pitch_alignment: int = 512,
        quiet: bool = True,
    ) -> None:
        self.camera_cache = camera_cache
        self.tile_params = tile_params
        self.config = config
        self.device = torch.device(device)
        self.stream = stream
        self.quiet = quiet

        if observer is None:
            if config.exports_enabled:
                observer = FileExporter(output_dir if output_dir is not None else ".", config)
            else:
                observer = NullObserver()
        self.observer = observer

        if scorer is None:
            scorer = SigmoidInvertScorer(
                center=config.sim_sigmoid_center, width=config.sim_sigmoid_width
            )
        self.scorer = scorer

        self.stages: tuple[RefineStage, ...] = default_stages()

        self.buffers = RefineBuffers(
            tile_params, config, device=self.device, pitch_alignment=pitch_alignment
        )
        self._last_roi: ROI | None = None

    def refine(
        self,
        tile: Tile,
        coarse_depth_sim_map: torch.Tensor,
        coarse_normal_map: torch.Tensor | None = None,
    ) -> None:
        """Refine one tile: upscale, refine and fuse, then optimize.

        Work is queued on the engine's stream; use
        ``get_optimized_depth_sim_map`` to obtain a synchronized host copy.

        Args:
            tile: Tile to refine.
            coarse_depth_sim_map: Coarse depth/sim map covering the tile,
                shape (h, w, 2).
            coarse_normal_map: Optional coarse normal map, shape (h, w, 3).

        Raises:
            ValueError: If the tile is empty or does not fit the buffers.
            CameraCacheMissError: If a camera of the tile is not in the cache.
        """
        roi = downscale_roi(tile.roi, self.config.downscale)
        if roi.is_empty():
            raise ValueError(f"{tile}Empty tile ROI {tile.roi}")
        if roi.width > self.buffers.max_tile_width or roi.height > self.buffers.max_tile_height:
            raise ValueError(
                f"{tile}Downscaled ROI {roi} exceeds the refine buffers "
                f"({self.buffers.max_tile_width}x{self.buffers.max_tile_height})"
            )
        if coarse_depth_sim_map.ndim != 3 or coarse_depth_sim_map.shape[-1] != 2:
            raise ValueError(
                f"{tile}Expected coarse depth/sim map of shape (h, w, 2), "
                f"got {tuple(coarse_depth_sim_map.shape)}"
            )

        logger.info("%sRefine depth/sim map of view %d.", tile, tile.rc)

        ctx = RefineContext(
            tile=tile,
            roi=roi,
            config=self.config,
            buffers=self.buffers,
            camera_cache=self.camera_cache,
            scorer=self.scorer,
            observer=self.observer,
            coarse_depth_sim_map=coarse_depth_sim_map,
            coarse_normal_map=coarse_normal_map,
            quiet=self.quiet,
        )

        # Invalidate accessors if a stage fails halfway
        self._last_roi = None
        with self._stream_context():
            for stage in self.stages:
                with timed_stage(stage.name, logger):
                    stage(ctx)
        self._last_roi = roi

        logger.info("%sRefine depth/sim map done.", tile)

    def _stream_context(self):
        if self.stream is not None:
            return torch.cuda.stream(self.stream)
        return nullcontext()

    def _region(self, buffer_name: str) -> torch.Tensor:
        if self._last_roi is None:
            raise RuntimeError("No tile has been refined yet")
        grid = getattr(self.buffers, buffer_name)
        return grid.region(self._last_roi.width, self._last_roi.height)

    @property
    def last_roi(self) -> ROI | None:
        """Downscaled ROI of the last refined tile."""
        return self._last_roi

    @property
    def upscaled_depth_sim_map(self) -> torch.Tensor:
        """Upscaled depth and pixel size of the last tile (device view)."""
        return self._region("upscaled_depth_pix_size")

    @property
    def refined_depth_sim_map(self) -> torch.Tensor:
        """Refined (fused) depth and similarity of the last tile (device view)."""
        return self._region("refined_depth_sim")

    @property
    def optimized_depth_sim_map(self) -> torch.Tensor:
        """Optimized depth and similarity of the last tile (device view)."""
        return self._region("optimized_depth_sim")

    @property
    def similarity_volume(self) -> torch.Tensor:
        """Similarity volume of the last tile, shape (D, H, W) (device view)."""
        return self._region("volume_sim")

    def get_optimized_depth_sim_map(self) -> torch.Tensor:
        """Host copy of the final depth/sim map of the last tile.

        Waits for the queued device work to complete.

        Returns:
            CPU tensor of shape (H, W, 2), independent of the engine buffers.
        """
        if self.stream is not None:
            self.stream.synchronize()
        return self.optimized_depth_sim_map.detach().to("cpu", copy=True)

    def device_memory_consumption(self) -> float:
        """Device memory held by the engine buffers in MB (padded)."""
        return self.buffers.memory_consumption_mb(padded=True)

    def device_memory_consumption_unpadded(self) -> float:
        """Logical size of the engine buffers in MB."""
        return self.buffers.memory_consumption_mb(padded=False)
