"""Device-resident buffers allocated once for the largest tile."""

import logging
import math

import torch
from tabulate import tabulate

from .config import RefineConfig, TileParamsConfig

logger = logging.getLogger(__name__)

MB = 1024.0 * 1024.0


class BufferAllocationError(RuntimeError):
    """Raised when a device buffer cannot be allocated."""


class DeviceGrid:
    """Dense 2D or 3D grid of fixed-size elements with pitched rows.

    Rows (the innermost spatial dimension) are padded to a multiple of
    ``pitch_alignment`` bytes, mirroring pitched device allocations. ``view``
    exposes the logical, unpadded region; ``region(...)`` exposes its leading
    sub-region for a smaller tile.

    Layout of ``view``: (height, width, *element_shape) for 2D grids and
    (depth, height, width, *element_shape) for 3D grids.

    Args:
        name: Buffer name (for reports and errors).
        size: Spatial size as (width, height) or (width, height, depth).
        element_shape: Per-element shape, e.g. () for scalars, (2,) for
            depth/sim pairs, (3,) for normals.
        dtype: Element scalar type.
        device: Device to allocate on.
        pitch_alignment: Row alignment in bytes.

    Raises:
        BufferAllocationError: If a dimension is not positive or the
            allocation fails.
    """

    def __init__(
        self,
        name: str,
        size: tuple[int, ...],
        element_shape: tuple[int, ...] = (),
        dtype: torch.dtype = torch.float32,
        device: str | torch.device = "cpu",
        pitch_alignment: int = 512,
    ) -> None:
        if len(size) not in (2, 3):
            raise BufferAllocationError(
                f"{name}: grid must be 2D or 3D, got size {size}"
            )
        if any(s <= 0 for s in size) or any(e <= 0 for e in element_shape):
            raise BufferAllocationError(
                f"{name}: cannot allocate zero-sized grid {size} x {element_shape}"
            )

        self.name = name
        self.size = tuple(size)
        self.element_shape = tuple(element_shape)
        self.dtype = dtype

        width = size[0]
        element_bytes = math.prod(element_shape) * torch.empty((), dtype=dtype).element_size()
        pitch_bytes = math.ceil(width * element_bytes / pitch_alignment) * pitch_alignment
        self.pitch = math.ceil(pitch_bytes / element_bytes)  # elements per row

        outer = tuple(reversed(size[1:]))  # (height,) or (depth, height)
        try:
            self._storage = torch.zeros(
                (*outer, self.pitch, *element_shape), dtype=dtype, device=device
            )
        except RuntimeError as e:
            # torch.OutOfMemoryError is a RuntimeError
            raise BufferAllocationError(
                f"{name}: failed to allocate {size} x {element_shape} on {device}: {e}"
            ) from e

        self.view = self._storage.narrow(len(outer), 0, width)

    @property
    def width(self) -> int:
        return self.size[0]

    @property
    def height(self) -> int:
        return self.size[1]

    @property
    def depth(self) -> int:
        return self.size[2] if len(self.size) == 3 else 1

    @property
    def device(self) -> torch.device:
        return self._storage.device

    @property
    def bytes_unpadded(self) -> int:
        """Logical footprint in bytes."""
        return self.view.numel() * self.view.element_size()

    @property
    def bytes_padded(self) -> int:
        """Physical footprint in bytes as reported by the allocator."""
        return self._storage.untyped_storage().nbytes()

    def region(self, width: int, height: int) -> torch.Tensor:
        """Leading (height, width) sub-region of the grid (all depths for 3D).

        Args:
            width: Region width, at most the grid width.
            height: Region height, at most the grid height.

        Returns:
            A view into the grid storage.

        Raises:
            ValueError: If the region exceeds the grid.
        """
        if width > self.width or height > self.height:
            raise ValueError(
                f"{self.name}: region {width}x{height} exceeds grid "
                f"{self.width}x{self.height}"
            )
        if len(self.size) == 3:
            return self.view[:, :height, :width]
        return self.view[:height, :width]

    def fill_(self, value: float) -> None:
        """Set every logical element to ``value``."""
        self.view.fill_(value)

    def copy_from(self, other: "DeviceGrid") -> None:
        """Copy the full logical content of a same-sized grid."""
        if other.size != self.size or other.element_shape != self.element_shape:
            raise ValueError(
                f"Cannot copy {other.name} {other.size} into {self.name} {self.size}"
            )
        self.view.copy_(other.view)

    def __repr__(self) -> str:
        return (
            f"DeviceGrid({self.name!r}, size={self.size}, "
            f"element_shape={self.element_shape}, pitch={self.pitch})"
        )


class RefineBuffers:
    """Every buffer the refinement of one tile needs, allocated once.

    Buffers are sized for the largest tile (``buffer_width`` x
    ``buffer_height`` at full resolution, divided by ``scale * step_xy``)
    and reused by every tile, which uses only a leading sub-region.

    Args:
        tile_params: Tile buffer dimensions.
        config: Refinement configuration.
        device: Device to allocate on.
        pitch_alignment: Row alignment in bytes.

    Raises:
        BufferAllocationError: If any allocation fails.
    """

    def __init__(
        self,
        tile_params: TileParamsConfig,
        config: RefineConfig,
        device: str | torch.device = "cpu",
        pitch_alignment: int = 512,
    ) -> None:
        downscale = config.downscale
        self.max_tile_width = math.ceil(tile_params.buffer_width / downscale)
        self.max_tile_height = math.ceil(tile_params.buffer_height / downscale)
        map_size = (self.max_tile_width, self.max_tile_height)

        def grid(name: str, size: tuple[int, ...], element_shape=()) -> DeviceGrid:
            return DeviceGrid(
                name,
                size,
                element_shape=element_shape,
                device=device,
                pitch_alignment=pitch_alignment,
            )

        self.upscaled_depth_pix_size = grid("upscaled_depth_pix_size", map_size, (2,))
        self.refined_depth_sim = grid("refined_depth_sim", map_size, (2,))
        self.optimized_depth_sim = grid("optimized_depth_sim", map_size, (2,))

        self.normal_map = (
            grid("normal_map", map_size, (3,)) if config.use_normal_map else None
        )

        self.volume_sim = grid("volume_sim", (*map_size, config.nb_depths))

        if config.use_color_optimization:
            self.opt_image_variance = grid("opt_image_variance", map_size)
            self.opt_tmp_depth = grid("opt_tmp_depth", map_size)
        else:
            self.opt_image_variance = None
            self.opt_tmp_depth = None

        logger.debug(
            "Allocated refine buffers for max tile %dx%d x %d depths: "
            "%.2f MB (%.2f MB unpadded)",
            self.max_tile_width,
            self.max_tile_height,
            config.nb_depths,
            self.memory_consumption_mb(padded=True),
            self.memory_consumption_mb(padded=False),
        )

    def allocated(self) -> list[DeviceGrid]:
        """All currently allocated buffers."""
        grids = [
            self.upscaled_depth_pix_size,
            self.refined_depth_sim,
            self.optimized_depth_sim,
            self.normal_map,
            self.volume_sim,
            self.opt_image_variance,
            self.opt_tmp_depth,
        ]
        return [g for g in grids if g is not None]

    def memory_consumption_mb(self, padded: bool = True) -> float:
        """Total footprint of the allocated buffers in megabytes.

        Args:
            padded: Report physical (padded) bytes if True, logical bytes otherwise.

        Returns:
            Megabytes (1 MB = 1024 * 1024 bytes).
        """
        total = sum(
            g.bytes_padded if padded else g.bytes_unpadded for g in self.allocated()
        )
        return total / MB


def format_memory_report(buffers: RefineBuffers) -> str:
    """Format the buffer memory accounting as an ASCII table.

    Args:
        buffers: Allocated refine buffers.

    Returns:
        Table with one row per buffer plus a total row.
    """
    rows = []
    for g in buffers.allocated():
        rows.append(
            [
                g.name,
                "x".join(str(s) for s in g.size),
                f"{g.bytes_padded / MB:.3f}",
                f"{g.bytes_unpadded / MB:.3f}",
            ]
        )
    rows.append(
        [
            "total",
            "",
            f"{buffers.memory_consumption_mb(padded=True):.3f}",
            f"{buffers.memory_consumption_mb(padded=False):.3f}",
        ]
    )
    headers = ["Buffer", "Size", "Padded (MB)", "Unpadded (MB)"]
    return tabulate(rows, headers=headers, tablefmt="grid")
