"""Regions of interest and tiles."""

import math
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ROI:
    """Half-open pixel rectangle [x_begin, x_end) x [y_begin, y_end)."""

    x_begin: int
    x_end: int
    y_begin: int
    y_end: int

    @property
    def width(self) -> int:
        return self.x_end - self.x_begin

    @property
    def height(self) -> int:
        return self.y_end - self.y_begin

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def __str__(self) -> str:
        return f"[{self.x_begin}-{self.x_end}]x[{self.y_begin}-{self.y_end}]"


def downscale_roi(roi: ROI, factor: int) -> ROI:
    """Downscale a full-resolution ROI to depth map pixels.

    Begins round down and ends round up, so the downscaled ROI covers every
    full-resolution pixel of the input.

    Args:
        roi: Full-resolution ROI.
        factor: Combined downscale factor (scale * step_xy).

    Returns:
        Downscaled ROI.
    """
    return ROI(
        x_begin=math.floor(roi.x_begin / factor),
        x_end=math.ceil(roi.x_end / factor),
        y_begin=math.floor(roi.y_begin / factor),
        y_end=math.ceil(roi.y_end / factor),
    )


@dataclass
class Tile:
    """A rectangular region of one reference view processed as a unit.

    Attributes:
        rc: Reference view id.
        roi: Full-resolution ROI of the tile.
        refine_target_cameras: Ordered target view ids used for refinement.
        index: Tile index within the view.
        nb_tiles: Number of tiles the view is split into.
    """

    rc: int
    roi: ROI
    refine_target_cameras: list[int] = field(default_factory=list)
    index: int = 0
    nb_tiles: int = 1

    @property
    def origin(self) -> tuple[int, int] | None:
        """Tile origin (x, y) when the view is tiled, else None."""
        if self.nb_tiles > 1:
            return self.roi.x_begin, self.roi.y_begin
        return None

    def __str__(self) -> str:
        return f"[view {self.rc}, tile {self.index + 1}/{self.nb_tiles}] "
