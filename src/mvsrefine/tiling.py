"""Split a view into tiles that fit the refinement buffers."""

import math

from .config import TileParamsConfig
from .roi import ROI, Tile


def compute_tile_rois(
    width: int,
    height: int,
    tile_params: TileParamsConfig,
    align: int = 1,
) -> list[ROI]:
    """Compute the tile ROIs covering a full-resolution image.

    Consecutive tiles overlap by at least ``2 * padding`` pixels. Every ROI
    fits in ``buffer_width`` x ``buffer_height``. Tiles are ordered row-major.

    Args:
        width: Image width (pixels).
        height: Image height (pixels).
        tile_params: Tile buffer dimensions and padding.
        align: Tile begins are multiples of this value. Pass the combined
            downscale factor so that downscaled tiles fit the buffers.

    Returns:
        List of ROIs covering [0, width) x [0, height).

    Raises:
        ValueError: If the image dimensions are not positive.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")

    x_begins = _tile_begins(width, tile_params.buffer_width, tile_params.padding, align)
    y_begins = _tile_begins(height, tile_params.buffer_height, tile_params.padding, align)

    rois = []
    for y_begin in y_begins:
        for x_begin in x_begins:
            rois.append(
                ROI(
                    x_begin=x_begin,
                    x_end=min(x_begin + tile_params.buffer_width, width),
                    y_begin=y_begin,
                    y_end=min(y_begin + tile_params.buffer_height, height),
                )
            )
    return rois


def _tile_begins(size: int, buffer_size: int, padding: int, align: int) -> list[int]:
    if size <= buffer_size:
        return [0]
    stride = max((buffer_size - 2 * padding) // align * align, align)
    nb_tiles = 1 + math.ceil((size - buffer_size) / stride)
    return [i * stride for i in range(nb_tiles)]


def build_tiles(
    rc: int,
    width: int,
    height: int,
    tile_params: TileParamsConfig,
    target_cameras: list[int],
    align: int = 1,
) -> list[Tile]:
    """Build the tiles of one reference view.

    Args:
        rc: Reference view id.
        width: Full-resolution image width.
        height: Full-resolution image height.
        tile_params: Tile buffer dimensions and padding.
        target_cameras: Ordered target view ids shared by every tile.
        align: Alignment of tile begins (see ``compute_tile_rois``).

    Returns:
        Tiles in row-major order with index/count filled in.
    """
    rois = compute_tile_rois(width, height, tile_params, align=align)
    return [
        Tile(
            rc=rc,
            roi=roi,
            refine_target_cameras=list(target_cameras),
            index=i,
            nb_tiles=len(rois),
        )
        for i, roi in enumerate(rois)
    ]
