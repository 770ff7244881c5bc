"""Tests for ROIs, tiles and tile splitting."""

import pytest
import torch

from mvsrefine.config import TileParamsConfig
from mvsrefine.roi import ROI, Tile, downscale_roi
from mvsrefine.tiling import build_tiles, compute_tile_rois


class TestROI:
    """Tests for ROI and downscale_roi."""

    def test_size(self):
        """Width and height of a half-open rectangle."""
        roi = ROI(2, 10, 3, 7)
        assert roi.width == 8
        assert roi.height == 4
        assert not roi.is_empty()

    def test_empty(self):
        """Degenerate rectangles are empty."""
        assert ROI(5, 5, 0, 10).is_empty()
        assert ROI(0, 10, 4, 2).is_empty()

    def test_downscale_exact(self):
        """Multiples downscale exactly."""
        assert downscale_roi(ROI(0, 64, 32, 96), 4) == ROI(0, 16, 8, 24)

    def test_downscale_rounds_outward(self):
        """Begins round down, ends round up."""
        assert downscale_roi(ROI(3, 10, 5, 11), 4) == ROI(0, 3, 1, 3)


class TestTile:
    """Tests for Tile."""

    def test_origin_single_tile(self):
        """Untiled views report no origin."""
        tile = Tile(rc=3, roi=ROI(0, 64, 0, 64), nb_tiles=1)
        assert tile.origin is None

    def test_origin_tiled(self):
        """Tiled views report the ROI begin as origin."""
        tile = Tile(rc=3, roi=ROI(32, 64, 16, 64), index=1, nb_tiles=4)
        assert tile.origin == (32, 16)

    def test_str_prefix(self):
        """The string form prefixes log messages."""
        tile = Tile(rc=3, roi=ROI(0, 8, 0, 8), index=1, nb_tiles=4)
        assert str(tile) == "[view 3, tile 2/4] "


class TestComputeTileRois:
    """Tests for compute_tile_rois."""

    def test_single_tile(self):
        """Images smaller than the buffer give one tile."""
        rois = compute_tile_rois(100, 80, TileParamsConfig(buffer_width=128, buffer_height=128))
        assert rois == [ROI(0, 100, 0, 80)]

    @pytest.mark.parametrize("padding", [0, 4, 10])
    def test_tiles_cover_image(self, padding):
        """Every pixel is covered and every tile fits the buffer."""
        params = TileParamsConfig(buffer_width=40, buffer_height=32, padding=padding)
        width, height = 100, 70
        rois = compute_tile_rois(width, height, params)

        covered = torch.zeros((height, width), dtype=torch.bool)
        for roi in rois:
            assert roi.width <= params.buffer_width
            assert roi.height <= params.buffer_height
            covered[roi.y_begin : roi.y_end, roi.x_begin : roi.x_end] = True
        assert covered.all()

    def test_overlap_is_twice_padding(self):
        """Consecutive tiles overlap by 2 * padding."""
        params = TileParamsConfig(buffer_width=40, buffer_height=40, padding=5)
        rois = compute_tile_rois(100, 40, params)
        assert rois[1].x_begin == 30
        assert rois[0].x_end - rois[1].x_begin == 10

    def test_aligned_begins(self):
        """Aligned begins keep downscaled tiles within the downscaled buffer."""
        params = TileParamsConfig(buffer_width=30, buffer_height=30, padding=3)
        rois = compute_tile_rois(100, 100, params, align=4)
        for roi in rois:
            assert roi.x_begin % 4 == 0
            assert roi.y_begin % 4 == 0
            assert downscale_roi(roi, 4).width <= 8  # ceil(30 / 4)

    def test_invalid_size(self):
        """Image dimensions must be positive."""
        with pytest.raises(ValueError):
            compute_tile_rois(0, 10, TileParamsConfig())


class TestBuildTiles:
    """Tests for build_tiles."""

    def test_indices_and_targets(self):
        """Tiles are numbered row-major and share the target list."""
        params = TileParamsConfig(buffer_width=32, buffer_height=32)
        tiles = build_tiles(5, 64, 64, params, [1, 2])
        assert [t.index for t in tiles] == [0, 1, 2, 3]
        assert all(t.nb_tiles == 4 for t in tiles)
        assert all(t.rc == 5 for t in tiles)
        assert all(t.refine_target_cameras == [1, 2] for t in tiles)
        assert tiles[1].roi == ROI(32, 64, 0, 32)
