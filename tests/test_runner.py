"""Tests for the scene runner."""

import logging
from pathlib import Path

import pytest
import torch

from mvsrefine.config import RefinePipelineConfig
from mvsrefine.io import load_depth_sim_map
from mvsrefine.runner import (
    build_refine_context,
    refine_view,
    resample_to_grid,
    run_refinement,
)
from mvsrefine.synthetic import write_scene_files


@pytest.fixture
def scene_dir(tmp_path: Path, plane_scene) -> Path:
    """Synthetic plane scene written to disk with a coarse map one step off."""
    write_scene_files(plane_scene, tmp_path / "scene", coarse_offset=0.02)
    return tmp_path / "scene"


def _config(scene_dir: Path, output_dir: Path, buffer_size=64, padding=0) -> RefinePipelineConfig:
    return RefinePipelineConfig(
        scene_path=str(scene_dir / "scene.json"),
        depth_map_dir=str(scene_dir / "depth_maps"),
        output_dir=str(output_dir),
        refine={"half_nb_depths": 2, "use_color_optimization": False},
        tiles={"buffer_width": buffer_size, "buffer_height": buffer_size, "padding": padding},
        runtime={"quiet": True},
    )


class TestResampleToGrid:
    """Tests for resample_to_grid."""

    def test_same_size_is_identity(self):
        grid = torch.rand(4, 5, 2)
        assert resample_to_grid(grid, 4, 5) is grid

    def test_nearest_upsample(self):
        grid = torch.arange(4, dtype=torch.float32).reshape(2, 2, 1)
        out = resample_to_grid(grid, 4, 4)
        assert out.shape == (4, 4, 1)
        assert torch.all(out[:2, :2] == 0.0)
        assert torch.all(out[2:, 2:] == 3.0)


class TestRunRefinement:
    """Tests for run_refinement."""

    def test_refines_scene(self, scene_dir, tmp_path, plane_scene):
        """Each view with targets gets a refined map close to the ground truth."""
        output_dir = tmp_path / "out"
        outputs = run_refinement(_config(scene_dir, output_dir))

        assert set(outputs) == {0}
        assert outputs[0] == output_dir / "0_depthSimMap_refined.npz"
        assert (output_dir / "config.yaml").exists()

        refined, normals = load_depth_sim_map(outputs[0])
        assert refined.shape == (64, 64, 2)
        assert normals is None

        error = (refined[8:-8, 8:-8, 0] - plane_scene.depths[0][8:-8, 8:-8]).abs()
        assert error.median() < 0.01

    def test_missing_coarse_map_skipped(self, scene_dir, tmp_path, caplog):
        """Views without a coarse map are skipped with a warning."""
        (scene_dir / "depth_maps" / "0.npz").unlink()
        with caplog.at_level(logging.WARNING):
            outputs = run_refinement(_config(scene_dir, tmp_path / "out"))
        assert outputs == {}
        assert "no coarse depth map" in caplog.text

    def test_failing_view_skipped(self, scene_dir, tmp_path, caplog):
        """A view that fails is logged and the run continues."""
        (scene_dir / "depth_maps" / "0.npz").write_text("not an archive")
        outputs = run_refinement(_config(scene_dir, tmp_path / "out"))
        assert outputs == {}
        assert "refinement failed" in caplog.text


class TestRefineView:
    """Tests for refine_view tiling and stitching."""

    def test_tiled_matches_single_tile(self, scene_dir, tmp_path):
        """Stitched tiles reproduce the single-tile result."""
        single_ctx = build_refine_context(_config(scene_dir, tmp_path / "single"))
        coarse, _ = load_depth_sim_map(scene_dir / "depth_maps" / "0.npz")
        single = refine_view(0, coarse, None, single_ctx)

        tiled_ctx = build_refine_context(
            _config(scene_dir, tmp_path / "tiled", buffer_size=32, padding=4)
        )
        tiled = refine_view(0, coarse, None, tiled_ctx)

        assert tiled.shape == single.shape
        assert torch.all(tiled[..., 0] > 0.0)
        close = (tiled - single).abs().amax(dim=-1) < 1e-4
        assert close.float().mean() > 0.99

    def test_low_resolution_coarse_map(self, scene_dir, tmp_path):
        """Coarse maps at a lower resolution are resampled to the grid."""
        ctx = build_refine_context(_config(scene_dir, tmp_path / "out"))
        coarse, _ = load_depth_sim_map(scene_dir / "depth_maps" / "0.npz")
        result = refine_view(0, coarse[::2, ::2], None, ctx)
        assert result.shape == (64, 64, 2)
        assert torch.all(result[..., 0] > 0.0)

    def test_step_xy_grid(self, scene_dir, tmp_path):
        """The output grid is the full resolution divided by step_xy."""
        config = _config(scene_dir, tmp_path / "out")
        config.refine = config.refine.model_copy(update={"step_xy": 2})
        ctx = build_refine_context(config)
        coarse, _ = load_depth_sim_map(scene_dir / "depth_maps" / "0.npz")
        assert refine_view(0, coarse, None, ctx).shape == (32, 32, 2)
