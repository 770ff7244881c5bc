"""Diagnostics export of intermediate depth/sim maps and similarity volumes."""

import csv
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import torch

from .config import RefineConfig
from .io import save_depth_sim_map
from .roi import Tile

logger = logging.getLogger(__name__)


@runtime_checkable
class RefineObserver(Protocol):
    """Receives intermediate results at fixed refinement checkpoints.

    Implementations must not modify the tensors they receive.
    """

    def on_depth_sim_map(self, tile: Tile, name: str, depth_sim_map: torch.Tensor) -> None:
        """Called after a stage wrote a depth/sim map, shape (H, W, 2)."""
        ...

    def on_similarity_volume(
        self,
        tile: Tile,
        name: str,
        volume: torch.Tensor,
        depth_pix_size_map: torch.Tensor,
    ) -> None:
        """Called after accumulation with the volume, shape (D, H, W)."""
        ...


class NullObserver:
    """Observer that ignores every checkpoint."""

    def on_depth_sim_map(self, tile: Tile, name: str, depth_sim_map: torch.Tensor) -> None:
        pass

    def on_similarity_volume(
        self,
        tile: Tile,
        name: str,
        volume: torch.Tensor,
        depth_pix_size_map: torch.Tensor,
    ) -> None:
        pass


def get_file_name(
    output_dir: Path,
    view_id: int,
    file_type: str,
    scale: int,
    tag: str,
    tile_origin: tuple[int, int] | None,
    extension: str,
) -> Path:
    """Deterministic diagnostics file name.

    ``{view_id}_{file_type}_scale{scale}_{tag}[_{x}_{y}].{extension}``, the
    tile origin suffix being present only for tiled views.
    """
    stem = f"{view_id}_{file_type}_scale{scale}_{tag}"
    if tile_origin is not None:
        stem += f"_{tile_origin[0]}_{tile_origin[1]}"
    return Path(output_dir) / f"{stem}.{extension}"


def sample_points_9(width: int, height: int) -> list[tuple[int, int]]:
    """Nine fixed sample points at 1/4, 1/2 and 3/4 of the width and height."""
    return [
        (width * i // 4, height * j // 4) for j in (1, 2, 3) for i in (1, 2, 3)
    ]


class FileExporter:
    """Write intermediate results to disk according to the export flags.

    Args:
        output_dir: Directory for diagnostics files.
        config: Refinement configuration (export flags, scale).
        render_png: Also write matplotlib renderings next to the arrays.
    """

    def __init__(self, output_dir: str | Path, config: RefineConfig, render_png: bool = True):
        self.output_dir = Path(output_dir)
        self.config = config
        self.render_png = render_png

    def on_depth_sim_map(self, tile: Tile, name: str, depth_sim_map: torch.Tensor) -> None:
        if not self.config.export_intermediate_depth_sim_maps:
            return

        path = get_file_name(
            self.output_dir, tile.rc, "depthSimMap", self.config.scale, name, tile.origin, "npz"
        )
        save_depth_sim_map(depth_sim_map, path)
        if self.render_png:
            render_depth_sim_map(
                depth_sim_map.detach().cpu().numpy(),
                path.with_suffix(".png"),
                title=f"View {tile.rc} - {name}",
            )
        logger.debug("%sExported depth/sim map (%s) to %s", tile, name, path)

    def on_similarity_volume(
        self,
        tile: Tile,
        name: str,
        volume: torch.Tensor,
        depth_pix_size_map: torch.Tensor,
    ) -> None:
        if not (
            self.config.export_intermediate_cross_volumes
            or self.config.export_intermediate_volume_9p_csv
        ):
            return

        # Synchronizing host copies
        volume_np = volume.detach().cpu().numpy()
        depth_pix_size_np = depth_pix_size_map.detach().cpu().numpy()

        if self.config.export_intermediate_cross_volumes:
            logger.info("%sExport similarity volume cross (%s).", tile, name)
            path = get_file_name(
                self.output_dir, tile.rc, "volumeCross", self.config.scale, name, tile.origin, "npz"
            )
            export_similarity_volume_cross(volume_np, depth_pix_size_np, path, self.render_png)

        if self.config.export_intermediate_volume_9p_csv:
            logger.info("%sExport similarity volume 9 points CSV (%s).", tile, name)
            path = get_file_name(
                self.output_dir, tile.rc, "9p", self.config.scale, "refine", tile.origin, "csv"
            )
            export_similarity_samples_csv(volume_np, name, path)


def export_similarity_volume_cross(
    volume: np.ndarray,
    depth_pix_size_map: np.ndarray,
    path: Path,
    render_png: bool = True,
) -> None:
    """Save the central row and column cross-sections of a similarity volume.

    Args:
        volume: Similarity volume, shape (D, H, W).
        depth_pix_size_map: Base depth and pixel size, shape (H, W, 2).
        path: Output .npz path.
        render_png: Also render both sections to ``path.with_suffix(".png")``.
    """
    D, H, W = volume.shape
    row, col = H // 2, W // 2
    sections = {
        "row_section": volume[:, row, :],  # (D, W)
        "column_section": volume[:, :, col],  # (D, H)
        "row_base_depth": depth_pix_size_map[row, :, 0],
        "row_pix_size": depth_pix_size_map[row, :, 1],
        "column_base_depth": depth_pix_size_map[:, col, 0],
        "column_pix_size": depth_pix_size_map[:, col, 1],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez(path, **sections)

    if not render_png:
        return

    fig, axes = plt.subplots(1, 2, figsize=(12, 4))
    for ax, key, label in (
        (axes[0], "row_section", f"Row {row}"),
        (axes[1], "column_section", f"Column {col}"),
    ):
        im = ax.imshow(sections[key], cmap="viridis", aspect="auto", origin="lower")
        ax.set_title(label)
        ax.set_xlabel("Pixel")
        ax.set_ylabel("Depth index")
        fig.colorbar(im, ax=ax, shrink=0.8, label="Score")
    fig.savefig(path.with_suffix(".png"), dpi=100, bbox_inches="tight")
    plt.close(fig)


def export_similarity_samples_csv(volume: np.ndarray, name: str, path: Path) -> None:
    """Append the similarity profiles of 9 fixed pixels to a CSV file.

    One row per point: stage name, point index, x, y, then one score per
    depth index. The header is written when the file is created.

    Args:
        volume: Similarity volume, shape (D, H, W).
        name: Stage name written in every row.
        path: Output .csv path.
    """
    D, H, W = volume.shape
    path.parent.mkdir(parents=True, exist_ok=True)
    write_header = not path.exists()

    with open(path, "a", newline="") as f:
        writer = csv.writer(f)
        if write_header:
            writer.writerow(["stage", "point", "x", "y", *[f"d{d}" for d in range(D)]])
        for i, (x, y) in enumerate(sample_points_9(W, H)):
            writer.writerow([name, i, x, y, *[f"{v:.6g}" for v in volume[:, y, x]]])


def render_depth_sim_map(depth_sim_map: np.ndarray, output_path: str | Path, title: str = "") -> None:
    """Render depth and similarity side by side as colormapped images.

    Args:
        depth_sim_map: Depth and similarity, shape (H, W, 2). Non-positive
            depths are drawn as invalid (gray).
        output_path: Path to save the PNG image.
        title: Figure title.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    depth = depth_sim_map[..., 0].astype(np.float32)
    depth = np.where(depth > 0, depth, np.nan)
    similarity = depth_sim_map[..., 1]

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))
    cmap = plt.cm.viridis.copy()
    cmap.set_bad(color="0.8")  # gray for invalid

    im = axes[0].imshow(depth, cmap=cmap)
    fig.colorbar(im, ax=axes[0], shrink=0.8, label="Depth")
    axes[0].set_title("Depth")
    im = axes[1].imshow(similarity, cmap="magma_r")
    fig.colorbar(im, ax=axes[1], shrink=0.8, label="Similarity")
    axes[1].set_title("Similarity")
    for ax in axes:
        ax.axis("off")
    if title:
        fig.suptitle(title)

    fig.savefig(output_path, dpi=100, bbox_inches="tight", pad_inches=0.1)
    plt.close(fig)
