"""Synthetic textured-plane scenes with analytic ground truth."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import torch
import torch.nn.functional as F

from .io import save_depth_sim_map, save_image
from .projection.pinhole import PinholeProjectionModel
from .scene import SceneData, ViewData, save_scene

logger = logging.getLogger(__name__)


@dataclass
class SyntheticPlaneScene:
    """Views of a textured plane ``z = plane_z`` with exact ray depths.

    Attributes:
        models: Full-resolution projection models keyed by view id.
        images: Rendered grayscale images, shape (H, W), keyed by view id.
        depths: Ground-truth ray depths, shape (H, W), NaN where the ray
            misses the plane; keyed by view id.
        target_cameras: Reference view id to ordered target view ids.
        width: Image width.
        height: Image height.
        plane_z: World Z of the plane.
    """

    models: dict[int, PinholeProjectionModel]
    images: dict[int, torch.Tensor]
    depths: dict[int, torch.Tensor]
    target_cameras: dict[int, list[int]] = field(default_factory=dict)
    width: int = 64
    height: int = 64
    plane_z: float = 2.0


def look_at(
    center: tuple[float, float, float],
    target: tuple[float, float, float],
    down: tuple[float, float, float] = (0.0, 1.0, 0.0),
) -> tuple[torch.Tensor, torch.Tensor]:
    """World-to-camera pose of a camera at ``center`` looking at ``target``.

    Camera axes follow the OpenCV convention: x right, y down, z forward.

    Args:
        center: Camera center in world frame.
        target: Point the optical axis passes through.
        down: World direction that should appear downward in the image.

    Returns:
        R: Rotation matrix (world to camera), shape (3, 3), float32.
        t: Translation vector (world to camera), shape (3,), float32.
    """
    C = torch.tensor(center, dtype=torch.float32)
    forward = torch.tensor(target, dtype=torch.float32) - C
    forward = forward / torch.linalg.norm(forward)
    right = torch.linalg.cross(torch.tensor(down, dtype=torch.float32), forward)
    right = right / torch.linalg.norm(right)
    down_axis = torch.linalg.cross(forward, right)

    R = torch.stack([right, down_axis, forward])
    t = -R @ C
    return R, t


def make_intrinsics(width: int, height: int, focal: float) -> torch.Tensor:
    """Pinhole K with the principal point at the image center."""
    return torch.tensor(
        [
            [focal, 0.0, (width - 1) / 2.0],
            [0.0, focal, (height - 1) / 2.0],
            [0.0, 0.0, 1.0],
        ],
        dtype=torch.float32,
    )


def make_texture(nb_cells: int = 50, seed: int = 0) -> torch.Tensor:
    """Random checker-like texture, shape (nb_cells, nb_cells), in [0, 1]."""
    generator = torch.Generator().manual_seed(seed)
    return torch.rand((nb_cells, nb_cells), generator=generator)


def sample_texture(
    texture: torch.Tensor, extent: float, X: torch.Tensor, Y: torch.Tensor
) -> torch.Tensor:
    """Bilinearly sample a texture spread over ``[-extent, extent]^2`` of the plane."""
    grid = torch.stack([X / extent, Y / extent], dim=-1).reshape(1, -1, 1, 2)
    values = F.grid_sample(
        texture[None, None].to(X.dtype),
        grid,
        mode="bilinear",
        padding_mode="border",
        align_corners=False,
    )
    return values.reshape(X.shape)


def plane_ray_depth(
    model: PinholeProjectionModel, width: int, height: int, plane_z: float
) -> tuple[torch.Tensor, torch.Tensor]:
    """Intersect every pixel ray with the plane ``z = plane_z``.

    Returns:
        depth: Ray depth (distance from the camera center), shape (H, W);
            NaN where the ray does not hit the plane in front of the camera.
        points: Intersection points, shape (H, W, 3).
    """
    v, u = torch.meshgrid(
        torch.arange(height, dtype=torch.float32),
        torch.arange(width, dtype=torch.float32),
        indexing="ij",
    )
    pixels = torch.stack([u.reshape(-1), v.reshape(-1)], dim=-1)
    origins, directions = model.cast_ray(pixels)

    dz = directions[:, 2]
    safe_dz = torch.where(dz.abs() > 1e-8, dz, torch.ones_like(dz))
    depth = (plane_z - origins[:, 2]) / safe_dz
    hit = (dz.abs() > 1e-8) & (depth > 0)
    depth = torch.where(hit, depth, torch.full_like(depth, float("nan")))

    points = origins + depth.unsqueeze(-1) * directions
    return depth.reshape(height, width), points.reshape(height, width, 3)


def render_plane_view(
    model: PinholeProjectionModel,
    width: int,
    height: int,
    plane_z: float,
    texture: torch.Tensor,
    extent: float,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Render the textured plane into a camera.

    Returns:
        image: Grayscale image, shape (H, W), in [0, 1]; 0 off the plane.
        depth: Ground-truth ray depth, shape (H, W), NaN off the plane.
    """
    depth, points = plane_ray_depth(model, width, height, plane_z)
    image = sample_texture(texture, extent, points[..., 0], points[..., 1])
    image = torch.where(torch.isnan(depth), torch.zeros_like(image), image)
    return image, depth


def create_plane_scene(
    width: int = 64,
    height: int = 64,
    focal: float = 100.0,
    plane_z: float = 2.0,
    target_centers: tuple[tuple[float, float, float], ...] = ((1.0, 0.0, 0.0),),
    nb_cells: int = 50,
    extent: float = 1.5,
    seed: int = 0,
) -> SyntheticPlaneScene:
    """Reference view 0 facing the plane, plus verged target views.

    View 0 sits at the origin looking down +Z. Target views 1, 2, ... sit at
    ``target_centers`` and look at the point where the reference optical
    axis meets the plane.

    Args:
        width: Image width.
        height: Image height.
        focal: Focal length in pixels.
        plane_z: World Z of the textured plane.
        target_centers: Centers of the target cameras.
        nb_cells: Texture resolution over the plane.
        extent: Half-size of the textured area.
        seed: Texture random seed.

    Returns:
        Rendered scene with ground truth.
    """
    K = make_intrinsics(width, height, focal)
    texture = make_texture(nb_cells, seed)

    models = {0: PinholeProjectionModel(K, torch.eye(3), torch.zeros(3))}
    for i, center in enumerate(target_centers, start=1):
        R, t = look_at(center, (0.0, 0.0, plane_z))
        models[i] = PinholeProjectionModel(K, R, t)

    images = {}
    depths = {}
    for view_id, model in models.items():
        images[view_id], depths[view_id] = render_plane_view(
            model, width, height, plane_z, texture, extent
        )

    logger.debug(
        "Created synthetic plane scene: %d views, %dx%d, plane z=%.2f",
        len(models),
        width,
        height,
        plane_z,
    )
    return SyntheticPlaneScene(
        models=models,
        images=images,
        depths=depths,
        target_cameras={0: list(range(1, len(models)))},
        width=width,
        height=height,
        plane_z=plane_z,
    )


def coarse_depth_sim_map(
    depth: torch.Tensor,
    offset: float = 0.0,
    step: int = 1,
    similarity: float = 0.5,
) -> torch.Tensor:
    """Coarse depth/sim map derived from ground truth.

    Args:
        depth: Ground-truth ray depth, shape (H, W), NaN where invalid.
        offset: Depth offset added to every valid pixel.
        step: Subsampling stride.
        similarity: Constant similarity channel.

    Returns:
        Depth/sim map, shape (ceil(H / step), ceil(W / step), 2), with -1
        where the ground truth is invalid.
    """
    sub = depth[::step, ::step]
    coarse_depth = torch.where(torch.isnan(sub), torch.full_like(sub, -1.0), sub + offset)
    return torch.stack([coarse_depth, torch.full_like(sub, similarity)], dim=-1)


def write_scene_files(
    scene: SyntheticPlaneScene,
    directory: str | Path,
    coarse_offset: float = 0.0,
) -> Path:
    """Write images, a scene JSON and coarse depth maps to disk.

    Layout: ``images/{id}.png``, ``scene.json`` and ``depth_maps/{id}.npz``
    for every view with target cameras.

    Returns:
        Path to the scene JSON file.
    """
    directory = Path(directory)
    views = {}
    for view_id, model in scene.models.items():
        image_path = directory / "images" / f"{view_id}.png"
        save_image(scene.images[view_id], image_path)
        views[view_id] = ViewData(
            view_id=view_id,
            K=model.K,
            R=model.R,
            t=model.t,
            image_path=image_path,
        )

    for rc in scene.target_cameras:
        save_depth_sim_map(
            coarse_depth_sim_map(scene.depths[rc], offset=coarse_offset),
            directory / "depth_maps" / f"{rc}.npz",
        )

    scene_path = directory / "scene.json"
    save_scene(SceneData(views=views, target_cameras=scene.target_cameras), scene_path)
    return scene_path
