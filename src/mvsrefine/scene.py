"""Scene description: calibrated views and their refinement target cameras."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

import torch

logger = logging.getLogger(__name__)


@dataclass
class ViewData:
    """Per-view calibration data as PyTorch tensors.

    Attributes:
        view_id: View identifier.
        K: Intrinsic matrix (post-undistortion), shape (3, 3), float32.
        R: Rotation matrix (world to camera), shape (3, 3), float32.
        t: Translation vector (world to camera), shape (3,), float32.
        image_path: Path to the view's image file.
        mask_path: Optional path to a validity mask (nonzero = valid).
    """

    view_id: int
    K: torch.Tensor  # shape (3, 3), float32
    R: torch.Tensor  # shape (3, 3), float32
    t: torch.Tensor  # shape (3,), float32
    image_path: Path
    mask_path: Path | None = None


@dataclass
class SceneData:
    """Calibrated views plus the ordered target cameras used to refine each view.

    Attributes:
        views: Per-view data keyed by view id.
        target_cameras: Reference view id to ordered list of target view ids.
    """

    views: dict[int, ViewData]
    target_cameras: dict[int, list[int]] = field(default_factory=dict)

    @property
    def view_ids(self) -> list[int]:
        """View ids in ascending order (sorted for determinism)."""
        return sorted(self.views)


def load_scene(scene_path: str | Path) -> SceneData:
    """Load a scene description from JSON.

    Expected layout::

        {
          "views": {"<id>": {"K": [[...]], "R": [[...]], "t": [...],
                             "image": "rel/or/abs.png", "mask": "optional.png"}},
          "target_cameras": {"<id>": [<id>, ...]}
        }

    Relative paths are resolved against the scene file's directory.

    Args:
        scene_path: Path to the scene JSON file.

    Returns:
        SceneData with tensors in float32.

    Raises:
        FileNotFoundError: If the scene file does not exist.
        ValueError: If the scene is malformed or references unknown views.
    """
    scene_path = Path(scene_path)
    with open(scene_path) as f:
        data = json.load(f)

    if "views" not in data:
        raise ValueError(f"Scene file missing 'views' key: {scene_path}")

    base_dir = scene_path.parent
    views = {}
    for key, entry in data["views"].items():
        view_id = int(key)
        try:
            K = torch.tensor(entry["K"], dtype=torch.float32)
            R = torch.tensor(entry["R"], dtype=torch.float32)
            t = torch.tensor(entry["t"], dtype=torch.float32).reshape(3)
            image = entry["image"]
        except KeyError as e:
            raise ValueError(f"View {view_id} is missing key {e}") from None

        if K.shape != (3, 3) or R.shape != (3, 3):
            raise ValueError(f"View {view_id}: K and R must be 3x3")

        mask = entry.get("mask")
        views[view_id] = ViewData(
            view_id=view_id,
            K=K,
            R=R,
            t=t,
            image_path=_resolve(base_dir, image),
            mask_path=_resolve(base_dir, mask) if mask else None,
        )

    target_cameras = {}
    for key, targets in data.get("target_cameras", {}).items():
        ref_id = int(key)
        targets = [int(tc) for tc in targets]
        unknown = [tc for tc in [ref_id, *targets] if tc not in views]
        if unknown:
            raise ValueError(
                f"target_cameras for view {ref_id} references unknown views: {unknown}"
            )
        target_cameras[ref_id] = targets

    logger.info(
        "Loaded scene with %d views (%d with target cameras)",
        len(views),
        len(target_cameras),
    )
    return SceneData(views=views, target_cameras=target_cameras)


def save_scene(scene: SceneData, scene_path: str | Path) -> None:
    """Save a scene description to JSON.

    Image and mask paths are written relative to the scene directory when
    possible.

    Args:
        scene: Scene to save.
        scene_path: Output JSON path.
    """
    scene_path = Path(scene_path)
    scene_path.parent.mkdir(parents=True, exist_ok=True)
    base_dir = scene_path.parent.resolve()

    views = {}
    for view_id, view in scene.views.items():
        entry = {
            "K": view.K.tolist(),
            "R": view.R.tolist(),
            "t": view.t.tolist(),
            "image": _relative(base_dir, view.image_path),
        }
        if view.mask_path is not None:
            entry["mask"] = _relative(base_dir, view.mask_path)
        views[str(view_id)] = entry

    data = {
        "views": views,
        "target_cameras": {
            str(rc): list(tcs) for rc, tcs in scene.target_cameras.items()
        },
    }
    with open(scene_path, "w") as f:
        json.dump(data, f, indent=2)


def _resolve(base_dir: Path, path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else base_dir / p


def _relative(base_dir: Path, path: Path) -> str:
    try:
        return str(Path(path).resolve().relative_to(base_dir))
    except ValueError:
        return str(path)
