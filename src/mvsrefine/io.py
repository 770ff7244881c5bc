"""Image and depth/similarity map I/O."""

import logging
from pathlib import Path

import cv2
import numpy as np
import torch

logger = logging.getLogger(__name__)

# Alpha values below this fraction of full scale mark masked pixels
ALPHA_MASK_THRESHOLD = 0.9


def bgr_to_gray(image: np.ndarray) -> np.ndarray:
    """Convert a BGR uint8 (or float) image to grayscale float32 in [0, 1].

    Args:
        image: Image, shape (H, W, 3) BGR or (H, W) grayscale.

    Returns:
        Grayscale image, shape (H, W), float32 in [0, 1].
    """
    if image.dtype == np.uint8:
        image = image.astype(np.float32) / 255.0
    elif image.dtype == np.uint16:
        image = image.astype(np.float32) / 65535.0
    else:
        image = image.astype(np.float32)
    if image.ndim == 2:
        return image
    # BGR to gray: 0.114*B + 0.587*G + 0.299*R
    return 0.114 * image[..., 0] + 0.587 * image[..., 1] + 0.299 * image[..., 2]


def load_image(
    image_path: str | Path,
    mask_path: str | Path | None = None,
) -> tuple[torch.Tensor, torch.Tensor | None]:
    """Load a view image as grayscale plus an optional validity mask.

    The mask comes from ``mask_path`` when given (nonzero = valid), otherwise
    from the image alpha channel when present.

    Args:
        image_path: Path to the image file.
        mask_path: Optional path to a single-channel mask image.

    Returns:
        image: Grayscale image, shape (H, W), float32 in [0, 1].
        mask: Boolean validity mask, shape (H, W), or None.

    Raises:
        FileNotFoundError: If the image cannot be read.
        ValueError: If the mask size does not match the image.
    """
    raw = cv2.imread(str(image_path), cv2.IMREAD_UNCHANGED)
    if raw is None:
        raise FileNotFoundError(f"Failed to read image: {image_path}")

    mask = None
    if raw.ndim == 3 and raw.shape[2] == 4:
        full_scale = (
            np.iinfo(raw.dtype).max if np.issubdtype(raw.dtype, np.integer) else 1.0
        )
        alpha = raw[..., 3].astype(np.float32) / full_scale
        mask = alpha >= ALPHA_MASK_THRESHOLD
        raw = raw[..., :3]

    if mask_path is not None:
        mask_img = cv2.imread(str(mask_path), cv2.IMREAD_GRAYSCALE)
        if mask_img is None:
            raise FileNotFoundError(f"Failed to read mask: {mask_path}")
        if mask_img.shape != raw.shape[:2]:
            raise ValueError(
                f"Mask size {mask_img.shape} does not match image size "
                f"{raw.shape[:2]} for {image_path}"
            )
        mask = mask_img > 0

    gray = bgr_to_gray(raw)
    logger.debug("Loaded image %s (%dx%d)", image_path, gray.shape[1], gray.shape[0])

    return (
        torch.from_numpy(np.ascontiguousarray(gray)),
        torch.from_numpy(mask) if mask is not None else None,
    )


def save_image(image: torch.Tensor, path: str | Path) -> None:
    """Save a grayscale float image in [0, 1] as an 8-bit PNG.

    Args:
        image: Image, shape (H, W), float32 in [0, 1].
        path: Output path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = (image.detach().cpu().clamp(0.0, 1.0).numpy() * 255.0).round()
    if not cv2.imwrite(str(path), data.astype(np.uint8)):
        raise OSError(f"Failed to write image: {path}")


def save_depth_sim_map(
    depth_sim_map: torch.Tensor,
    path: str | Path,
    normal_map: torch.Tensor | None = None,
) -> None:
    """Save a depth/similarity map (and optional normal map) to an .npz file.

    Args:
        depth_sim_map: Depth and similarity, shape (H, W, 2), float32.
        path: Output file path (should end with .npz).
        normal_map: Optional normals, shape (H, W, 3), float32.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = depth_sim_map.detach().cpu().numpy()
    arrays = {"depth": data[..., 0], "similarity": data[..., 1]}
    if normal_map is not None:
        arrays["normal"] = normal_map.detach().cpu().numpy()
    np.savez(path, **arrays)


def load_depth_sim_map(
    path: str | Path,
    device: str = "cpu",
) -> tuple[torch.Tensor, torch.Tensor | None]:
    """Load a depth/similarity map (and optional normal map) from an .npz file.

    Args:
        path: Path to .npz file with ``depth`` and ``similarity`` arrays and
            an optional ``normal`` array.
        device: Device to place the loaded tensors on.

    Returns:
        depth_sim_map: shape (H, W, 2), float32.
        normal_map: shape (H, W, 3), float32, or None if absent.
    """
    with np.load(path) as data:
        depth = data["depth"].astype(np.float32)
        similarity = data["similarity"].astype(np.float32)
        normal = data["normal"].astype(np.float32) if "normal" in data else None

    depth_sim_map = torch.from_numpy(np.stack([depth, similarity], axis=-1)).to(device)
    normal_map = torch.from_numpy(normal).to(device) if normal is not None else None
    return depth_sim_map, normal_map
