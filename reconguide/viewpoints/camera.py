# reconguide/viewpoints/camera.py

import logging
from dataclasses import dataclass
from typing import Any, Dict

import numpy as np


@dataclass(frozen=True)
class CameraIntrinsics:
    """
    Pinhole camera used to simulate views from a candidate position.

    Attributes:
        focal_length: Focal length normalised by the larger image side.
        width: Image width in pixels.
        height: Image height in pixels.
    """
    focal_length: float = 0.86
    width: int = 1920
    height: int = 1080

    def __post_init__(self):
        if self.focal_length <= 0.0:
            raise ValueError(f"focal_length must be positive, got {self.focal_length}")
        if self.width < 1 or self.height < 1:
            raise ValueError(f"image size must be positive, got {self.width}x{self.height}")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "CameraIntrinsics":
        cam_cfg = config.get("camera", {})
        camera = cls(
            focal_length=float(cam_cfg.get("focal_length", cls.focal_length)),
            width=int(cam_cfg.get("width", cls.width)),
            height=int(cam_cfg.get("height", cls.height)),
        )
        logging.info(
            f"[Camera] focal_length={camera.focal_length}, "
            f"resolution={camera.width}x{camera.height}, "
            f"half_fov={np.degrees(camera.half_fov):.1f} deg"
        )
        return camera

    @property
    def focal_length_px(self) -> float:
        return self.focal_length * max(self.width, self.height)

    @property
    def principal_point(self) -> np.ndarray:
        return np.array([self.width / 2.0, self.height / 2.0])

    @property
    def matrix(self) -> np.ndarray:
        """3x3 calibration matrix K."""
        f = self.focal_length_px
        cx, cy = self.principal_point
        return np.array([
            [f, 0.0, cx],
            [0.0, f, cy],
            [0.0, 0.0, 1.0],
        ])

    @property
    def half_fov(self) -> float:
        """Half opening angle, in radians, along the shorter image side."""
        return float(np.arctan(0.5 * min(self.width, self.height) / self.focal_length_px))

    def unproject(self, pixels: np.ndarray) -> np.ndarray:
        """
        Unit viewing rays in the camera frame (+z forward, +x right, +y down)
        for pixel coordinates of shape (N, 2).
        """
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
        homogeneous = np.hstack([pixels, np.ones((pixels.shape[0], 1))])
        rays = homogeneous @ np.linalg.inv(self.matrix).T
        return rays / np.linalg.norm(rays, axis=1, keepdims=True)


def look_at_rotations(directions: np.ndarray, up=(0.0, 0.0, 1.0)) -> np.ndarray:
    """
    Camera-to-world rotations whose +z axis points along each direction.

    Parameters
    ----------
    directions : (N, 3) array
        Unit viewing directions.
    up : array-like
        World up vector; directions parallel to it fall back to +x.

    Returns
    -------
    np.ndarray
        (N, 3, 3) rotation matrices with columns [x, y, z].
    """
    forward = np.asarray(directions, dtype=np.float64).reshape(-1, 3)
    up = np.broadcast_to(np.asarray(up, dtype=np.float64), forward.shape)

    right = np.cross(forward, up)
    degenerate = np.linalg.norm(right, axis=1) < 1e-8
    if np.any(degenerate):
        right[degenerate] = np.cross(forward[degenerate], np.array([1.0, 0.0, 0.0]))
    right /= np.linalg.norm(right, axis=1, keepdims=True)
    down = np.cross(forward, right)

    return np.stack([right, down, forward], axis=2)
