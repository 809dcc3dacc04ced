# reconguide/geometry/mesh_loader.py

import json
import logging
import os
from dataclasses import dataclass, replace
from typing import Optional

import numpy as np
import open3d as o3d


class LoadError(ValueError):
    """A geometry, point-cloud or position file could not be read or is empty."""


@dataclass(frozen=True)
class Mesh:
    """
    Triangle mesh with an optional per-vertex scalar field.

    vertices : (N, 3) float64
    triangles : (M, 3) int32, indices into vertices
    values : (N,) float32 or None
    """

    vertices: np.ndarray
    triangles: np.ndarray
    values: Optional[np.ndarray] = None

    @classmethod
    def from_open3d(cls, mesh: o3d.geometry.TriangleMesh) -> "Mesh":
        return cls(
            vertices=np.asarray(mesh.vertices, dtype=np.float64).copy(),
            triangles=np.asarray(mesh.triangles, dtype=np.int32).copy(),
        )

    def to_open3d(self) -> o3d.geometry.TriangleMesh:
        mesh = o3d.geometry.TriangleMesh(
            o3d.utility.Vector3dVector(self.vertices),
            o3d.utility.Vector3iVector(self.triangles),
        )
        return mesh

    def with_values(self, values: np.ndarray) -> "Mesh":
        values = np.asarray(values, dtype=np.float32)
        if values.shape != (len(self.vertices),):
            raise ValueError(
                f"values must be of shape ({len(self.vertices)},), got {values.shape}"
            )
        return replace(self, values=values)

    def translated(self, offset: np.ndarray) -> "Mesh":
        offset = np.asarray(offset, dtype=np.float64).reshape(1, 3)
        return replace(self, vertices=self.vertices + offset)

    @property
    def center(self) -> np.ndarray:
        return self.vertices.mean(axis=0)


@dataclass(frozen=True)
class PointCloud:
    """Dense proxy surface samples with one unit normal per point."""

    points: np.ndarray
    normals: np.ndarray

    def __post_init__(self):
        if self.points.ndim != 2 or self.points.shape[1] != 3:
            raise ValueError(f"points must be of shape (N, 3), got {self.points.shape}")
        if self.normals.shape != self.points.shape:
            raise ValueError(
                f"points and normals must have the same shape, "
                f"got {self.points.shape} and {self.normals.shape}"
            )

    def __len__(self):
        return len(self.points)


def _check_readable(path):
    if not os.path.isfile(path):
        raise LoadError(f"{path}: file not found")


def load_mesh(path) -> Mesh:
    """
    Load a triangle mesh, preserving vertex order.

    Raises
    ------
    LoadError
        If the file is missing, cannot be parsed or has no triangles.
    """
    path = str(path)
    _check_readable(path)
    try:
        mesh = o3d.io.read_triangle_mesh(path)
    except RuntimeError as exc:
        raise LoadError(f"{path}: {exc}") from exc

    if not mesh.has_triangles():
        raise LoadError(f"{path}: mesh has no triangles")

    logging.info(
        f"[Geometry] Mesh loaded from {path}. "
        f"Vertices: {len(mesh.vertices)}, Triangles: {len(mesh.triangles)}"
    )
    return Mesh.from_open3d(mesh)


def _normalize_rows(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return vectors / norms


def _estimate_outward_normals(points: np.ndarray, normal_knn: int) -> np.ndarray:
    """k-NN normals oriented away from the centroid of ``points``."""
    cloud = o3d.geometry.PointCloud(o3d.utility.Vector3dVector(points))
    cloud.estimate_normals(search_param=o3d.geometry.KDTreeSearchParamKNN(knn=normal_knn))
    # oriented towards the centroid, flip to point outwards
    cloud.orient_normals_towards_camera_location(points.mean(axis=0))
    return -np.asarray(cloud.normals, dtype=np.float64)


def load_point_cloud(path, normal_knn: int = 30) -> PointCloud:
    """
    Load a point cloud and make sure every point carries a unit normal.

    Missing normals, and zero-length or non-finite ones read from the file,
    are estimated from the ``normal_knn`` nearest neighbours and oriented
    away from the cloud centroid.
    """
    path = str(path)
    _check_readable(path)
    try:
        cloud = o3d.io.read_point_cloud(path)
    except RuntimeError as exc:
        raise LoadError(f"{path}: {exc}") from exc

    if not cloud.has_points():
        raise LoadError(f"{path}: point cloud is empty")

    points = np.asarray(cloud.points, dtype=np.float64).copy()

    if not cloud.has_normals():
        logging.info(f"[Geometry] {path} has no normals, estimating from {normal_knn} neighbours")
        normals = _estimate_outward_normals(points, normal_knn)
    else:
        normals = np.asarray(cloud.normals, dtype=np.float64).copy()
        lengths = np.linalg.norm(normals, axis=1)
        broken = ~np.isfinite(lengths) | (lengths == 0.0)
        if np.any(broken):
            logging.warning(
                f"[Geometry] {path}: {int(np.count_nonzero(broken))} zero-length or "
                f"non-finite normals, re-estimating from {normal_knn} neighbours"
            )
            normals[broken] = _estimate_outward_normals(points, normal_knn)[broken]

    normals = _normalize_rows(normals)

    logging.info(f"[Geometry] Point cloud loaded from {path}. Points: {len(points)}")
    return PointCloud(points=points, normals=normals)


def load_positions(path) -> np.ndarray:
    """
    Read observer positions from a JSON file holding a ``viewpoints`` or
    ``waypoints`` list of [x, y, z] entries.
    """
    path = str(path)
    _check_readable(path)
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise LoadError(f"{path}: {exc}") from exc

    entries = None
    if isinstance(data, dict):
        entries = data.get("viewpoints", data.get("waypoints"))
    if not entries:
        raise LoadError(f"{path}: no 'viewpoints' or 'waypoints' list found")

    positions = np.asarray(entries, dtype=np.float64)
    if positions.ndim != 2 or positions.shape[1] != 3:
        raise LoadError(f"{path}: positions must be of shape (N, 3), got {positions.shape}")

    logging.info(f"[Geometry] Loaded {len(positions)} observer positions from {path}")
    return positions
