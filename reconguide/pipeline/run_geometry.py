# reconguide/pipeline/run_geometry.py

import logging
from dataclasses import dataclass
from typing import Any, Dict, Tuple

import numpy as np

from reconguide.geometry.mesh_cleaning import clean_mesh
from reconguide.geometry.mesh_loader import Mesh, PointCloud, load_mesh, load_point_cloud
from reconguide.geometry.spatial_index import (
    EmptyGeometry,
    NearestNeighborIndex,
    RayIntersectionIndex,
    build_nn_index,
    build_ray_index,
)


@dataclass
class SceneGeometry:
    proxy_mesh: Mesh
    cloud: PointCloud
    sphere: Mesh
    aabb: Tuple[np.ndarray, np.ndarray]
    mesh_path: str = ""
    cloud_path: str = ""


@dataclass
class SceneIndices:
    nn_index: NearestNeighborIndex
    ray_index: RayIntersectionIndex


def compute_aabb(config: Dict[str, Any], mesh: Mesh) -> Tuple[np.ndarray, np.ndarray]:
    """
    Axis-aligned bounding box of the scene: ``aabb.min`` / ``aabb.max`` from
    the config when both are given, otherwise the proxy mesh bounds.
    """
    aabb_cfg = config.get("aabb", {})
    if aabb_cfg.get("min") is not None and aabb_cfg.get("max") is not None:
        lo = np.asarray(aabb_cfg["min"], dtype=float).reshape(3)
        hi = np.asarray(aabb_cfg["max"], dtype=float).reshape(3)
        if np.any(lo > hi):
            raise ValueError(f"aabb.min {lo} must not exceed aabb.max {hi}")
    else:
        lo = mesh.vertices.min(axis=0)
        hi = mesh.vertices.max(axis=0)
    logging.info(f"[Geometry] Bounding box: min={lo}, max={hi}")
    return lo, hi


def run_geometry(config, mesh_path, cloud_path, sphere_path) -> SceneGeometry:
    """
    Geometry stage:
    1. Load proxy mesh, proxy point cloud and candidate-viewpoint sphere
    2. Clean the proxy mesh (degenerate / duplicated triangles)
    3. Resolve the bounding box
    """
    proxy_mesh = load_mesh(mesh_path)
    cloud = load_point_cloud(cloud_path)
    sphere = load_mesh(sphere_path)

    # -------------------------
    # Mesh Cleaning
    # -------------------------
    cleaning_cfg = config.get("geometry", {}).get("cleaning", {})
    if cleaning_cfg.get("enable", True):
        proxy_mesh = clean_mesh(
            proxy_mesh,
            remove_degenerate=cleaning_cfg.get("remove_degenerate", True),
        )
        logging.info("[Geometry] Proxy mesh cleaned")

    aabb = compute_aabb(config, proxy_mesh)
    return SceneGeometry(
        proxy_mesh=proxy_mesh,
        cloud=cloud,
        sphere=sphere,
        aabb=aabb,
        mesh_path=str(mesh_path),
        cloud_path=str(cloud_path),
    )


def build_indices(geometry: SceneGeometry) -> SceneIndices:
    """Nearest-neighbor index over the proxy cloud, ray index over the proxy mesh."""
    try:
        nn_index = build_nn_index(geometry.cloud.points)
    except EmptyGeometry as exc:
        raise EmptyGeometry(f"{geometry.cloud_path}: {exc}") from exc
    try:
        ray_index = build_ray_index(geometry.proxy_mesh)
    except EmptyGeometry as exc:
        raise EmptyGeometry(f"{geometry.mesh_path}: {exc}") from exc
    return SceneIndices(nn_index=nn_index, ray_index=ray_index)
