# reconguide/pipeline/run_evaluation.py

import logging
from typing import Any, Dict

import numpy as np

from reconguide.geometry.mesh_loader import load_positions
from reconguide.viewpoints.accumulator import DEFAULT_MAX_VIEWS, PerPointAccumulator
from reconguide.viewpoints.camera import CameraIntrinsics
from reconguide.viewpoints.scoring import ViewpointScorer
from reconguide.viewpoints.spherical_grid import SphericalQualityProjector
from reconguide.viewpoints.visibility import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_EPSILON,
    VisibilityAccumulator,
)


def _runtime(config: Dict[str, Any]):
    runtime_cfg = config.get("runtime", {})
    max_workers = runtime_cfg.get("max_workers")
    chunk_size = int(runtime_cfg.get("chunk_size", DEFAULT_CHUNK_SIZE))
    return (int(max_workers) if max_workers else None), chunk_size


def resolve_observers(config: Dict[str, Any], aabb) -> np.ndarray:
    """
    Observer positions, in order of preference:
    1. ``observers.positions`` from the config
    2. ``observers.trajectory_file`` (JSON viewpoints / waypoints)
    3. one observer above the top centre of the bounding box
    """
    obs_cfg = config.get("observers", {})

    if obs_cfg.get("positions"):
        positions = np.asarray(obs_cfg["positions"], dtype=float).reshape(-1, 3)
        source = "config"
    elif obs_cfg.get("trajectory_file"):
        positions = load_positions(obs_cfg["trajectory_file"])
        source = obs_cfg["trajectory_file"]
    else:
        lo, hi = aabb
        altitude = obs_cfg.get("altitude")
        altitude = float(altitude) if altitude is not None else 0.5 * float(np.linalg.norm(hi - lo))
        centre = 0.5 * (lo + hi)
        positions = np.array([[centre[0], centre[1], hi[2] + altitude]])
        source = f"bounding box (altitude {altitude:.3f})"

    logging.info(f"[Evaluation] {len(positions)} observer positions from {source}")
    return positions


def resolve_scoring_position(config: Dict[str, Any], observers: np.ndarray) -> np.ndarray:
    position = config.get("scoring", {}).get("position")
    if position is not None:
        return np.asarray(position, dtype=float).reshape(3)
    return np.asarray(observers[0], dtype=float)


def run_accumulation(config, geometry, indices, observers) -> PerPointAccumulator:
    max_workers, chunk_size = _runtime(config)
    accumulator = PerPointAccumulator(
        len(geometry.cloud),
        max_views=int(config.get("accumulation", {}).get("max_views", DEFAULT_MAX_VIEWS)),
    )
    visibility = VisibilityAccumulator(
        indices.ray_index,
        accumulator,
        epsilon=float(config.get("visibility", {}).get("epsilon", DEFAULT_EPSILON)),
        max_workers=max_workers,
        chunk_size=chunk_size,
    )
    visibility.accumulate(geometry.cloud, observers)
    accumulator.log_summary()
    return accumulator


def run_projection(config, geometry, indices, accumulator, position):
    max_workers, _ = _runtime(config)
    proj_cfg = config.get("projection", {})
    projector = SphericalQualityProjector(
        indices.nn_index,
        indices.ray_index,
        geometry.cloud,
        accumulator,
        camera=CameraIntrinsics.from_config(config),
        k_neighbors=int(proj_cfg.get("k_neighbors", 16)),
        aggregation=proj_cfg.get("aggregation", "distance_weighted"),
        max_workers=max_workers,
    )
    return projector.project(position)


def run_scoring(config, geometry, grid, position):
    max_workers, chunk_size = _runtime(config)
    scorer = ViewpointScorer(
        grid,
        interpolation=config.get("scoring", {}).get("interpolation", "bilinear"),
        max_workers=max_workers,
        chunk_size=chunk_size,
    )
    slots = scorer.score(geometry.sphere)
    return scorer.finalize(geometry.sphere, slots, position)
