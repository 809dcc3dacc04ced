# reconguide/pipeline/run_full_pipeline.py

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

from reconguide.export import save_mesh, save_quality_grid, save_scores_json
from reconguide.geometry.mesh_loader import Mesh
from reconguide.pipeline.run_evaluation import (
    resolve_observers,
    resolve_scoring_position,
    run_accumulation,
    run_projection,
    run_scoring,
)
from reconguide.pipeline.run_geometry import build_indices, run_geometry
from reconguide.viewpoints.accumulator import PerPointAccumulator
from reconguide.viewpoints.spherical_grid import SphericalQualityGrid


class PipelineStage(Enum):
    LOADED = "Loaded"
    INDICES_BUILT = "IndicesBuilt"
    ACCUMULATED = "Accumulated"
    PROJECTED = "Projected"
    SCORED = "Scored"
    EXPORTED = "Exported"


@dataclass
class PipelineResult:
    stage: PipelineStage
    observers: np.ndarray
    position: np.ndarray
    accumulator: PerPointAccumulator
    grid: SphericalQualityGrid
    scored_sphere: Mesh
    output_dir: Path


def _get_output_dir(config: Dict[str, Any]) -> Path:
    """
    Resolve the output directory from config, defaulting to 'data/outputs'.
    """
    out_path = Path(config.get("output_folder", "data/outputs/"))
    out_path.mkdir(parents=True, exist_ok=True)
    return out_path


def _enter(stage: PipelineStage) -> PipelineStage:
    logging.info(f"[SYSTEM] Stage reached: {stage.value}")
    return stage


def run_full_pipeline(config, mesh_path, cloud_path, sphere_path) -> PipelineResult:
    """
    Loaded -> IndicesBuilt -> Accumulated -> Projected -> Scored -> Exported.

    Stages run strictly in order; every parallel pass has finished before the
    next stage starts. Load and index failures propagate to the caller.
    """
    config = config or {}

    # -----------------------------
    # GEOMETRY
    # -----------------------------
    logging.info("[SYSTEM] Loading geometry...")
    geometry = run_geometry(config, mesh_path, cloud_path, sphere_path)
    stage = _enter(PipelineStage.LOADED)

    indices = build_indices(geometry)
    stage = _enter(PipelineStage.INDICES_BUILT)

    # -----------------------------
    # VISIBILITY ACCUMULATION
    # -----------------------------
    observers = resolve_observers(config, geometry.aabb)
    position = resolve_scoring_position(config, observers)
    accumulator = run_accumulation(config, geometry, indices, observers)
    stage = _enter(PipelineStage.ACCUMULATED)

    # -----------------------------
    # SPHERICAL PROJECTION
    # -----------------------------
    grid = run_projection(config, geometry, indices, accumulator, position)
    stage = _enter(PipelineStage.PROJECTED)

    # -----------------------------
    # SCORING
    # -----------------------------
    scored_sphere = run_scoring(config, geometry, grid, position)
    stage = _enter(PipelineStage.SCORED)

    # -----------------------------
    # EXPORT
    # -----------------------------
    out_dir = _get_output_dir(config)
    save_mesh(scored_sphere, out_dir / "scored_sphere.ply", write_scalar_field=True)
    save_scores_json(out_dir / "scores.json", scored_sphere, position)
    if config.get("output", {}).get("save_grid", False):
        save_quality_grid(out_dir / "quality_grid.npy", grid)
    stage = _enter(PipelineStage.EXPORTED)

    # -----------------------------
    # VISUALIZE
    # -----------------------------
    _visualize(config, geometry, scored_sphere, grid, observers)

    return PipelineResult(
        stage=stage,
        observers=observers,
        position=position,
        accumulator=accumulator,
        grid=grid,
        scored_sphere=scored_sphere,
        output_dir=out_dir,
    )


def _visualize(config, geometry, scored_sphere, grid, observers) -> None:
    viz_cfg = config.get("visualization", {})
    if not viz_cfg.get("enable", False):
        logging.info("[SYSTEM] Visualization skipped")
        return

    from reconguide.visualization.visualize import plot_quality_grid, plot_scored_sphere

    output_html: Optional[str] = viz_cfg.get("output_html")
    show = bool(viz_cfg.get("show", False))
    grid_html = None
    if output_html:
        grid_html = str(Path(output_html).with_name(Path(output_html).stem + "_grid.html"))

    logging.info("[SYSTEM] Visualizing scored candidate sphere...")
    plot_scored_sphere(geometry.proxy_mesh, scored_sphere, observers,
                       output_html=output_html, show=show)
    plot_quality_grid(grid, output_html=grid_html, show=show)
