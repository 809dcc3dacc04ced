import json
import os
import logging

import numpy as np
import trimesh


def _ensure_parent(filename):
    parent = os.path.dirname(str(filename))
    if parent:
        os.makedirs(parent, exist_ok=True)


def save_mesh(mesh, filename, write_scalar_field=True):
    """
    Write a Mesh as PLY. With write_scalar_field the per-vertex score is
    stored as a float 'values' vertex property next to the geometry.
    """
    _ensure_parent(filename)
    tm = trimesh.Trimesh(vertices=mesh.vertices, faces=mesh.triangles, process=False)
    if write_scalar_field:
        if mesh.values is None:
            raise ValueError("Mesh has no scalar field to write")
        tm.vertex_attributes["values"] = np.asarray(mesh.values, dtype=np.float32)
    tm.export(str(filename), file_type="ply")
    logging.info(f"[Export] Saved mesh with {len(mesh.vertices)} vertices to {filename}")


def save_scores_json(filename, sphere, position):
    """Scores, vertex positions and the observer position for the trajectory planner."""
    _ensure_parent(filename)
    data = {
        "position": np.asarray(position, dtype=float).tolist(),
        "viewpoints": np.asarray(sphere.vertices, dtype=float).tolist(),
        "scores": np.asarray(sphere.values, dtype=float).tolist(),
    }
    with open(filename, "w") as f:
        json.dump(data, f, indent=2)
    logging.info(f"[Export] Saved {len(data['scores'])} viewpoint scores to {filename}")


def save_quality_grid(filename, grid):
    _ensure_parent(filename)
    np.save(filename, grid.values)
    logging.info(f"[Export] Saved quality grid {grid.values.shape} to {filename}")
