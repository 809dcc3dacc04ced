# reconguide/viewpoints/scoring.py

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import numpy as np

from reconguide.geometry.mesh_loader import Mesh
from reconguide.viewpoints.atomics import decode_quality, encode_quality
from reconguide.viewpoints.spherical_grid import (
    GRID_COLS,
    GRID_ROWS,
    SphericalQualityGrid,
    direction_to_cell,
    directions_to_angles,
)

INTERPOLATIONS = ("bilinear", "nearest")


def sample_nearest(grid: SphericalQualityGrid, directions: np.ndarray) -> np.ndarray:
    rows, cols = direction_to_cell(directions)
    return grid.values[rows, cols]


def sample_bilinear(grid: SphericalQualityGrid, directions: np.ndarray) -> np.ndarray:
    """
    Bilinear lookup between cell centres. Azimuth wraps around, elevation is
    clamped at the poles.
    """
    azimuth, elevation = directions_to_angles(directions)
    x = azimuth - 0.5
    y = np.clip(elevation - 0.5, 0.0, GRID_ROWS - 1.0)

    x0 = np.floor(x)
    y0 = np.floor(y)
    wx = x - x0
    wy = y - y0

    c0 = x0.astype(np.int64) % GRID_COLS
    c1 = (c0 + 1) % GRID_COLS
    r0 = y0.astype(np.int64)
    r1 = np.minimum(r0 + 1, GRID_ROWS - 1)

    v = grid.values.astype(np.float64)
    top = (1.0 - wx) * v[r0, c0] + wx * v[r0, c1]
    bottom = (1.0 - wx) * v[r1, c0] + wx * v[r1, c1]
    return ((1.0 - wy) * top + wy * bottom).astype(np.float32)


class ViewpointScorer:
    """
    Scores every vertex of a candidate-viewpoint sphere from a quality grid.

    The direction of a vertex is taken from the sphere centre. Each vertex
    owns one encoded output slot; ``finalize`` decodes the slots into the
    mesh's scalar field.
    """

    def __init__(self, grid: SphericalQualityGrid, interpolation: str = "bilinear",
                 max_workers: Optional[int] = None, chunk_size: int = 65536):
        if interpolation not in INTERPOLATIONS:
            raise ValueError(
                f"Unknown interpolation '{interpolation}', expected one of {INTERPOLATIONS}"
            )
        self.grid = grid
        self.interpolation = interpolation
        self.max_workers = max_workers
        self.chunk_size = max(1, int(chunk_size))

    def _score_chunk(self, directions: np.ndarray) -> np.ndarray:
        lengths = np.linalg.norm(directions, axis=1)
        usable = np.isfinite(lengths) & (lengths > 0.0)

        values = np.zeros(directions.shape[0], dtype=np.float32)
        if np.any(usable):
            unit = directions[usable] / lengths[usable, np.newaxis]
            if self.interpolation == "nearest":
                values[usable] = sample_nearest(self.grid, unit)
            else:
                values[usable] = sample_bilinear(self.grid, unit)

        values = np.nan_to_num(values, nan=0.0, posinf=0.0, neginf=0.0)
        return encode_quality(np.maximum(values, 0.0))

    def score(self, sphere: Mesh) -> np.ndarray:
        """
        Encoded score slot for every vertex of ``sphere``.

        Returns
        -------
        np.ndarray
            (N,) uint32, one slot per vertex.
        """
        directions = sphere.vertices - sphere.center
        slots = np.empty(directions.shape[0], dtype=np.uint32)

        def run_chunk(start):
            stop = min(start + self.chunk_size, directions.shape[0])
            slots[start:stop] = self._score_chunk(directions[start:stop])

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for future in [pool.submit(run_chunk, start)
                           for start in range(0, directions.shape[0], self.chunk_size)]:
                future.result()

        logging.info(
            f"[Scoring] Scored {directions.shape[0]} candidate viewpoints "
            f"({self.interpolation} lookup)."
        )
        return slots

    @staticmethod
    def finalize(sphere: Mesh, slots: np.ndarray, position) -> Mesh:
        """
        Decode the score slots into the sphere's scalar field and move the
        sphere so that its centre sits at ``position``.
        """
        scores = decode_quality(slots).astype(np.float32)
        offset = np.asarray(position, dtype=np.float64) - sphere.center
        scored = sphere.translated(offset).with_values(scores)

        if scores.size:
            logging.info(
                f"[Scoring] Scores in [{float(scores.min()):.3f}, "
                f"{float(scores.max()):.3f}], sphere placed at {position}"
            )
        else:
            logging.warning("[Scoring] Candidate sphere has no vertices")
        return scored
