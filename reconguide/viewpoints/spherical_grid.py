# reconguide/viewpoints/spherical_grid.py

"""
Equirectangular quality grid over viewing directions and the projector that
fills it.

Cell (row, col) covers elevation [row, row + 1) degrees measured from +Z and
azimuth [col, col + 1) degrees measured from +X towards +Y. Its direction is
taken at the cell centre.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from reconguide.viewpoints.camera import CameraIntrinsics, look_at_rotations

GRID_ROWS = 180
GRID_COLS = 360


def angles_to_directions(azimuth_deg, elevation_deg) -> np.ndarray:
    azimuth = np.radians(np.asarray(azimuth_deg, dtype=np.float64))
    elevation = np.radians(np.asarray(elevation_deg, dtype=np.float64))
    sin_el = np.sin(elevation)
    return np.stack(
        [sin_el * np.cos(azimuth), sin_el * np.sin(azimuth), np.cos(elevation)],
        axis=-1,
    )


def directions_to_angles(directions):
    """
    (azimuth, elevation) in degrees for unit directions of shape (N, 3).
    Azimuth is in [0, 360), elevation in [0, 180].
    """
    directions = np.asarray(directions, dtype=np.float64).reshape(-1, 3)
    elevation = np.degrees(np.arccos(np.clip(directions[:, 2], -1.0, 1.0)))
    azimuth = np.degrees(np.arctan2(directions[:, 1], directions[:, 0])) % 360.0
    return azimuth, elevation


def direction_to_cell(directions):
    """Row and column of the cell containing each direction."""
    azimuth, elevation = directions_to_angles(directions)
    rows = np.clip(np.floor(elevation).astype(np.int64), 0, GRID_ROWS - 1)
    cols = np.floor(azimuth).astype(np.int64) % GRID_COLS
    return rows, cols


def cell_directions() -> np.ndarray:
    """(GRID_ROWS, GRID_COLS, 3) unit directions through every cell centre."""
    elevation, azimuth = np.meshgrid(
        np.arange(GRID_ROWS) + 0.5, np.arange(GRID_COLS) + 0.5, indexing="ij"
    )
    return angles_to_directions(azimuth, elevation)


@dataclass
class SphericalQualityGrid:
    values: np.ndarray

    def __post_init__(self):
        if self.values.shape != (GRID_ROWS, GRID_COLS):
            raise ValueError(
                f"values must be of shape ({GRID_ROWS}, {GRID_COLS}), got {self.values.shape}"
            )

    @classmethod
    def zeros(cls) -> "SphericalQualityGrid":
        return cls(values=np.zeros((GRID_ROWS, GRID_COLS), dtype=np.float32))

    def __getitem__(self, cell):
        return self.values[cell]


# -----------------------------
# Aggregation policies
# -----------------------------
# Each policy maps the k neighbours of every cell to one value:
#   quality, confidence, distances, valid -> (cells,) array
# Entries where valid is False must not contribute.

def aggregate_max(quality, confidence, distances, valid):
    return np.where(valid, quality, 0.0).max(axis=1)


def _weighted_mean(quality, weights, valid):
    weights = np.where(valid, weights, 0.0)
    total = weights.sum(axis=1)
    weighted = (weights * np.where(valid, quality, 0.0)).sum(axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        return np.where(total > 0.0, weighted / total, 0.0)


def aggregate_confidence_weighted(quality, confidence, distances, valid):
    return _weighted_mean(quality, confidence.astype(np.float64), valid)


def aggregate_distance_weighted(quality, confidence, distances, valid):
    with np.errstate(divide="ignore"):
        weights = 1.0 / np.maximum(distances, 1e-6)
    return _weighted_mean(quality, weights, valid)


AGGREGATIONS = {
    "max": aggregate_max,
    "confidence_weighted": aggregate_confidence_weighted,
    "distance_weighted": aggregate_distance_weighted,
}


def get_aggregation(name):
    if callable(name):
        return name
    if name not in AGGREGATIONS:
        raise ValueError(
            f"Unknown aggregation '{name}', expected one of {sorted(AGGREGATIONS)}"
        )
    return AGGREGATIONS[name]


class SphericalQualityProjector:
    """
    Rasterises per-point evidence into a SphericalQualityGrid as seen from
    one simulated camera position.

    For every cell the camera is turned towards the cell direction and its
    principal ray is cast against the proxy mesh. The surface points around
    the hit, within the camera's footprint and facing the camera, are
    combined by the aggregation policy. Cells without a hit or without
    contributing points stay at zero.
    """

    def __init__(
        self,
        nn_index,
        ray_index,
        cloud,
        accumulator,
        camera: CameraIntrinsics = CameraIntrinsics(),
        k_neighbors: int = 16,
        aggregation="distance_weighted",
        max_workers=None,
        rows_per_block: int = 10,
    ):
        if k_neighbors < 1:
            raise ValueError(f"k_neighbors must be positive, got {k_neighbors}")
        self.nn_index = nn_index
        self.ray_index = ray_index
        self.cloud = cloud
        self.accumulator = accumulator
        self.camera = camera
        self.k_neighbors = int(k_neighbors)
        self.aggregate = get_aggregation(aggregation)
        self.max_workers = max_workers
        self.rows_per_block = max(1, int(rows_per_block))

    def _project_rows(self, position, directions, quality, confidence):
        num_rows = directions.shape[0]
        directions = directions.reshape(-1, 3)
        values = np.zeros(directions.shape[0], dtype=np.float64)

        rotations = look_at_rotations(directions)
        principal_ray = self.camera.unproject(self.camera.principal_point)[0]
        rays = np.einsum("nij,j->ni", rotations, principal_ray)

        origins = np.broadcast_to(position, rays.shape)
        t_hit, _ = self.ray_index.cast(origins, rays)
        hit = np.flatnonzero(np.isfinite(t_hit))

        if hit.size:
            centres = position + rays[hit] * t_hit[hit, np.newaxis]
            radii = t_hit[hit] * np.tan(self.camera.half_fov)
            distances, neighbours = self.nn_index.knn(centres, self.k_neighbors, radii)

            valid = neighbours >= 0
            safe = np.where(valid, neighbours, 0)
            facing = np.einsum("nkj,nj->nk", self.cloud.normals[safe], -rays[hit]) > 0.0
            valid &= facing

            values[hit] = self.aggregate(quality[safe], confidence[safe], distances, valid)

        values = np.nan_to_num(values, nan=0.0, posinf=0.0, neginf=0.0)
        return np.maximum(values, 0.0).astype(np.float32).reshape(num_rows, GRID_COLS)

    def project(self, position) -> SphericalQualityGrid:
        position = np.asarray(position, dtype=np.float64).reshape(3)
        grid = SphericalQualityGrid.zeros()
        if not np.all(np.isfinite(position)):
            logging.warning(f"[Projection] Non-finite position {position}, returning an empty grid")
            return grid

        directions = cell_directions()
        quality = self.accumulator.quality().astype(np.float64)
        confidence = self.accumulator.confidence()

        def run_block(start):
            stop = min(start + self.rows_per_block, GRID_ROWS)
            grid.values[start:stop] = self._project_rows(
                position, directions[start:stop], quality, confidence
            )

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for future in [pool.submit(run_block, start)
                           for start in range(0, GRID_ROWS, self.rows_per_block)]:
                future.result()

        covered = int(np.count_nonzero(grid.values))
        logging.info(
            f"[Projection] Quality grid projected from {position}: "
            f"{covered}/{grid.values.size} cells non-zero, "
            f"max {float(grid.values.max()):.3f}"
        )
        return grid
