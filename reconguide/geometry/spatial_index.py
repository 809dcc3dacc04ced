# reconguide/geometry/spatial_index.py

"""
Read-only spatial indices shared by every evaluation stage.

- NearestNeighborIndex: exact nearest / bounded k-NN / radius queries over a
  point set (scipy cKDTree).
- RayIntersectionIndex: nearest ray/triangle hit over a triangle mesh
  (Open3D tensor RaycastingScene, Embree backend, no back-face culling).

Both are built once and never mutated afterwards, so they can be queried
from any number of worker threads without synchronisation.
"""

import logging

import numpy as np
import open3d as o3d
from scipy.spatial import cKDTree

from reconguide.geometry.mesh_loader import Mesh


class EmptyGeometry(ValueError):
    """An index was requested over zero points or zero triangles."""


INVALID_PRIMITIVE = -1


def _as_points(points, name="points") -> np.ndarray:
    points = np.asarray(points, dtype=np.float64)
    if points.ndim == 1 and points.shape[0] == 3:
        points = points.reshape(1, 3)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"{name} must be of shape (N, 3), got {points.shape}")
    return points


class NearestNeighborIndex:
    """
    KD-tree over a 3-D point set.

    Non-finite input points are left out of the tree but keep their slot in
    the input numbering, so every index returned refers to the original
    ordering. Missing neighbours are reported as index -1 / distance inf.
    """

    # relative slack when gathering tie candidates, exact distances decide
    TIE_TOLERANCE = 1e-9

    def __init__(self, points: np.ndarray):
        points = _as_points(points)
        finite = np.all(np.isfinite(points), axis=1)
        self._index_map = np.flatnonzero(finite)
        if self._index_map.size == 0:
            raise EmptyGeometry("Cannot build a nearest-neighbor index over zero finite points")

        self._num_points = points.shape[0]
        self._tree = cKDTree(points[finite])

    def __len__(self):
        return self._num_points

    def _query(self, queries: np.ndarray, k: int, upper_bound: float):
        queries = _as_points(queries, "queries")
        num_queries = queries.shape[0]
        k = int(min(k, self._index_map.size))

        dists = np.full((num_queries, k), np.inf)
        idx = np.full((num_queries, k), INVALID_PRIMITIVE, dtype=np.int64)

        valid = np.all(np.isfinite(queries), axis=1)
        if not np.any(valid):
            return dists, idx

        d, i = self._tree.query(queries[valid], k=k, distance_upper_bound=upper_bound)
        d = np.asarray(d).reshape(-1, k)
        i = np.asarray(i).reshape(-1, k)

        found = i < self._index_map.size
        mapped = np.full(i.shape, INVALID_PRIMITIVE, dtype=np.int64)
        mapped[found] = self._index_map[i[found]]

        dists[valid] = np.where(found, d, np.inf)
        idx[valid] = mapped
        return dists, idx

    def nearest(self, queries: np.ndarray):
        """
        Exact nearest point for every query.

        Returns
        -------
        distances : (Q,) float64
        indices : (Q,) int64, lowest input index among equidistant points
        """
        queries = _as_points(queries, "queries")
        dists, idx = self._query(queries, 1, np.inf)
        best = dists[:, 0].copy()
        choice = idx[:, 0].copy()

        points = self._tree.data
        for q in np.flatnonzero(np.isfinite(best)):
            # every point at the best distance, ties go to the lowest input index
            hits = np.asarray(
                self._tree.query_ball_point(queries[q], r=best[q] * (1.0 + self.TIE_TOLERANCE)),
                dtype=np.intp,
            )
            sq = np.sum((points[hits] - queries[q]) ** 2, axis=1)
            tied = hits[sq == sq.min()]
            choice[q] = self._index_map[tied].min()

        return best, choice

    def knn(self, queries: np.ndarray, k: int, max_distance=np.inf):
        """
        Up to ``k`` neighbours per query, sorted by distance.

        ``max_distance`` is either a scalar or one radius per query; neighbours
        farther away are reported as missing. Points exactly at the radius
        count as inside, as in ``within_radius``.
        """
        if k < 1:
            raise ValueError(f"k must be positive, got {k}")

        radii = np.asarray(max_distance, dtype=np.float64)
        if radii.size and np.all(np.isfinite(radii)):
            # cKDTree's bound is strict
            upper_bound = float(np.nextafter(radii.max(), np.inf))
        else:
            upper_bound = np.inf
        dists, idx = self._query(queries, k, upper_bound)

        radii = np.broadcast_to(radii, dists.shape[:1])
        outside = dists > radii[:, np.newaxis]
        dists[outside] = np.inf
        idx[outside] = INVALID_PRIMITIVE
        return dists, idx

    def within_radius(self, query: np.ndarray, radius: float) -> list:
        """Input indices of all points within ``radius`` of a single query, ascending."""
        query = _as_points(query, "query")[0]
        if not np.all(np.isfinite(query)):
            return []
        hits = self._tree.query_ball_point(query, r=radius)
        return sorted(int(i) for i in self._index_map[hits])


class RayIntersectionIndex:
    """
    Nearest-hit ray casting over a triangle mesh.

    The index pickles as its raw vertex and triangle arrays and rebuilds the
    Embree scene when unpickled.
    """

    def __init__(self, vertices: np.ndarray, triangles: np.ndarray):
        self._vertices = np.ascontiguousarray(vertices, dtype=np.float32)
        self._triangles = np.ascontiguousarray(triangles, dtype=np.uint32)

        self._scene = o3d.t.geometry.RaycastingScene()
        self._scene.add_triangles(
            o3d.core.Tensor(self._vertices),
            o3d.core.Tensor(self._triangles),
        )
        # the BVH is committed on first use, do it now rather than inside a worker
        warmup = np.array([[0.0, 0.0, 0.0, 0.0, 0.0, 1.0]], dtype=np.float32)
        self._scene.cast_rays(o3d.core.Tensor(warmup))

    def __getstate__(self):
        return {"vertices": self._vertices, "triangles": self._triangles}

    def __setstate__(self, state):
        self.__init__(state["vertices"], state["triangles"])

    @property
    def num_triangles(self) -> int:
        return int(self._triangles.shape[0])

    def cast(self, origins: np.ndarray, directions: np.ndarray):
        """
        Cast rays and report the nearest hit, front- or back-facing.

        Directions are normalised, so ``t_hit`` is a distance. Rays with a
        non-finite or zero-length component report a miss.

        Returns
        -------
        t_hit : (R,) float64, inf on miss
        primitive_ids : (R,) int64, -1 on miss
        """
        origins = _as_points(origins, "origins")
        directions = _as_points(directions, "directions")
        if origins.shape != directions.shape:
            raise ValueError(
                f"origins and directions must have the same shape, "
                f"got {origins.shape} and {directions.shape}"
            )

        num_rays = origins.shape[0]
        t_hit = np.full(num_rays, np.inf)
        prim_ids = np.full(num_rays, INVALID_PRIMITIVE, dtype=np.int64)

        with np.errstate(invalid="ignore", divide="ignore"):
            lengths = np.linalg.norm(directions, axis=1)
            unit = directions / lengths[:, np.newaxis]
        valid = (
            np.all(np.isfinite(origins), axis=1)
            & np.all(np.isfinite(unit), axis=1)
            & (lengths > 0.0)
        )
        if not np.any(valid):
            return t_hit, prim_ids

        rays = np.hstack([origins[valid], unit[valid]]).astype(np.float32)
        results = self._scene.cast_rays(o3d.core.Tensor(rays))

        hits = results["t_hit"].numpy().astype(np.float64)
        ids = results["primitive_ids"].numpy().astype(np.int64)
        ids[~np.isfinite(hits)] = INVALID_PRIMITIVE

        t_hit[valid] = hits
        prim_ids[valid] = ids
        return t_hit, prim_ids

    def first_hit_distance(self, origins: np.ndarray, targets: np.ndarray):
        """
        Distance to the first surface along each origin -> target segment.

        Returns
        -------
        t_hit : (R,) float64, inf when nothing is hit
        target_distance : (R,) float64
        """
        origins = _as_points(origins, "origins")
        targets = _as_points(targets, "targets")
        if origins.shape[0] == 1 and targets.shape[0] > 1:
            origins = np.broadcast_to(origins, targets.shape)

        offsets = targets - origins
        target_distance = np.linalg.norm(offsets, axis=1)
        t_hit, _ = self.cast(origins, offsets)
        return t_hit, target_distance


def build_nn_index(points) -> NearestNeighborIndex:
    points = np.asarray(points, dtype=np.float64)
    if points.size == 0:
        raise EmptyGeometry("Cannot build a nearest-neighbor index over zero points")

    index = NearestNeighborIndex(points)
    logging.info(f"[SpatialIndex] Nearest-neighbor index built over {len(index)} points.")
    return index


def build_ray_index(mesh: Mesh) -> RayIntersectionIndex:
    triangles = np.asarray(mesh.triangles)
    if triangles.size == 0 or len(mesh.vertices) == 0:
        raise EmptyGeometry("Cannot build a ray-intersection index over zero triangles")

    index = RayIntersectionIndex(mesh.vertices, triangles)
    logging.info(f"[SpatialIndex] Raycasting scene built over {index.num_triangles} triangles.")
    return index
