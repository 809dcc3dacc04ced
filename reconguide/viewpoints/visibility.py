""" decides which proxy points each observer sees and folds that into the accumulator """

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from reconguide.viewpoints.reconstructability import observation_quality

DEFAULT_EPSILON = 0.01
DEFAULT_CHUNK_SIZE = 65536


class VisibilityAccumulator:
    def __init__(self, ray_index, accumulator, epsilon=DEFAULT_EPSILON,
                 max_workers=None, chunk_size=DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.ray_index = ray_index
        self.accumulator = accumulator
        self.epsilon = float(epsilon)
        self.max_workers = max_workers
        self.chunk_size = int(chunk_size)

    def visible_mask(self, points, normals, observer):
        """
        Orientation and occlusion test of every point against one observer.

        A point is accepted when its normal faces the observer and no surface
        is hit more than ``epsilon`` in front of it along the line of sight.
        Points, normals or observers with non-finite values are rejected.

        Returns
        -------
        accepted : (N,) bool
        directions : (N, 3) unit directions point -> observer
        incidence : (N,) cosine between normal and direction
        """
        points = np.asarray(points, dtype=np.float64)
        normals = np.asarray(normals, dtype=np.float64)
        observer = np.asarray(observer, dtype=np.float64).reshape(3)

        offsets = observer[np.newaxis, :] - points
        dists = np.linalg.norm(offsets, axis=1)
        with np.errstate(invalid="ignore", divide="ignore"):
            directions = offsets / dists[:, np.newaxis]
            incidence = np.einsum("ij,ij->i", normals, directions)

        finite = (
            np.all(np.isfinite(points), axis=1)
            & np.all(np.isfinite(normals), axis=1)
            & bool(np.all(np.isfinite(observer)))
            & (dists > 0.0)
        )
        accepted = finite & (incidence > 0.0)

        front = np.flatnonzero(accepted)
        if front.size:
            t_hit, target_distance = self.ray_index.first_hit_distance(observer, points[front])
            occluded = t_hit < target_distance - self.epsilon
            accepted[front[occluded]] = False

        return accepted, directions, incidence

    def _accumulate_chunk(self, cloud, observer, start, stop, prior_directions, prior_counts):
        accepted, directions, incidence = self.visible_mask(
            cloud.points[start:stop], cloud.normals[start:stop], observer
        )
        local = np.flatnonzero(accepted)
        if local.size == 0:
            return 0

        indices = start + local
        quality = observation_quality(
            incidence[local],
            directions[local],
            prior_directions[indices],
            prior_counts[indices],
        )
        self.accumulator.record(indices, directions[local], quality)
        return int(local.size)

    def accumulate(self, cloud, observers):
        """
        One accumulation pass: every observer against every point.

        Work items are (observer, point chunk) pairs run on a thread pool; the
        call returns once all of them have completed. Observation quality is
        measured against the directions recorded before the pass started.

        Returns the number of accepted observations.
        """
        observers = np.asarray(observers, dtype=np.float64).reshape(-1, 3)
        num_points = len(cloud)
        prior_directions, prior_counts = self.accumulator.snapshot()

        work = [
            (observer, start, min(start + self.chunk_size, num_points))
            for observer in observers
            for start in range(0, num_points, self.chunk_size)
        ]

        accepted = 0
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [
                pool.submit(self._accumulate_chunk, cloud, observer, start, stop,
                            prior_directions, prior_counts)
                for observer, start, stop in work
            ]
            for idx, future in enumerate(futures):
                accepted += future.result()
                if idx % 50 == 0:
                    logging.info(f"[Visibility] Processed work item {idx}/{len(futures)}")

        logging.info(
            f"[Visibility] Accumulation pass done: {len(observers)} observers, "
            f"{num_points} points, {accepted} accepted observations."
        )
        return accepted
