# reconguide/viewpoints/accumulator.py

import logging

import numpy as np

from reconguide.viewpoints.atomics import (
    ZERO_QUALITY,
    AtomicUInt32Array,
    atomic_max,
    decode_quality,
    encode_quality,
)

DEFAULT_MAX_VIEWS = 32


class PerPointAccumulator:
    """
    Per-point observation evidence, laid out as a struct of arrays.

    For point i:
      - directions[i, :view_count[i]] are the recorded viewing directions,
        weights[i, :view_count[i]] their weights; at most ``max_views`` are
        kept and later observations are dropped.
      - confidence[i] counts the accepted observations.
      - quality[i] holds the encoded running maximum of observation quality.

    All counters only grow. Updates go through atomic buffers so several
    workers may record observations of the same point concurrently.
    """

    def __init__(self, num_points: int, max_views: int = DEFAULT_MAX_VIEWS):
        if num_points < 0:
            raise ValueError(f"num_points must be non-negative, got {num_points}")
        if max_views < 1:
            raise ValueError(f"max_views must be positive, got {max_views}")

        self.num_points = int(num_points)
        self.max_views = int(max_views)

        self.directions = np.zeros((self.num_points, self.max_views, 3), dtype=np.float32)
        self.weights = np.zeros((self.num_points, self.max_views), dtype=np.float32)

        self._view_counts = AtomicUInt32Array(self.num_points)
        self._confidence = AtomicUInt32Array(self.num_points)
        self._quality = AtomicUInt32Array(self.num_points, fill=ZERO_QUALITY)
        self._dropped = AtomicUInt32Array(1)

    def __len__(self):
        return self.num_points

    def record(self, indices, directions, qualities) -> None:
        """
        Record one accepted observation per entry.

        Parameters
        ----------
        indices : (M,) int array
            Observed point indices, duplicates allowed.
        directions : (M, 3) array
            Unit viewing directions, point -> observer.
        qualities : (M,) array
            Non-negative observation quality.
        """
        indices = np.asarray(indices, dtype=np.intp)
        if indices.size == 0:
            return
        directions = np.asarray(directions, dtype=np.float32).reshape(-1, 3)
        qualities = np.asarray(qualities, dtype=np.float32)

        self._confidence.fetch_add(indices, 1)

        slots = self._view_counts.fetch_add(indices, 1, limit=self.max_views)
        fits = slots < self.max_views
        self.directions[indices[fits], slots[fits]] = directions[fits]
        self.weights[indices[fits], slots[fits]] = 1.0
        if not np.all(fits):
            self._dropped.fetch_add([0], int(np.count_nonzero(~fits)))

        atomic_max(self._quality, indices, encode_quality(np.maximum(qualities, 0.0)))

    def view_counts(self, indices=None) -> np.ndarray:
        return self._view_counts.load(indices).astype(np.int64)

    def confidence(self, indices=None) -> np.ndarray:
        return self._confidence.load(indices).astype(np.int64)

    def encoded_quality(self, indices=None) -> np.ndarray:
        return self._quality.load(indices)

    def quality(self, indices=None) -> np.ndarray:
        """Decoded float32 quality of every (or the indexed) point."""
        return decode_quality(self._quality.load(indices))

    @property
    def dropped_observations(self) -> int:
        return int(self._dropped.load()[0])

    def snapshot(self):
        """Copy of the recorded directions and view counts."""
        return self.directions.copy(), self.view_counts()

    def log_summary(self) -> None:
        confidence = self.confidence()
        observed = int(np.count_nonzero(confidence))
        logging.info(
            f"[Accumulator] {observed}/{self.num_points} points observed, "
            f"{int(confidence.sum())} observations, "
            f"max quality {float(self.quality().max(initial=0.0)):.3f}, "
            f"{self.dropped_observations} directions dropped (capacity {self.max_views})."
        )
