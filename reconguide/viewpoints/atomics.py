# reconguide/viewpoints/atomics.py

"""
Atomic integer buffers and the float <-> uint32 quality encoding.

Worker threads only get atomic integer operations on shared accumulators,
so floating-point quality values are stored through an order-preserving
bijection onto uint32: comparing two encoded values gives the same answer as
comparing the floats they encode, and a running maximum can be kept with a
compare-and-swap loop over the integers.
"""

import threading

import numpy as np

_SIGN_BIT = np.uint32(0x80000000)
_ALL_BITS = np.uint32(0xFFFFFFFF)


def encode_quality(values) -> np.ndarray:
    """
    Map float32 values onto uint32 keys with the same ordering.

    Non-negative floats get their sign bit set, negative floats have every
    bit flipped. NaN has no place in the ordering and is rejected.
    """
    values = np.asarray(values, dtype=np.float32)
    if np.any(np.isnan(values)):
        raise ValueError("Cannot encode NaN quality values")

    bits = values.view(np.uint32)
    negative = (bits & _SIGN_BIT) != 0
    return np.where(negative, bits ^ _ALL_BITS, bits | _SIGN_BIT).astype(np.uint32)


def decode_quality(keys) -> np.ndarray:
    """Inverse of encode_quality, bit-exact."""
    keys = np.asarray(keys, dtype=np.uint32)
    positive = (keys & _SIGN_BIT) != 0
    bits = np.where(positive, keys ^ _SIGN_BIT, keys ^ _ALL_BITS).astype(np.uint32)
    return bits.view(np.float32)


ZERO_QUALITY = encode_quality(np.float32(0.0))[()]


class AtomicUInt32Array:
    """
    Shared uint32 buffer with batched atomic operations.

    Every call is linearisable: the batch is applied under the buffer's lock,
    which plays the role of the device's atomic unit. Within one batch,
    duplicated indices behave like independent threads racing on one slot.
    """

    def __init__(self, size: int, fill: int = 0):
        self._data = np.full(int(size), fill, dtype=np.uint32)
        self._lock = threading.Lock()

    def __len__(self):
        return self._data.shape[0]

    def load(self, indices=None) -> np.ndarray:
        with self._lock:
            if indices is None:
                return self._data.copy()
            return self._data[np.asarray(indices, dtype=np.intp)]

    def compare_exchange(self, indices, expected, desired) -> np.ndarray:
        """
        For each i, store desired[i] at indices[i] if the slot still holds
        expected[i]. At most one entry per slot can win a batch.

        Returns a boolean mask of the entries that swapped.
        """
        indices = np.asarray(indices, dtype=np.intp)
        expected = np.asarray(expected, dtype=np.uint32)
        desired = np.asarray(desired, dtype=np.uint32)

        _, first = np.unique(indices, return_index=True)
        first_writer = np.zeros(indices.shape[0], dtype=bool)
        first_writer[first] = True

        with self._lock:
            swapped = (self._data[indices] == expected) & first_writer
            self._data[indices[swapped]] = desired[swapped]
        return swapped

    def fetch_add(self, indices, amount: int = 1, limit=None) -> np.ndarray:
        """
        Atomically add ``amount`` to each indexed slot and return the value
        each entry observed before its own addition. Duplicated indices see
        successive values. With ``limit`` the slot saturates at that value.
        """
        indices = np.asarray(indices, dtype=np.intp)
        if indices.size == 0:
            return np.zeros(0, dtype=np.int64)

        order = np.argsort(indices, kind="stable")
        sorted_idx = indices[order]
        group_start = np.r_[True, sorted_idx[1:] != sorted_idx[:-1]]
        positions = np.arange(sorted_idx.shape[0])
        rank = positions - np.maximum.accumulate(np.where(group_start, positions, 0))
        slots, counts = np.unique(sorted_idx, return_counts=True)

        with self._lock:
            observed = self._data[sorted_idx].astype(np.int64) + rank * amount
            updated = self._data[slots].astype(np.int64) + counts * amount
            if limit is not None:
                observed = np.minimum(observed, limit)
                updated = np.minimum(updated, limit)
            self._data[slots] = updated.astype(np.uint32)

        previous = np.empty_like(observed)
        previous[order] = observed
        return previous


def atomic_max(buffer: AtomicUInt32Array, indices, keys) -> int:
    """
    Raise each indexed slot to at least the given key with a CAS retry loop.

    Returns the number of CAS rounds, mostly useful for diagnostics.
    """
    indices = np.asarray(indices, dtype=np.intp)
    keys = np.asarray(keys, dtype=np.uint32)
    pending = np.ones(indices.shape[0], dtype=bool)
    rounds = 0

    while np.any(pending):
        rounds += 1
        todo = np.flatnonzero(pending)
        current = buffer.load(indices[todo])

        # slot already holds a value at least as large, nothing to write
        satisfied = keys[todo] <= current
        pending[todo[satisfied]] = False

        todo = todo[~satisfied]
        if todo.size == 0:
            break
        swapped = buffer.compare_exchange(indices[todo], current[~satisfied], keys[todo])
        pending[todo[swapped]] = False

    return rounds
