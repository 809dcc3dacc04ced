import unittest
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from reconguide.viewpoints.atomics import (
    ZERO_QUALITY,
    AtomicUInt32Array,
    atomic_max,
    decode_quality,
    encode_quality,
)


class TestQualityEncoding(unittest.TestCase):

    def test_round_trip_is_bit_exact(self):
        rng = np.random.default_rng(7)
        values = np.concatenate([
            np.array([0.0, 1e-45, 1e-38, 0.5, 1.0, 3.4e38, np.inf], dtype=np.float32),
            rng.uniform(0.0, 1e6, size=1000).astype(np.float32),
        ])
        decoded = decode_quality(encode_quality(values))
        self.assertEqual(decoded.dtype, np.float32)
        np.testing.assert_array_equal(decoded.view(np.uint32), values.view(np.uint32))

    def test_encoding_preserves_order(self):
        values = np.array([-np.inf, -2.5, -1e-30, 0.0, 1e-40, 0.25, 7.0, np.inf], dtype=np.float32)
        keys = encode_quality(values)
        self.assertTrue(np.all(np.diff(keys.astype(np.int64)) > 0))

    def test_zero_key_matches_encoded_zero(self):
        self.assertEqual(ZERO_QUALITY, encode_quality(np.float32(0.0))[()])
        self.assertEqual(decode_quality(ZERO_QUALITY)[()], 0.0)

    def test_nan_is_rejected(self):
        with self.assertRaises(ValueError):
            encode_quality([1.0, np.nan])


class TestAtomicUInt32Array(unittest.TestCase):

    def test_fetch_add_hands_out_successive_values(self):
        buf = AtomicUInt32Array(3)
        previous = buf.fetch_add([1, 0, 1, 1])
        np.testing.assert_array_equal(previous, [0, 0, 1, 2])
        np.testing.assert_array_equal(buf.load(), [1, 3, 0])

    def test_fetch_add_saturates_at_limit(self):
        buf = AtomicUInt32Array(1)
        previous = buf.fetch_add([0, 0, 0, 0], limit=2)
        np.testing.assert_array_equal(previous, [0, 1, 2, 2])
        self.assertEqual(buf.load()[0], 2)

    def test_compare_exchange_has_one_winner_per_slot(self):
        buf = AtomicUInt32Array(2, fill=5)
        swapped = buf.compare_exchange([0, 0, 1], [5, 5, 4], [7, 9, 1])
        np.testing.assert_array_equal(swapped, [True, False, False])
        np.testing.assert_array_equal(buf.load(), [7, 5])

    def test_atomic_max_with_duplicate_writers(self):
        buf = AtomicUInt32Array(3, fill=ZERO_QUALITY)
        atomic_max(buf, [0, 0, 1, 0], encode_quality([1.0, 3.0, 2.0, 0.5]))
        np.testing.assert_array_equal(decode_quality(buf.load()), [3.0, 2.0, 0.0])

    def test_atomic_max_never_lowers_a_slot(self):
        buf = AtomicUInt32Array(1, fill=ZERO_QUALITY)
        atomic_max(buf, [0], encode_quality([4.0]))
        atomic_max(buf, [0], encode_quality([1.0]))
        self.assertEqual(decode_quality(buf.load())[0], 4.0)

    def test_concurrent_updates_from_threads(self):
        buf = AtomicUInt32Array(1, fill=ZERO_QUALITY)
        counter = AtomicUInt32Array(1)
        values = np.linspace(0.0, 10.0, 64, dtype=np.float32)

        def work(value):
            atomic_max(buf, [0, 0], encode_quality([value, value / 2]))
            counter.fetch_add([0])

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(work, values))

        self.assertEqual(decode_quality(buf.load())[0], values.max())
        self.assertEqual(counter.load()[0], len(values))


if __name__ == "__main__":
    unittest.main()
