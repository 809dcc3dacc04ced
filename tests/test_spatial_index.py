import pickle
import unittest

import numpy as np

from reconguide.geometry.mesh_loader import Mesh
from reconguide.geometry.spatial_index import (
    EmptyGeometry,
    build_nn_index,
    build_ray_index,
)
from scene_helpers import make_icosphere, make_occluder


class TestNearestNeighborIndex(unittest.TestCase):

    def test_empty_points_raise(self):
        with self.assertRaises(EmptyGeometry):
            build_nn_index(np.zeros((0, 3)))

    def test_all_non_finite_points_raise(self):
        with self.assertRaises(EmptyGeometry):
            build_nn_index(np.full((2, 3), np.nan))

    def test_nearest_breaks_ties_by_input_order(self):
        points = np.array([[0.0, 5.0, 0.0], [1.0, 0.0, 0.0], [-1.0, 0.0, 0.0]])
        index = build_nn_index(points)
        dists, idx = index.nearest([[0.0, 0.0, 0.0]])
        self.assertEqual(idx[0], 1)
        self.assertAlmostEqual(dists[0], 1.0)

        index = build_nn_index(points[[0, 2, 1]])
        _, idx = index.nearest([[0.0, 0.0, 0.0]])
        self.assertEqual(idx[0], 1)

    def test_nearest_breaks_ties_among_many_equidistant_points(self):
        shell = np.array([
            [x, y, z]
            for x in range(-5, 6) for y in range(-5, 6) for z in range(-5, 6)
            if x * x + y * y + z * z == 25
        ], dtype=float)
        self.assertEqual(len(shell), 30)

        rng = np.random.default_rng(11)
        for _ in range(20):
            points = shell[rng.permutation(len(shell))]
            index = build_nn_index(np.vstack([points, [[9.0, 9.0, 9.0]]]))
            dists, idx = index.nearest([[0.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
            np.testing.assert_array_equal(idx, [0, 0])
            np.testing.assert_allclose(dists, [5.0, 5.0])

    def test_nearest_with_non_finite_query(self):
        index = build_nn_index(np.array([[0.0, 0.0, 0.0]]))
        dists, idx = index.nearest([[np.nan, 0.0, 0.0]])
        self.assertTrue(np.isinf(dists[0]))
        self.assertEqual(idx[0], -1)

    def test_radius_bound_is_inclusive_everywhere(self):
        points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
        index = build_nn_index(points)
        query = [[0.0, 0.0, 0.0]]

        _, scalar = index.knn(query, k=3, max_distance=1.0)
        _, per_query = index.knn(query, k=3, max_distance=[1.0])
        np.testing.assert_array_equal(scalar[0], [0, 1, -1])
        np.testing.assert_array_equal(per_query[0], [0, 1, -1])
        self.assertEqual(index.within_radius(query[0], 1.0), [0, 1])

    def test_non_finite_points_keep_their_numbering(self):
        points = np.array([[np.nan, 0.0, 0.0], [0.0, 0.0, 0.0], [3.0, 0.0, 0.0]])
        index = build_nn_index(points)
        self.assertEqual(len(index), 3)
        _, idx = index.nearest([[2.5, 0.0, 0.0], [0.1, 0.0, 0.0]])
        np.testing.assert_array_equal(idx, [2, 1])

    def test_knn_respects_per_query_radius(self):
        points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
        index = build_nn_index(points)
        dists, idx = index.knn([[0.0, 0.0, 0.0], [0.0, 0.0, 0.0]], k=3, max_distance=[1.5, 0.5])
        np.testing.assert_array_equal(idx[0], [0, 1, -1])
        np.testing.assert_array_equal(idx[1], [0, -1, -1])
        self.assertTrue(np.isinf(dists[1, 1]))

    def test_knn_caps_k_at_point_count(self):
        index = build_nn_index(np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]]))
        dists, idx = index.knn([[0.2, 0.0, 0.0]], k=5)
        self.assertEqual(idx.shape, (1, 2))
        np.testing.assert_array_equal(idx[0], [0, 1])

    def test_within_radius_is_sorted(self):
        points = np.array([[0.5, 0.0, 0.0], [5.0, 0.0, 0.0], [0.0, 0.2, 0.0]])
        index = build_nn_index(points)
        self.assertEqual(index.within_radius([0.0, 0.0, 0.0], 1.0), [0, 2])


class TestRayIntersectionIndex(unittest.TestCase):

    def setUp(self):
        triangle = Mesh(
            vertices=np.array([[-1.0, -1.0, 0.0], [1.0, -1.0, 0.0], [0.0, 1.0, 0.0]]),
            triangles=np.array([[0, 1, 2]], dtype=np.int32),
        )
        self.index = build_ray_index(triangle)

    def test_empty_mesh_raises(self):
        empty = Mesh(vertices=np.zeros((3, 3)), triangles=np.zeros((0, 3), dtype=np.int32))
        with self.assertRaises(EmptyGeometry):
            build_ray_index(empty)

    def test_hits_front_and_back_faces(self):
        origins = np.array([[0.0, 0.0, 1.0], [0.0, 0.0, -2.0]])
        directions = np.array([[0.0, 0.0, -1.0], [0.0, 0.0, 4.0]])
        t_hit, prim = self.index.cast(origins, directions)
        np.testing.assert_allclose(t_hit, [1.0, 2.0], atol=1e-5)
        np.testing.assert_array_equal(prim, [0, 0])

    def test_miss_and_degenerate_rays(self):
        origins = np.array([[5.0, 5.0, 1.0], [0.0, 0.0, 1.0], [np.nan, 0.0, 1.0]])
        directions = np.array([[0.0, 0.0, -1.0], [0.0, 0.0, 0.0], [0.0, 0.0, -1.0]])
        t_hit, prim = self.index.cast(origins, directions)
        self.assertTrue(np.all(np.isinf(t_hit)))
        np.testing.assert_array_equal(prim, [-1, -1, -1])

    def test_first_hit_distance_reports_nearest_surface(self):
        scene = build_ray_index(make_occluder(z=1.5))
        t_hit, target = scene.first_hit_distance([0.0, 0.0, 2.0], [[0.0, 0.0, 1.0], [3.0, 3.0, 1.0]])
        np.testing.assert_allclose(t_hit[0], 0.5, atol=1e-5)
        np.testing.assert_allclose(target, [1.0, np.sqrt(19.0)])
        self.assertTrue(np.isinf(t_hit[1]))

    def test_pickle_rebuilds_scene(self):
        index = build_ray_index(make_icosphere(subdivisions=1))
        restored = pickle.loads(pickle.dumps(index))
        self.assertEqual(restored.num_triangles, index.num_triangles)
        t_hit, _ = restored.cast([[0.1, 0.05, 3.0]], [[0.0, 0.0, -1.0]])
        self.assertTrue(1.9 < t_hit[0] < 2.5)


if __name__ == "__main__":
    unittest.main()
