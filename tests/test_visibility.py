import unittest

import numpy as np

from reconguide.geometry.mesh_loader import PointCloud
from reconguide.geometry.spatial_index import build_ray_index
from reconguide.viewpoints.accumulator import PerPointAccumulator
from reconguide.viewpoints.reconstructability import observation_quality, pair_heuristic
from reconguide.viewpoints.visibility import VisibilityAccumulator
from scene_helpers import make_icosphere, make_occluder, merge_meshes, pole_cloud, sphere_cloud

ABOVE_POLE = np.array([0.0, 0.0, 2.0])


def accumulate(mesh, cloud, observers, max_views=32, **kwargs):
    accumulator = PerPointAccumulator(len(cloud), max_views=max_views)
    visibility = VisibilityAccumulator(build_ray_index(mesh), accumulator, **kwargs)
    visibility.accumulate(cloud, observers)
    return accumulator, visibility


class TestEndToEndScenarios(unittest.TestCase):

    def setUp(self):
        self.sphere = make_icosphere(subdivisions=2)

    def test_pole_point_seen_from_above(self):
        accumulator, _ = accumulate(self.sphere, pole_cloud(), [ABOVE_POLE])
        self.assertEqual(accumulator.confidence()[0], 1)
        self.assertAlmostEqual(float(accumulator.quality()[0]), 1.0, places=5)
        self.assertEqual(accumulator.view_counts()[0], 1)
        np.testing.assert_allclose(accumulator.directions[0, 0], [0.0, 0.0, 1.0], atol=1e-6)
        self.assertEqual(accumulator.weights[0, 0], 1.0)

    def test_occluding_triangle_blocks_observation(self):
        scene = merge_meshes(self.sphere, make_occluder(z=1.5))
        accumulator, _ = accumulate(scene, pole_cloud(), [ABOVE_POLE])
        self.assertEqual(accumulator.confidence()[0], 0)
        self.assertEqual(accumulator.quality()[0], 0.0)
        self.assertEqual(accumulator.view_counts()[0], 0)

    def test_back_facing_point_is_rejected(self):
        for mesh in (self.sphere, merge_meshes(self.sphere, make_occluder(z=1.5))):
            accumulator, _ = accumulate(mesh, pole_cloud(normal=(0.0, 0.0, -1.0)), [ABOVE_POLE])
            self.assertEqual(accumulator.confidence()[0], 0)
            self.assertEqual(accumulator.quality()[0], 0.0)

    def test_grazing_normal_is_rejected(self):
        accumulator, _ = accumulate(self.sphere, pole_cloud(normal=(1.0, 0.0, 0.0)), [ABOVE_POLE])
        self.assertEqual(accumulator.confidence()[0], 0)


class TestAccumulationPass(unittest.TestCase):

    def setUp(self):
        self.sphere = make_icosphere(subdivisions=2)
        self.cloud = sphere_cloud(self.sphere)
        self.observer = np.array([0.3, -0.2, 3.0])

    def test_confidence_increases_exactly_for_accepted_points(self):
        accumulator, visibility = accumulate(self.sphere, self.cloud, [self.observer], chunk_size=17)
        accepted, _, _ = visibility.visible_mask(self.cloud.points, self.cloud.normals, self.observer)

        self.assertTrue(np.any(accepted))
        self.assertTrue(np.any(~accepted))
        np.testing.assert_array_equal(accumulator.confidence(), accepted.astype(np.int64))
        self.assertTrue(np.all(accumulator.quality()[accepted] > 0.0))
        self.assertTrue(np.all(accumulator.quality()[~accepted] == 0.0))

    def test_rerun_is_deterministic(self):
        first, _ = accumulate(self.sphere, self.cloud, [self.observer], max_workers=4, chunk_size=8)
        second, _ = accumulate(self.sphere, self.cloud, [self.observer], max_workers=1)
        np.testing.assert_array_equal(first.confidence(), second.confidence())
        np.testing.assert_array_equal(first.encoded_quality(), second.encoded_quality())
        np.testing.assert_array_equal(first.view_counts(), second.view_counts())

    def test_second_pass_only_grows_counters(self):
        accumulator, visibility = accumulate(self.sphere, self.cloud, [self.observer])
        confidence = accumulator.confidence()
        quality = accumulator.quality()

        visibility.accumulate(self.cloud, [np.array([-2.0, 1.0, 1.5])])
        self.assertTrue(np.all(accumulator.confidence() >= confidence))
        self.assertTrue(np.all(accumulator.quality() >= quality))

    def test_concurrent_observers_of_one_point(self):
        accumulator, _ = accumulate(
            self.sphere, pole_cloud(), [ABOVE_POLE] * 6, max_workers=6, chunk_size=1
        )
        self.assertEqual(accumulator.confidence()[0], 6)
        self.assertEqual(accumulator.view_counts()[0], 6)
        self.assertAlmostEqual(float(accumulator.quality()[0]), 1.0, places=5)

    def test_direction_list_overflow_is_dropped(self):
        observers = [ABOVE_POLE, [0.5, 0.0, 2.0], [0.0, 0.5, 2.0]]
        accumulator, _ = accumulate(self.sphere, pole_cloud(), observers, max_views=2)
        self.assertEqual(accumulator.confidence()[0], 3)
        self.assertEqual(accumulator.view_counts()[0], 2)
        self.assertEqual(accumulator.dropped_observations, 1)

    def test_non_finite_inputs_are_skipped(self):
        cloud = PointCloud(
            points=np.array([[np.nan, 0.0, 1.0], [0.0, 0.0, 1.0], [0.0, 0.0, 1.0]]),
            normals=np.array([[0.0, 0.0, 1.0], [0.0, 0.0, 1.0], [np.inf, 0.0, 0.0]]),
        )
        accumulator, visibility = accumulate(self.sphere, cloud, [ABOVE_POLE])
        np.testing.assert_array_equal(accumulator.confidence(), [0, 1, 0])

        visibility.accumulate(cloud, [[np.nan, 0.0, 2.0]])
        np.testing.assert_array_equal(accumulator.confidence(), [0, 1, 0])


class TestReconstructabilityHeuristic(unittest.TestCase):

    def test_pair_heuristic_shape(self):
        alpha = np.radians([0.0, 5.0, 15.0, 30.0, 45.0, 60.0])
        h = pair_heuristic(alpha)
        self.assertLess(h[0], 0.01)
        self.assertGreater(h[2], h[1])
        self.assertAlmostEqual(h[4], 0.0)
        self.assertEqual(h[5], 0.0)

    def test_quality_rewards_parallax(self):
        new_dir = np.array([[0.0, 0.0, 1.0]])
        prior = np.zeros((1, 4, 3))
        prior[0, 0] = [np.sin(np.radians(15.0)), 0.0, np.cos(np.radians(15.0))]

        alone = observation_quality([1.0], new_dir, prior, [0])
        paired = observation_quality([1.0], new_dir, prior, [1])
        self.assertAlmostEqual(float(alone[0]), 1.0)
        self.assertGreater(paired[0], alone[0])


if __name__ == "__main__":
    unittest.main()
