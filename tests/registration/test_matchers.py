"""Unit tests for multilayer_icp.registration.matchers.

Tests the local-to-global transform with subsampling, the layered
point-to-point matcher and the plane matcher.
"""

import numpy as np
import pytest

from multilayer_icp.geometry import Pose3
from multilayer_icp.registration import (
    PLANE_CENTROIDS_LAYER,
    MatchingParams,
    PlanePatch,
    PlanesByCentroidMatcher,
    PointCloudLayers,
    PointsDistanceThresholdMatcher,
    PointsToPlanesMatcher,
    create_matcher,
    create_matchers,
    transform_local_to_global,
)


@pytest.fixture
def grid():
    """5x5x4 grid of points with unit spacing."""
    xs, ys, zs = np.meshgrid(np.arange(5.0), np.arange(5.0), np.arange(4.0))
    return np.column_stack([xs.ravel(), ys.ravel(), zs.ravel()])


class TestTransformLocalToGlobal:
    """Test suite for transform_local_to_global."""

    def test_no_subsampling_keeps_order(self, grid):
        """max_local_points=0 transforms every point in order."""
        T = Pose3(x=1.0, yaw=0.2).to_matrix()
        tr = transform_local_to_global(grid, T)
        assert tr.idxs is None
        expected = grid @ T[:3, :3].T + T[:3, 3]
        np.testing.assert_allclose(tr.points, expected)

    def test_small_cloud_not_subsampled(self, grid):
        """A cloud not larger than the limit is used whole."""
        tr = transform_local_to_global(grid, np.eye(4), max_local_points=len(grid))
        assert tr.idxs is None
        assert tr.points.shape == grid.shape

    def test_seeded_subsample_is_reproducible(self):
        """The same non-zero seed draws the same subset."""
        pts = np.random.default_rng(0).random((1000, 3))
        a = transform_local_to_global(pts, np.eye(4), 100, 42)
        b = transform_local_to_global(pts, np.eye(4), 100, 42)
        np.testing.assert_array_equal(a.idxs, b.idxs)

    def test_subsample_draws_from_whole_cloud(self):
        """Subsample indices are distinct and span the full index range."""
        pts = np.random.default_rng(1).random((1000, 3))
        tr = transform_local_to_global(pts, np.eye(4), 100, 7)
        assert tr.points.shape == (100, 3)
        assert np.unique(tr.idxs).shape[0] == 100
        assert tr.idxs.min() >= 0 and tr.idxs.max() < 1000
        assert tr.idxs.max() >= 100
        np.testing.assert_allclose(tr.points, pts[tr.idxs])

    def test_clock_seeded_subsample(self):
        """Seed 0 still yields a valid subset of the requested size."""
        pts = np.random.default_rng(2).random((50, 3))
        tr = transform_local_to_global(pts, np.eye(4), 10, 0)
        assert np.unique(tr.idxs).shape[0] == 10

    def test_bbox_covers_emitted_points_only(self):
        """The bounding box is computed over the subset, not the whole cloud."""
        pts = np.random.default_rng(3).random((500, 3))
        pts[0] = [100.0, 100.0, 100.0]
        tr = transform_local_to_global(pts, np.eye(4), 20, 5)
        np.testing.assert_allclose(tr.bbox_min, tr.points.min(axis=0))
        np.testing.assert_allclose(tr.bbox_max, tr.points.max(axis=0))

    def test_empty_cloud(self):
        tr = transform_local_to_global(np.empty((0, 3)), np.eye(4))
        assert tr.points.shape == (0, 3)
        assert np.all(np.isinf(tr.bbox_min))


class TestPointsDistanceThresholdMatcher:
    """Test suite for the layered point-to-point matcher."""

    @pytest.fixture
    def params(self):
        return {
            "edges": MatchingParams(max_dist=0.3),
            "surfaces": MatchingParams(max_dist=0.3),
        }

    def test_identical_clouds_fully_paired(self, grid):
        """Each local point pairs with its own copy."""
        pc = PointCloudLayers({"edges": grid})
        out = PointsDistanceThresholdMatcher().match(
            pc, pc, np.eye(4), {"edges": MatchingParams(max_dist=0.3)}
        )
        assert out.num_point_pairings() == len(grid)
        np.testing.assert_array_equal(out.global_idx, out.local_idx)
        assert out.layer_stats["edges"].correspondences_ratio == 1.0
        assert out.point_weights == []

    def test_distance_gate(self):
        """Points farther than max_dist are not paired."""
        gl = PointCloudLayers({"edges": np.zeros((1, 3))})
        lc = PointCloudLayers({"edges": [[0.2, 0.0, 0.0], [0.0, 0.0, 0.0]]})
        out = PointsDistanceThresholdMatcher().match(
            gl, lc, Pose3(x=0.2).to_matrix(), {"edges": MatchingParams(max_dist=0.3)}
        )
        np.testing.assert_array_equal(out.local_idx, [1])
        assert out.layer_stats["edges"].n_probed == 2

    def test_angular_gate_grows_with_range(self):
        """The acceptance radius grows with the local point's range."""
        gl = PointCloudLayers({"edges": [[10.0, 0.5, 0.0]]})
        lc = PointCloudLayers({"edges": [[10.0, 0.0, 0.0]]})
        strict = {"edges": MatchingParams(max_dist=0.1)}
        loose = {"edges": MatchingParams(max_dist=0.1, max_angular_dist=0.05)}
        matcher = PointsDistanceThresholdMatcher()
        assert matcher.match(gl, lc, np.eye(4), strict).num_point_pairings() == 0
        assert matcher.match(gl, lc, np.eye(4), loose).num_point_pairings() == 1

    def test_local_points_kept_untransformed(self, grid):
        """Pairings carry local points in the local frame."""
        T = Pose3(x=0.1, y=-0.1).to_matrix()
        gl = PointCloudLayers({"edges": grid + [0.1, -0.1, 0.0]})
        lc = PointCloudLayers({"edges": grid})
        out = PointsDistanceThresholdMatcher().match(
            gl, lc, T, {"edges": MatchingParams(max_dist=0.3)}
        )
        np.testing.assert_allclose(out.local_points, grid[out.local_idx])

    def test_weights_filter_and_record(self, grid, params):
        """Unlisted layers are skipped, listed ones get a (count, weight) record."""
        pc = PointCloudLayers({"edges": grid, "surfaces": grid[:10]})
        matcher = PointsDistanceThresholdMatcher(weight_pt2pt_layers={"surfaces": 0.5})
        out = matcher.match(pc, pc, np.eye(4), params)
        assert out.num_point_pairings() == 10
        assert "edges" not in out.layer_stats
        assert out.point_weights == [(10, 0.5)]

    def test_weight_records_sum_to_pairings(self, grid, params):
        """Records follow layer order and account for every pairing."""
        pc = PointCloudLayers({"edges": grid, "surfaces": grid[:10]})
        matcher = PointsDistanceThresholdMatcher(
            weight_pt2pt_layers={"edges": 1.0, "surfaces": 2.0}
        )
        out = matcher.match(pc, pc, np.eye(4), params)
        assert out.point_weights == [(len(grid), 1.0), (10, 2.0)]
        assert sum(c for c, _ in out.point_weights) == out.num_point_pairings()
        w = out.point_pair_weights()
        assert np.all(w[: len(grid)] == 1.0) and np.all(w[len(grid):] == 2.0)

    def test_missing_local_layer_skipped(self, grid, params):
        """A layer absent from the local cloud is silently skipped."""
        gl = PointCloudLayers({"edges": grid, "surfaces": grid})
        lc = PointCloudLayers({"edges": grid})
        out = PointsDistanceThresholdMatcher().match(gl, lc, np.eye(4), params)
        assert set(out.layer_stats) == {"edges"}
        assert out.num_point_pairings() == len(grid)

    def test_layer_without_params_skipped(self, grid):
        pc = PointCloudLayers({"edges": grid})
        out = PointsDistanceThresholdMatcher().match(pc, pc, np.eye(4), {})
        assert out.empty()

    def test_probes_bounded_by_max_probes(self):
        """Decimation plus max_probes bound the probed points."""
        pts = np.random.default_rng(4).random((1000, 3)) * 10.0
        pc = PointCloudLayers({"raw": pts})
        mp = MatchingParams(max_dist=0.5, decimation=4, max_probes=300)
        out = PointsDistanceThresholdMatcher().match(pc, pc, np.eye(4), {"raw": mp})
        assert out.layer_stats["raw"].n_probed <= 300
        assert out.num_point_pairings() <= 300
        assert np.all(out.local_idx % 4 == 0)

    def test_random_subsample_per_layer(self):
        """max_local_points_per_layer caps the probed points."""
        pts = np.random.default_rng(5).random((400, 3)) * 10.0
        pc = PointCloudLayers({"raw": pts})
        matcher = PointsDistanceThresholdMatcher(
            max_local_points_per_layer=50, local_points_sample_seed=11
        )
        out = matcher.match(pc, pc, np.eye(4), {"raw": MatchingParams(max_dist=0.01)})
        assert out.layer_stats["raw"].n_probed == 50
        np.testing.assert_array_equal(out.global_idx, out.local_idx)

    def test_all_neighbours_when_not_keep_closest(self):
        """only_keep_closest=False pairs every global point in range."""
        gl = PointCloudLayers({"raw": [[0.0, 0.0, 0.0], [0.1, 0.0, 0.0], [5.0, 0.0, 0.0]]})
        lc = PointCloudLayers({"raw": [[0.05, 0.0, 0.0]]})
        mp = MatchingParams(max_dist=0.2, only_keep_closest=False)
        out = PointsDistanceThresholdMatcher().match(gl, lc, np.eye(4), {"raw": mp})
        assert sorted(out.global_idx.tolist()) == [0, 1]
        assert out.layer_stats["raw"].n_paired == 1

    def test_unique_robust(self):
        """Each global point is kept only for its closest local point."""
        gl = PointCloudLayers({"raw": [[0.0, 0.0, 0.0]]})
        lc = PointCloudLayers({"raw": [[0.1, 0.0, 0.0], [0.05, 0.0, 0.0]]})
        mp = MatchingParams(max_dist=0.2, only_unique_robust=True)
        out = PointsDistanceThresholdMatcher().match(gl, lc, np.eye(4), {"raw": mp})
        np.testing.assert_array_equal(out.local_idx, [1])

    def test_initialize_accepts_camel_case(self):
        matcher = PointsDistanceThresholdMatcher()
        matcher.initialize({"pointLayerWeights": {"a": 2}, "maxLocalPointsPerLayer": 10})
        assert matcher.weight_pt2pt_layers == {"a": 2.0}
        assert matcher.max_local_points_per_layer == 10

    def test_initialize_rejects_unknown(self):
        with pytest.raises(ValueError, match="Unknown parameters"):
            PointsDistanceThresholdMatcher().initialize({"bogus": 1})


class TestPlanesByCentroidMatcher:
    """Test suite for the plane matcher."""

    @pytest.fixture
    def planes(self):
        return [
            PlanePatch.from_centroid_normal([0.0, 0.0, 0.0], [0.0, 0.0, 1.0]),
            PlanePatch.from_centroid_normal([3.0, 0.0, 1.0], [1.0, 0.0, 0.0]),
            PlanePatch.from_centroid_normal([0.0, 3.0, 1.0], [0.0, 1.0, 0.0]),
        ]

    @staticmethod
    def _cloud(planes):
        pc = PointCloudLayers()
        pc.add_planes(planes)
        return pc

    def test_pairs_corresponding_planes(self, planes):
        pc = self._cloud(planes)
        mp = {PLANE_CENTROIDS_LAYER: MatchingParams(max_dist=1.0)}
        out = PlanesByCentroidMatcher().match(pc, pc, np.eye(4), mp)
        assert len(out.paired_planes) == 3
        for gl_plane, lc_plane in out.paired_planes:
            assert gl_plane is lc_plane
        assert out.num_point_pairings() == 0

    def test_rejects_normal_mismatch(self, planes):
        """Planes whose normals disagree beyond the limit are not paired."""
        gl = self._cloud(planes)
        lc = self._cloud(planes)
        mp = {PLANE_CENTROIDS_LAYER: MatchingParams(max_dist=1.0)}
        # 30 deg about the centroid of the first plane keeps it closest.
        T = Pose3(roll=np.deg2rad(30.0)).to_matrix()
        out = PlanesByCentroidMatcher().match(gl, lc, T, mp)
        assert all(lc_plane is not planes[0] for _, lc_plane in out.paired_planes)

    def test_needs_centroid_params(self, planes):
        pc = self._cloud(planes)
        assert PlanesByCentroidMatcher().match(pc, pc, np.eye(4), {}).empty()

    def test_initialize_degrees(self):
        matcher = create_matcher("planes_by_centroid", {"max_normal_angle_deg": 20.0})
        assert matcher.max_normal_angle == pytest.approx(np.deg2rad(20.0))


class TestCreateMatchers:
    """Test suite for the declarative matcher factory."""

    def test_builds_configured_matchers(self):
        matchers = create_matchers(
            [
                {
                    "class": "points_distance_threshold",
                    "params": {"weight_pt2pt_layers": {"edges": 1.0}},
                },
                {"class": "planes_by_centroid"},
            ]
        )
        assert isinstance(matchers[0], PointsDistanceThresholdMatcher)
        assert matchers[0].weight_pt2pt_layers == {"edges": 1.0}
        assert isinstance(matchers[1], PlanesByCentroidMatcher)

    def test_unknown_class(self):
        with pytest.raises(ValueError, match="Unknown matcher"):
            create_matchers([{"class": "nearest_mesh", "params": {}}])

    def test_block_without_class(self):
        with pytest.raises(ValueError, match="'class'"):
            create_matchers([{"params": {}}])

    def test_empty_config_warns(self):
        with pytest.warns(UserWarning, match="Empty matcher"):
            assert create_matchers([]) == []


class TestMatcherParameterValidation:
    """Test suite for matcher parameter checks."""

    def test_negative_seed_rejected(self):
        with pytest.raises(ValueError, match="local_points_sample_seed"):
            PointsDistanceThresholdMatcher(local_points_sample_seed=-5)

    def test_negative_seed_rejected_in_initialize(self):
        with pytest.raises(ValueError, match="local_points_sample_seed"):
            PointsDistanceThresholdMatcher().initialize({"localPointsSampleSeed": -1})

    def test_negative_seed_rejected_by_transform(self):
        """The subsampling transform itself refuses a negative seed."""
        pts = np.random.default_rng(6).random((50, 3))
        with pytest.raises(ValueError, match="local_points_sample_seed"):
            transform_local_to_global(pts, np.eye(4), 10, -5)

    def test_negative_max_points_rejected(self):
        with pytest.raises(ValueError, match="max_local_points_per_layer"):
            PointsDistanceThresholdMatcher(max_local_points_per_layer=-1)

    def test_both_spellings_rejected(self):
        """A parameter given in snake_case and camelCase at once raises."""
        matcher = PointsDistanceThresholdMatcher()
        with pytest.raises(ValueError, match="given twice"):
            matcher.initialize(
                {"weight_pt2pt_layers": {"a": 1.0}, "pointLayerWeights": {"b": 2.0}}
            )

    def test_both_angle_units_rejected(self):
        with pytest.raises(ValueError, match="not both"):
            PlanesByCentroidMatcher().initialize(
                {"max_normal_angle_deg": 10.0, "max_normal_angle": 0.2}
            )


class TestPointsToPlanesMatcher:
    """Test suite for the point-to-plane matcher."""

    @pytest.fixture
    def scene(self, box_faces):
        planes, points = box_faces
        pc = PointCloudLayers({"surfaces": points, "edges": points[:5]})
        pc.add_planes(planes)
        return pc

    @pytest.fixture
    def params(self):
        return {
            "surfaces": MatchingParams(max_dist=0.2),
            "edges": MatchingParams(max_dist=0.2),
            PLANE_CENTROIDS_LAYER: MatchingParams(max_dist=2.2),
        }

    def test_points_paired_with_own_plane(self, scene, params):
        """Each surface point is paired with the face it was sampled on."""
        out = PointsToPlanesMatcher(layers=["surfaces"]).match(
            scene, scene, np.eye(4), params
        )
        assert len(out.paired_pt2pl) == 75
        for k, (plane, point) in enumerate(out.paired_pt2pl):
            assert plane is scene.planes[k // 25]
            assert abs(plane.distance(point)) < 1e-12
        assert out.num_point_pairings() == 0
        assert out.layer_stats == {}

    def test_plane_distance_gate(self, scene, params):
        """Points moved off their plane beyond max_dist are not paired."""
        out = PointsToPlanesMatcher(layers=["surfaces"]).match(
            scene, scene, Pose3(z=0.3).to_matrix(), params
        )
        # The floor points are now 0.3 above the floor; the walls still fit.
        assert len(out.paired_pt2pl) == 50
        assert all(plane is not scene.planes[0] for plane, _ in out.paired_pt2pl)

    def test_centroid_radius_gate(self, scene, params):
        params[PLANE_CENTROIDS_LAYER] = MatchingParams(max_dist=0.1)
        out = PointsToPlanesMatcher(layers=["surfaces"]).match(
            scene, scene, np.eye(4), params
        )
        # Only the sample at each face centroid is close enough.
        assert len(out.paired_pt2pl) == 3

    def test_all_layers_by_default(self, scene, params):
        out = PointsToPlanesMatcher().match(scene, scene, np.eye(4), params)
        assert len(out.paired_pt2pl) == 80

    def test_respects_decimation(self, scene, params):
        params["surfaces"] = MatchingParams(max_dist=0.2, decimation=5)
        out = PointsToPlanesMatcher(layers=["surfaces"]).match(
            scene, scene, np.eye(4), params
        )
        assert len(out.paired_pt2pl) == 15

    def test_needs_centroid_params(self, scene, params):
        del params[PLANE_CENTROIDS_LAYER]
        assert PointsToPlanesMatcher().match(scene, scene, np.eye(4), params).empty()

    def test_created_by_identifier(self):
        matcher = create_matcher("points_to_planes", {"layers": ["surfaces"]})
        assert isinstance(matcher, PointsToPlanesMatcher)
        assert matcher.layers == ["surfaces"]

    def test_layers_must_be_a_list(self):
        with pytest.raises(ValueError, match="list of names"):
            PointsToPlanesMatcher().initialize({"layers": "surfaces"})
