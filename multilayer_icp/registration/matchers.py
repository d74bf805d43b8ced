"""Correspondence matchers for multi-layer point clouds.

A matcher takes the global (reference) cloud, the local cloud and a pose
hypothesis of the local cloud in the global frame, and returns the
correspondences it accepts as a ``Pairings`` object. Matchers only hold
configuration, never per-run state, so one instance can serve many
``match`` calls (and threads) at once.

Key classes:
    - Matcher: abstract strategy interface
    - PointsMatcherBase: iterates over point layers, records layer weights,
      transforms (and optionally subsamples) local points
    - PointsDistanceThresholdMatcher: KD-tree nearest neighbour with a
      distance (plus range-proportional angular) gate
    - PlanesByCentroidMatcher: plane-plane pairing by centroid proximity
      and normal agreement
    - PointsToPlanesMatcher: point-plane pairing of layer points with the
      plane patch whose centroid is nearest

Strategies are selected by identifier through ``create_matchers``.
"""

import logging
import time
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
from scipy.spatial import KDTree

from ..geometry import Transform3D, se3_apply
from .types import (
    PLANE_CENTROIDS_LAYER,
    LayerMatchStats,
    MatchingParams,
    Pairings,
    PointCloudLayers,
)

logger = logging.getLogger(__name__)


@dataclass
class TransformedLocalPointCloud:
    """
    Local points expressed in the global frame.

    Attributes:
        points: Transformed points, shape (M, 3).
        idxs: Original indices of the emitted points when a random subset
            was drawn, in the shuffled order; None when all were emitted.
        bbox_min: Componentwise minimum of ``points`` (+inf if empty).
        bbox_max: Componentwise maximum of ``points`` (-inf if empty).
    """

    points: np.ndarray
    idxs: Optional[np.ndarray]
    bbox_min: np.ndarray
    bbox_max: np.ndarray


def transform_local_to_global(
    local_points: np.ndarray,
    local_pose: Transform3D,
    max_local_points: int = 0,
    local_points_sample_seed: int = 0,
) -> TransformedLocalPointCloud:
    """
    Transform local points into the global frame, optionally subsampled.

    When ``max_local_points`` is 0, or not smaller than the number of local
    points, every point is transformed in its original order. Otherwise a
    permutation of all local indices is shuffled and its first
    ``max_local_points`` entries are transformed, in shuffled order.

    Args:
        local_points: Points of shape (N, 3) in the local frame.
        local_pose: 4x4 pose of the local frame in the global frame.
        max_local_points: Subsample size (0 = no subsampling).
        local_points_sample_seed: Shuffle seed. A non-zero seed makes the
            subset reproducible; 0 seeds from the clock.

    Returns:
        TransformedLocalPointCloud with the bounding box of the emitted
        points only.

    Examples:
        >>> pts = np.random.rand(1000, 3)
        >>> a = transform_local_to_global(pts, np.eye(4), 100, 42)
        >>> b = transform_local_to_global(pts, np.eye(4), 100, 42)
        >>> np.array_equal(a.idxs, b.idxs)
        True
    """
    if local_points_sample_seed < 0:
        raise ValueError(
            f"local_points_sample_seed must be >= 0, got {local_points_sample_seed}"
        )
    n_local = local_points.shape[0]

    if max_local_points == 0 or n_local <= max_local_points:
        idxs = None
        selected = local_points
    else:
        seed = (
            local_points_sample_seed
            if local_points_sample_seed != 0
            else time.time_ns()
        )
        rng = np.random.default_rng(seed)
        perm = np.arange(n_local, dtype=np.int64)
        rng.shuffle(perm)
        idxs = perm[:max_local_points]
        selected = local_points[idxs]

    if selected.shape[0] == 0:
        return TransformedLocalPointCloud(
            points=np.empty((0, 3)),
            idxs=idxs,
            bbox_min=np.full(3, np.inf),
            bbox_max=np.full(3, -np.inf),
        )

    transformed = se3_apply(local_pose, selected)
    return TransformedLocalPointCloud(
        points=transformed,
        idxs=idxs,
        bbox_min=transformed.min(axis=0),
        bbox_max=transformed.max(axis=0),
    )


def _pop_param(params: Dict[str, Any], name: str, alias: str, default: Any) -> Any:
    """Pop a parameter given by its snake_case name or its camelCase alias."""
    if name in params and alias in params:
        raise ValueError(f"Matcher parameter '{name}' given twice (also as '{alias}')")
    if name in params:
        return params.pop(name)
    return params.pop(alias, default)


class Matcher(ABC):
    """Strategy interface: find correspondences under a pose hypothesis."""

    @abstractmethod
    def match(
        self,
        pc_global: PointCloudLayers,
        pc_local: PointCloudLayers,
        local_pose: Transform3D,
        matching_params: Mapping[str, MatchingParams],
    ) -> Pairings:
        """
        Find pairings between the two clouds.

        Args:
            pc_global: Reference cloud.
            pc_local: Cloud being aligned.
            local_pose: 4x4 pose of ``pc_local`` in the global frame.
            matching_params: Per-layer search parameters prepared by the
                ICP engine.

        Returns:
            A new Pairings object.
        """

    def initialize(self, params: Mapping[str, Any]) -> None:
        """Configure from a declarative parameter block."""
        if params:
            raise ValueError(
                f"{type(self).__name__} takes no parameters, got {sorted(params)}"
            )


class PointsMatcherBase(Matcher):
    """
    Matcher base class that walks point layers one by one.

    Subclasses implement ``_match_one_layer``. This class handles the layer
    selection (weights act as an inclusion filter), the (count, weight)
    records, and the local-to-global transform with optional subsampling.

    Attributes:
        weight_pt2pt_layers: Layer name -> weight. Empty matches every
            layer present in both clouds, unweighted.
        max_local_points_per_layer: Random subsample size per layer
            (0 = use every probed point).
        local_points_sample_seed: Seed of the random subsample (0 = clock).
    """

    def __init__(
        self,
        weight_pt2pt_layers: Optional[Mapping[str, float]] = None,
        max_local_points_per_layer: int = 0,
        local_points_sample_seed: int = 0,
    ):
        self.weight_pt2pt_layers: Dict[str, float] = {}
        if weight_pt2pt_layers:
            self.initialize_layer_weights(weight_pt2pt_layers)
        self._set_subsampling(max_local_points_per_layer, local_points_sample_seed)

    def initialize_layer_weights(self, weights: Mapping[str, float]) -> None:
        """Replace the layer weights with ``weights``."""
        if not isinstance(weights, Mapping):
            raise ValueError(
                f"layer weights must be a mapping, got {type(weights).__name__}"
            )
        self.weight_pt2pt_layers = {str(k): float(v) for k, v in weights.items()}

    def _set_subsampling(self, max_local_points: int, seed: int) -> None:
        if max_local_points < 0:
            raise ValueError(
                f"max_local_points_per_layer must be >= 0, got {max_local_points}"
            )
        if seed < 0:
            raise ValueError(f"local_points_sample_seed must be >= 0, got {seed}")
        self.max_local_points_per_layer = int(max_local_points)
        self.local_points_sample_seed = int(seed)

    def initialize(self, params: Mapping[str, Any]) -> None:
        params = dict(params)
        self.initialize_layer_weights(
            _pop_param(params, "weight_pt2pt_layers", "pointLayerWeights", {})
        )
        self._set_subsampling(
            int(_pop_param(
                params, "max_local_points_per_layer", "maxLocalPointsPerLayer", 0
            )),
            int(_pop_param(
                params, "local_points_sample_seed", "localPointsSampleSeed", 0
            )),
        )
        if params:
            raise ValueError(
                f"Unknown parameters for {type(self).__name__}: {sorted(params)}"
            )

    def match(
        self,
        pc_global: PointCloudLayers,
        pc_local: PointCloudLayers,
        local_pose: Transform3D,
        matching_params: Mapping[str, MatchingParams],
    ) -> Pairings:
        out = Pairings()

        for name, gl_points in pc_global.layers.items():
            if self.weight_pt2pt_layers and name not in self.weight_pt2pt_layers:
                continue

            lc_points = pc_local.layers.get(name)
            if lc_points is None:
                continue

            mp = matching_params.get(name)
            if mp is None:
                logger.debug("No matching parameters for layer '%s', skipped", name)
                continue

            n_before = out.num_point_pairings()
            self._match_one_layer(name, gl_points, lc_points, local_pose, mp, out)
            n_after = out.num_point_pairings()

            if self.weight_pt2pt_layers and n_after != n_before:
                out.point_weights.append(
                    (n_after - n_before, self.weight_pt2pt_layers[name])
                )

        return out

    def _transform_probes(
        self, lc_points: np.ndarray, local_pose: Transform3D, mp: MatchingParams
    ):
        """Decimate, subsample and transform the local points of one layer.

        Returns (probe indices into the local layer, transformed cloud).
        """
        probes = mp.probe_indices(lc_points.shape[0])
        tr = transform_local_to_global(
            lc_points[probes],
            local_pose,
            self.max_local_points_per_layer,
            self.local_points_sample_seed,
        )
        if tr.idxs is not None:
            probes = probes[tr.idxs]
        return probes, tr

    @abstractmethod
    def _match_one_layer(
        self,
        name: str,
        gl_points: np.ndarray,
        lc_points: np.ndarray,
        local_pose: Transform3D,
        mp: MatchingParams,
        out: Pairings,
    ) -> None:
        """Append this layer's pairings and LayerMatchStats to ``out``."""


class PointsDistanceThresholdMatcher(PointsMatcherBase):
    """
    Point-to-point matcher with a KD-tree and a distance gate.

    A probed local point p is accepted when its global nearest neighbour is
    within ``mp.max_dist + mp.max_angular_dist * |p|`` (|p| measured in the
    local frame, i.e. range from the sensor). Global points outside the
    local bounding box enlarged by the largest radius are never indexed.
    """

    def _match_one_layer(
        self,
        name: str,
        gl_points: np.ndarray,
        lc_points: np.ndarray,
        local_pose: Transform3D,
        mp: MatchingParams,
        out: Pairings,
    ) -> None:
        probes, tr = self._transform_probes(lc_points, local_pose, mp)
        stats = LayerMatchStats(n_probed=int(probes.shape[0]))
        out.layer_stats[name] = stats

        if probes.shape[0] == 0 or gl_points.shape[0] == 0:
            return

        radii = mp.max_dist + mp.max_angular_dist * np.linalg.norm(
            lc_points[probes], axis=1
        )
        max_radius = float(radii.max())

        # Crop the global layer to the region the local points can reach.
        in_box = np.all(
            (gl_points >= tr.bbox_min - max_radius)
            & (gl_points <= tr.bbox_max + max_radius),
            axis=1,
        )
        candidates = np.flatnonzero(in_box)
        if candidates.shape[0] == 0:
            return
        tree = KDTree(gl_points[candidates])

        if mp.only_keep_closest:
            dists, nn = tree.query(tr.points, k=1)
            ok = dists <= radii
            g_idx = candidates[nn[ok]]
            probe_pos = np.flatnonzero(ok)
            dists = dists[ok]
        else:
            neighbours = tree.query_ball_point(tr.points, r=radii)
            probe_pos = np.repeat(
                np.arange(len(neighbours)), [len(nb) for nb in neighbours]
            )
            if probe_pos.shape[0] == 0:
                return
            g_idx = candidates[np.concatenate([np.asarray(nb, dtype=np.int64)
                                               for nb in neighbours])]
            dists = np.linalg.norm(gl_points[g_idx] - tr.points[probe_pos], axis=1)

        if mp.only_unique_robust and g_idx.shape[0] > 0:
            order = np.argsort(dists, kind="stable")
            _, first = np.unique(g_idx[order], return_index=True)
            keep = np.sort(order[first])
            g_idx = g_idx[keep]
            probe_pos = probe_pos[keep]

        l_idx = probes[probe_pos]
        stats.n_paired = int(np.unique(l_idx).shape[0])
        out.add_point_pairings(g_idx, l_idx, gl_points[g_idx], lc_points[l_idx])


class PlanesByCentroidMatcher(Matcher):
    """
    Plane-to-plane matcher.

    Each local plane is paired with the global plane whose centroid is
    nearest (after transforming the local centroid into the global frame),
    provided the centroid distance is within the plane-centroid layer's
    ``max_dist`` and the angle between normals does not exceed
    ``max_normal_angle``.
    """

    def __init__(self, max_normal_angle: float = np.deg2rad(10.0)):
        self.max_normal_angle = float(max_normal_angle)

    def initialize(self, params: Mapping[str, Any]) -> None:
        params = dict(params)
        if "max_normal_angle_deg" in params and "max_normal_angle" in params:
            raise ValueError(
                "Give either max_normal_angle_deg or max_normal_angle, not both"
            )
        if "max_normal_angle_deg" in params:
            self.max_normal_angle = float(
                np.deg2rad(params.pop("max_normal_angle_deg"))
            )
        self.max_normal_angle = float(
            params.pop("max_normal_angle", self.max_normal_angle)
        )
        if params:
            raise ValueError(
                f"Unknown parameters for {type(self).__name__}: {sorted(params)}"
            )

    def match(
        self,
        pc_global: PointCloudLayers,
        pc_local: PointCloudLayers,
        local_pose: Transform3D,
        matching_params: Mapping[str, MatchingParams],
    ) -> Pairings:
        out = Pairings()
        mp = matching_params.get(PLANE_CENTROIDS_LAYER)
        if mp is None or not pc_global.planes or not pc_local.planes:
            return out

        gl_centroids = np.array([pl.centroid for pl in pc_global.planes])
        lc_centroids = np.array([pl.centroid for pl in pc_local.planes])
        lc_in_global = se3_apply(local_pose, lc_centroids)

        dists, nn = KDTree(gl_centroids).query(lc_in_global, k=1)
        R = np.asarray(local_pose)[:3, :3]
        cos_limit = np.cos(self.max_normal_angle)

        for i_local, (dist, i_global) in enumerate(zip(dists, nn)):
            if dist > mp.max_dist:
                continue
            gl_plane = pc_global.planes[i_global]
            lc_plane = pc_local.planes[i_local]
            if float(gl_plane.normal @ (R @ lc_plane.normal)) < cos_limit:
                continue
            out.paired_planes.append((gl_plane, lc_plane))

        return out


class PointsToPlanesMatcher(Matcher):
    """
    Point-to-plane matcher.

    Every probed local point of a point layer is transformed into the global
    frame and looked up against the global plane centroids. It is paired
    with the plane of the nearest centroid when that centroid lies within the
    plane-centroid layer's ``max_dist`` and the point is within the point
    layer's ``max_dist`` of the plane itself.

    Attributes:
        layers: Point layers to pair with planes (empty = every layer).
    """

    def __init__(self, layers: Optional[Sequence[str]] = None):
        self.layers: List[str] = [str(name) for name in layers] if layers else []

    def initialize(self, params: Mapping[str, Any]) -> None:
        params = dict(params)
        layers = params.pop("layers", [])
        if isinstance(layers, str) or not isinstance(layers, Sequence):
            raise ValueError(f"layers must be a list of names, got {layers!r}")
        self.layers = [str(name) for name in layers]
        if params:
            raise ValueError(
                f"Unknown parameters for {type(self).__name__}: {sorted(params)}"
            )

    def match(
        self,
        pc_global: PointCloudLayers,
        pc_local: PointCloudLayers,
        local_pose: Transform3D,
        matching_params: Mapping[str, MatchingParams],
    ) -> Pairings:
        out = Pairings()
        centroid_mp = matching_params.get(PLANE_CENTROIDS_LAYER)
        if centroid_mp is None or not pc_global.planes:
            return out

        tree = KDTree(np.array([pl.centroid for pl in pc_global.planes]))

        for name in pc_global.layer_names():
            if name == PLANE_CENTROIDS_LAYER:
                continue
            if self.layers and name not in self.layers:
                continue
            lc_points = pc_local.layers.get(name)
            mp = matching_params.get(name)
            if lc_points is None or mp is None:
                continue

            probes = mp.probe_indices(lc_points.shape[0])
            if probes.shape[0] == 0:
                continue
            pts = se3_apply(local_pose, lc_points[probes])
            dists, nn = tree.query(pts, k=1)

            for i in np.flatnonzero(dists <= centroid_mp.max_dist):
                gl_plane = pc_global.planes[nn[i]]
                if abs(gl_plane.distance(pts[i])) <= mp.max_dist:
                    out.paired_pt2pl.append((gl_plane, lc_points[probes[i]]))

        return out


MATCHER_CLASSES = {
    "points_distance_threshold": PointsDistanceThresholdMatcher,
    "planes_by_centroid": PlanesByCentroidMatcher,
    "points_to_planes": PointsToPlanesMatcher,
}


def create_matcher(strategy: str, params: Optional[Mapping[str, Any]] = None) -> Matcher:
    """
    Instantiate and configure one matcher strategy.

    Raises:
        ValueError: If ``strategy`` is not a known identifier or the
            parameter block is invalid.
    """
    try:
        cls = MATCHER_CLASSES[strategy]
    except KeyError:
        raise ValueError(
            f"Unknown matcher '{strategy}'. Available: {sorted(MATCHER_CLASSES)}"
        ) from None
    matcher = cls()
    matcher.initialize(params or {})
    return matcher


def create_matchers(config: Sequence[Mapping[str, Any]]) -> List[Matcher]:
    """
    Build matchers from a list of ``{"class": <id>, "params": {...}}`` blocks.

    Examples:
        >>> matchers = create_matchers([
        ...     {"class": "points_distance_threshold",
        ...      "params": {"weight_pt2pt_layers": {"edges": 1.0}}},
        ... ])
    """
    if isinstance(config, Mapping) or not isinstance(config, Sequence):
        raise ValueError("matcher configuration must be a sequence of blocks")

    matchers = []
    for i, block in enumerate(config):
        if not isinstance(block, Mapping) or "class" not in block:
            raise ValueError(f"matcher block #{i} must be a mapping with a 'class'")
        matchers.append(create_matcher(block["class"], block.get("params")))
    if not matchers:
        warnings.warn("Empty matcher configuration", UserWarning, stacklevel=2)
    return matchers
