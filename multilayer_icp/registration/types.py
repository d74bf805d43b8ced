"""Data structures for multi-layer ICP registration.

Key types:
    - PlanePatch: plane primitive in Hessian form plus centroid
    - PointCloudLayers: named 3D point layers and plane patches of one cloud
    - MatchingParams: per-layer correspondence search configuration
    - LayerMatchStats: per-layer probe/pair counts of one matching pass
    - Pairings: weighted correspondences produced by the matchers
    - PairingsWeightParameters: options handed through to the solvers
    - Parameters: user-facing ICP configuration
    - IterTermReason, Results: outcome of one ``align`` call
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..geometry import Pose3, Transform3D

# Reserved layer holding one representative point (the centroid) per plane.
PLANE_CENTROIDS_LAYER = "plane_centroids"

# Tolerance used when validating unit normals and Hessian offsets.
PLANE_TOLERANCE = 1e-6


class RegistrationPreconditionError(ValueError):
    """Raised when ``align`` is called with inputs it cannot register.

    This is a caller error (mismatched layer sets, nothing to register, a
    weighted layer missing from the local cloud). Insufficient overlap is
    *not* an error: it is reported as ``IterTermReason.NO_PAIRINGS``.
    """


def as_points(points, name: str = "points") -> np.ndarray:
    """Return ``points`` as a float64 array of shape (N, 3)."""
    arr = np.asarray(points, dtype=np.float64)
    if arr.size == 0:
        return np.empty((0, 3), dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"{name} must have shape (N, 3), got {arr.shape}")
    return arr


@dataclass(frozen=True, eq=False)
class PlanePatch:
    """
    A finite plane primitive: centroid plus unit normal and Hessian offset.

    The plane is {p : normal . p + offset = 0} and the centroid lies on it.

    Attributes:
        centroid: Representative point on the plane, shape (3,).
        normal: Unit normal, shape (3,).
        offset: Signed offset d of the Hessian form.
    """

    centroid: np.ndarray
    normal: np.ndarray
    offset: float

    def __post_init__(self) -> None:
        centroid = np.asarray(self.centroid, dtype=np.float64)
        normal = np.asarray(self.normal, dtype=np.float64)
        if centroid.shape != (3,):
            raise ValueError(f"centroid must have shape (3,), got {centroid.shape}")
        if normal.shape != (3,):
            raise ValueError(f"normal must have shape (3,), got {normal.shape}")
        if abs(np.linalg.norm(normal) - 1.0) > PLANE_TOLERANCE:
            raise ValueError(
                f"normal must have unit norm, got |n|={np.linalg.norm(normal):.6g}"
            )
        residual = float(normal @ centroid) + float(self.offset)
        if abs(residual) > PLANE_TOLERANCE * max(1.0, np.linalg.norm(centroid)):
            raise ValueError(
                f"offset inconsistent with centroid: n.c + d = {residual:.6g}"
            )
        object.__setattr__(self, "centroid", centroid)
        object.__setattr__(self, "normal", normal)
        object.__setattr__(self, "offset", float(self.offset))

    @classmethod
    def from_centroid_normal(cls, centroid, normal) -> "PlanePatch":
        """Build a patch from a centroid and a (not necessarily unit) normal."""
        centroid = np.asarray(centroid, dtype=np.float64)
        normal = np.asarray(normal, dtype=np.float64)
        norm = np.linalg.norm(normal)
        if norm == 0.0:
            raise ValueError("normal must be non-zero")
        normal = normal / norm
        return cls(centroid=centroid, normal=normal, offset=-float(normal @ centroid))

    def distance(self, point: np.ndarray) -> float:
        """Signed distance of ``point`` to the plane."""
        return float(self.normal @ np.asarray(point, dtype=np.float64) + self.offset)


@dataclass
class PointCloudLayers:
    """
    Multi-primitive point cloud: named point layers plus plane patches.

    Layers let heterogeneous primitives (e.g. "edges" and "surfaces") be
    matched with independent parameters and weights. When planes are added
    through ``add_planes`` their centroids are also stored in the reserved
    ``PLANE_CENTROIDS_LAYER`` for fast proximity search.

    Attributes:
        layers: Layer name -> points of shape (N, 3).
        planes: Plane patches of the cloud.

    Examples:
        >>> pc = PointCloudLayers({"raw": np.random.rand(100, 3)})
        >>> pc.num_points()
        100
    """

    layers: Dict[str, np.ndarray] = field(default_factory=dict)
    planes: List[PlanePatch] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.layers = {
            str(name): as_points(pts, f"layer '{name}'")
            for name, pts in self.layers.items()
        }
        self.planes = list(self.planes)

    @classmethod
    def from_points(cls, points, layer: str = "raw") -> "PointCloudLayers":
        """Single-layer cloud."""
        return cls(layers={layer: points})

    @classmethod
    def from_planes(cls, planes: Sequence[PlanePatch]) -> "PointCloudLayers":
        """Plane-only cloud (with its centroid layer)."""
        pc = cls()
        pc.add_planes(planes)
        return pc

    def add_planes(self, planes: Sequence[PlanePatch]) -> None:
        """Append plane patches and their centroids to the centroid layer."""
        planes = list(planes)
        if not planes:
            return
        self.planes.extend(planes)
        centroids = np.array([pl.centroid for pl in planes], dtype=np.float64)
        existing = self.layers.get(PLANE_CENTROIDS_LAYER)
        if existing is None or existing.shape[0] == 0:
            self.layers[PLANE_CENTROIDS_LAYER] = centroids
        else:
            self.layers[PLANE_CENTROIDS_LAYER] = np.vstack([existing, centroids])

    def layer_names(self) -> List[str]:
        return list(self.layers.keys())

    def layer_size(self, name: str) -> int:
        pts = self.layers.get(name)
        return 0 if pts is None else int(pts.shape[0])

    def num_points(self) -> int:
        """Total number of points over all layers (plane centroids included)."""
        return int(sum(pts.shape[0] for pts in self.layers.values()))

    def empty(self) -> bool:
        return self.num_points() == 0 and not self.planes


@dataclass
class MatchingParams:
    """
    Per-layer correspondence search configuration.

    Derived by the ICP engine from ``Parameters`` once per ``align`` call.

    Attributes:
        max_dist: Linear acceptance distance.
        max_angular_dist: Extra acceptance per unit of range (radians); the
            radius for a local point p is max_dist + max_angular_dist * |p|.
        only_keep_closest: Pair each local point with its nearest global
            point only (otherwise with every global point in range).
        only_unique_robust: Each global point may be used once, by its
            closest local point.
        decimation: Probe every ``decimation``-th local point.
        offset: Index of the first probed local point.
        max_probes: Upper bound on probed local points (None = unbounded).
    """

    max_dist: float
    max_angular_dist: float = 0.0
    only_keep_closest: bool = True
    only_unique_robust: bool = False
    decimation: int = 1
    offset: int = 0
    max_probes: Optional[int] = None

    def __post_init__(self) -> None:
        if self.max_dist < 0:
            raise ValueError(f"max_dist must be >= 0, got {self.max_dist}")
        if self.decimation < 1:
            raise ValueError(f"decimation must be >= 1, got {self.decimation}")
        if self.offset < 0:
            raise ValueError(f"offset must be >= 0, got {self.offset}")

    def probe_indices(self, n_local: int) -> np.ndarray:
        """Indices of the local points examined in one matching pass."""
        idxs = np.arange(self.offset, n_local, self.decimation, dtype=np.int64)
        if self.max_probes is not None:
            idxs = idxs[: self.max_probes]
        return idxs


@dataclass
class LayerMatchStats:
    """Probe and pairing counts of one layer in one matching pass."""

    n_probed: int = 0
    n_paired: int = 0

    @property
    def correspondences_ratio(self) -> float:
        """Fraction of probed local points that received a pairing."""
        if self.n_probed == 0:
            return 0.0
        return self.n_paired / self.n_probed


@dataclass
class Pairings:
    """
    Correspondences accumulated by the matchers for one ICP iteration.

    Point-point pairings are stored as parallel arrays; plane-plane and
    point-plane pairings as lists of tuples. ``point_weights``
    holds one (count, weight) record per weighted layer, in the order the
    layers were matched; the counts sum to the number of pairings that
    came from weighted layered matching.

    Attributes:
        global_idx: Index of each pairing's point in its global layer.
        local_idx: Index of each pairing's point in its local layer.
        global_points: Global-frame coordinates, shape (K, 3).
        local_points: Local-frame coordinates (untransformed), shape (K, 3).
        point_weights: (count, weight) records.
        paired_planes: (global plane, local plane) pairs.
        paired_pt2pl: (global plane, local point) pairs, the point in the
            local frame.
        layer_stats: Layer name -> LayerMatchStats.
    """

    global_idx: np.ndarray = field(
        default_factory=lambda: np.empty((0,), dtype=np.int64)
    )
    local_idx: np.ndarray = field(
        default_factory=lambda: np.empty((0,), dtype=np.int64)
    )
    global_points: np.ndarray = field(default_factory=lambda: np.empty((0, 3)))
    local_points: np.ndarray = field(default_factory=lambda: np.empty((0, 3)))
    point_weights: List[Tuple[int, float]] = field(default_factory=list)
    paired_planes: List[Tuple[PlanePatch, PlanePatch]] = field(default_factory=list)
    paired_pt2pl: List[Tuple[PlanePatch, np.ndarray]] = field(default_factory=list)
    layer_stats: Dict[str, LayerMatchStats] = field(default_factory=dict)

    def __len__(self) -> int:
        return self.num_point_pairings()

    def num_point_pairings(self) -> int:
        return int(self.global_idx.shape[0])

    def empty(self) -> bool:
        return (
            self.num_point_pairings() == 0
            and not self.paired_planes
            and not self.paired_pt2pl
        )

    def add_point_pairings(
        self,
        global_idx: np.ndarray,
        local_idx: np.ndarray,
        global_points: np.ndarray,
        local_points: np.ndarray,
    ) -> None:
        """Append a block of point-point pairings."""
        global_idx = np.asarray(global_idx, dtype=np.int64).reshape(-1)
        local_idx = np.asarray(local_idx, dtype=np.int64).reshape(-1)
        if not (
            global_idx.shape[0]
            == local_idx.shape[0]
            == len(global_points)
            == len(local_points)
        ):
            raise ValueError("pairing blocks must have equal lengths")
        if global_idx.shape[0] == 0:
            return
        self.global_idx = np.concatenate([self.global_idx, global_idx])
        self.local_idx = np.concatenate([self.local_idx, local_idx])
        self.global_points = np.vstack([self.global_points, as_points(global_points)])
        self.local_points = np.vstack([self.local_points, as_points(local_points)])

    def extend(self, other: "Pairings") -> None:
        """Merge the output of another matcher into this one."""
        n_before = self.num_point_pairings()
        self.add_point_pairings(
            other.global_idx, other.local_idx, other.global_points, other.local_points
        )
        n_weighted = sum(count for count, _ in self.point_weights)
        if other.point_weights and n_weighted < n_before:
            # Keep records aligned with pairing order.
            self.point_weights.append((n_before - n_weighted, 1.0))
        self.point_weights.extend(other.point_weights)
        self.paired_planes.extend(other.paired_planes)
        self.paired_pt2pl.extend(other.paired_pt2pl)
        self.layer_stats.update(other.layer_stats)

    def point_pair_weights(self) -> np.ndarray:
        """
        Per-pairing weights expanded from the (count, weight) records.

        Pairings not covered by any record (unweighted matching) get 1.0.
        """
        n = self.num_point_pairings()
        weights = np.ones(n, dtype=np.float64)
        start = 0
        for count, w in self.point_weights:
            weights[start : start + count] = w
            start += count
        return weights


class IterTermReason(Enum):
    """Why the ICP loop stopped. Exactly one is set on every Results."""

    MAX_ITERATIONS = "MaxIterations"
    STALLED = "Stalled"
    NO_PAIRINGS = "NoPairings"


@dataclass
class PairingsWeightParameters:
    """
    Solver options passed through the engine untouched.

    Attributes:
        estimate_scale: Estimate a uniform scale factor (Horn solver).
        robust_kernel: "none", "huber" or "cauchy" (Gauss-Newton solver).
        robust_kernel_param: Kernel width, in distance units.
        gn_max_iterations: Inner Gauss-Newton iterations per ICP iteration.
        gn_min_delta: Inner Gauss-Newton stop criterion on |dx|.
        plane_weight: Relative weight of plane-plane and point-plane
            residuals.
    """

    estimate_scale: bool = False
    robust_kernel: str = "none"
    robust_kernel_param: float = 0.5
    gn_max_iterations: int = 20
    gn_min_delta: float = 1e-10
    plane_weight: float = 1.0

    def __post_init__(self) -> None:
        if self.robust_kernel not in ("none", "huber", "cauchy"):
            raise ValueError(
                f"robust_kernel must be 'none', 'huber' or 'cauchy', "
                f"got {self.robust_kernel!r}"
            )
        if self.robust_kernel_param <= 0:
            raise ValueError(
                f"robust_kernel_param must be positive, got {self.robust_kernel_param}"
            )
        if self.gn_max_iterations < 1:
            raise ValueError(
                f"gn_max_iterations must be >= 1, got {self.gn_max_iterations}"
            )


@dataclass
class Parameters:
    """
    ICP configuration for one ``align`` call.

    Attributes:
        max_iterations: Maximum number of ICP iterations (> 0).
        threshold_dist: Point matching distance tolerance.
        threshold_ang: Point matching angular tolerance (radians).
        max_pairs_per_layer: Upper bound on probed points per layer and
            iteration (drives the decimation stride).
        min_abs_step_trans: Stall threshold on |log(dT)| translation block.
        min_abs_step_rot: Stall threshold on |log(dT)| rotation block.
        weight_pt2pt_layers: Layer name -> weight. Also an inclusion filter:
            when non-empty, unlisted layers are ignored. Empty means every
            layer with weight 1.
        pairings_weight_parameters: Opaque solver options.
        decimation_phase_rotation: Advance the decimation offset every
            iteration so decimated layers cycle through all their points.
    """

    max_iterations: int = 40
    threshold_dist: float = 0.5
    threshold_ang: float = 0.0
    max_pairs_per_layer: int = 500
    min_abs_step_trans: float = 5e-4
    min_abs_step_rot: float = 1e-4
    weight_pt2pt_layers: Dict[str, float] = field(default_factory=dict)
    pairings_weight_parameters: PairingsWeightParameters = field(
        default_factory=PairingsWeightParameters
    )
    decimation_phase_rotation: bool = False

    def __post_init__(self) -> None:
        if self.max_iterations <= 0:
            raise ValueError(f"max_iterations must be > 0, got {self.max_iterations}")
        if self.threshold_dist < 0:
            raise ValueError(f"threshold_dist must be >= 0, got {self.threshold_dist}")
        if self.threshold_ang < 0:
            raise ValueError(f"threshold_ang must be >= 0, got {self.threshold_ang}")
        if self.max_pairs_per_layer <= 0:
            raise ValueError(
                f"max_pairs_per_layer must be > 0, got {self.max_pairs_per_layer}"
            )
        if self.min_abs_step_trans < 0 or self.min_abs_step_rot < 0:
            raise ValueError("min_abs_step_trans/min_abs_step_rot must be >= 0")
        self.weight_pt2pt_layers = {
            str(k): float(v) for k, v in self.weight_pt2pt_layers.items()
        }
        if isinstance(self.pairings_weight_parameters, Mapping):
            self.pairings_weight_parameters = PairingsWeightParameters(
                **self.pairings_weight_parameters
            )

    def includes_layer(self, name: str) -> bool:
        """Whether point layer ``name`` takes part in registration."""
        return not self.weight_pt2pt_layers or name in self.weight_pt2pt_layers


@dataclass(frozen=True, eq=False)
class Results:
    """
    Outcome of one ``ICP.align`` call.

    Attributes:
        n_iterations: Iteration counter reached when the loop stopped.
        termination_reason: The single terminal state reached.
        goodness: Fraction of the largest layer's probed points paired in
            the final iteration, in [0, 1]; 0 on NO_PAIRINGS.
        optimal_pose: Final 4x4 pose of the local cloud in the global frame.
        optimal_scale: Final uniform scale (1.0 unless estimated).
        n_pairings: Point-point pairings of the final iteration.
    """

    n_iterations: int
    termination_reason: IterTermReason
    goodness: float
    optimal_pose: Transform3D
    optimal_scale: float = 1.0
    n_pairings: int = 0

    @property
    def pose(self) -> Pose3:
        """``optimal_pose`` as a Pose3."""
        return Pose3.from_matrix(self.optimal_pose)

    @property
    def success(self) -> bool:
        return self.termination_reason is not IterTermReason.NO_PAIRINGS
