"""Multi-layer ICP registration engine.

The engine aligns a local cloud onto a global (reference) cloud by
alternating correspondence search and a rigid transform solve:

    1. Prepare per-layer MatchingParams once per ``align`` call.
    2. Loop: run the matchers at the current pose, solve for a new pose,
       measure the incremental pose in se(3) and stop when it stalls.
    3. Classify the outcome: Stalled, MaxIterations or NoPairings.

Convergence compares the translation and rotation blocks of
log(T_prev^-1 T_new) against independent thresholds, so a rotation-only and
a translation-only change are judged on their own physical scale.

Key items:
    - ICP: the engine (matchers + solver strategy, no per-run state)
    - ICPState: mutable state of one ``align`` call
    - create_icp: build an engine from strategy identifiers

Example:
    >>> icp = create_icp(solver="horn")
    >>> res = icp.align(pc_ref, pc_new, Pose3.identity(), Parameters())
    >>> res.termination_reason, res.goodness
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from ..geometry import Pose3, Transform3D, as_transform, se3_log, se3_relative
from .matchers import Matcher, PointsDistanceThresholdMatcher, create_matchers
from .solvers import TransformSolver, create_solver
from .types import (
    PLANE_CENTROIDS_LAYER,
    IterTermReason,
    MatchingParams,
    Pairings,
    Parameters,
    PointCloudLayers,
    RegistrationPreconditionError,
    Results,
)

logger = logging.getLogger(__name__)

# Plane centroids of distinct planes never coincide, so their search radius
# is widened by this margin.
PLANE_CENTROID_MARGIN = 2.0

MIN_POINT_PAIRINGS = 3


@dataclass
class ICPState:
    """
    State of one ``align`` call. Never shared between calls.

    Attributes:
        pc_global: Reference cloud (read-only during the call).
        pc_local: Cloud being aligned (read-only during the call).
        current_solution: Current 4x4 pose of the local cloud.
        current_scale: Current uniform scale.
        layer_of_largest_pc: Largest ordinary point layer ("" if none).
        current_pairings: Pairings of the latest iteration.
        matching_params: Per-layer search parameters.
    """

    pc_global: PointCloudLayers
    pc_local: PointCloudLayers
    current_solution: Transform3D = field(default_factory=lambda: np.eye(4))
    current_scale: float = 1.0
    layer_of_largest_pc: str = ""
    current_pairings: Pairings = field(default_factory=Pairings)
    matching_params: Dict[str, MatchingParams] = field(default_factory=dict)


def decimation_stride(layer_size: int, max_pairs_per_layer: int) -> int:
    """
    Stride that keeps at most ``max_pairs_per_layer`` of ``layer_size`` probes.

    Examples:
        >>> decimation_stride(1000, 500)
        2
        >>> decimation_stride(10, 3)
        4
        >>> decimation_stride(100, 500)
        1
    """
    return max(1, math.ceil(layer_size / max_pairs_per_layer))


class ICP:
    """
    ICP engine with pluggable matchers and transform solver.

    The instance holds configuration only; each ``align`` call owns its
    ICPState, so independent calls may run concurrently on separate threads
    as long as their input clouds are not mutated meanwhile.

    Attributes:
        solver: Transform solver strategy.
        matchers: Matcher instances run in order at every iteration. When
            empty, ``align`` uses a PointsDistanceThresholdMatcher weighted
            like the call's Parameters.
    """

    def __init__(
        self,
        solver: Union[TransformSolver, str] = "horn",
        matchers: Optional[Sequence[Matcher]] = None,
    ):
        self.solver = create_solver(solver) if isinstance(solver, str) else solver
        self._matchers: List[Matcher] = list(matchers) if matchers else []

    @property
    def matchers(self) -> List[Matcher]:
        return self._matchers

    def initialize_matchers(self, config: Sequence[Mapping[str, Any]]) -> None:
        """Replace the matchers with those described by ``config``.

        ``config`` is a list of ``{"class": <id>, "params": {...}}`` blocks;
        see ``create_matchers``.
        """
        self._matchers = create_matchers(config)

    def align(
        self,
        pc_global: PointCloudLayers,
        pc_local: PointCloudLayers,
        init_guess: Union[Pose3, Transform3D, None],
        p: Parameters,
    ) -> Results:
        """
        Register ``pc_local`` onto ``pc_global``.

        Args:
            pc_global: Reference cloud.
            pc_local: Cloud to align.
            init_guess: Initial pose of ``pc_local`` in the global frame
                (None = identity).
            p: ICP parameters.

        Returns:
            Results with exactly one termination reason.

        Raises:
            RegistrationPreconditionError: Layer counts differ, there is
                nothing to register, or a weighted layer is missing from
                the local cloud.
        """
        self._check_preconditions(pc_global, pc_local, p)

        state = ICPState(pc_global=pc_global, pc_local=pc_local)
        state.current_solution = (
            np.eye(4) if init_guess is None else as_transform(init_guess).copy()
        )
        prev_solution = state.current_solution

        self.prepare_matching_params(state, p)
        matchers = self._matchers or [
            PointsDistanceThresholdMatcher(weight_pt2pt_layers=p.weight_pt2pt_layers)
        ]

        reason: Optional[IterTermReason] = None
        goodness = 0.0
        n_iterations = 0

        while n_iterations < p.max_iterations:
            if p.decimation_phase_rotation:
                for mp in state.matching_params.values():
                    mp.offset = n_iterations % mp.decimation

            success, new_solution, new_scale = self._iterate(state, matchers, p)
            if not success:
                reason = IterTermReason.NO_PAIRINGS
                break

            state.current_solution = new_solution
            state.current_scale = new_scale

            delta = se3_log(se3_relative(prev_solution, state.current_solution))
            delta_xyz = float(np.linalg.norm(delta[:3]))
            delta_rot = float(np.linalg.norm(delta[3:]))
            logger.debug(
                "iter %d: %d pairings, |dt|=%.3e |dR|=%.3e",
                n_iterations,
                state.current_pairings.num_point_pairings(),
                delta_xyz,
                delta_rot,
            )

            if delta_xyz < p.min_abs_step_trans and delta_rot < p.min_abs_step_rot:
                reason = IterTermReason.STALLED
                break

            prev_solution = state.current_solution
            n_iterations += 1

        if reason is None:
            reason = IterTermReason.MAX_ITERATIONS

        if reason is not IterTermReason.NO_PAIRINGS and state.layer_of_largest_pc:
            stats = state.current_pairings.layer_stats.get(state.layer_of_largest_pc)
            if stats is not None:
                goodness = stats.correspondences_ratio

        logger.info(
            "ICP finished: %s after %d iterations, goodness=%.3f",
            reason.value,
            n_iterations,
            goodness,
        )

        return Results(
            n_iterations=n_iterations,
            termination_reason=reason,
            goodness=goodness,
            optimal_pose=state.current_solution,
            optimal_scale=state.current_scale,
            n_pairings=state.current_pairings.num_point_pairings(),
        )

    @staticmethod
    def _check_preconditions(
        pc_global: PointCloudLayers, pc_local: PointCloudLayers, p: Parameters
    ) -> None:
        if len(pc_global.layers) != len(pc_local.layers):
            raise RegistrationPreconditionError(
                f"Clouds have different layer counts: "
                f"{len(pc_global.layers)} vs {len(pc_local.layers)}"
            )
        if pc_global.empty() and pc_local.empty():
            raise RegistrationPreconditionError(
                "Nothing to register: both clouds have no points and no planes"
            )
        if not pc_global.layers and not (pc_global.planes and pc_local.planes):
            raise RegistrationPreconditionError(
                "Nothing to register: no point layers and no planes on both clouds"
            )

        count_global = count_local = 0
        for name, pts in pc_global.layers.items():
            if not p.includes_layer(name):
                continue
            if name not in pc_local.layers:
                raise RegistrationPreconditionError(
                    f"Layer '{name}' is missing from the local cloud"
                )
            count_global += pts.shape[0]
            count_local += pc_local.layers[name].shape[0]

        if count_global == 0 and not pc_global.planes:
            raise RegistrationPreconditionError("Global cloud has no points or planes")
        if count_local == 0 and not pc_local.planes:
            raise RegistrationPreconditionError("Local cloud has no points or planes")

    @staticmethod
    def prepare_matching_params(state: ICPState, p: Parameters) -> None:
        """
        Fill ``state.matching_params`` and ``state.layer_of_largest_pc``.

        Ordinary layers get the point thresholds of ``p`` and a decimation
        stride bounding the probes to ``p.max_pairs_per_layer``. The
        plane-centroid layer gets a widened radius and no decimation.
        """
        largest_size = 0
        state.matching_params = {}
        state.layer_of_largest_pc = ""

        for name, pts in state.pc_global.layers.items():
            if name == PLANE_CENTROIDS_LAYER:
                state.matching_params[name] = MatchingParams(
                    max_dist=p.threshold_dist + PLANE_CENTROID_MARGIN,
                    max_angular_dist=0.0,
                    only_keep_closest=True,
                    decimation=1,
                )
                continue

            if not p.includes_layer(name):
                continue
            if name not in state.pc_local.layers:
                raise RegistrationPreconditionError(
                    f"Layer '{name}' is missing from the local cloud"
                )

            n = pts.shape[0]
            if n > largest_size:
                largest_size = n
                state.layer_of_largest_pc = name

            state.matching_params[name] = MatchingParams(
                max_dist=p.threshold_dist,
                max_angular_dist=p.threshold_ang,
                only_keep_closest=True,
                only_unique_robust=False,
                decimation=decimation_stride(n, p.max_pairs_per_layer),
                offset=0,
                max_probes=p.max_pairs_per_layer,
            )

    def run_matchers(
        self, state: ICPState, matchers: Optional[Sequence[Matcher]] = None
    ) -> Pairings:
        """Run every matcher at the current pose and merge their pairings."""
        pairings = Pairings()
        for matcher in matchers if matchers is not None else self._matchers:
            pairings.extend(
                matcher.match(
                    state.pc_global,
                    state.pc_local,
                    state.current_solution,
                    state.matching_params,
                )
            )
        return pairings

    def _iterate(
        self, state: ICPState, matchers: Sequence[Matcher], p: Parameters
    ) -> Tuple[bool, Transform3D, float]:
        state.current_pairings = self.run_matchers(state, matchers)
        pairings = state.current_pairings

        if pairings.num_point_pairings() < MIN_POINT_PAIRINGS:
            logger.debug(
                "Only %d point pairings, cannot solve",
                pairings.num_point_pairings(),
            )
            return False, state.current_solution, state.current_scale

        result = self.solver.solve(
            pairings,
            p.pairings_weight_parameters,
            initial_guess=state.current_solution,
        )
        if not result.success:
            logger.debug("Solver reported a rank-deficient pairing set")
            return False, state.current_solution, state.current_scale

        return True, result.pose, result.scale


def create_icp(
    solver: str = "horn",
    matchers: Optional[Sequence[Union[Matcher, Mapping[str, Any]]]] = None,
) -> ICP:
    """
    Build an ICP engine from strategy identifiers.

    Args:
        solver: "horn" or "gauss_newton".
        matchers: Matcher instances, or ``{"class", "params"}`` blocks, or
            None for the default point matcher.

    Examples:
        >>> icp = create_icp("gauss_newton", [
        ...     {"class": "points_distance_threshold", "params": {}},
        ...     {"class": "planes_by_centroid", "params": {}},
        ... ])
    """
    icp = ICP(solver=solver)
    if matchers:
        if all(isinstance(m, Matcher) for m in matchers):
            icp.matchers.extend(matchers)
        else:
            icp.initialize_matchers(matchers)
    return icp
