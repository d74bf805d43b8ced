"""Rigid transform solvers for weighted correspondence sets.

A solver receives the Pairings of one ICP iteration and returns the rigid
transform (and scale) that best maps local coordinates onto their global
counterparts. Solvers never raise on degenerate input: they report
``success=False`` and the ICP engine turns that into a NoPairings outcome.

Key classes:
    - TransformSolver: strategy interface
    - HornSolver: weighted closed-form solution (Horn's unit-quaternion
      method) over point-point pairings, optional uniform scale
    - GaussNewtonSolver: iterative SE(3) Gauss-Newton over point-point,
      plane-plane and point-plane residuals with optional robust kernels

Strategies are selected by identifier through ``create_solver``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..geometry import (
    Transform3D,
    as_transform,
    quat_to_rotation_matrix,
    se3_exp,
    skew,
)
from .types import Pairings, PairingsWeightParameters

# Minimum number of point-point pairings for a well-posed point-only solve.
MIN_POINT_PAIRINGS = 3

# Relative eigenvalue below which a spread/normal matrix is treated as singular.
RANK_TOLERANCE = 1e-12


@dataclass
class SolverResult:
    """
    Output of one solve.

    Attributes:
        success: False when the pairings cannot determine a rigid pose.
        pose: 4x4 transform mapping local coordinates to the global frame.
        scale: Uniform scale factor (1.0 unless estimated).
    """

    success: bool
    pose: Transform3D = field(default_factory=lambda: np.eye(4))
    scale: float = 1.0


class TransformSolver(ABC):
    """Strategy interface: best rigid transform for a set of pairings."""

    @abstractmethod
    def solve(
        self,
        pairings: Pairings,
        params: PairingsWeightParameters,
        initial_guess: Optional[Transform3D] = None,
    ) -> SolverResult:
        """
        Solve for the transform minimizing the weighted pairing error.

        Args:
            pairings: Correspondences of the current iteration.
            params: Weighting / robust-kernel options.
            initial_guess: Linearization point for iterative solvers.

        Returns:
            SolverResult; ``success`` is False for rank-deficient input.
        """


def _is_rank_deficient(spread: np.ndarray, min_rank: int) -> bool:
    eigvals = np.linalg.eigvalsh(spread)  # ascending
    largest = eigvals[-1]
    if largest <= 0.0:
        return True
    return eigvals[-min_rank] <= RANK_TOLERANCE * largest


class HornSolver(TransformSolver):
    """
    Closed-form weighted registration (Horn, 1987).

    The rotation is the unit quaternion maximizing sum_i w_i b_i . R a_i,
    i.e. the dominant eigenvector of Horn's 4x4 symmetric matrix, where a_i
    and b_i are the centered local and global points. Translation follows
    from the weighted centroids. Plane pairings are ignored.
    """

    def solve(
        self,
        pairings: Pairings,
        params: PairingsWeightParameters,
        initial_guess: Optional[Transform3D] = None,
    ) -> SolverResult:
        n = pairings.num_point_pairings()
        if n < MIN_POINT_PAIRINGS:
            return SolverResult(success=False)

        w = pairings.point_pair_weights()
        w_sum = float(w.sum())
        if not np.all(w >= 0.0) or w_sum <= 0.0:
            return SolverResult(success=False)

        local_pts = pairings.local_points
        global_pts = pairings.global_points

        c_local = (w[:, None] * local_pts).sum(axis=0) / w_sum
        c_global = (w[:, None] * global_pts).sum(axis=0) / w_sum
        a = local_pts - c_local
        b = global_pts - c_global

        # Collinear (or coincident) local points leave a rotation free.
        spread = (w[:, None] * a).T @ a
        if _is_rank_deficient(spread, min_rank=2):
            return SolverResult(success=False)

        S = (w[:, None] * a).T @ b
        Sxx, Sxy, Sxz = S[0]
        Syx, Syy, Syz = S[1]
        Szx, Szy, Szz = S[2]
        N = np.array(
            [
                [Sxx + Syy + Szz, Syz - Szy, Szx - Sxz, Sxy - Syx],
                [Syz - Szy, Sxx - Syy - Szz, Sxy + Syx, Szx + Sxz],
                [Szx - Sxz, Sxy + Syx, -Sxx + Syy - Szz, Syz + Szy],
                [Sxy - Syx, Szx + Sxz, Syz + Szy, -Sxx - Syy + Szz],
            ]
        )
        _, eigvecs = np.linalg.eigh(N)
        R = quat_to_rotation_matrix(eigvecs[:, -1])

        scale = 1.0
        if params.estimate_scale:
            denom = float((w * np.sum(a * a, axis=1)).sum())
            scale = float((w * np.sum(b * (a @ R.T), axis=1)).sum()) / denom
            if not np.isfinite(scale) or scale <= 0.0:
                return SolverResult(success=False)

        pose = np.eye(4)
        pose[:3, :3] = R
        pose[:3, 3] = c_global - scale * (R @ c_local)
        return SolverResult(success=True, pose=pose, scale=scale)


def _robust_weights(residual_norms: np.ndarray, kernel: str, k: float) -> np.ndarray:
    """IRLS weights for the configured robust kernel."""
    if kernel == "huber":
        return np.where(
            residual_norms <= k, 1.0, k / np.maximum(residual_norms, 1e-300)
        )
    if kernel == "cauchy":
        return 1.0 / (1.0 + (residual_norms / k) ** 2)
    return np.ones_like(residual_norms)


class GaussNewtonSolver(TransformSolver):
    """
    Iterative SE(3) least squares over points and planes.

    The pose is refined by left perturbations T <- exp(dx) T, dx = [rho, phi].
    Residuals:
        - point-point: T l - g, Jacobian [I, -[T l]x]
        - plane normal: R n_l - n_g, Jacobian [0, -[R n_l]x]
        - plane offset: n_g . (T c_l) + d_g, Jacobian [n_g, (T c_l) x n_g]
        - point-plane: n_g . (T p_l) + d_g, Jacobian [n_g, (T p_l) x n_g]

    Robust kernels are applied by iteratively reweighted least squares on
    the point-point and point-plane residual norms.
    """

    def solve(
        self,
        pairings: Pairings,
        params: PairingsWeightParameters,
        initial_guess: Optional[Transform3D] = None,
    ) -> SolverResult:
        n_points = pairings.num_point_pairings()
        if pairings.empty():
            return SolverResult(success=False)

        T = np.eye(4) if initial_guess is None else as_transform(initial_guess).copy()
        w_layers = pairings.point_pair_weights()
        local_pts = pairings.local_points
        global_pts = pairings.global_points

        n_pt2pl = len(pairings.paired_pt2pl)
        if n_pt2pl:
            pl_normals = np.array([pl.normal for pl, _ in pairings.paired_pt2pl])
            pl_offsets = np.array([pl.offset for pl, _ in pairings.paired_pt2pl])
            pl_points = np.array([pt for _, pt in pairings.paired_pt2pl])

        for _ in range(params.gn_max_iterations):
            H = np.zeros((6, 6))
            g = np.zeros(6)
            R = T[:3, :3]

            if n_points:
                p = local_pts @ R.T + T[:3, 3]
                r = p - global_pts
                w = w_layers * _robust_weights(
                    np.linalg.norm(r, axis=1),
                    params.robust_kernel,
                    params.robust_kernel_param,
                )
                # Sum of w J^T J and w J^T r with J = [I, -[p]x], in closed form.
                w_sum = float(w.sum())
                wp_sum = (w[:, None] * p).sum(axis=0)
                wpp = (w[:, None] * p).T @ p
                H[:3, :3] += w_sum * np.eye(3)
                H[:3, 3:] += -skew(wp_sum)
                H[3:, :3] += skew(wp_sum)
                H[3:, 3:] += np.trace(wpp) * np.eye(3) - wpp
                g[:3] += (w[:, None] * r).sum(axis=0)
                g[3:] += (w[:, None] * np.cross(p, r)).sum(axis=0)

            for gl_plane, lc_plane in pairings.paired_planes:
                wp = params.plane_weight
                n_rot = R @ lc_plane.normal
                J_n = np.hstack([np.zeros((3, 3)), -skew(n_rot)])
                r_n = n_rot - gl_plane.normal
                H += wp * (J_n.T @ J_n)
                g += wp * (J_n.T @ r_n)

                c = R @ lc_plane.centroid + T[:3, 3]
                J_d = np.concatenate([gl_plane.normal, np.cross(c, gl_plane.normal)])
                r_d = float(gl_plane.normal @ c + gl_plane.offset)
                H += wp * np.outer(J_d, J_d)
                g += wp * J_d * r_d

            if n_pt2pl:
                q = pl_points @ R.T + T[:3, 3]
                r = np.sum(pl_normals * q, axis=1) + pl_offsets
                w = params.plane_weight * _robust_weights(
                    np.abs(r), params.robust_kernel, params.robust_kernel_param
                )
                J = np.hstack([pl_normals, np.cross(q, pl_normals)])
                H += (w[:, None] * J).T @ J
                g += J.T @ (w * r)

            if _is_rank_deficient(H, min_rank=6):
                return SolverResult(success=False)

            dx = np.linalg.solve(H, -g)
            T = se3_exp(dx) @ T
            if np.linalg.norm(dx) < params.gn_min_delta:
                break

        return SolverResult(success=True, pose=T, scale=1.0)


SOLVER_CLASSES = {
    "horn": HornSolver,
    "gauss_newton": GaussNewtonSolver,
}


def create_solver(strategy: str) -> TransformSolver:
    """
    Instantiate a solver by identifier ("horn" or "gauss_newton").

    Raises:
        ValueError: If ``strategy`` is unknown.
    """
    try:
        return SOLVER_CLASSES[strategy]()
    except KeyError:
        raise ValueError(
            f"Unknown solver '{strategy}'. Available: {sorted(SOLVER_CLASSES)}"
        ) from None
