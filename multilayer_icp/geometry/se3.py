"""SE(3) operations on 4x4 homogeneous matrices.

The registration engine keeps its pose estimate as a 4x4 matrix and uses
these helpers to move local points into the global frame and to measure the
incremental pose between two iterations in the Lie algebra se(3).

Key functions:
    - se3_compose: T1 @ T2
    - se3_inverse: closed-form inverse [R^T, -R^T t]
    - se3_relative: T_from^-1 @ T_to (the incremental pose)
    - se3_apply: transform (N, 3) points
    - se3_exp / se3_log: exponential and logarithm maps

Tangent vectors are ordered [rho (translation, 3), phi (rotation, 3)].
"""

from typing import Union

import numpy as np

from .rotations import SMALL_ANGLE, skew, so3_exp, so3_log
from .types import Pose3, Transform3D


def as_transform(T: Union[Transform3D, Pose3]) -> Transform3D:
    """Return a float 4x4 matrix for a Pose3 or a 4x4 array-like."""
    if isinstance(T, Pose3):
        return T.to_matrix()
    T = np.asarray(T, dtype=np.float64)
    if T.shape != (4, 4):
        raise ValueError(f"Transform must have shape (4, 4), got {T.shape}")
    return T


def se3_compose(
    T1: Union[Transform3D, Pose3], T2: Union[Transform3D, Pose3]
) -> Transform3D:
    """Compose two SE(3) transforms: T1 (+) T2."""
    return as_transform(T1) @ as_transform(T2)


def se3_inverse(T: Union[Transform3D, Pose3]) -> Transform3D:
    """Invert an SE(3) transform without a general matrix inversion."""
    T = as_transform(T)
    R = T[:3, :3]
    t = T[:3, 3]

    T_inv = np.eye(4)
    T_inv[:3, :3] = R.T
    T_inv[:3, 3] = -R.T @ t
    return T_inv


def se3_relative(
    T_from: Union[Transform3D, Pose3], T_to: Union[Transform3D, Pose3]
) -> Transform3D:
    """Relative transform T_from^-1 (+) T_to."""
    return se3_inverse(T_from) @ as_transform(T_to)


def se3_apply(T: Union[Transform3D, Pose3], points: np.ndarray) -> np.ndarray:
    """
    Transform points by an SE(3) pose.

    Args:
        T: Pose mapping local coordinates into the target frame.
        points: Points of shape (N, 3) or a single point of shape (3,).

    Returns:
        Transformed points with the same shape as the input.

    Raises:
        ValueError: If points are not (3,) or (N, 3).
    """
    T = as_transform(T)
    points = np.asarray(points, dtype=np.float64)

    if points.ndim == 1:
        if points.shape != (3,):
            raise ValueError(f"Expected 3D point, got shape {points.shape}")
        return T[:3, :3] @ points + T[:3, 3]
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"points must have shape (N, 3), got {points.shape}")

    return points @ T[:3, :3].T + T[:3, 3]


def _left_jacobian(phi: np.ndarray) -> np.ndarray:
    """Left Jacobian V(phi) of SO(3), relating rho and t in se(3)."""
    theta = np.linalg.norm(phi)
    K = skew(phi)
    if theta < SMALL_ANGLE:
        return np.eye(3) + 0.5 * K
    theta2 = theta * theta
    return (
        np.eye(3)
        + ((1.0 - np.cos(theta)) / theta2) * K
        + ((theta - np.sin(theta)) / (theta2 * theta)) * (K @ K)
    )


def _left_jacobian_inverse(phi: np.ndarray) -> np.ndarray:
    theta = np.linalg.norm(phi)
    K = skew(phi)
    if theta < SMALL_ANGLE:
        return np.eye(3) - 0.5 * K
    half = 0.5 * theta
    coef = (1.0 - half * np.cos(half) / np.sin(half)) / (theta * theta)
    return np.eye(3) - 0.5 * K + coef * (K @ K)


def se3_exp(xi: np.ndarray) -> Transform3D:
    """
    Exponential map se(3) -> SE(3).

    Args:
        xi: Tangent vector [rho (3), phi (3)].

    Returns:
        4x4 homogeneous transform.
    """
    xi = np.asarray(xi, dtype=np.float64).reshape(-1)
    if xi.shape != (6,):
        raise ValueError(f"xi must have shape (6,), got {xi.shape}")

    rho, phi = xi[:3], xi[3:]
    T = np.eye(4)
    T[:3, :3] = so3_exp(phi)
    T[:3, 3] = _left_jacobian(phi) @ rho
    return T


def se3_log(T: Union[Transform3D, Pose3]) -> np.ndarray:
    """
    Logarithm map SE(3) -> se(3).

    The translation block is V(phi)^-1 t, so a pure rotation about an axis
    through the origin has zero translation block and a pure translation
    has zero rotation block.

    Args:
        T: 4x4 homogeneous transform or Pose3.

    Returns:
        Tangent vector [rho (3), phi (3)] of shape (6,).

    Examples:
        >>> T = np.eye(4); T[:3, 3] = [1.0, 2.0, 3.0]
        >>> np.allclose(se3_log(T), [1, 2, 3, 0, 0, 0])
        True
    """
    T = as_transform(T)
    phi = so3_log(T[:3, :3])
    rho = _left_jacobian_inverse(phi) @ T[:3, 3]
    return np.concatenate([rho, phi])
