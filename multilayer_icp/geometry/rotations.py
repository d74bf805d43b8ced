"""Rotation representations used by the registration engine.

This module provides the SO(3) building blocks needed to express 3D rigid
poses and to measure how much a pose changed between two ICP iterations:
- Rotation matrices (3x3 orthogonal matrices, SO(3))
- Quaternions (unit quaternions, q = [qw, qx, qy, qz]), used by the
  closed-form Horn solver
- Euler angles (yaw-pitch-roll, ZYX convention), used by Pose3
- Rotation vectors (axis-angle, so(3)), the exp/log maps of SO(3)

Conventions:
- Quaternions: [qw, qx, qy, qz] where qw is the scalar part
- Euler angles: roll about x, pitch about y, yaw about z, in radians,
  composed as R = Rz(yaw) @ Ry(pitch) @ Rx(roll)
- Rotation matrices: 3x3 numpy arrays
"""

import numpy as np
from numpy.typing import NDArray

# Below this angle the first-order Taylor branch of exp/log is used.
SMALL_ANGLE: float = 1e-10

# Distance to pi below which log() switches to the symmetric-part branch.
NEAR_PI: float = 1e-6


def skew(v: NDArray[np.float64]) -> NDArray[np.float64]:
    """Skew-symmetric matrix [v]_x of a 3-vector (hat operator)."""
    v = np.asarray(v, dtype=np.float64).reshape(-1)
    if v.shape != (3,):
        raise ValueError(f"Expected 3-vector, got shape {v.shape}")
    return np.array(
        [
            [0.0, -v[2], v[1]],
            [v[2], 0.0, -v[0]],
            [-v[1], v[0], 0.0],
        ],
        dtype=np.float64,
    )


def unskew(S: NDArray[np.float64]) -> NDArray[np.float64]:
    """3-vector of a skew-symmetric matrix (vee operator)."""
    return np.array([S[2, 1], S[0, 2], S[1, 0]], dtype=np.float64)


def euler_to_rotation_matrix(
    roll: float,
    pitch: float,
    yaw: float,
) -> NDArray[np.float64]:
    """Convert Euler angles to rotation matrix.

    Args:
        roll: Roll angle in radians (rotation about x-axis).
        pitch: Pitch angle in radians (rotation about y-axis).
        yaw: Yaw angle in radians (rotation about z-axis).

    Returns:
        3x3 rotation matrix R = Rz(yaw) @ Ry(pitch) @ Rx(roll).

    Example:
        >>> R = euler_to_rotation_matrix(0.0, 0.0, np.pi / 2)
        >>> np.allclose(R @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0])
        True
    """
    cr = np.cos(roll)
    sr = np.sin(roll)
    cp = np.cos(pitch)
    sp = np.sin(pitch)
    cy = np.cos(yaw)
    sy = np.sin(yaw)

    return np.array(
        [
            [cy * cp, cy * sp * sr - sy * cr, cy * sp * cr + sy * sr],
            [sy * cp, sy * sp * sr + cy * cr, sy * sp * cr - cy * sr],
            [-sp, cp * sr, cp * cr],
        ],
        dtype=np.float64,
    )


def rotation_matrix_to_euler(R: NDArray[np.float64]) -> NDArray[np.float64]:
    """Convert rotation matrix to Euler angles.

    Handles gimbal lock (pitch near +-90 deg) by fixing roll to zero.

    Args:
        R: 3x3 rotation matrix.

    Returns:
        Euler angles as numpy array [roll, pitch, yaw] in radians.

    Raises:
        ValueError: If R is not a 3x3 matrix.
    """
    if R.shape != (3, 3):
        raise ValueError(f"Expected 3x3 matrix, got shape {R.shape}")

    sin_pitch = -R[2, 0]

    if abs(sin_pitch) >= 1.0:
        pitch = np.copysign(np.pi / 2.0, sin_pitch)
        yaw = np.arctan2(-R[0, 1], R[1, 1])
        roll = 0.0
    else:
        pitch = np.arcsin(sin_pitch)
        roll = np.arctan2(R[2, 1], R[2, 2])
        yaw = np.arctan2(R[1, 0], R[0, 0])

    return np.array([roll, pitch, yaw], dtype=np.float64)


def quat_to_rotation_matrix(q: NDArray[np.float64]) -> NDArray[np.float64]:
    """Convert quaternion [qw, qx, qy, qz] to rotation matrix.

    The quaternion is normalized first, so eigenvectors coming straight out
    of a symmetric eigen-solver can be passed in directly.

    Raises:
        ValueError: If q is not a 4-element array or has zero norm.
    """
    q = np.asarray(q, dtype=np.float64)
    if q.shape != (4,):
        raise ValueError(f"Expected 4-element quaternion, got shape {q.shape}")

    norm = np.linalg.norm(q)
    if norm < SMALL_ANGLE:
        raise ValueError("Quaternion norm is too small (near zero)")
    qw, qx, qy, qz = q / norm

    return np.array(
        [
            [
                1.0 - 2.0 * (qy * qy + qz * qz),
                2.0 * (qx * qy - qw * qz),
                2.0 * (qx * qz + qw * qy),
            ],
            [
                2.0 * (qx * qy + qw * qz),
                1.0 - 2.0 * (qx * qx + qz * qz),
                2.0 * (qy * qz - qw * qx),
            ],
            [
                2.0 * (qx * qz - qw * qy),
                2.0 * (qy * qz + qw * qx),
                1.0 - 2.0 * (qx * qx + qy * qy),
            ],
        ],
        dtype=np.float64,
    )


def so3_exp(phi: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Exponential map so(3) -> SO(3) (Rodrigues' formula).

    Args:
        phi: Rotation vector (axis * angle), shape (3,).

    Returns:
        3x3 rotation matrix.
    """
    phi = np.asarray(phi, dtype=np.float64).reshape(-1)
    theta = np.linalg.norm(phi)

    if theta < SMALL_ANGLE:
        return np.eye(3) + skew(phi)

    K = skew(phi / theta)
    return np.eye(3) + np.sin(theta) * K + (1.0 - np.cos(theta)) * (K @ K)


def so3_log(R: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Logarithm map SO(3) -> so(3).

    Three branches:
        1. theta ~ 0: vee of the antisymmetric part.
        2. theta ~ pi: axis from the symmetric part (R + I) / 2 = a a^T.
        3. otherwise: theta / (2 sin theta) * vee(R - R^T).

    Args:
        R: 3x3 rotation matrix.

    Returns:
        Rotation vector of shape (3,), with norm in [0, pi].

    Raises:
        ValueError: If R is not a 3x3 matrix.
    """
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError(f"Expected 3x3 matrix, got shape {R.shape}")

    cos_theta = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    theta = np.arccos(cos_theta)

    if theta < SMALL_ANGLE:
        return unskew((R - R.T) / 2.0)

    if np.pi - theta < NEAR_PI:
        B = (R + np.eye(3)) / 2.0
        # Largest diagonal entry gives the best-conditioned column.
        k = int(np.argmax(np.diag(B)))
        axis = B[:, k] / np.sqrt(max(B[k, k], SMALL_ANGLE))
        axis = axis / np.linalg.norm(axis)
        # Resolve the sign with the (tiny) antisymmetric part when available.
        if np.dot(axis, unskew(R - R.T)) < 0.0:
            axis = -axis
        return axis * theta

    return unskew(R - R.T) * (theta / (2.0 * np.sin(theta)))
