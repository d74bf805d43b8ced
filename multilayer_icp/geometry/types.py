"""Pose representation shared by the geometry and registration modules.

Key types:
    - Pose3: 6-DOF rigid pose [x, y, z, yaw, pitch, roll]
    - Transform3D: type alias for 4x4 homogeneous SE(3) matrices
"""

from dataclasses import dataclass

import numpy as np

from .rotations import euler_to_rotation_matrix, rotation_matrix_to_euler

Transform3D = np.ndarray  # Shape (4, 4), homogeneous SE(3) matrix


@dataclass(frozen=True)
class Pose3:
    """
    SE(3) pose as translation plus yaw-pitch-roll angles.

    This is the user-facing pose type: the initial guess passed to
    ``ICP.align`` and the optimal pose in ``Results``. Internally the engine
    works on 4x4 homogeneous matrices (see ``to_matrix``).

    Attributes:
        x, y, z: Translation (same length unit as the point clouds).
        yaw: Rotation about z (radians).
        pitch: Rotation about y (radians).
        roll: Rotation about x (radians).

    Examples:
        >>> p = Pose3(x=0.5, y=-0.2, z=0.0, yaw=np.deg2rad(10.0))
        >>> T = p.to_matrix()
        >>> Pose3.from_matrix(T).yaw  # doctest: +ELLIPSIS
        0.1745...
    """

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0

    def __post_init__(self) -> None:
        for name in ("x", "y", "z", "yaw", "pitch", "roll"):
            value = getattr(self, name)
            if not np.isfinite(value):
                raise ValueError(f"{name} must be finite, got {value}")

    def to_array(self) -> np.ndarray:
        """Return [x, y, z, yaw, pitch, roll] as an array of shape (6,)."""
        return np.array(
            [self.x, self.y, self.z, self.yaw, self.pitch, self.roll],
            dtype=np.float64,
        )

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "Pose3":
        """Create a Pose3 from [x, y, z, yaw, pitch, roll]."""
        arr = np.asarray(arr, dtype=np.float64)
        if arr.shape != (6,):
            raise ValueError(f"Array must have shape (6,), got {arr.shape}")
        return cls(*(float(v) for v in arr))

    @classmethod
    def identity(cls) -> "Pose3":
        return cls()

    def to_matrix(self) -> Transform3D:
        """4x4 homogeneous matrix mapping local coordinates to the parent frame."""
        T = np.eye(4)
        T[:3, :3] = euler_to_rotation_matrix(self.roll, self.pitch, self.yaw)
        T[:3, 3] = [self.x, self.y, self.z]
        return T

    @classmethod
    def from_matrix(cls, T: Transform3D) -> "Pose3":
        """Create a Pose3 from a 4x4 homogeneous matrix."""
        T = np.asarray(T, dtype=np.float64)
        if T.shape != (4, 4):
            raise ValueError(f"Matrix must have shape (4, 4), got {T.shape}")
        roll, pitch, yaw = rotation_matrix_to_euler(T[:3, :3])
        return cls(
            x=float(T[0, 3]),
            y=float(T[1, 3]),
            z=float(T[2, 3]),
            yaw=float(yaw),
            pitch=float(pitch),
            roll=float(roll),
        )

    def __repr__(self) -> str:
        return (
            f"Pose3(x={self.x:.4f}, y={self.y:.4f}, z={self.z:.4f}, "
            f"yaw={self.yaw:.4f}, pitch={self.pitch:.4f}, roll={self.roll:.4f})"
        )
