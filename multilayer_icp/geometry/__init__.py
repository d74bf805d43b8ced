"""3D rigid-body geometry: rotations, SE(3) poses and their Lie algebra."""

from .rotations import (
    euler_to_rotation_matrix,
    quat_to_rotation_matrix,
    rotation_matrix_to_euler,
    skew,
    so3_exp,
    so3_log,
    unskew,
)
from .se3 import (
    as_transform,
    se3_apply,
    se3_compose,
    se3_exp,
    se3_inverse,
    se3_log,
    se3_relative,
)
from .types import Pose3, Transform3D

__all__ = [
    "Pose3",
    "Transform3D",
    # Rotations
    "euler_to_rotation_matrix",
    "rotation_matrix_to_euler",
    "quat_to_rotation_matrix",
    "skew",
    "unskew",
    "so3_exp",
    "so3_log",
    # SE(3)
    "as_transform",
    "se3_compose",
    "se3_inverse",
    "se3_relative",
    "se3_apply",
    "se3_exp",
    "se3_log",
]
