"""Rigid registration of multi-primitive point clouds.

This package registers two point clouds made of named point layers and
plane patches with an Iterative Closest Point scheme:
- geometry: rotations, SE(3) poses and their Lie algebra
- registration: data model, matchers, solvers and the ICP engine
- utils: logging setup
"""

from .geometry import Pose3
from .registration import (
    ICP,
    IterTermReason,
    Parameters,
    PlanePatch,
    PointCloudLayers,
    RegistrationPreconditionError,
    Results,
    create_icp,
)

__all__ = [
    "Pose3",
    "PointCloudLayers",
    "PlanePatch",
    "Parameters",
    "ICP",
    "create_icp",
    "IterTermReason",
    "Results",
    "RegistrationPreconditionError",
]

__version__ = "0.1.0"
