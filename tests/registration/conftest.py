"""Shared fixtures for the registration suites."""

import numpy as np
import pytest

from multilayer_icp.registration import PlanePatch


@pytest.fixture
def box_faces():
    """Floor and two walls, with 5x5 sample points around each centroid.

    Returns:
        (planes, points): the three faces and their 75 samples, 25 per face
        in face order.
    """
    planes = [
        PlanePatch.from_centroid_normal([0.0, 0.0, 0.0], [0.0, 0.0, 1.0]),
        PlanePatch.from_centroid_normal([4.0, 0.0, 2.0], [1.0, 0.0, 0.0]),
        PlanePatch.from_centroid_normal([0.0, 4.0, 2.0], [0.0, 1.0, 0.0]),
    ]
    u, v = np.meshgrid(np.linspace(-0.5, 0.5, 5), np.linspace(-0.5, 0.5, 5))
    u, v = u.ravel(), v.ravel()
    zero = np.zeros_like(u)
    points = np.vstack(
        [
            np.column_stack([u, v, zero]),
            np.column_stack([zero + 4.0, u, 2.0 + v]),
            np.column_stack([u, zero + 4.0, 2.0 + v]),
        ]
    )
    return planes, points
