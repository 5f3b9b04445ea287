"""Boundary conditions for a planning call."""

from __future__ import annotations

import numpy as np

from kino_replan.trajectory.local_trajectory import LocalTrajectory
from kino_replan.types import BoundaryState, VehicleState
from kino_replan.utils.quaternion_utils import heading_from_quat


def boundary_from_vehicle(state: VehicleState) -> BoundaryState:
    """Cold start: measured position/velocity, zero acceleration, heading yaw with zero rates."""
    return BoundaryState(
        position=state.position.copy(),
        velocity=state.velocity.copy(),
        acceleration=np.zeros(3),
        yaw=np.array([heading_from_quat(state.orientation), 0.0, 0.0], dtype=float),
    )


def boundary_from_trajectory(trajectory: LocalTrajectory, now: float) -> BoundaryState:
    """
    Hot start for an in-flight replan.

    Evaluates the committed trajectory and its yaw derivatives at
    `now - start_time` so the next trajectory starts with the derivatives
    the vehicle is currently being commanded.
    """
    return trajectory.boundary_at(trajectory.elapsed(now))
