from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

import numpy as np

from kino_replan.trajectory.bspline import UniformBspline
from kino_replan.types import BoundaryState, TrajectoryCommand


@dataclass(frozen=True)
class LocalTrajectory:
    """Committed trajectory snapshot; replaced as a whole on every successful plan."""

    position_traj: UniformBspline
    velocity_traj: UniformBspline
    acceleration_traj: UniformBspline
    yaw_traj: UniformBspline
    yawdot_traj: UniformBspline
    yawdotdot_traj: UniformBspline
    start_time: float
    start_position: np.ndarray
    traj_id: int

    @staticmethod
    def build(position_traj: UniformBspline, yaw_traj: UniformBspline, start_time: float, traj_id: int) -> "LocalTrajectory":
        velocity_traj = position_traj.derivative()
        yawdot_traj = yaw_traj.derivative()
        return LocalTrajectory(
            position_traj=position_traj,
            velocity_traj=velocity_traj,
            acceleration_traj=velocity_traj.derivative(),
            yaw_traj=yaw_traj,
            yawdot_traj=yawdot_traj,
            yawdotdot_traj=yawdot_traj.derivative(),
            start_time=float(start_time),
            start_position=position_traj.evaluate(0.0),
            traj_id=int(traj_id),
        )

    @property
    def duration(self) -> float:
        return self.position_traj.duration

    def elapsed(self, now: float) -> float:
        return float(now - self.start_time)

    def position(self, t: float) -> np.ndarray:
        return self.position_traj.evaluate(t)

    def boundary_at(self, t: float) -> BoundaryState:
        return BoundaryState(
            position=self.position_traj.evaluate(t),
            velocity=self.velocity_traj.evaluate(t),
            acceleration=self.acceleration_traj.evaluate(t),
            yaw=np.array(
                [
                    float(self.yaw_traj.evaluate(t)[0]),
                    float(self.yawdot_traj.evaluate(t)[0]),
                    float(self.yawdotdot_traj.evaluate(t)[0]),
                ],
                dtype=float,
            ),
        )

    def to_command(self) -> TrajectoryCommand:
        return TrajectoryCommand(
            order=self.position_traj.order,
            start_time=self.start_time,
            traj_id=self.traj_id,
            pos_pts=self.position_traj.control_points.tolist(),
            knots=self.position_traj.knots.tolist(),
            yaw_pts=self.yaw_traj.control_points[:, 0].tolist(),
            yaw_dt=self.yaw_traj.interval,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "traj_id": self.traj_id,
            "start_time": self.start_time,
            "duration": self.duration,
            "start_position": self.start_position.tolist(),
            "end_position": self.position_traj.evaluate(self.duration).tolist(),
        }
