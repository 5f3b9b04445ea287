"""Contracts the replanning controller needs from its collaborators."""

from __future__ import annotations

from typing import Optional, Protocol, Tuple

import numpy as np

from kino_replan.trajectory.bspline import UniformBspline
from kino_replan.trajectory.local_trajectory import LocalTrajectory
from kino_replan.types import BoundaryState, PlanResult, TrajectoryCommand


class LoggerLike(Protocol):
    def debug(self, msg: str) -> None: ...

    def info(self, msg: str) -> None: ...

    def warning(self, msg: str) -> None: ...


class EnvironmentModel(Protocol):
    def distance(self, point: np.ndarray, time: Optional[float] = None) -> float:
        """Distance to the nearest obstacle; `time=None` means static/now."""
        ...


class TrajectoryPlanner(Protocol):
    def plan(self, boundary: BoundaryState, goal: np.ndarray, goal_velocity: np.ndarray) -> PlanResult:  # noqa: D102
        ...

    def plan_yaw(self, boundary: BoundaryState, position_traj: UniformBspline) -> UniformBspline:  # noqa: D102
        ...


class CollisionChecker(Protocol):
    def check(self, trajectory: LocalTrajectory, now: float) -> Tuple[bool, Optional[float]]:
        """Return (safe, distance_to_first_collision) for the rest of `trajectory`."""
        ...


class CommandSink(Protocol):
    def publish_trajectory(self, command: TrajectoryCommand) -> None:  # noqa: D102
        ...

    def request_replan(self) -> None:  # noqa: D102
        ...

    def publish_goal(self, position: np.ndarray) -> None:  # noqa: D102
        ...
