from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np


class ReplanState(Enum):
    INIT = "init"
    WAIT_TARGET = "wait_target"
    GEN_NEW_TRAJ = "gen_new_traj"
    REPLAN_TRAJ = "replan_traj"
    EXEC_TRAJ = "exec_traj"


STATE_DISPLAY_NAMES: Dict[ReplanState, str] = {
    ReplanState.INIT: "INIT",
    ReplanState.WAIT_TARGET: "WAIT_TARGET",
    ReplanState.GEN_NEW_TRAJ: "GEN_NEW_TRAJ",
    ReplanState.REPLAN_TRAJ: "REPLAN_TRAJ",
    ReplanState.EXEC_TRAJ: "EXEC_TRAJ",
}


class TargetMode(Enum):
    """How a target event is turned into a goal (values match `fsm.flight_type`)."""

    MANUAL = 1
    PRESET = 2
    REFERENCE_PATH = 3


class GoalBlockedPolicy(Enum):
    """What to do when the goal is unsafe and no safer neighbour exists."""

    RETRY = "retry"
    GIVE_UP = "give_up"


def parse_target_mode(value: Any) -> TargetMode:
    if isinstance(value, TargetMode):
        return value
    if isinstance(value, str):
        key = value.strip().lower()
        names = {
            "manual": TargetMode.MANUAL,
            "preset": TargetMode.PRESET,
            "reference_path": TargetMode.REFERENCE_PATH,
            "reference": TargetMode.REFERENCE_PATH,
        }
        if key in names:
            return names[key]
        if key.lstrip("-").isdigit():
            value = int(key)
        else:
            raise ValueError(f"Unknown target mode '{value}'")
    try:
        return TargetMode(int(value))
    except ValueError as e:
        raise ValueError(f"Unknown target mode '{value}'") from e


def parse_goal_blocked_policy(value: Any) -> GoalBlockedPolicy:
    if isinstance(value, GoalBlockedPolicy):
        return value
    key = str(value).strip().lower().replace("-", "_")
    for policy in GoalBlockedPolicy:
        if policy.value == key:
            return policy
    raise ValueError(f"Unknown goal blocked policy '{value}' (expected retry|give_up)")


@dataclass
class VehicleState:
    """
    Latest odometry sample.
    Quaternion convention: [w, x, y, z].
    """

    position: np.ndarray  # (3,)
    velocity: np.ndarray  # (3,)
    orientation: np.ndarray  # (4,)

    def __post_init__(self) -> None:
        self.position = np.asarray(self.position, dtype=float).reshape(3)
        self.velocity = np.asarray(self.velocity, dtype=float).reshape(3)
        self.orientation = np.asarray(self.orientation, dtype=float).reshape(4)

    def copy(self) -> "VehicleState":
        return VehicleState(
            position=self.position.copy(),
            velocity=self.velocity.copy(),
            orientation=self.orientation.copy(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position.tolist(),
            "velocity": self.velocity.tolist(),
            "orientation": self.orientation.tolist(),
        }


@dataclass(frozen=True)
class Target:
    position: np.ndarray  # (3,)
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    mode: TargetMode = TargetMode.MANUAL

    def __post_init__(self) -> None:
        object.__setattr__(self, "position", np.asarray(self.position, dtype=float).reshape(3))
        object.__setattr__(self, "velocity", np.asarray(self.velocity, dtype=float).reshape(3))

    def relocated(self, position: np.ndarray) -> "Target":
        return Target(position=position, velocity=np.zeros(3), mode=self.mode)


@dataclass(frozen=True)
class BoundaryState:
    """Start state handed to the planner; `yaw` is (yaw, yaw_rate, yaw_acc)."""

    position: np.ndarray
    velocity: np.ndarray
    acceleration: np.ndarray
    yaw: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "position", np.asarray(self.position, dtype=float).reshape(3))
        object.__setattr__(self, "velocity", np.asarray(self.velocity, dtype=float).reshape(3))
        object.__setattr__(self, "acceleration", np.asarray(self.acceleration, dtype=float).reshape(3))
        object.__setattr__(self, "yaw", np.asarray(self.yaw, dtype=float).reshape(3))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position.tolist(),
            "velocity": self.velocity.tolist(),
            "acceleration": self.acceleration.tolist(),
            "yaw": self.yaw.tolist(),
        }


class PresetWaypoints:
    """Fixed ordered goals with a cyclic cursor."""

    def __init__(self, points: Sequence[Sequence[float]]) -> None:
        pts = np.asarray(points, dtype=float).reshape(-1, 3) if len(points) else np.zeros((0, 3))
        self._points = pts
        self._cursor = 0

    def __len__(self) -> int:
        return int(self._points.shape[0])

    @property
    def cursor(self) -> int:
        return self._cursor

    def next(self) -> np.ndarray:
        if len(self) == 0:
            raise ValueError("No preset waypoints configured")
        p = self._points[self._cursor].copy()
        self._cursor = (self._cursor + 1) % len(self)
        return p


@dataclass(frozen=True)
class StateTransition:
    from_state: ReplanState
    to_state: ReplanState
    source: str
    trigger: str = ""
    stamp: float = 0.0

    def describe(self) -> str:
        return (
            f"[{self.source}]: from {STATE_DISPLAY_NAMES[self.from_state]} "
            f"to {STATE_DISPLAY_NAMES[self.to_state]}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": STATE_DISPLAY_NAMES[self.from_state],
            "to": STATE_DISPLAY_NAMES[self.to_state],
            "source": self.source,
            "trigger": self.trigger,
            "stamp": float(self.stamp),
        }


@dataclass(frozen=True)
class TrajectoryCommand:
    """Wire shape of a committed trajectory (B-spline message)."""

    order: int
    start_time: float
    traj_id: int
    pos_pts: List[List[float]]
    knots: List[float]
    yaw_pts: List[float]
    yaw_dt: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": int(self.order),
            "start_time": float(self.start_time),
            "traj_id": int(self.traj_id),
            "pos_pts": [list(map(float, p)) for p in self.pos_pts],
            "knots": [float(k) for k in self.knots],
            "yaw_pts": [float(y) for y in self.yaw_pts],
            "yaw_dt": float(self.yaw_dt),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "TrajectoryCommand":
        return TrajectoryCommand(
            order=int(d["order"]),
            start_time=float(d["start_time"]),
            traj_id=int(d["traj_id"]),
            pos_pts=[list(map(float, p)) for p in d["pos_pts"]],
            knots=[float(k) for k in d["knots"]],
            yaw_pts=[float(y) for y in d["yaw_pts"]],
            yaw_dt=float(d["yaw_dt"]),
        )


@dataclass(frozen=True)
class PlanResult:
    success: bool
    trajectory: Optional[Any] = None  # UniformBspline for position
    message: str = ""
    solve_time: float = 0.0
