"""
Configuration for the replanning FSM.

Parameter names follow the ROS parameter layout used by the node and by
`config/replan_fsm.yaml`:

    fsm.*          state machine thresholds, target acquisition, goal search
    manager.*      vehicle limits and planner options
    environment.*  reference obstacle field
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Tuple

import yaml

from kino_replan.types import GoalBlockedPolicy, TargetMode, parse_goal_blocked_policy, parse_target_mode


@dataclass(frozen=True)
class ReplanConfig:
    # Target acquisition
    target_mode: TargetMode = TargetMode.MANUAL
    manual_target_height: float = 1.0  # m, manual goals are flown at a fixed height
    invalid_target_z: float = -0.1  # targets below this z are dropped
    waypoints: Tuple[Tuple[float, float, float], ...] = ()

    # Replan hysteresis
    replan_threshold: float = 1.5  # m from segment start
    no_replan_threshold: float = 2.0  # m from goal
    completion_epsilon_s: float = 1e-2

    # Timers
    exec_period_s: float = 0.01
    safety_period_s: float = 0.05
    status_log_period_ticks: int = 100

    # Goal safety search
    goal_clearance: float = 0.3
    goal_search_dr: float = 0.5
    goal_search_dtheta_deg: float = 30.0
    goal_search_dz: float = 0.3
    goal_search_rings: int = 5
    goal_blocked_policy: GoalBlockedPolicy = GoalBlockedPolicy.RETRY

    # Background planning
    planning_timeout_s: float = 0.5  # <=0 disables

    # Vehicle limits / planner options
    max_vel: float = 3.0
    max_acc: float = 2.0
    max_jerk: float = 4.0
    dynamic_environment: bool = False
    local_segment_length: float = 6.0
    control_points_distance: float = 0.5
    collision_clearance: float = 0.3
    collision_check_dt: float = 0.05

    def __post_init__(self) -> None:
        if self.goal_search_dr <= 0.0:
            raise ValueError("goal_search_dr must be > 0")
        if self.goal_search_dtheta_deg <= 0.0:
            raise ValueError("goal_search_dtheta_deg must be > 0")
        if self.goal_search_dz < 0.0:
            raise ValueError("goal_search_dz must be >= 0")
        if self.goal_search_rings < 1:
            raise ValueError("goal_search_rings must be >= 1")
        if self.target_mode == TargetMode.PRESET and not self.waypoints:
            raise ValueError("PRESET target mode requires at least one waypoint")
        if self.max_vel <= 0.0 or self.max_acc <= 0.0:
            raise ValueError("max_vel and max_acc must be > 0")

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ReplanConfig":
        """Build from a flat (`fsm.thresh_replan`) or nested (`fsm: {thresh_replan: ...}`) mapping."""
        flat = _flatten(d)
        kwargs: Dict[str, Any] = {}

        if "fsm.flight_type" in flat:
            kwargs["target_mode"] = parse_target_mode(flat["fsm.flight_type"])
        if "fsm.goal_blocked_policy" in flat:
            kwargs["goal_blocked_policy"] = parse_goal_blocked_policy(flat["fsm.goal_blocked_policy"])

        count = flat.get("fsm.waypoint_num")
        # waypoint_num <= 0 disables the (placeholder) waypoint list
        if count is not None and int(count) > 0 or count is None and "fsm.waypoints" in flat:
            kwargs["waypoints"] = _parse_waypoints(flat.get("fsm.waypoints", []), count)

        for key, attr, conv in _SCALAR_KEYS:
            if key in flat:
                kwargs[attr] = conv(flat[key])

        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, filepath: str) -> "ReplanConfig":
        """Load from a YAML file; ROS-style `<node>: ros__parameters:` nesting is accepted."""
        with open(filepath, "r") as f:
            data = yaml.safe_load(f) or {}

        if "kino_replan_fsm" in data:
            data = data["kino_replan_fsm"]
        if "ros__parameters" in data:
            data = data["ros__parameters"]

        return cls.from_dict(data)

    @classmethod
    def from_ros_params(cls, node) -> "ReplanConfig":
        """Declare and read every option on a ROS2 node."""
        defaults = cls()
        node.declare_parameter("fsm.flight_type", defaults.target_mode.value)
        node.declare_parameter("fsm.goal_blocked_policy", defaults.goal_blocked_policy.value)
        node.declare_parameter("fsm.waypoint_num", 0)
        node.declare_parameter("fsm.waypoints", [0.0])
        for key, attr, _ in _SCALAR_KEYS:
            node.declare_parameter(key, getattr(defaults, attr))

        d: Dict[str, Any] = {
            "fsm.flight_type": node.get_parameter("fsm.flight_type").value,
            "fsm.goal_blocked_policy": node.get_parameter("fsm.goal_blocked_policy").value,
        }
        num = int(node.get_parameter("fsm.waypoint_num").value)
        if num > 0:
            d["fsm.waypoint_num"] = num
            d["fsm.waypoints"] = list(node.get_parameter("fsm.waypoints").value)
        for key, _, _ in _SCALAR_KEYS:
            d[key] = node.get_parameter(key).value
        return cls.from_dict(d)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, (TargetMode, GoalBlockedPolicy)):
                value = value.value
            elif f.name == "waypoints":
                value = [list(p) for p in value]
            out[f.name] = value
        return out


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


_SCALAR_KEYS = (
    ("fsm.thresh_replan", "replan_threshold", float),
    ("fsm.thresh_no_replan", "no_replan_threshold", float),
    ("fsm.manual_target_height", "manual_target_height", float),
    ("fsm.invalid_target_z", "invalid_target_z", float),
    ("fsm.completion_epsilon_s", "completion_epsilon_s", float),
    ("fsm.exec_period_s", "exec_period_s", float),
    ("fsm.safety_period_s", "safety_period_s", float),
    ("fsm.status_log_period_ticks", "status_log_period_ticks", int),
    ("fsm.goal_clearance", "goal_clearance", float),
    ("fsm.goal_search.dr", "goal_search_dr", float),
    ("fsm.goal_search.dtheta_deg", "goal_search_dtheta_deg", float),
    ("fsm.goal_search.dz", "goal_search_dz", float),
    ("fsm.goal_search.rings", "goal_search_rings", int),
    ("fsm.planning_timeout_s", "planning_timeout_s", float),
    ("manager.max_vel", "max_vel", float),
    ("manager.max_acc", "max_acc", float),
    ("manager.max_jerk", "max_jerk", float),
    ("manager.dynamic_environment", "dynamic_environment", _as_bool),
    ("manager.local_segment_length", "local_segment_length", float),
    ("manager.control_points_distance", "control_points_distance", float),
    ("manager.collision_clearance", "collision_clearance", float),
    ("manager.collision_check_dt", "collision_check_dt", float),
)


def _flatten(d: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in d.items():
        key = f"{prefix}{k}"
        if isinstance(v, Mapping):
            out.update(_flatten(v, prefix=f"{key}."))
        else:
            out[key] = v
    return out


def _parse_waypoints(raw: Any, count: Any = None) -> Tuple[Tuple[float, float, float], ...]:
    if isinstance(raw, str):
        raw = json.loads(raw) if raw.strip() else []
    values = list(raw or [])
    if values and isinstance(values[0], (list, tuple)):
        points = [tuple(float(c) for c in p) for p in values]
    else:
        if len(values) % 3 != 0:
            raise ValueError(f"fsm.waypoints must hold xyz triples, got {len(values)} values")
        points = [tuple(float(c) for c in values[i:i + 3]) for i in range(0, len(values), 3)]
    for p in points:
        if len(p) != 3:
            raise ValueError(f"Waypoint {p} is not 3D")
    if count is not None:
        n = int(count)
        if n > len(points):
            raise ValueError(f"fsm.waypoint_num={n} but only {len(points)} waypoints given")
        points = points[:n]
    return tuple(points)  # type: ignore[return-value]
