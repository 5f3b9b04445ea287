from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from kino_replan.config import ReplanConfig
from kino_replan.environment import ObstacleField, SampledCollisionChecker
from kino_replan.fsm.planning_task import InlinePlanningWorker
from kino_replan.fsm.replan_fsm import ReplanController
from kino_replan.logging.replan_logger import ReplanLogger
from kino_replan.planning.reference_planner import BsplineReferencePlanner, PlannerConfig
from kino_replan.types import ReplanState, TrajectoryCommand
from kino_replan.utils.quaternion_utils import quat_from_yaw


class SimClock:
    """Manually advanced clock in seconds."""

    def __init__(self, t0: float = 0.0) -> None:
        self.t = float(t0)

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> float:
        self.t += float(dt)
        return self.t


@dataclass
class RecordingSink:
    commands: List[TrajectoryCommand] = field(default_factory=list)
    goals: List[np.ndarray] = field(default_factory=list)
    replan_requests: int = 0

    def publish_trajectory(self, command: TrajectoryCommand) -> None:
        self.commands.append(command)

    def request_replan(self) -> None:
        self.replan_requests += 1

    def publish_goal(self, position: np.ndarray) -> None:
        self.goals.append(np.asarray(position, dtype=float).copy())


@dataclass
class OfflineReplanSim:
    """
    Closed-loop run of the controller without ROS.

    The vehicle follows the committed trajectory exactly. Ticks are
    counted in integers of `exec_period_s` so the 100 Hz / 20 Hz
    interleaving stays exact over long runs.
    """

    config: ReplanConfig = field(default_factory=ReplanConfig)
    environment: ObstacleField = field(default_factory=ObstacleField)
    start_position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    start_yaw: float = 0.0

    def __post_init__(self) -> None:
        self.start_position = np.asarray(self.start_position, dtype=float).reshape(3)
        self.clock = SimClock()
        self.sink = RecordingSink()
        self.recorder = ReplanLogger(mode="offline")
        self.planner = BsplineReferencePlanner(self.environment, PlannerConfig.from_replan_config(self.config))
        checker = SampledCollisionChecker(
            self.environment,
            clearance=self.config.collision_clearance,
            dt=self.config.collision_check_dt,
            dynamic=self.config.dynamic_environment,
            horizon=self.config.local_segment_length,
        )
        self.controller = ReplanController(
            self.config,
            self.planner,
            self.environment,
            checker,
            self.sink,
            worker=InlinePlanningWorker(self.planner, clock=self.clock),
            clock=self.clock,
            recorder=self.recorder,
        )
        self.position = self.start_position.copy()
        self.velocity = np.zeros(3)
        self.yaw = float(self.start_yaw)

    def _publish_vehicle_state(self) -> None:
        self.controller.on_vehicle_state(self.position, self.velocity, quat_from_yaw(self.yaw))

    def _track_active(self) -> None:
        active = self.controller.active_trajectory
        if active is None:
            self.velocity = np.zeros(3)
            return
        t = float(np.clip(active.elapsed(self.clock()), 0.0, active.duration))
        self.position = active.position_traj.evaluate(t)
        self.velocity = active.velocity_traj.evaluate(t)
        self.yaw = float(active.yaw_traj.evaluate(t)[0])

    def run(
        self,
        targets: Sequence[Tuple[float, Sequence[float]]],
        max_time_s: float = 30.0,
        stop_when_idle: bool = True,
    ) -> Dict[str, Any]:
        """
        Run until every target has been issued and the controller is back in
        WAIT_TARGET (or `max_time_s` elapses). `targets` holds (time, xyz).
        """
        cfg = self.config
        dt = float(cfg.exec_period_s)
        safety_every = max(int(round(cfg.safety_period_s / dt)), 1)
        pending = sorted(((float(t), np.asarray(p, dtype=float)) for t, p in targets), key=lambda x: x[0])
        n_ticks = int(np.ceil(float(max_time_s) / dt))

        states: List[Dict[str, Any]] = []
        last_state: Optional[ReplanState] = None
        for k in range(n_ticks):
            self._publish_vehicle_state()
            while pending and pending[0][0] <= self.clock() + 1e-9:
                _, p = pending.pop(0)
                self.controller.on_target(p)

            state = self.controller.exec_tick()
            if k % safety_every == 0:
                self.controller.safety_tick()
                state = self.controller.state

            self.clock.advance(dt)
            self._track_active()

            if state != last_state:
                states.append({"t": self.clock(), "state": state.value, "position": self.position.tolist()})
                last_state = state

            if stop_when_idle and not pending and state == ReplanState.WAIT_TARGET and self.sink.commands:
                break

        self.recorder.compute_summary_metrics()
        return {
            "final_state": self.controller.state,
            "final_position": self.position.copy(),
            "time": self.clock(),
            "commands": list(self.sink.commands),
            "traj_ids": [c.traj_id for c in self.sink.commands],
            "replan_requests": self.sink.replan_requests,
            "goals": list(self.sink.goals),
            "state_history": states,
            "log": self.recorder.log_data,
        }
