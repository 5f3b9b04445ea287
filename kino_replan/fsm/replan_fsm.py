"""
Replanning state machine.

Two periodic ticks drive the controller:

* `exec_tick()` (100 Hz) advances INIT -> WAIT_TARGET -> GEN_NEW_TRAJ ->
  EXEC_TRAJ <-> REPLAN_TRAJ and decides when an in-flight replan is due.
* `safety_tick()` (20 Hz) keeps the goal clear of obstacles and forces a
  replan when the committed trajectory runs into one.

Two events feed it: `on_vehicle_state()` (odometry) and `on_target()`.
All entry points share one re-entrant lock, so callbacks may arrive from
any executor thread.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from kino_replan.config import ReplanConfig
from kino_replan.fsm.boundary import boundary_from_trajectory, boundary_from_vehicle
from kino_replan.fsm.goal_safety import find_safer_goal_for_config
from kino_replan.fsm.planning_task import InlinePlanningWorker, PlanningWorker, PlanOutcome, outcome_summary
from kino_replan.interfaces import CollisionChecker, CommandSink, EnvironmentModel, LoggerLike, TrajectoryPlanner
from kino_replan.logging.replan_logger import ReplanLogger
from kino_replan.trajectory.local_trajectory import LocalTrajectory
from kino_replan.types import (
    STATE_DISPLAY_NAMES,
    GoalBlockedPolicy,
    PresetWaypoints,
    ReplanState,
    StateTransition,
    Target,
    TargetMode,
    VehicleState,
)

_PLANNING_STATES = (ReplanState.GEN_NEW_TRAJ, ReplanState.REPLAN_TRAJ)


@dataclass(frozen=True)
class ControllerSnapshot:
    state: ReplanState
    has_state: bool
    has_target: bool
    triggered: bool
    goal: Optional[np.ndarray]
    traj_id: Optional[int]
    planning: bool

    def to_dict(self) -> dict:
        return {
            "state": STATE_DISPLAY_NAMES[self.state],
            "has_state": self.has_state,
            "has_target": self.has_target,
            "triggered": self.triggered,
            "goal": None if self.goal is None else self.goal.tolist(),
            "traj_id": self.traj_id,
            "planning": self.planning,
        }


class ReplanController:
    def __init__(
        self,
        config: ReplanConfig,
        planner: TrajectoryPlanner,
        environment: EnvironmentModel,
        collision_checker: CollisionChecker,
        sink: CommandSink,
        worker: Optional[PlanningWorker] = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[LoggerLike] = None,
        recorder: Optional[ReplanLogger] = None,
    ) -> None:
        self.config = config
        self.planner = planner
        self.environment = environment
        self.collision_checker = collision_checker
        self.sink = sink
        self._clock = clock
        self._worker = worker or InlinePlanningWorker(planner, clock=clock)
        self.logger: LoggerLike = logger or logging.getLogger("kino_replan")
        self.recorder = recorder or ReplanLogger(mode="memory")
        self.recorder.log_config(config.to_dict())

        self._lock = threading.RLock()
        self._state = ReplanState.INIT
        self._vehicle: Optional[VehicleState] = None
        self._target: Optional[Target] = None
        self._has_target = False
        self._triggered = False
        self._active: Optional[LocalTrajectory] = None
        self._next_traj_id = 1
        self._tick_count = 0
        self._preset = PresetWaypoints(config.waypoints)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    @property
    def state(self) -> ReplanState:
        with self._lock:
            return self._state

    @property
    def has_state(self) -> bool:
        with self._lock:
            return self._vehicle is not None

    @property
    def has_target(self) -> bool:
        with self._lock:
            return self._has_target

    @property
    def target(self) -> Optional[Target]:
        with self._lock:
            return self._target

    @property
    def active_trajectory(self) -> Optional[LocalTrajectory]:
        with self._lock:
            return self._active

    @property
    def vehicle_state(self) -> Optional[VehicleState]:
        with self._lock:
            return None if self._vehicle is None else self._vehicle.copy()

    @property
    def worker(self) -> PlanningWorker:
        return self._worker

    def snapshot(self) -> ControllerSnapshot:
        with self._lock:
            return ControllerSnapshot(
                state=self._state,
                has_state=self._vehicle is not None,
                has_target=self._has_target,
                triggered=self._triggered,
                goal=None if self._target is None else self._target.position.copy(),
                traj_id=None if self._active is None else self._active.traj_id,
                planning=self._worker.busy,
            )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def on_vehicle_state(self, position, velocity, orientation) -> None:
        state = VehicleState(position=position, velocity=velocity, orientation=orientation)
        with self._lock:
            self._vehicle = state

    def on_target(self, position) -> bool:
        """Accept a target event; returns False when the sample is dropped."""
        p = np.asarray(position, dtype=float).reshape(3)
        with self._lock:
            if p[2] < self.config.invalid_target_z:
                self.logger.debug(f"Dropping target with z={p[2]:.3f} (below {self.config.invalid_target_z})")
                return False

            self.logger.info("Triggered!")
            self._triggered = True

            mode = self.config.target_mode
            if mode == TargetMode.MANUAL:
                goal = np.array([p[0], p[1], self.config.manual_target_height], dtype=float)
            elif mode == TargetMode.PRESET:
                goal = self._preset.next()
            else:
                goal = p.copy()

            self._target = Target(position=goal, velocity=np.zeros(3), mode=mode)
            self._has_target = True
            now = float(self._clock())
            self.recorder.log_goal(now, goal, reason="target_event")
            self.sink.publish_goal(goal.copy())

            if self._state == ReplanState.WAIT_TARGET:
                self._change_state(ReplanState.GEN_NEW_TRAJ, "TRIG", trigger="target_event", now=now)
            elif self._state == ReplanState.EXEC_TRAJ:
                self._change_state(ReplanState.REPLAN_TRAJ, "TRIG", trigger="target_event", now=now)
            elif self._state in _PLANNING_STATES:
                # a plan toward the old goal may still be in flight
                self._worker.cancel()
            return True

    # ------------------------------------------------------------------
    # Primary tick
    # ------------------------------------------------------------------
    def exec_tick(self) -> ReplanState:
        with self._lock:
            now = float(self._clock())
            self._tick_count += 1
            if self._tick_count >= max(int(self.config.status_log_period_ticks), 1):
                self._log_status()
                self._tick_count = 0

            if self._state == ReplanState.INIT:
                if self._vehicle is not None and self._triggered:
                    self._change_state(ReplanState.WAIT_TARGET, "FSM", trigger="ready", now=now)

            elif self._state == ReplanState.WAIT_TARGET:
                if self._has_target:
                    self._change_state(ReplanState.GEN_NEW_TRAJ, "FSM", trigger="has_target", now=now)

            elif self._state == ReplanState.GEN_NEW_TRAJ:
                self._advance_planning(now, replan=False)

            elif self._state == ReplanState.EXEC_TRAJ:
                self._check_progress(now)

            elif self._state == ReplanState.REPLAN_TRAJ:
                self._advance_planning(now, replan=True)

            return self._state

    def _log_status(self) -> None:
        self.logger.info(f"[FSM]: state: {STATE_DISPLAY_NAMES[self._state]}")
        if self._vehicle is None:
            self.logger.info("no odom.")
        if not self._triggered:
            self.logger.info("wait for goal.")

    def _check_progress(self, now: float) -> None:
        active = self._active
        if active is None or self._target is None:
            self._change_state(ReplanState.WAIT_TARGET, "FSM", trigger="no_trajectory", now=now)
            return

        t_cur = float(np.clip(active.elapsed(now), 0.0, active.duration))
        pos = active.position(t_cur)

        if t_cur >= active.duration - self.config.completion_epsilon_s:
            self._has_target = False
            self.recorder.log_event(now, "trajectory_complete", {"traj_id": active.traj_id})
            self._change_state(ReplanState.WAIT_TARGET, "FSM", trigger="complete", now=now)
        elif float(np.linalg.norm(self._target.position - pos)) < self.config.no_replan_threshold:
            return
        elif float(np.linalg.norm(active.start_position - pos)) < self.config.replan_threshold:
            return
        else:
            self._change_state(ReplanState.REPLAN_TRAJ, "FSM", trigger="periodic_replan", now=now)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def _advance_planning(self, now: float, replan: bool) -> None:
        outcome = self._worker.poll()
        if outcome is None:
            if self._worker.busy:
                return
            if self._target is None:
                self._change_state(ReplanState.WAIT_TARGET, "FSM", trigger="no_target", now=now)
                return
            if replan and self._active is not None:
                self.sink.request_replan()
                boundary = boundary_from_trajectory(self._active, now)
            elif self._vehicle is not None:
                boundary = boundary_from_vehicle(self._vehicle)
            else:
                self.logger.warning("no vehicle state for planning.")
                return
            self._worker.submit(boundary, self._target, replan=replan, now=now)
            outcome = self._worker.poll()
            if outcome is None:
                return
        self._handle_outcome(outcome, now)

    def _handle_outcome(self, outcome: PlanOutcome, now: float) -> None:
        summary = outcome_summary(outcome)
        if not outcome.success:
            self.recorder.log_plan(now, summary)
            if outcome.error:
                self.logger.warning(f"planner error: {outcome.error}")
            self.logger.info("generate new traj fail.")
            if self._state != ReplanState.GEN_NEW_TRAJ:
                self._change_state(ReplanState.GEN_NEW_TRAJ, "FSM", trigger="plan_failed", now=now)
            return

        traj = LocalTrajectory.build(
            outcome.result.trajectory,
            outcome.yaw_traj,
            start_time=outcome.request.submitted_at,
            traj_id=self._next_traj_id,
        )
        self._next_traj_id += 1
        self._active = traj
        self.recorder.log_plan(now, summary, traj.to_dict())
        self.sink.publish_trajectory(traj.to_command())
        self._change_state(ReplanState.EXEC_TRAJ, "FSM", trigger="plan_ok", now=now)

    # ------------------------------------------------------------------
    # Safety tick
    # ------------------------------------------------------------------
    def safety_tick(self) -> None:
        with self._lock:
            now = float(self._clock())
            if self._has_target and self._target is not None:
                self._check_goal(now)

            if self._state == ReplanState.EXEC_TRAJ and self._active is not None:
                safe, dist = self.collision_checker.check(self._active, now)
                if not safe:
                    self.logger.warning("current traj in collision.")
                    self.recorder.log_event(
                        now,
                        "trajectory_collision",
                        {"traj_id": self._active.traj_id, "distance": dist},
                    )
                    self._change_state(ReplanState.REPLAN_TRAJ, "SAFETY", trigger="collision", now=now)

    def _time_hint(self) -> Optional[float]:
        if not self.config.dynamic_environment:
            return None
        return 0.0 if self._active is None else float(self._active.duration)

    def _check_goal(self, now: float) -> None:
        hint = self._time_hint()
        goal = self._target.position
        if self.environment.distance(goal, hint) > self.config.goal_clearance:
            return

        result = find_safer_goal_for_config(goal, lambda p: self.environment.distance(p, hint), self.config)
        if result.improves_on(self.config.goal_clearance):
            self.logger.info("change goal, replan.")
            self._target = self._target.relocated(result.position)
            self._has_target = True
            self.recorder.log_goal(now, result.position, reason="relocated")
            self.sink.publish_goal(result.position.copy())
            if self._state == ReplanState.EXEC_TRAJ:
                self._change_state(ReplanState.REPLAN_TRAJ, "SAFETY", trigger="goal_relocated", now=now)
            elif self._state in _PLANNING_STATES:
                self._worker.cancel()
            return

        if self.config.goal_blocked_policy == GoalBlockedPolicy.GIVE_UP:
            self.logger.warning("goal near collision, stop.")
            self.recorder.log_event(now, "goal_blocked", {"policy": "give_up", "distance": result.distance})
            self._has_target = False
            self._target = None
            self._worker.cancel()
            if self._state not in (ReplanState.INIT, ReplanState.WAIT_TARGET):
                self._change_state(ReplanState.WAIT_TARGET, "SAFETY", trigger="goal_blocked", now=now)
            return

        self.logger.info("goal near collision, keep retry")
        self.recorder.log_event(now, "goal_blocked", {"policy": "retry", "distance": result.distance})
        self.sink.request_replan()
        if self._state == ReplanState.EXEC_TRAJ:
            self._change_state(ReplanState.REPLAN_TRAJ, "SAFETY", trigger="goal_blocked", now=now)

    # ------------------------------------------------------------------
    def _change_state(self, new_state: ReplanState, source: str, trigger: str = "", now: Optional[float] = None) -> StateTransition:
        transition = StateTransition(
            from_state=self._state,
            to_state=new_state,
            source=source,
            trigger=trigger,
            stamp=float(self._clock()) if now is None else float(now),
        )
        if new_state in _PLANNING_STATES and self._worker.busy:
            self._worker.cancel()
        self._state = new_state
        self.logger.info(transition.describe())
        self.recorder.log_transition(transition)
        return transition

    def shutdown(self) -> None:
        with self._lock:
            self._worker.shutdown()
