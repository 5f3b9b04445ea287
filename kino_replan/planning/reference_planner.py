from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

import numpy as np

from kino_replan.config import ReplanConfig
from kino_replan.trajectory.bspline import UniformBspline, parameterize_to_bspline
from kino_replan.types import BoundaryState, PlanResult
from kino_replan.utils.quaternion_utils import wrap_pi


@dataclass(frozen=True)
class PlannerConfig:
    max_vel: float = 3.0
    max_acc: float = 2.0
    max_jerk: float = 4.0  # <=0 disables
    control_points_distance: float = 0.5
    collision_clearance: float = 0.3
    collision_check_dt: float = 0.05
    dynamic_environment: bool = False

    min_goal_distance: float = 0.05
    limit_tolerance: float = 1.05
    time_scaling_factor: float = 1.25
    max_time_scaling_iters: int = 20
    yaw_interval: float = 0.25
    yaw_min_travel: float = 0.1

    @staticmethod
    def from_replan_config(cfg: ReplanConfig) -> "PlannerConfig":
        return PlannerConfig(
            max_vel=cfg.max_vel,
            max_acc=cfg.max_acc,
            max_jerk=cfg.max_jerk,
            control_points_distance=cfg.control_points_distance,
            collision_clearance=cfg.collision_clearance,
            collision_check_dt=cfg.collision_check_dt,
            dynamic_environment=cfg.dynamic_environment,
        )


def _quintic_samples(
    p0: np.ndarray,
    v0: np.ndarray,
    a0: np.ndarray,
    p1: np.ndarray,
    v1: np.ndarray,
    duration: float,
    ts: np.ndarray,
) -> np.ndarray:
    """Per-axis quintic with (p, v, a) fixed at both ends; end acceleration is zero."""
    T = float(duration)
    A = np.array(
        [
            [T**3, T**4, T**5],
            [3 * T**2, 4 * T**3, 5 * T**4],
            [6 * T, 12 * T**2, 20 * T**3],
        ],
        dtype=float,
    )
    rhs = np.vstack(
        [
            p1 - (p0 + v0 * T + 0.5 * a0 * T**2),
            v1 - (v0 + a0 * T),
            -a0,
        ]
    )
    c345 = np.linalg.solve(A, rhs)
    t = np.asarray(ts, dtype=float).reshape(-1, 1)
    return p0 + v0 * t + 0.5 * a0 * t**2 + c345[0] * t**3 + c345[1] * t**4 + c345[2] * t**5


class BsplineReferencePlanner:
    """
    Reference TrajectoryPlanner.

    Fits a cubic uniform B-spline to a minimum-jerk style quintic from the
    boundary state to the goal, stretching time until the velocity and
    acceleration limits hold, and rejects the result when it comes closer
    than `collision_clearance` to an obstacle.
    """

    def __init__(self, environment: object, config: Optional[PlannerConfig] = None) -> None:
        self.environment = environment
        self.config = config or PlannerConfig()

    def _initial_duration(self, distance: float, speed0: float) -> float:
        cfg = self.config
        t_vel = 1.875 * distance / max(cfg.max_vel, 1e-6)
        t_acc = float(np.sqrt(5.77 * distance / max(cfg.max_acc, 1e-6)))
        t_brake = speed0 / max(cfg.max_acc, 1e-6)
        return max(t_vel, t_acc, t_brake, 0.5)

    def _fit(self, boundary: BoundaryState, goal: np.ndarray, goal_vel: np.ndarray, duration: float) -> UniformBspline:
        cfg = self.config
        ts_nominal = cfg.control_points_distance / max(cfg.max_vel, 1e-6)
        k = max(int(np.ceil(duration / max(ts_nominal, 1e-6))) + 1, 3)
        ts = duration / float(k - 1)
        samples = _quintic_samples(
            boundary.position,
            boundary.velocity,
            boundary.acceleration,
            goal,
            goal_vel,
            duration,
            np.arange(k, dtype=float) * ts,
        )
        ctrl = parameterize_to_bspline(ts, samples, [boundary.velocity, goal_vel, boundary.acceleration, np.zeros(3)])
        return UniformBspline(ctrl, 3, ts)

    def _within_limits(self, traj: UniformBspline) -> bool:
        cfg = self.config
        vel = traj.derivative()
        acc = vel.derivative()
        dt = max(cfg.collision_check_dt, 1e-3)
        if vel.max_norm(dt) > cfg.max_vel * cfg.limit_tolerance:
            return False
        if acc.max_norm(dt) > cfg.max_acc * cfg.limit_tolerance:
            return False
        if cfg.max_jerk > 0.0 and acc.derivative().max_norm(dt) > cfg.max_jerk * cfg.limit_tolerance:
            return False
        return True

    def _first_collision_time(self, traj: UniformBspline) -> Optional[float]:
        cfg = self.config
        n = max(int(np.ceil(traj.duration / max(cfg.collision_check_dt, 1e-3))), 1)
        for t in np.linspace(0.0, traj.duration, n + 1):
            hint = float(t) if cfg.dynamic_environment else None
            if self.environment.distance(traj.evaluate(float(t)), hint) < cfg.collision_clearance:
                return float(t)
        return None

    def plan(self, boundary: BoundaryState, goal: np.ndarray, goal_velocity: np.ndarray) -> PlanResult:
        t_start = time.perf_counter()
        cfg = self.config
        goal = np.asarray(goal, dtype=float).reshape(3)
        goal_velocity = np.asarray(goal_velocity, dtype=float).reshape(3)

        distance = float(np.linalg.norm(goal - boundary.position))
        if distance < cfg.min_goal_distance:
            return PlanResult(success=False, message="start and goal coincide", solve_time=time.perf_counter() - t_start)

        duration = self._initial_duration(distance, float(np.linalg.norm(boundary.velocity)))
        traj: Optional[UniformBspline] = None
        for _ in range(max(int(cfg.max_time_scaling_iters), 1)):
            candidate = self._fit(boundary, goal, goal_velocity, duration)
            if self._within_limits(candidate):
                traj = candidate
                break
            duration *= cfg.time_scaling_factor

        if traj is None:
            return PlanResult(success=False, message="dynamic limits violated", solve_time=time.perf_counter() - t_start)

        t_hit = self._first_collision_time(traj)
        if t_hit is not None:
            return PlanResult(
                success=False,
                message=f"collision at t={t_hit:.2f}s",
                solve_time=time.perf_counter() - t_start,
            )

        return PlanResult(success=True, trajectory=traj, message="ok", solve_time=time.perf_counter() - t_start)

    def plan_yaw(self, boundary: BoundaryState, position_traj: UniformBspline) -> UniformBspline:
        cfg = self.config
        yaw0, yawdot0, yawddot0 = (float(v) for v in boundary.yaw)
        duration = position_traj.duration

        travel = position_traj.evaluate(duration) - position_traj.evaluate(0.0)
        if float(np.linalg.norm(travel[:2])) > cfg.yaw_min_travel:
            yaw_end = yaw0 + wrap_pi(float(np.arctan2(travel[1], travel[0])) - yaw0)
        else:
            yaw_end = yaw0

        seg_num = max(int(np.ceil(duration / max(cfg.yaw_interval, 1e-3))), 2)
        dt = duration / float(seg_num)
        samples = _quintic_samples(
            np.array([yaw0]),
            np.array([yawdot0]),
            np.array([yawddot0]),
            np.array([yaw_end]),
            np.zeros(1),
            duration,
            np.arange(seg_num + 1, dtype=float) * dt,
        )
        ctrl = parameterize_to_bspline(
            dt,
            samples,
            [np.array([yawdot0]), np.zeros(1), np.array([yawddot0]), np.zeros(1)],
        )
        return UniformBspline(ctrl, 3, dt)
