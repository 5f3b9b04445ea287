from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple

import numpy as np

from kino_replan.trajectory.local_trajectory import LocalTrajectory


@dataclass(frozen=True)
class SphereObstacle:
    """
    Static spherical obstacle.
    Signed distance: |p - center| - radius (negative inside).
    """

    center: np.ndarray
    radius: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "center", np.asarray(self.center, dtype=float).reshape(3))
        if float(self.radius) < 0.0:
            raise ValueError("SphereObstacle radius must be >= 0")

    def signed_distance(self, point: np.ndarray, time: Optional[float] = None) -> float:  # noqa: ARG002
        return float(np.linalg.norm(np.asarray(point, dtype=float) - self.center) - float(self.radius))


@dataclass(frozen=True)
class MovingSphereObstacle:
    """Sphere moving at constant velocity; `time` is seconds ahead of now (None = now)."""

    center: np.ndarray
    velocity: np.ndarray
    radius: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "center", np.asarray(self.center, dtype=float).reshape(3))
        object.__setattr__(self, "velocity", np.asarray(self.velocity, dtype=float).reshape(3))

    def center_at(self, time: Optional[float]) -> np.ndarray:
        t = 0.0 if time is None else max(float(time), 0.0)
        return self.center + self.velocity * t

    def signed_distance(self, point: np.ndarray, time: Optional[float] = None) -> float:
        return float(np.linalg.norm(np.asarray(point, dtype=float) - self.center_at(time)) - float(self.radius))


@dataclass(frozen=True)
class ObstacleField:
    """
    Coarse distance field over analytic obstacles.
    Distances are truncated at `max_distance`, like a bounded ESDF.
    """

    obstacles: Tuple[object, ...] = ()
    max_distance: float = 10.0

    def distance(self, point: np.ndarray, time: Optional[float] = None) -> float:
        d = float(self.max_distance)
        for obs in self.obstacles:
            d = min(d, float(obs.signed_distance(point, time)))
        return d

    def with_obstacles(self, *obstacles: object) -> "ObstacleField":
        return ObstacleField(obstacles=tuple(self.obstacles) + tuple(obstacles), max_distance=self.max_distance)


@dataclass
class SampledCollisionChecker:
    """Checks the not-yet-flown part of a trajectory against a distance field."""

    environment: object
    clearance: float = 0.3
    dt: float = 0.05
    dynamic: bool = False
    horizon: Optional[float] = None  # m from the current point, None = to the end

    def check(self, trajectory: LocalTrajectory, now: float) -> Tuple[bool, Optional[float]]:
        duration = trajectory.duration
        t0 = float(np.clip(trajectory.elapsed(now), 0.0, duration))
        p0 = trajectory.position(t0)
        n = max(int(np.ceil((duration - t0) / max(self.dt, 1e-3))), 1)
        for t in np.linspace(t0, duration, n + 1):
            p = trajectory.position(float(t))
            if self.horizon is not None and float(np.linalg.norm(p - p0)) > self.horizon:
                break
            hint = float(t - t0) if self.dynamic else None
            if self.environment.distance(p, hint) < self.clearance:
                return False, float(np.linalg.norm(p - p0))
        return True, None


def obstacle_from_item(item) -> object:
    """Parse `[x, y, z, r]`, `[x, y, z, r, vx, vy, vz]` or a dict with center/radius[/velocity]."""
    if isinstance(item, dict):
        center = item.get("center") or item.get("position")
        if center is None or "radius" not in item:
            raise ValueError(f"Obstacle dict needs center and radius: {item}")
        velocity = item.get("velocity")
        if velocity is not None:
            return MovingSphereObstacle(center=np.asarray(center, dtype=float), velocity=np.asarray(velocity, dtype=float), radius=float(item["radius"]))
        return SphereObstacle(center=np.asarray(center, dtype=float), radius=float(item["radius"]))
    values = [float(v) for v in item]
    if len(values) == 4:
        return SphereObstacle(center=np.asarray(values[:3]), radius=values[3])
    if len(values) == 7:
        return MovingSphereObstacle(center=np.asarray(values[:3]), velocity=np.asarray(values[4:7]), radius=values[3])
    raise ValueError(f"Obstacle must have 4 or 7 values, got {len(values)}")


def parse_obstacles(items: Sequence) -> list:
    return [obstacle_from_item(item) for item in items]


def load_obstacles(path: str | Path) -> list:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(str(path))
    ext = path.suffix.lower()
    if ext in {".yaml", ".yml"}:
        import yaml

        payload = yaml.safe_load(path.read_text()) or {}
    elif ext == ".json":
        import json

        payload = json.loads(path.read_text())
    else:
        raise ValueError(f"Unsupported obstacle file format: {ext}")

    if isinstance(payload, dict):
        payload = payload.get("obstacles", [])
    if not isinstance(payload, list):
        raise ValueError("Invalid obstacle file format")
    return parse_obstacles(payload)
