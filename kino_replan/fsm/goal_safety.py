"""
Goal clearance recovery.

When the active goal is too close to an obstacle, a fixed neighbourhood
around it is searched for the point with the largest obstacle distance:

    r     = dr, 2 dr, ..., rings * dr           (outer, ascending)
    theta = -90, -90 + dtheta, ..., 270 [deg]   (middle, ascending)
    z     = +dz, 0, -dz                         (inner, descending)

The strictly greatest distance wins; on ties the first candidate in this
order is kept.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, Optional

import numpy as np

from kino_replan.config import ReplanConfig

DEG_TO_RAD = np.pi / 180.0

THETA_START_DEG = -90.0
THETA_END_DEG = 270.0


@dataclass(frozen=True)
class GoalSearchResult:
    position: Optional[np.ndarray]
    distance: float
    evaluated: int

    def improves_on(self, clearance: float) -> bool:
        return self.position is not None and self.distance > float(clearance)


def enumerate_goal_candidates(
    goal: np.ndarray,
    dr: float,
    dtheta_deg: float,
    dz: float,
    rings: int,
) -> Iterator[np.ndarray]:
    goal = np.asarray(goal, dtype=float).reshape(3)
    n_theta = int(np.floor((THETA_END_DEG - THETA_START_DEG) / float(dtheta_deg) + 1e-9)) + 1
    z_offsets = (float(dz), 0.0, -float(dz))
    for i in range(1, int(rings) + 1):
        r = float(dr) * i
        for j in range(n_theta):
            theta = (THETA_START_DEG + j * float(dtheta_deg)) * DEG_TO_RAD
            for nz in z_offsets:
                yield goal + np.array([r * np.cos(theta), r * np.sin(theta), nz], dtype=float)


def find_safer_goal(
    goal: np.ndarray,
    distance_fn: Callable[[np.ndarray], float],
    dr: float = 0.5,
    dtheta_deg: float = 30.0,
    dz: float = 0.3,
    rings: int = 5,
) -> GoalSearchResult:
    best: Optional[np.ndarray] = None
    best_dist = float("-inf")
    count = 0
    for candidate in enumerate_goal_candidates(goal, dr, dtheta_deg, dz, rings):
        count += 1
        d = float(distance_fn(candidate))
        if d > best_dist:
            best = candidate
            best_dist = d
    return GoalSearchResult(position=best, distance=best_dist, evaluated=count)


def find_safer_goal_for_config(goal: np.ndarray, distance_fn: Callable[[np.ndarray], float], config: ReplanConfig) -> GoalSearchResult:
    return find_safer_goal(
        goal,
        distance_fn,
        dr=config.goal_search_dr,
        dtheta_deg=config.goal_search_dtheta_deg,
        dz=config.goal_search_dz,
        rings=config.goal_search_rings,
    )
