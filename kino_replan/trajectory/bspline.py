from __future__ import annotations

from typing import Sequence

import numpy as np
from scipy.interpolate import BSpline


class UniformBspline:
    """
    Uniform B-spline over time with knots u_i = (i - p) * dt.

    With N control points the valid time span is [0, (N - p) * dt]. Queries
    outside the span are clamped to it.
    """

    def __init__(self, control_points: np.ndarray, order: int, interval: float) -> None:
        ctrl = np.asarray(control_points, dtype=float)
        if ctrl.ndim == 1:
            ctrl = ctrl.reshape(-1, 1)
        order = int(order)
        interval = float(interval)
        if order < 0:
            raise ValueError("B-spline order must be >= 0")
        if interval <= 0.0:
            raise ValueError(f"B-spline interval must be > 0, got {interval}")
        if ctrl.shape[0] <= order:
            raise ValueError(f"Need more than {order} control points, got {ctrl.shape[0]}")

        self._ctrl = ctrl
        self._order = order
        self._interval = interval
        self._knots = (np.arange(ctrl.shape[0] + order + 1, dtype=float) - order) * interval
        self._spline = BSpline(self._knots, self._ctrl, order, extrapolate=True)

    @property
    def order(self) -> int:
        return self._order

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def control_points(self) -> np.ndarray:
        return self._ctrl.copy()

    @property
    def knots(self) -> np.ndarray:
        return self._knots.copy()

    @property
    def dimension(self) -> int:
        return int(self._ctrl.shape[1])

    @property
    def duration(self) -> float:
        return float((self._ctrl.shape[0] - self._order) * self._interval)

    def evaluate(self, t: float) -> np.ndarray:
        t = float(np.clip(t, 0.0, self.duration))
        return np.asarray(self._spline(t), dtype=float).reshape(self.dimension)

    def sample(self, ts: Sequence[float]) -> np.ndarray:
        ts_arr = np.clip(np.asarray(ts, dtype=float).reshape(-1), 0.0, self.duration)
        return np.asarray(self._spline(ts_arr), dtype=float).reshape(-1, self.dimension)

    def derivative(self) -> "UniformBspline":
        if self._order < 1:
            raise ValueError("Cannot differentiate a degree-0 B-spline")
        ctrl = (self._ctrl[1:] - self._ctrl[:-1]) / self._interval
        return UniformBspline(ctrl, self._order - 1, self._interval)

    def max_norm(self, dt: float = 0.02) -> float:
        n = max(int(np.ceil(self.duration / max(dt, 1e-6))), 1)
        values = self.sample(np.linspace(0.0, self.duration, n + 1))
        return float(np.max(np.linalg.norm(values, axis=1)))


def parameterize_to_bspline(
    ts: float,
    points: np.ndarray,
    start_end_derivative: Sequence[np.ndarray],
) -> np.ndarray:
    """
    Least-squares cubic B-spline control points through `points`.

    `points` are K samples spaced `ts` apart; `start_end_derivative` is
    [v_start, v_end, a_start, a_end]. Returns K + 2 control points.
    """
    pts = np.asarray(points, dtype=float)
    if pts.ndim == 1:
        pts = pts.reshape(-1, 1)
    k = pts.shape[0]
    if k < 2:
        raise ValueError("parameterize_to_bspline needs at least 2 points")
    if ts <= 0.0:
        raise ValueError("ts must be > 0")
    if len(start_end_derivative) != 4:
        raise ValueError("start_end_derivative must be [v0, v1, a0, a1]")

    prow = np.array([1.0, 4.0, 1.0]) / 6.0
    vrow = np.array([-1.0, 0.0, 1.0]) / (2.0 * ts)
    arow = np.array([1.0, -2.0, 1.0]) / (ts * ts)

    a = np.zeros((k + 4, k + 2), dtype=float)
    for i in range(k):
        a[i, i:i + 3] = prow
    a[k, 0:3] = vrow
    a[k + 1, k - 1:k + 2] = vrow
    a[k + 2, 0:3] = arow
    a[k + 3, k - 1:k + 2] = arow

    derivs = [np.asarray(d, dtype=float).reshape(pts.shape[1]) for d in start_end_derivative]
    b = np.vstack([pts, derivs[0], derivs[1], derivs[2], derivs[3]])

    ctrl, *_ = np.linalg.lstsq(a, b, rcond=None)
    return ctrl
