"""
Planning workers.

A worker runs one planning request at a time and hands back a
`PlanOutcome` through `poll()`. Every `submit()` or `cancel()` bumps a
generation counter; outcomes that come back tagged with an older
generation are dropped, so a superseded request can never become the
active trajectory.
"""

from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from kino_replan.trajectory.bspline import UniformBspline
from kino_replan.types import BoundaryState, PlanResult, Target


@dataclass(frozen=True)
class PlanRequest:
    boundary: BoundaryState
    target: Target
    submitted_at: float
    replan: bool = False
    generation: int = 0


@dataclass(frozen=True)
class PlanOutcome:
    request: PlanRequest
    result: PlanResult
    yaw_traj: Optional[UniformBspline] = None
    error: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return bool(self.result.success and self.result.trajectory is not None and self.yaw_traj is not None)


def run_planner(planner, request: PlanRequest) -> PlanOutcome:
    """Plan position then yaw; any planner exception becomes a failed outcome."""
    t0 = time.perf_counter()
    try:
        result = planner.plan(request.boundary, request.target.position, request.target.velocity)
        yaw_traj = None
        if result.success and result.trajectory is not None:
            yaw_traj = planner.plan_yaw(request.boundary, result.trajectory)
    except Exception as e:  # noqa: BLE001
        return PlanOutcome(
            request=request,
            result=PlanResult(success=False, message=f"planner raised: {e}", solve_time=time.perf_counter() - t0),
            error=f"{type(e).__name__}: {e}",
        )
    return PlanOutcome(request=request, result=result, yaw_traj=yaw_traj)


@dataclass
class _PendingJob:
    request: PlanRequest
    future: Optional[Future] = None
    started_at: Optional[float] = None  # set once the planner is actually running


class PlanningWorker:
    """Generation bookkeeping shared by the inline and threaded workers."""

    def __init__(self, planner, clock: Callable[[], float] = time.monotonic) -> None:
        self.planner = planner
        self._clock = clock
        self._generation = 0
        self._gen_lock = threading.Lock()
        self._results: "queue.SimpleQueue[PlanOutcome]" = queue.SimpleQueue()
        self._pending: Optional[_PendingJob] = None
        self.discarded = 0

    @property
    def generation(self) -> int:
        with self._gen_lock:
            return self._generation

    @property
    def busy(self) -> bool:
        return self._pending is not None

    def _next_generation(self) -> int:
        with self._gen_lock:
            self._generation += 1
            return self._generation

    def _deliver(self, outcome: PlanOutcome) -> None:
        self._results.put(outcome)

    def submit(
        self,
        boundary: BoundaryState,
        target: Target,
        replan: bool = False,
        now: Optional[float] = None,
    ) -> PlanRequest:
        """`now` is the instant the boundary was seeded at; defaults to the clock."""
        gen = self._next_generation()
        request = PlanRequest(
            boundary=boundary,
            target=target,
            submitted_at=float(self._clock() if now is None else now),
            replan=bool(replan),
            generation=gen,
        )
        self._pending = _PendingJob(request=request)
        self._start(self._pending)
        return request

    def _start(self, job: _PendingJob) -> None:
        raise NotImplementedError

    def cancel(self) -> None:
        """Supersede whatever is in flight; its result will be discarded."""
        self._next_generation()
        job = self._pending
        self._pending = None
        if job is not None and job.future is not None:
            job.future.cancel()

    def poll(self) -> Optional[PlanOutcome]:
        current = self.generation
        while True:
            try:
                outcome = self._results.get_nowait()
            except queue.Empty:
                break
            if outcome.request.generation != current:
                self.discarded += 1
                continue
            self._pending = None
            return outcome
        return self._check_timeout()

    def _check_timeout(self) -> Optional[PlanOutcome]:
        return None

    def shutdown(self) -> None:
        self.cancel()


class InlinePlanningWorker(PlanningWorker):
    """Runs the planner synchronously inside `submit()`."""

    def _start(self, job: _PendingJob) -> None:
        job.started_at = float(self._clock())
        self._deliver(run_planner(self.planner, job.request))


class ThreadedPlanningWorker(PlanningWorker):
    """Runs the planner on a single background thread with a timeout."""

    def __init__(
        self,
        planner,
        clock: Callable[[], float] = time.monotonic,
        timeout_s: float = 0.5,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        super().__init__(planner, clock)
        self.timeout_s = float(timeout_s)
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="kino_replan_plan")

    def _start(self, job: _PendingJob) -> None:
        job.future = self._executor.submit(self._run, job)
        job.future.add_done_callback(self._on_done)

    def _run(self, job: _PendingJob) -> PlanOutcome:
        job.started_at = float(self._clock())
        return run_planner(self.planner, job.request)

    def _on_done(self, future: Future) -> None:
        if future.cancelled():
            return
        self._deliver(future.result())

    def _check_timeout(self) -> Optional[PlanOutcome]:
        job = self._pending
        if job is None or job.started_at is None or self.timeout_s <= 0.0:
            return None
        elapsed = float(self._clock()) - job.started_at
        if elapsed <= self.timeout_s:
            return None
        self.cancel()
        return PlanOutcome(
            request=job.request,
            result=PlanResult(success=False, message=f"planning timed out after {elapsed:.3f}s", solve_time=elapsed),
            timed_out=True,
        )

    def shutdown(self) -> None:
        super().shutdown()
        if self._owns_executor:
            self._executor.shutdown(wait=False)


def outcome_summary(outcome: PlanOutcome) -> dict:
    res = outcome.result
    summary = {
        "generation": outcome.request.generation,
        "replan": outcome.request.replan,
        "success": outcome.success,
        "message": res.message,
        "solve_time": float(res.solve_time),
        "goal": np.asarray(outcome.request.target.position, dtype=float).tolist(),
    }
    if outcome.timed_out:
        summary["timed_out"] = True
    if outcome.error:
        summary["error"] = outcome.error
    return summary
