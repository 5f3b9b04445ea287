from __future__ import annotations

import json
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import numpy as np

from kino_replan.types import StateTransition


def _utc_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class NumpyEncoder(json.JSONEncoder):
    def default(self, obj):  # noqa: D102
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, (np.floating, np.integer)):
            return obj.item()
        if isinstance(obj, deque):
            return list(obj)
        return super().default(obj)


@dataclass
class ReplanLogger:
    """
    In-memory timeline of a replanning run.

    `output_dir=None` keeps everything in memory; `save()` then needs an
    explicit path. Each timeline keeps at most `max_entries` records, the
    oldest being dropped first, so a long-running node does not grow
    without bound.
    """

    output_dir: Optional[Path] = None
    run_id: str = ""
    mode: str = "offline"
    tags: list[str] = field(default_factory=list)
    max_entries: int = 5000  # per timeline, <=0 keeps everything

    def __post_init__(self) -> None:
        if self.output_dir is not None:
            self.output_dir = Path(self.output_dir)
            self.output_dir.mkdir(parents=True, exist_ok=True)
        if not self.run_id:
            self.run_id = uuid.uuid4().hex[:8]
        self.log_data: dict[str, Any] = {
            "metadata": {
                "run_id": self.run_id,
                "mode": self.mode,
                "timestamp": _utc_now(),
                "tags": list(self.tags),
                "schema_version": "v1",
            },
            "config": {},
            "transitions": self._timeline(),
            "plans": self._timeline(),
            "goal_history": self._timeline(),
            "events": self._timeline(),
            "metrics": {},
        }

    def _timeline(self) -> deque:
        return deque(maxlen=self.max_entries if self.max_entries > 0 else None)

    @property
    def transitions(self) -> deque:
        return self.log_data["transitions"]

    @property
    def plans(self) -> deque:
        return self.log_data["plans"]

    @property
    def events(self) -> deque:
        return self.log_data["events"]

    def log_config(self, config: dict) -> None:
        self.log_data["config"] = dict(config)

    def log_transition(self, transition: StateTransition) -> None:
        self.log_data["transitions"].append(transition.to_dict())

    def log_plan(self, timestamp: float, summary: dict, trajectory: dict | None = None) -> None:
        self.log_data["plans"].append({"timestamp": float(timestamp), "plan": summary, "trajectory": trajectory})

    def log_goal(self, timestamp: float, position: np.ndarray, reason: str) -> None:
        self.log_data["goal_history"].append(
            {"timestamp": float(timestamp), "position": np.asarray(position, dtype=float).tolist(), "reason": str(reason)}
        )

    def log_event(self, timestamp: float, event_type: str, details: dict | None = None) -> None:
        self.log_data["events"].append({"timestamp": float(timestamp), "type": str(event_type), "details": details or {}})

    def events_of(self, event_type: str) -> list[dict]:
        return [e for e in self.log_data["events"] if e.get("type") == event_type]

    def compute_summary_metrics(self) -> None:
        metrics = dict(self.log_data.get("metrics") or {})
        plans = self.log_data.get("plans") or []
        if plans:
            solve_times = [float(p["plan"].get("solve_time", 0.0)) for p in plans]
            successes = [bool(p["plan"].get("success", False)) for p in plans]
            metrics["planner"] = {
                "attempts": int(len(plans)),
                "successes": int(sum(successes)),
                "avg_solve_time": float(np.mean(solve_times)),
                "max_solve_time": float(np.max(solve_times)),
            }
        counts: dict[str, int] = {}
        for e in self.log_data.get("events") or []:
            counts[e["type"]] = counts.get(e["type"], 0) + 1
        if counts:
            metrics["event_counts"] = counts
        metrics["transition_count"] = int(len(self.log_data.get("transitions") or []))
        self.log_data["metrics"] = metrics

    def to_json(self) -> str:
        return json.dumps(self.log_data, indent=2, ensure_ascii=False, cls=NumpyEncoder)

    def save(self, filename: str | Path | None = None) -> Path:
        self.compute_summary_metrics()
        if filename is not None and Path(filename).is_absolute():
            path = Path(filename)
        else:
            if self.output_dir is None:
                raise ValueError("ReplanLogger.save() needs an absolute path when output_dir is not set")
            path = self.output_dir / (filename or f"{self.run_id}.json")
        path.write_text(self.to_json())
        return path
