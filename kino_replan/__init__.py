"""kino_replan: replanning state machine for local B-spline trajectories."""

from .types import ReplanState, Target, TargetMode, VehicleState
from .config import ReplanConfig

__all__ = [
    'ReplanState',
    'Target',
    'TargetMode',
    'VehicleState',
    'ReplanConfig',
]
