from .reference_planner import BsplineReferencePlanner, PlannerConfig

__all__ = ['BsplineReferencePlanner', 'PlannerConfig']
