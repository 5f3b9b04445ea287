from .replan_fsm import ControllerSnapshot, ReplanController
from .planning_task import InlinePlanningWorker, PlanOutcome, PlanRequest, ThreadedPlanningWorker

__all__ = [
    'ControllerSnapshot',
    'ReplanController',
    'InlinePlanningWorker',
    'ThreadedPlanningWorker',
    'PlanRequest',
    'PlanOutcome',
]
