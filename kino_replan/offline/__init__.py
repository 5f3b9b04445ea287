from .simulator import OfflineReplanSim, RecordingSink, SimClock

__all__ = ["OfflineReplanSim", "RecordingSink", "SimClock"]
