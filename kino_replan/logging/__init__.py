from .replan_logger import NumpyEncoder, ReplanLogger

__all__ = ["NumpyEncoder", "ReplanLogger"]
