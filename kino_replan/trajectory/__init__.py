from .bspline import UniformBspline, parameterize_to_bspline
from .local_trajectory import LocalTrajectory

__all__ = ['UniformBspline', 'parameterize_to_bspline', 'LocalTrajectory']
