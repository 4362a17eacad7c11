"""Path solvers and shared result containers."""
from .base import MomentModel, PathConfig, SensitivityPath
from .path import lph, solve_path, unrestricted_sensitivity

__all__ = [
    "MomentModel",
    "PathConfig",
    "SensitivityPath",
    "lph",
    "solve_path",
    "unrestricted_sensitivity",
]
