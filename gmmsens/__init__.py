"""gmmsens: optimal sensitivity paths for approximate GMM models.

Traces, knot by knot, the sensitivity vectors that trade variance against
worst-case bias when the moment conditions may be misspecified in the
directions spanned by a basis ``B`` (Armstrong and Kolesár, 2021).
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "CoordinateTransform",
    "FatalNumericalError",
    "GMMSensError",
    "InvalidArgumentError",
    "MomentModel",
    "PathConfig",
    "SensitivityPath",
    "SingularMatrixError",
    "build_transform",
    "format_path",
    "lph",
    "path_summary",
    "solve_path",
    "unrestricted_sensitivity",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "CoordinateTransform": ("gmmsens.core.transform", "CoordinateTransform"),
    "build_transform": ("gmmsens.core.transform", "build_transform"),
    "FatalNumericalError": ("gmmsens.exceptions", "FatalNumericalError"),
    "GMMSensError": ("gmmsens.exceptions", "GMMSensError"),
    "InvalidArgumentError": ("gmmsens.exceptions", "InvalidArgumentError"),
    "SingularMatrixError": ("gmmsens.exceptions", "SingularMatrixError"),
    "MomentModel": ("gmmsens.estimators.base", "MomentModel"),
    "PathConfig": ("gmmsens.estimators.base", "PathConfig"),
    "SensitivityPath": ("gmmsens.estimators.base", "SensitivityPath"),
    "lph": ("gmmsens.estimators.path", "lph"),
    "solve_path": ("gmmsens.estimators.path", "solve_path"),
    "unrestricted_sensitivity": ("gmmsens.estimators.path", "unrestricted_sensitivity"),
    "format_path": ("gmmsens.output.summary", "format_path"),
    "path_summary": ("gmmsens.output.summary", "path_summary"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public classes and functions on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'gmmsens' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
