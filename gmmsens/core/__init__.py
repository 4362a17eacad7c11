# gmmsens/core/__init__.py
"""Core computational modules for gmmsens."""
from . import homotopy, linalg, transform

__all__ = ["homotopy", "linalg", "transform"]
