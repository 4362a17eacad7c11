# gmmsens/output/__init__.py
"""Tabular output for sensitivity paths."""
from .summary import format_path, path_summary

__all__ = ["format_path", "path_summary"]
