from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest


def pytest_configure() -> None:
    """Ensure the repository root is on sys.path.

    Running pytest from inside ``gmmsens/`` may pick that directory as the
    rootdir, in which case importing the top-level package ``gmmsens`` fails
    unless the parent directory is on ``sys.path``.
    """

    repo_root = Path(__file__).resolve().parents[2]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def make_arrays(rng):
    """Factory for well-conditioned (G, Sig, H) with Sig = A A'/dg + I."""

    def _make(dg: int, dk: int):
        G = rng.standard_normal((dg, dk))
        A = rng.standard_normal((dg, dg))
        Sig = A @ A.T / dg + np.eye(dg)
        H = rng.standard_normal(dk)
        return G, Sig, H

    return _make
