"""Exception types raised by gmmsens.

All failures abort the current call; no partial path is ever returned.
"""
from __future__ import annotations

import numpy as np

__all__ = [
    "FatalNumericalError",
    "GMMSensError",
    "InvalidArgumentError",
    "SingularMatrixError",
]


class GMMSensError(Exception):
    """Base class for errors raised by gmmsens."""


class InvalidArgumentError(GMMSensError, ValueError):
    """Inputs with mismatched shapes, non-finite entries or unknown options."""


class SingularMatrixError(GMMSensError, np.linalg.LinAlgError):
    """A matrix that must be inverted (``Sig_AA``, ``G_A'Sig_AA^-1 G_A``, ``B'B``) is singular."""


class FatalNumericalError(GMMSensError, RuntimeError):
    """The path tracer reached an inconsistent state.

    Raised on a negative step length (the path parameter would decrease) or
    when the tracer fails to reach its terminal active set within the step
    cap. Both indicate numerical instability or malformed inputs such as a
    near-singular ``Sig`` or a ``G`` that is rank deficient on the active set.
    """

    def __init__(self, msg: str, *, step: float | None = None, lam: float | None = None) -> None:
        super().__init__(msg)
        self.step = step
        self.lam = lam
