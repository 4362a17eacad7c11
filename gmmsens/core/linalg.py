"""Dense linear algebra primitives used by the path tracer.

Thin wrappers over NumPy/SciPy that fix the conventions used throughout the
package: float64 dense arrays, Cholesky solves for symmetric positive
definite systems, complete QR for orthogonal complements. Explicit matrix
inversion is avoided. Factorization failures are re-raised as
``SingularMatrixError`` so callers can tell them apart from bad input.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.linalg as sla

from gmmsens.exceptions import InvalidArgumentError, SingularMatrixError

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

# Matrix type alias
Matrix = Any

__all__ = [
    "Matrix",
    "chol_factor",
    "chol_solve",
    "crossprod",
    "orthogonal_complement",
    "qr",
    "quad_form",
    "solve",
    "symmetrize",
    "tdot",
    "to_dense",
]


def _assert_all_finite(*arrays: NDArray[np.float64]) -> None:
    """Raise InvalidArgumentError if any input contains NaN or Inf."""
    for a in arrays:
        if a is None:
            continue
        ad = np.asarray(a)
        if not np.all(np.isfinite(ad)):
            raise InvalidArgumentError(
                "Input contains NA/NaN/Inf; moment matrices must be finite.",
            )


def to_dense(A: Matrix) -> NDArray[np.float64]:
    """Convert a matrix-like object (ndarray, DataFrame, Series, list) to float64."""
    if hasattr(A, "to_numpy"):
        return np.asarray(A.to_numpy(), dtype=np.float64)
    return np.asarray(A, dtype=np.float64)


def symmetrize(A: Matrix) -> NDArray[np.float64]:
    Ad = to_dense(A)
    return 0.5 * (Ad + Ad.T)


def qr(A: Matrix, *, mode: str = "economic") -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Unpivoted QR decomposition via SciPy.

    ``mode="full"`` returns a square orthogonal ``Q`` whose trailing columns
    span the orthogonal complement of the column space of ``A``.
    """
    Ad = to_dense(A)
    Q, R = sla.qr(Ad, mode=mode, pivoting=False)
    return np.asarray(Q, dtype=np.float64), np.asarray(R, dtype=np.float64)


def orthogonal_complement(B: Matrix) -> NDArray[np.float64]:
    """Orthonormal basis of the complement of ``span(B)``.

    Returns an ``n x (n - r)`` matrix for ``B`` of shape ``n x r``. When
    ``r >= n`` the complement is empty and an ``n x 0`` array is returned.
    """
    Bd = to_dense(B)
    n, r = Bd.shape
    if r >= n:
        return np.zeros((n, 0), dtype=np.float64)
    Q, _R = qr(Bd, mode="full")
    return Q[:, r:]


def crossprod(X: Matrix, y: Matrix) -> NDArray[np.float64]:
    """Compute X'y. One-dimensional ``y`` gives a one-dimensional result."""
    Xd = to_dense(X)
    yd = to_dense(y)
    return (Xd.T @ yd).astype(np.float64)


def tdot(X: Matrix) -> NDArray[np.float64]:
    """X' X (dense result)."""
    _assert_all_finite(X)
    Xd = to_dense(X)
    return (Xd.T @ Xd).astype(np.float64)


def quad_form(M: Matrix, x: Matrix) -> float:
    """Return x' M x for a vector ``x``."""
    xd = to_dense(x).reshape(-1)
    return float(xd @ to_dense(M) @ xd)


def chol_factor(A: Matrix, *, lower: bool = True) -> tuple[NDArray[np.float64], bool]:
    """Cholesky factor of a symmetric positive definite matrix.

    Raises SingularMatrixError when ``A`` is not positive definite.
    """
    Ad = symmetrize(A)
    if Ad.size == 0:
        raise SingularMatrixError("Cholesky factorization of an empty matrix.")
    try:
        c, low = sla.cho_factor(Ad, lower=lower, check_finite=False)
    except (np.linalg.LinAlgError, ValueError) as exc:
        raise SingularMatrixError(f"Cholesky factorization failed: {exc}") from exc
    if not np.all(np.isfinite(c)):
        raise SingularMatrixError("Cholesky factorization produced non-finite entries.")
    return c, low


def chol_solve(factor: tuple[NDArray[np.float64], bool], B: Matrix) -> NDArray[np.float64]:
    """Solve A X = B given ``factor = chol_factor(A)``."""
    Bd = to_dense(B)
    X = sla.cho_solve(factor, Bd, check_finite=False)
    return np.asarray(X, dtype=np.float64)


def solve(A: Matrix, B: Matrix, *, sym_pos: bool = False) -> NDArray[np.float64]:
    """Solve A X = B.

    With ``sym_pos=True`` the system is solved through a Cholesky
    factorization; otherwise through LU. There is no fallback strategy: a
    singular (or, for ``sym_pos``, indefinite) ``A`` raises
    SingularMatrixError. The result has the same number of dimensions as
    ``B``.
    """
    Ad = to_dense(A)
    Bd = to_dense(B)
    if Ad.ndim != 2 or Ad.shape[0] != Ad.shape[1]:
        raise InvalidArgumentError(f"solve: A must be square, got shape {Ad.shape}.")
    if Bd.shape[0] != Ad.shape[0]:
        raise InvalidArgumentError(
            f"solve: A has {Ad.shape[0]} rows but B has {Bd.shape[0]}.",
        )
    if sym_pos:
        return chol_solve(chol_factor(Ad), Bd)
    try:
        X = sla.solve(Ad, Bd, check_finite=False)
    except (np.linalg.LinAlgError, ValueError) as exc:
        raise SingularMatrixError(f"Linear solve failed: {exc}") from exc
    return np.asarray(X, dtype=np.float64)
