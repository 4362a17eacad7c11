"""Orthogonalized coordinates for a misspecification basis ``B``.

For ``B`` of shape ``dg x r`` the transform

    T = [ Bperp' ; (B'B)^{-1} B' ]

maps a sensitivity vector ``k`` (as a row, ``k T^{-1}``) to coordinates in
which the last ``r`` entries are the loadings ``B'k`` and the first
``dg - r`` entries are unrestricted. Since ``T B = [0; I_r]``, a norm
constraint on ``B'k`` becomes a norm constraint on a coordinate subset.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from gmmsens.core import linalg as la
from gmmsens.exceptions import InvalidArgumentError

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = ["CoordinateTransform", "build_transform"]


@dataclass(frozen=True)
class CoordinateTransform:
    """Transform ``T`` with its constrained-coordinate indicator.

    Attributes
    ----------
    T : ndarray, shape (dg, dg)
        Rows are the complement basis ``Bperp'`` followed by ``(B'B)^{-1}B'``.
    invalid : ndarray of bool, shape (dg,)
        False for the first ``dg - r`` coordinates, True for the last ``r``.
        True marks the directions in which instruments may be invalid, i.e.
        the coordinates entering the norm constraint.
    B : ndarray, shape (dg, r)

    """

    T: NDArray[np.float64]
    invalid: NDArray[np.bool_]
    B: NDArray[np.float64]

    @property
    def dg(self) -> int:
        return int(self.T.shape[0])

    @property
    def r(self) -> int:
        return int(self.B.shape[1])

    @property
    def n_unconstrained(self) -> int:
        return int(np.sum(~self.invalid))

    def transform_moments(self, G: NDArray[np.float64]) -> NDArray[np.float64]:
        """Return ``T G``."""
        return self.T @ la.to_dense(G)

    def transform_covariance(self, Sig: NDArray[np.float64]) -> NDArray[np.float64]:
        """Return ``T Sig T'``, symmetrized against rounding."""
        return la.symmetrize(self.T @ la.to_dense(Sig) @ self.T.T)

    def inverse(self, k: NDArray[np.float64]) -> NDArray[np.float64]:
        """Map transformed row vector(s) back to original coordinates: ``k T``."""
        return la.to_dense(k) @ self.T

    def apply(self, k: NDArray[np.float64]) -> NDArray[np.float64]:
        """Map original row vector(s) to transformed coordinates: ``k T^{-1}``."""
        kd = la.to_dense(k)
        return la.solve(self.T.T, kd.T).T


def build_transform(B: la.Matrix) -> CoordinateTransform:
    """Build the orthogonalized transform for a ``dg x r`` basis, ``1 <= r <= dg``.

    Raises
    ------
    InvalidArgumentError
        If ``B`` is not two-dimensional, has no columns or more columns than rows.
    SingularMatrixError
        If ``B`` does not have full column rank (``B'B`` singular).

    """
    Bd = la.to_dense(B)
    if Bd.ndim != 2:
        raise InvalidArgumentError(f"B must be two-dimensional, got ndim={Bd.ndim}.")
    dg, r = Bd.shape
    if r == 0:
        raise InvalidArgumentError("B has no columns; the unconstrained case needs no transform.")
    if r > dg:
        raise InvalidArgumentError(f"B has more columns ({r}) than rows ({dg}).")
    la._assert_all_finite(Bd)

    Bp = la.orthogonal_complement(Bd)
    coef = la.solve(la.tdot(Bd), Bd.T, sym_pos=True)
    T = np.vstack([Bp.T, coef])
    invalid = np.repeat([False, True], [Bp.shape[1], r])
    return CoordinateTransform(T=T, invalid=invalid, B=Bd)
