"""Shared containers: moment model, path configuration and path result."""

from __future__ import annotations

import os
import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from gmmsens.core import linalg as la
from gmmsens.core.homotopy import path_matrix, path_matrix_columns
from gmmsens.exceptions import InvalidArgumentError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from gmmsens.core.transform import CoordinateTransform

__all__ = [
    "MomentModel",
    "PathConfig",
    "SensitivityPath",
    "normalize_norm",
]

# Environment override for the step cap of the path tracer.
MAX_STEPS_ENV = "GMMSENS_MAX_STEPS"

# Asymmetry below this (relative) is treated as rounding and symmetrized silently.
_ROUNDOFF = 1e-12

_NORM_ALIASES: dict[str, str] = {
    "inf": "inf",
    "linf": "inf",
    "l_inf": "inf",
    "max": "inf",
    "1": "l1",
    "l1": "l1",
    "l_1": "l1",
}


def normalize_norm(p: Any) -> str:
    """Map ``p`` (``1``, ``np.inf`` or a string alias) to ``"l1"`` or ``"inf"``."""
    if isinstance(p, str):
        key = p.strip().lower()
        if key in _NORM_ALIASES:
            return _NORM_ALIASES[key]
    elif isinstance(p, (int, float, np.integer, np.floating)) and not isinstance(p, bool):
        if np.isinf(p) and p > 0:
            return "inf"
        if p == 1:
            return "l1"
    raise InvalidArgumentError(f"norm must be one of 1, inf, 'l1', 'inf'; got {p!r}.")


@dataclass(frozen=True)
class PathConfig:
    """Options for :func:`gmmsens.solve_path`.

    Notes
    -----
    - norm: ``"inf"`` bounds the misspecification loadings ``gamma`` in the
      max-norm, ``"l1"`` in the 1-norm. ``1`` and ``np.inf`` are accepted.
    - max_steps: cap on tracer steps. ``None`` reads ``GMMSENS_MAX_STEPS``
      from the environment and otherwise uses 20 steps per moment.

    """

    norm: Any = "inf"
    max_steps: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "norm", normalize_norm(self.norm))
        if self.max_steps is not None and int(self.max_steps) < 1:
            raise InvalidArgumentError("max_steps must be a positive integer.")

    def resolved_max_steps(self) -> int | None:
        """Return the explicit cap, the environment override, or None for the default."""
        if self.max_steps is not None:
            return int(self.max_steps)
        env = os.getenv(MAX_STEPS_ENV, "").strip()
        if not env:
            return None
        try:
            val = int(env)
        except ValueError as exc:
            raise InvalidArgumentError(f"{MAX_STEPS_ENV} must be an integer, got {env!r}.") from exc
        if val < 1:
            raise InvalidArgumentError(f"{MAX_STEPS_ENV} must be a positive integer.")
        return val


def _names_from(obj: Any) -> list[str] | None:
    idx = getattr(obj, "index", None)
    if isinstance(obj, (pd.DataFrame, pd.Series)) and idx is not None:
        return [str(v) for v in idx]
    return None


@dataclass(frozen=True)
class MomentModel:
    """Moment-condition model ``(G, Sig, H)``.

    Parameters
    ----------
    G : array-like, shape (dg, dk)
        Derivative of the moment conditions with respect to the parameters.
    Sig : array-like, shape (dg, dg)
        Symmetric positive definite covariance of the moments.
    H : array-like, shape (dk,)
        Gradient of the scalar parameter of interest. Shapes ``(dk, 1)`` and
        ``(1, dk)`` are flattened.
    moment_names : sequence of str, optional
        Labels for the dg moment conditions.
    symmetry_tol : float, default 1e-8
        ``Sig`` may deviate from symmetry by this much relative to its largest
        entry; within tolerance it is symmetrized.

    Raises
    ------
    InvalidArgumentError
        On mismatched shapes, ``dg < dk``, non-finite entries or an asymmetric
        ``Sig``.

    """

    G: NDArray[np.float64]
    Sig: NDArray[np.float64]
    H: NDArray[np.float64]
    moment_names: tuple[str, ...] | None = None
    symmetry_tol: float = field(default=1e-8, repr=False)

    def __post_init__(self) -> None:
        G = la.to_dense(self.G)
        if G.ndim == 1:
            G = G.reshape(-1, 1)
        if G.ndim != 2:
            raise InvalidArgumentError(f"G must be two-dimensional, got ndim={G.ndim}.")
        dg, dk = G.shape
        if dk == 0 or dg == 0:
            raise InvalidArgumentError(f"G must be non-empty, got shape {G.shape}.")
        if dg < dk:
            raise InvalidArgumentError(
                f"G has fewer moments ({dg}) than parameters ({dk}); need dg >= dk.",
            )

        Sig = la.to_dense(self.Sig)
        if Sig.shape != (dg, dg):
            raise InvalidArgumentError(
                f"Sig must have shape ({dg}, {dg}) to match G, got {Sig.shape}.",
            )

        H = la.to_dense(self.H)
        if H.ndim > 2 or (H.ndim == 2 and 1 not in H.shape) or H.size != dk:
            raise InvalidArgumentError(
                f"H must be a vector with one entry per parameter ({dk}), got shape {H.shape}.",
            )
        H = H.reshape(-1)

        la._assert_all_finite(G, Sig, H)
        if not (self.symmetry_tol >= 0):
            raise InvalidArgumentError("symmetry_tol must be non-negative.")
        scale = max(1.0, float(np.max(np.abs(Sig))))
        asym = float(np.max(np.abs(Sig - Sig.T)))
        if asym > self.symmetry_tol * scale:
            raise InvalidArgumentError("Sig must be symmetric.")
        if asym > _ROUNDOFF * scale:
            warnings.warn(
                f"Sig is asymmetric by {asym:.3g}; using (Sig + Sig')/2.",
                RuntimeWarning,
                stacklevel=3,
            )
        Sig = la.symmetrize(Sig)

        names = self.moment_names
        if names is not None:
            names = tuple(str(v) for v in names)
            if len(names) != dg:
                raise InvalidArgumentError(
                    f"moment_names has {len(names)} entries but there are {dg} moments.",
                )

        object.__setattr__(self, "G", G)
        object.__setattr__(self, "Sig", Sig)
        object.__setattr__(self, "H", H)
        object.__setattr__(self, "moment_names", names)

    @classmethod
    def from_arrays(
        cls,
        G: Any,
        Sig: Any,
        H: Any,
        *,
        moment_names: Sequence[str] | None = None,
        symmetry_tol: float = 1e-8,
    ) -> MomentModel:
        """Build a model from arrays or pandas objects.

        When ``moment_names`` is not given, the index of ``G`` (or ``Sig``)
        is used if it is a pandas object.
        """
        names = moment_names
        if names is None:
            names = _names_from(G) or _names_from(Sig)
        return cls(G=G, Sig=Sig, H=H, moment_names=names, symmetry_tol=symmetry_tol)

    @property
    def dg(self) -> int:
        return int(self.G.shape[0])

    @property
    def dk(self) -> int:
        return int(self.G.shape[1])

    @property
    def names(self) -> list[str]:
        if self.moment_names is not None:
            return list(self.moment_names)
        return [str(i) for i in range(1, self.dg + 1)]


@dataclass
class SensitivityPath:
    """Knots of the optimal sensitivity path.

    Rows follow the order in which the tracer visits knots, i.e. increasing
    ``lam`` (from the unrestricted GMM sensitivity to the most bias-robust
    one).

    Attributes
    ----------
    sensitivities : ndarray, shape (n_knots, dg)
        Sensitivity vector at each knot in original moment coordinates.
    lam : ndarray, shape (n_knots,)
        Penalty on the bias term at each knot (non-decreasing).
    active : ndarray of bool, shape (n_knots, dg)
        Active set at each knot, in transformed coordinates.
    k_transformed : ndarray, shape (n_knots, dg)
        Sensitivities in transformed coordinates.
    mu : ndarray, shape (n_knots, dk)
        Multipliers on ``G'k = -H``.
    norm : str
        ``"inf"`` or ``"l1"``.
    model : MomentModel
    B : ndarray, shape (dg, r)
    transform : CoordinateTransform or None
        None when ``B`` has no columns.

    """

    sensitivities: NDArray[np.float64]
    lam: NDArray[np.float64]
    active: NDArray[np.bool_]
    k_transformed: NDArray[np.float64]
    mu: NDArray[np.float64]
    norm: str
    model: MomentModel
    B: NDArray[np.float64]
    transform: CoordinateTransform | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        return (
            f"SensitivityPath(norm={self.norm}, n_knots={self.n_knots}, "
            f"dg={self.model.dg}, r={self.B.shape[1]})"
        )

    def __len__(self) -> int:
        return self.n_knots

    @property
    def n_knots(self) -> int:
        return int(self.sensitivities.shape[0])

    def knot(self, i: int) -> pd.Series:
        """Sensitivity at knot ``i`` labelled by moment."""
        return pd.Series(self.sensitivities[i], index=self.model.names, name=float(self.lam[i]))

    def to_frame(self) -> pd.DataFrame:
        """One row per knot: ``lam``, the sensitivity per moment, ``n_active``."""
        df = pd.DataFrame(self.sensitivities, columns=self.model.names)
        df.insert(0, "lam", self.lam)
        df["n_active"] = self.active.sum(axis=1).astype(int)
        df.index.name = "knot"
        return df

    def raw_matrix(self) -> pd.DataFrame:
        """Knots in transformed coordinates, columns ``lam, 1..dg, A1..Adg``."""
        data = path_matrix(self.lam, self.k_transformed, self.active)
        return pd.DataFrame(data, columns=path_matrix_columns(self.model.dg))

    def loadings(self) -> NDArray[np.float64]:
        """Loadings ``k'B`` of each sensitivity on the misspecification directions."""
        return self.sensitivities @ self.B

    def bias_bounds(self) -> NDArray[np.float64]:
        """Worst-case bias per unit radius of the misspecification ball.

        This is the dual norm of the loadings: ``||B'k||_1`` when ``gamma`` is
        bounded in the max-norm, ``||B'k||_inf`` when bounded in the 1-norm.
        Non-increasing along the path.
        """
        L = self.loadings()
        if L.shape[1] == 0:
            return np.zeros(self.n_knots, dtype=np.float64)
        if self.norm == "inf":
            return np.sum(np.abs(L), axis=1)
        return np.max(np.abs(L), axis=1)

    def std_devs(self) -> NDArray[np.float64]:
        """``sqrt(k'Sig k)`` for each knot. Non-decreasing along the path."""
        var = np.array([la.quad_form(self.model.Sig, k) for k in self.sensitivities])
        return np.sqrt(np.maximum(var, 0.0))
