"""Optimal sensitivity path for a misspecification set ``c = B gamma``.

Reference: Armstrong, T. B., and M. Kolesár (2021), "Sensitivity Analysis
Using Approximate Moment Condition Models", Quantitative Economics 12(1),
Appendix A.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np

from gmmsens.core import homotopy as hp
from gmmsens.core import linalg as la
from gmmsens.core.transform import build_transform
from gmmsens.estimators.base import (
    MomentModel,
    PathConfig,
    SensitivityPath,
    normalize_norm,
)
from gmmsens.exceptions import InvalidArgumentError

if TYPE_CHECKING:
    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = ["lph", "solve_path", "unrestricted_sensitivity"]


def _validate_basis(B: Any, dg: int) -> NDArray[np.float64]:
    Bd = la.to_dense(B)
    if Bd.ndim == 1:
        Bd = Bd.reshape(-1, 1)
    if Bd.ndim != 2:
        raise InvalidArgumentError(f"B must be two-dimensional, got ndim={Bd.ndim}.")
    if Bd.shape[0] != dg:
        raise InvalidArgumentError(
            f"B must have one row per moment ({dg}), got {Bd.shape[0]} rows.",
        )
    if Bd.shape[1] > dg:
        raise InvalidArgumentError(
            f"B has more columns ({Bd.shape[1]}) than rows ({dg}).",
        )
    la._assert_all_finite(Bd)
    return Bd


def unrestricted_sensitivity(model: MomentModel) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Sensitivity of the efficient GMM estimator and its multiplier.

    Returns ``(k, mu)`` with ``k' = -H'(G'Sig^-1 G)^-1 G'Sig^-1`` and
    ``mu = (G'Sig^-1 G)^-1 H``.
    """
    return hp.unrestricted_solution(model.G, model.Sig, model.H)


def solve_path(
    model: MomentModel,
    B: Any,
    norm: Any = None,
    *,
    config: PathConfig | None = None,
) -> SensitivityPath:
    """Trace the optimal sensitivity at every knot of the solution path.

    Each knot gives the sensitivity that minimizes the variance ``k'Sig k``
    subject to ``G'k = -H`` and a bound on the worst-case bias over
    ``{B gamma : ||gamma||_p <= 1}``, for the bound at which the set of
    binding coordinates changes. Rows run from the unrestricted GMM
    sensitivity to the most bias-robust one.

    Parameters
    ----------
    model : MomentModel
    B : array-like, shape (dg, r)
        Directions of local misspecification; ``0 <= r <= dg``.
    norm : {1, inf, "l1", "inf"}, optional
        Norm bounding ``gamma``. Overrides ``config.norm`` when given.
    config : PathConfig, optional

    Returns
    -------
    SensitivityPath
        With ``r = 0`` a single row, the efficient GMM sensitivity.

    Raises
    ------
    InvalidArgumentError
        If ``B`` does not match the model or the norm is unknown.
    SingularMatrixError
        If ``Sig`` (or a block of it), ``B'B`` or a normal-equation matrix is singular.
    FatalNumericalError
        If the tracer takes a negative step or fails to terminate.

    """
    if not isinstance(model, MomentModel):
        raise InvalidArgumentError("model must be a MomentModel.")
    cfg = config if config is not None else PathConfig()
    p = cfg.norm if norm is None else normalize_norm(norm)
    Bd = _validate_basis(B, model.dg)
    r = int(Bd.shape[1])

    if r == 0:
        k, mu = unrestricted_sensitivity(model)
        LOGGER.debug("Empty B: returning the unrestricted sensitivity.")
        return SensitivityPath(
            sensitivities=k.reshape(1, -1),
            lam=np.zeros(1, dtype=np.float64),
            active=np.ones((1, model.dg), dtype=bool),
            k_transformed=k.reshape(1, -1),
            mu=mu.reshape(1, -1),
            norm=p,
            model=model,
            B=Bd,
            transform=None,
        )

    tr = build_transform(Bd)
    problem = hp.PathProblem(
        G=tr.transform_moments(model.G),
        Sig=tr.transform_covariance(model.Sig),
        H=model.H,
        invalid=tr.invalid,
    )
    tracer = hp.linf_path if p == "inf" else hp.l1_path
    states = tracer(problem, max_steps=cfg.resolved_max_steps())
    LOGGER.debug(
        "Traced %d knots (norm=%s, dg=%d, dk=%d, r=%d).",
        len(states), p, model.dg, model.dk, r,
    )

    kt = np.vstack([s.k for s in states])
    return SensitivityPath(
        sensitivities=tr.inverse(kt),
        lam=np.array([s.lam for s in states], dtype=np.float64),
        active=np.vstack([s.A for s in states]),
        k_transformed=kt,
        mu=np.vstack([s.mu for s in states]),
        norm=p,
        model=model,
        B=Bd,
        transform=tr,
        extra={"terminal_size": problem.terminal_size},
    )


def lph(model: MomentModel, B: Any, p: Any = np.inf) -> NDArray[np.float64]:
    """Sensitivity matrix of the path, one row per knot.

    Shorthand for ``solve_path(model, B, p).sensitivities``.
    """
    return solve_path(model, B, p).sensitivities
