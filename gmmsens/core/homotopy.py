"""Exact homotopy for optimal sensitivity vectors.

In coordinates from :mod:`gmmsens.core.transform` the sensitivity ``k``
solves, for each penalty ``lam >= 0``,

    min_k  k'Sig k / 2 + lam * ||k_I||_q    subject to   G'k = -H,

where ``I`` flags the constrained coordinates and ``q`` is the dual norm of
the misspecification ball (``q = 1`` for a max-norm ball, ``q = inf`` for a
1-norm ball). Stationarity reads ``Sig k + G mu + lam s = 0`` with ``s`` a
subgradient of the penalty. The solution is piecewise linear in ``lam``; the
functions below follow it from ``lam = 0`` (the unrestricted GMM
sensitivity) knot by knot until the bias term cannot be reduced further.

``lam`` is the Lagrange multiplier on the bound ``||k_I||_q <= t``; larger
``lam`` corresponds to a smaller bound ``t``, so rows are ordered from the
loosest to the tightest bias constraint.

Each step is a pure function ``(problem, state) -> state``. ``None`` means no
further knot exists.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

import numpy as np

from gmmsens.core import linalg as la
from gmmsens.exceptions import FatalNumericalError

if TYPE_CHECKING:
    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

# Default cap on steps, per moment coordinate.
DEFAULT_STEPS_PER_MOMENT = 20

__all__ = [
    "ActiveSetState",
    "PathProblem",
    "l1_path",
    "l1_start",
    "l1_step",
    "linf_path",
    "linf_start",
    "linf_step",
    "path_matrix",
    "path_matrix_columns",
    "trace_path",
    "unrestricted_solution",
]


@dataclass(frozen=True)
class PathProblem:
    """Moment model in transformed coordinates."""

    G: NDArray[np.float64]
    Sig: NDArray[np.float64]
    H: NDArray[np.float64]
    invalid: NDArray[np.bool_]

    @property
    def dg(self) -> int:
        return int(self.G.shape[0])

    @property
    def dk(self) -> int:
        return int(self.G.shape[1])

    @property
    def terminal_size(self) -> int:
        """Smallest admissible number of free coordinates."""
        return max(int(np.sum(~self.invalid)), self.dk)

    def slack(self, k: NDArray[np.float64], mu: NDArray[np.float64]) -> NDArray[np.float64]:
        """Return ``Sig k + G mu``; equals ``-lam s`` at a solution."""
        return self.Sig @ k + self.G @ mu


@dataclass(frozen=True)
class ActiveSetState:
    """Solution at one knot together with the directions of the next segment.

    For the max-norm ball ``A`` marks coordinates that are free to move
    (unconstrained, or constrained and away from zero); inactive coordinates
    sit at zero. For the 1-norm ball ``A`` marks coordinates not tied at the
    maximum ``|k_i|``; ``s_d`` carries the signs of the tied coordinates.
    """

    lam: float
    k: NDArray[np.float64]
    mu: NDArray[np.float64]
    A: NDArray[np.bool_]
    k_d: NDArray[np.float64]
    mu_d: NDArray[np.float64]
    s_d: NDArray[np.float64]
    joined: tuple[int, ...] = field(default=())

    @property
    def n_active(self) -> int:
        return int(np.sum(self.A))


def _normal_directions(
    Sig: NDArray[np.float64],
    G: NDArray[np.float64],
    s: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Solve ``Sig z_d + G mu_d + s = 0``, ``G'z_d = 0`` for ``(z_d, mu_d)``."""
    fac = la.chol_factor(Sig)
    SiG = la.chol_solve(fac, G)
    Sis = la.chol_solve(fac, s)
    mu_d = -la.solve(la.crossprod(G, SiG), la.crossprod(G, Sis), sym_pos=True)
    z_d = la.chol_solve(fac, -(G @ mu_d) - s)
    return z_d, mu_d


def unrestricted_solution(
    G: NDArray[np.float64], Sig: NDArray[np.float64], H: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """GMM sensitivity at ``lam = 0``: ``mu = (G'Sig^-1 G)^-1 H``, ``k = -Sig^-1 G mu``."""
    fac = la.chol_factor(Sig)
    SiG = la.chol_solve(fac, G)
    mu = la.solve(la.crossprod(G, SiG), H, sym_pos=True)
    k = -(SiG @ mu)
    return k, mu


def _check_step(d: float, lam: float) -> None:
    if d < 0:
        msg = f"Taking a negative step (d={d:.6g} at lam={lam:.6g})."
        raise FatalNumericalError(msg, step=d, lam=lam)


# ---------------------------------------------------------------------
# Max-norm ball: penalty lam * ||k_I||_1
# ---------------------------------------------------------------------


def _linf_directions(
    problem: PathProblem, A: NDArray[np.bool_], s_d: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    z_d, mu_d = _normal_directions(
        problem.Sig[np.ix_(A, A)], problem.G[A, :], s_d[A],
    )
    k_d = np.zeros(problem.dg, dtype=np.float64)
    k_d[A] = z_d
    return k_d, mu_d


def linf_start(problem: PathProblem) -> ActiveSetState:
    """State at ``lam = 0`` with every coordinate active."""
    k, mu = unrestricted_solution(problem.G, problem.Sig, problem.H)
    A = np.ones(problem.dg, dtype=bool)
    s_d = np.sign(k) * problem.invalid
    k_d, mu_d = _linf_directions(problem, A, s_d)
    return ActiveSetState(lam=0.0, k=k, mu=mu, A=A, k_d=k_d, mu_d=mu_d, s_d=s_d)


def linf_candidates(
    problem: PathProblem, state: ActiveSetState,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Distances to the next leave (``d1``) and join (``d2``) event per coordinate.

    ``d1[i]`` is the step after which active constrained coordinate ``i``
    reaches zero. ``d2[i]`` is the step after which the slack of inactive
    coordinate ``i`` reaches the boundary ``+-lam``. Inapplicable entries are
    ``inf``.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        d1 = -state.k / state.k_d
        d1[~state.A | ~(d1 >= 0) | ~problem.invalid] = np.inf
    if state.joined:
        d1[list(state.joined)] = np.inf

    a = problem.slack(state.k, state.mu)
    a_d = problem.slack(state.k_d, state.mu_d)
    d2 = np.full(problem.dg, np.inf)
    up = a_d > 1
    dn = a_d < -1
    d2[up] = (state.lam - a[up]) / (a_d[up] - 1)
    d2[dn] = -(state.lam + a[dn]) / (a_d[dn] + 1)
    d2[state.A] = np.inf
    return d1, d2


def linf_step(problem: PathProblem, state: ActiveSetState) -> ActiveSetState | None:
    """Advance to the next knot of the max-norm path.

    Joins win only on a strict minimum; all coordinates tied at the minimum
    join (or leave) together. Joined coordinates cannot leave on the very
    next step.

    Raises
    ------
    FatalNumericalError
        If the step length is negative.

    """
    d1, d2 = linf_candidates(problem, state)
    min1, min2 = float(np.min(d1)), float(np.min(d2))
    d = min(min1, min2)
    _check_step(d, state.lam)
    if not np.isfinite(d):
        return None

    lam = state.lam + d
    k = state.k + d * state.k_d
    mu = state.mu + d * state.mu_d
    A = state.A.copy()
    if min2 < min1:
        joined = tuple(int(i) for i in np.flatnonzero(d2 <= min2))
        A[list(joined)] = True
    else:
        leaving = d1 <= min1
        A[leaving] = False
        k[leaving] = 0.0
        joined = ()

    # Signs of the penalty subgradient on the new active set; coordinates that
    # just joined sit at zero and take the sign of their slack.
    a = problem.slack(k, mu)
    s_d = np.where(k != 0, np.sign(k), np.sign(-a)) * problem.invalid
    s_d[~A] = 0.0
    k_d, mu_d = _linf_directions(problem, A, s_d)
    return ActiveSetState(
        lam=lam, k=k, mu=mu, A=A, k_d=k_d, mu_d=mu_d, s_d=s_d, joined=joined,
    )


def _linf_done(problem: PathProblem, state: ActiveSetState) -> bool:
    return state.n_active <= problem.terminal_size


# ---------------------------------------------------------------------
# 1-norm ball: penalty lam * ||k_I||_inf
# ---------------------------------------------------------------------


def _tied(state: ActiveSetState) -> NDArray[np.bool_]:
    return ~state.A & (state.s_d != 0)


def _l1_basis(A: NDArray[np.bool_], s_d: NDArray[np.float64]) -> NDArray[np.float64]:
    """Columns ``e_i`` for free coordinates, then ``s_d`` if the tie set is non-empty."""
    P = np.eye(A.shape[0])[:, A]
    if np.any(s_d[~A] != 0):
        P = np.column_stack([P, np.where(A, 0.0, s_d)])
    return P


def _l1_directions(
    problem: PathProblem, A: NDArray[np.bool_], s_d: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    P = _l1_basis(A, s_d)
    e = np.zeros(P.shape[1], dtype=np.float64)
    if P.shape[1] > int(np.sum(A)):
        e[-1] = 1.0
    z_d, mu_d = _normal_directions(P.T @ problem.Sig @ P, P.T @ problem.G, e)
    return P @ z_d, mu_d


def _free_dim(state: ActiveSetState) -> int:
    return state.n_active + int(np.any(_tied(state)))


def l1_start(problem: PathProblem) -> ActiveSetState:
    """State at ``lam = 0``: the largest constrained coordinates form the tie set."""
    k, mu = unrestricted_solution(problem.G, problem.Sig, problem.H)
    inv = problem.invalid
    m = float(np.max(np.abs(k[inv]))) if np.any(inv) else 0.0
    if m == 0.0:
        # no bias to remove; everything constrained is already at zero
        A = ~inv
        s_d = np.zeros(problem.dg, dtype=np.float64)
        return ActiveSetState(
            lam=0.0, k=k, mu=mu, A=A,
            k_d=np.zeros_like(k), mu_d=np.zeros_like(mu), s_d=s_d,
        )
    tied = inv & (np.abs(k) == m)
    A = ~tied
    s_d = np.sign(k) * tied
    k_d, mu_d = _l1_directions(problem, A, s_d)
    return ActiveSetState(lam=0.0, k=k, mu=mu, A=A, k_d=k_d, mu_d=mu_d, s_d=s_d)


def l1_candidates(
    problem: PathProblem, state: ActiveSetState,
) -> tuple[NDArray[np.float64], NDArray[np.float64], float]:
    """Distances to the next leave, join and collapse events.

    Returns ``(d1, d2, d3)``: ``d1[i]`` is the step after which the tie
    weight of tied coordinate ``i`` reaches zero, ``d2[i]`` the step after
    which free constrained coordinate ``i`` reaches the common maximum, and
    ``d3`` the step after which the maximum itself reaches zero.
    """
    dg = problem.dg
    tied = _tied(state)
    d1 = np.full(dg, np.inf)
    d2 = np.full(dg, np.inf)
    if not np.any(tied):
        return d1, d2, np.inf

    m = float(np.max(np.abs(state.k[tied])))
    m_d = float(np.mean(state.s_d[tied] * state.k_d[tied]))

    if state.lam > 0 and int(np.sum(tied)) >= 2:
        a = problem.slack(state.k, state.mu)
        a_d = problem.slack(state.k_d, state.mu_d)
        with np.errstate(divide="ignore", invalid="ignore"):
            r = -a / a_d
            d1[tied] = r[tied]
            d1[~(d1 >= 0)] = np.inf
        if state.joined:
            d1[list(state.joined)] = np.inf

    free = state.A & problem.invalid
    rate_up = state.k_d - m_d
    rate_dn = -state.k_d - m_d
    up = free & (rate_up > 0)
    dn = free & (rate_dn > 0)
    d_up = np.full(dg, np.inf)
    d_dn = np.full(dg, np.inf)
    d_up[up] = (m - state.k[up]) / rate_up[up]
    d_dn[dn] = (m + state.k[dn]) / rate_dn[dn]
    d2 = np.minimum(d_up, d_dn)

    d3 = -m / m_d if m_d < 0 else np.inf
    return d1, d2, d3


def l1_step(problem: PathProblem, state: ActiveSetState) -> ActiveSetState | None:
    """Advance to the next knot of the 1-norm path.

    A collapse of the maximum to zero takes precedence over ties with other
    events, a leave over a join. Coordinates that just joined the tie set
    cannot leave it on the very next step.

    Raises
    ------
    FatalNumericalError
        If the step length is negative.

    """
    d1, d2, d3 = l1_candidates(problem, state)
    min1, min2 = float(np.min(d1)), float(np.min(d2))
    d = min(min1, min2, d3)
    _check_step(d, state.lam)
    if not np.isfinite(d):
        return None

    inv = problem.invalid
    tied = _tied(state)
    lam = state.lam + d
    k = state.k + d * state.k_d
    mu = state.mu + d * state.mu_d
    A = state.A.copy()
    s_d = state.s_d.copy()
    joined: tuple[int, ...] = ()
    if d3 <= min(min1, min2):
        k[inv] = 0.0
        A = ~inv
        s_d = np.zeros(problem.dg, dtype=np.float64)
    elif min2 < min1:
        joined = tuple(int(i) for i in np.flatnonzero(d2 <= min2))
        m = float(np.max(np.abs(k[tied])))
        A[list(joined)] = False
        s_d[list(joined)] = np.sign(k[list(joined)])
        now_tied = ~A & (s_d != 0)
        k[now_tied] = s_d[now_tied] * m
    else:
        leaving = d1 <= min1
        A[leaving] = True
        s_d[leaving] = 0.0

    if np.any(~A & (s_d != 0)):
        k_d, mu_d = _l1_directions(problem, A, s_d)
    else:
        k_d, mu_d = np.zeros_like(k), np.zeros_like(mu)
    return ActiveSetState(
        lam=lam, k=k, mu=mu, A=A, k_d=k_d, mu_d=mu_d, s_d=s_d, joined=joined,
    )


def _l1_done(problem: PathProblem, state: ActiveSetState) -> bool:
    return _free_dim(state) <= problem.terminal_size


# ---------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------


def trace_path(
    problem: PathProblem,
    start: ActiveSetState,
    step: Callable[[PathProblem, ActiveSetState], ActiveSetState | None],
    done: Callable[[PathProblem, ActiveSetState], bool],
    *,
    max_steps: int | None = None,
) -> list[ActiveSetState]:
    """Apply ``step`` from ``start`` until ``done``; return every visited state.

    Raises
    ------
    FatalNumericalError
        If a step is negative, or ``max_steps`` steps do not reach the end.

    """
    cap = DEFAULT_STEPS_PER_MOMENT * problem.dg if max_steps is None else int(max_steps)
    states = [start]
    state = start
    LOGGER.debug("knot 0: lam=0, n_active=%d", state.n_active)
    while not done(problem, state):
        if len(states) > cap:
            msg = f"Path did not terminate within {cap} steps (lam={state.lam:.6g})."
            raise FatalNumericalError(msg, lam=state.lam)
        nxt = step(problem, state)
        if nxt is None:
            warnings.warn(
                f"No further knot after lam={state.lam:.6g}; the path stops with "
                f"{state.n_active} active coordinates (terminal size {problem.terminal_size}).",
                RuntimeWarning,
                stacklevel=2,
            )
            break
        state = nxt
        states.append(state)
        LOGGER.debug(
            "knot %d: lam=%.6g, n_active=%d, joined=%s",
            len(states) - 1,
            state.lam,
            state.n_active,
            state.joined,
        )
    return states


def linf_path(problem: PathProblem, *, max_steps: int | None = None) -> list[ActiveSetState]:
    """Knots of the path for a max-norm ball on the misspecification loadings."""
    return trace_path(problem, linf_start(problem), linf_step, _linf_done, max_steps=max_steps)


def l1_path(problem: PathProblem, *, max_steps: int | None = None) -> list[ActiveSetState]:
    """Knots of the path for a 1-norm ball on the misspecification loadings."""
    return trace_path(problem, l1_start(problem), l1_step, _l1_done, max_steps=max_steps)


def path_matrix(
    lam: NDArray[np.float64], k: NDArray[np.float64], active: NDArray[np.bool_],
) -> NDArray[np.float64]:
    """Stack knots into rows ``[lam, k_1..k_dg, A_1..A_dg]``."""
    return np.column_stack([lam, k, np.asarray(active, dtype=np.float64)])


def path_matrix_columns(dg: int) -> list[str]:
    return ["lam", *[str(i) for i in range(1, dg + 1)], *[f"A{i}" for i in range(1, dg + 1)]]
