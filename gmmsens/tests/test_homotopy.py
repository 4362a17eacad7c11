import numpy as np
import pytest

from gmmsens.core import homotopy as hp
from gmmsens.core.transform import build_transform
from gmmsens.exceptions import FatalNumericalError

TOL = 1e-8

# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def transformed_problem(G, Sig, H, B):
    tr = build_transform(B)
    return hp.PathProblem(
        G=tr.transform_moments(G),
        Sig=tr.transform_covariance(Sig),
        H=np.asarray(H, dtype=float),
        invalid=tr.invalid,
    )


def assert_linf_kkt(problem, state):
    """Sig k + G mu + lam s = 0 with s in the subdifferential of ||k_I||_1."""
    assert np.allclose(problem.G.T @ state.k, -problem.H, atol=TOL)
    a = problem.slack(state.k, state.mu)
    inv = problem.invalid
    scale = TOL * max(1.0, state.lam)
    # unconstrained coordinates carry no penalty
    assert np.allclose(a[~inv], 0.0, atol=TOL)
    nonzero = inv & state.A & (state.k != 0)
    assert np.allclose(a[nonzero], -state.lam * np.sign(state.k[nonzero]), atol=TOL)
    at_zero = inv & ~nonzero
    assert np.all(np.abs(a[at_zero]) <= state.lam + scale)
    assert np.all(state.k[~state.A] == 0.0)


def assert_l1_kkt(problem, state):
    """Sig k + G mu + lam s = 0 with s in the subdifferential of ||k_I||_inf."""
    assert np.allclose(problem.G.T @ state.k, -problem.H, atol=TOL)
    a = problem.slack(state.k, state.mu)
    inv = problem.invalid
    tied = ~state.A & (state.s_d != 0)
    assert np.allclose(a[state.A], 0.0, atol=TOL)
    if state.lam == 0:
        assert np.allclose(a, 0.0, atol=TOL)
        return
    if np.any(tied):
        m = np.max(np.abs(state.k[inv]))
        assert np.allclose(np.abs(state.k[tied]), m)
        w = -state.s_d[tied] * a[tied] / state.lam
        assert np.all(w >= -TOL)
        assert np.isclose(np.sum(w), 1.0, atol=1e-7)
    else:
        # collapsed: every constrained coordinate is zero
        assert np.all(state.k[inv] == 0.0)
        assert np.sum(np.abs(a[inv])) <= state.lam * (1 + TOL) + TOL

# ---------------------------------------------------------------------
# Max-norm ball
# ---------------------------------------------------------------------

def test_linf_concrete_three_moments():
    G = np.ones((3, 1))
    B = np.array([[1.0], [0.0], [0.0]])
    problem = transformed_problem(G, np.eye(3), [1.0], B)
    states = hp.linf_path(problem)

    assert len(states) == 2
    first, last = states
    assert first.lam == 0.0
    assert first.A.all()
    assert np.isclose(first.k[-1], -1.0 / 3.0)
    assert np.isclose(last.lam, 0.5)
    assert last.n_active == 2 == problem.terminal_size
    assert last.A.tolist() == [True, True, False]
    assert last.k[-1] == 0.0


def test_linf_two_moments_drops_first():
    # penalty on ||k||_1 subject to k1 + 2 k2 = -1
    problem = hp.PathProblem(
        G=np.array([[1.0], [2.0]]), Sig=np.eye(2), H=np.array([1.0]),
        invalid=np.array([True, True]),
    )
    states = hp.linf_path(problem)
    assert [s.lam for s in states] == pytest.approx([0.0, 0.5])
    assert np.allclose(states[0].k, [-0.2, -0.4])
    assert np.allclose(states[1].k, [0.0, -0.5])
    assert states[1].A.tolist() == [False, True]
    for s in states:
        assert_linf_kkt(problem, s)


def test_linf_start_directions_satisfy_constraints(rng, make_arrays):
    G, Sig, H = make_arrays(6, 2)
    problem = transformed_problem(G, Sig, H, rng.standard_normal((6, 3)))
    s0 = hp.linf_start(problem)
    # moving along the direction keeps G'k = -H
    assert np.allclose(problem.G.T @ s0.k_d, 0.0, atol=TOL)
    # and the slack moves opposite to the sign vector on active coordinates
    a_d = problem.slack(s0.k_d, s0.mu_d)
    assert np.allclose(a_d, -s0.s_d, atol=TOL)


@pytest.mark.parametrize(("dg", "dk", "r"), [(6, 2, 3), (6, 2, 6), (8, 3, 5), (5, 1, 2)])
def test_linf_random_paths_are_kkt_and_monotone(rng, make_arrays, dg, dk, r):
    G, Sig, H = make_arrays(dg, dk)
    problem = transformed_problem(G, Sig, H, rng.standard_normal((dg, r)))
    states = hp.linf_path(problem)

    lams = np.array([s.lam for s in states])
    assert np.all(np.diff(lams) >= 0)
    for s in states:
        assert_linf_kkt(problem, s)
    assert states[-1].n_active <= problem.terminal_size
    assert all(s.n_active > problem.terminal_size for s in states[:-1])


def test_linf_negative_step_raises():
    problem = hp.PathProblem(
        G=np.array([[1.0], [1.0]]), Sig=np.eye(2), H=np.array([1.0]),
        invalid=np.array([False, True]),
    )
    # inactive coordinate 1 has slack 2 > lam and moves outward: inconsistent
    state = hp.ActiveSetState(
        lam=0.5,
        k=np.array([0.3, 0.0]),
        mu=np.array([2.0]),
        A=np.array([True, False]),
        k_d=np.array([0.1, 0.0]),
        mu_d=np.array([3.0]),
        s_d=np.zeros(2),
    )
    with pytest.raises(FatalNumericalError, match="negative step") as excinfo:
        hp.linf_step(problem, state)
    assert excinfo.value.step == pytest.approx(-0.75)
    assert excinfo.value.lam == 0.5


def test_linf_step_returns_none_without_events():
    problem = hp.PathProblem(
        G=np.array([[1.0], [1.0]]), Sig=np.eye(2), H=np.array([1.0]),
        invalid=np.array([False, True]),
    )
    state = hp.ActiveSetState(
        lam=0.0,
        k=np.array([-0.5, -0.5]),
        mu=np.array([0.5]),
        A=np.array([True, True]),
        k_d=np.zeros(2),
        mu_d=np.zeros(1),
        s_d=np.zeros(2),
    )
    assert hp.linf_step(problem, state) is None
    with pytest.warns(RuntimeWarning, match="No further knot"):
        states = hp.trace_path(problem, state, hp.linf_step, lambda p, s: False)
    assert len(states) == 1
    assert states[0] is state


def test_linf_symmetric_moments_stop_early_with_warning():
    # equal loadings keep every coordinate tied; the direction vanishes
    problem = hp.PathProblem(
        G=np.ones((3, 1)), Sig=np.eye(3), H=np.array([1.0]),
        invalid=np.ones(3, dtype=bool),
    )
    with pytest.warns(RuntimeWarning, match="terminal size 1"):
        states = hp.linf_path(problem)
    assert len(states) == 1
    assert states[0].n_active == 3


def test_linf_tied_coordinates_leave_together():
    problem = hp.PathProblem(
        G=np.array([[2.0], [1.0], [1.0]]), Sig=np.eye(3), H=np.array([1.0]),
        invalid=np.ones(3, dtype=bool),
    )
    states = hp.linf_path(problem)
    assert len(states) == 2
    assert np.allclose(states[0].k, [-1 / 3, -1 / 6, -1 / 6])
    assert states[1].lam == pytest.approx(0.5)
    assert states[1].A.tolist() == [True, False, False]
    assert np.allclose(states[1].k, [-0.5, 0.0, 0.0])
    for s in states:
        assert_linf_kkt(problem, s)


def test_joined_coordinates_are_protected():
    problem = hp.PathProblem(
        G=np.array([[1.0], [1.0]]), Sig=np.eye(2), H=np.array([1.0]),
        invalid=np.array([True, True]),
    )
    state = hp.ActiveSetState(
        lam=1.0,
        k=np.array([0.0, -1.0]),
        mu=np.array([1.0]),
        A=np.array([True, True]),
        k_d=np.array([1.0, 1.0]),
        mu_d=np.zeros(1),
        s_d=np.zeros(2),
        joined=(0,),
    )
    d1, _d2 = hp.linf_candidates(problem, state)
    assert np.isinf(d1[0])
    assert d1[1] == pytest.approx(1.0)

# ---------------------------------------------------------------------
# 1-norm ball
# ---------------------------------------------------------------------

def test_l1_two_moments_equalizes():
    # penalty on ||k||_inf subject to k1 + 2 k2 = -1
    problem = hp.PathProblem(
        G=np.array([[1.0], [2.0]]), Sig=np.eye(2), H=np.array([1.0]),
        invalid=np.array([True, True]),
    )
    states = hp.l1_path(problem)
    assert [s.lam for s in states] == pytest.approx([0.0, 1.0 / 3.0])
    assert np.allclose(states[0].k, [-0.2, -0.4])
    assert states[0].A.tolist() == [True, False]
    assert np.allclose(states[1].k, [-1.0 / 3.0, -1.0 / 3.0])
    assert states[1].joined == (0,)
    assert states[1].A.tolist() == [False, False]
    for s in states:
        assert_l1_kkt(problem, s)


def test_l1_free_coordinates_join_together():
    problem = hp.PathProblem(
        G=np.array([[2.0], [1.0], [1.0]]), Sig=np.eye(3), H=np.array([1.0]),
        invalid=np.ones(3, dtype=bool),
    )
    states = hp.l1_path(problem)
    assert len(states) == 2
    assert states[0].A.tolist() == [False, True, True]
    assert states[1].lam == pytest.approx(0.25)
    assert states[1].joined == (1, 2)
    assert states[1].A.tolist() == [False, False, False]
    assert np.allclose(states[1].k, [-0.25, -0.25, -0.25])
    for s in states:
        assert_l1_kkt(problem, s)


def test_l1_starts_terminal_when_already_tied():
    problem = hp.PathProblem(
        G=np.array([[1.0], [1.0]]), Sig=np.eye(2), H=np.array([1.0]),
        invalid=np.array([True, True]),
    )
    states = hp.l1_path(problem)
    assert len(states) == 1
    assert np.allclose(states[0].k, [-0.5, -0.5])


def test_l1_collapses_to_zero_bias():
    G = np.ones((3, 1))
    B = np.array([[1.0], [0.0], [0.0]])
    problem = transformed_problem(G, np.eye(3), [1.0], B)
    states = hp.l1_path(problem)
    assert len(states) == 2
    assert states[1].lam == pytest.approx(0.5)
    assert states[1].k[-1] == 0.0
    assert states[1].A.tolist() == [True, True, False]
    assert np.all(states[1].s_d == 0.0)


@pytest.mark.parametrize(("dg", "dk", "r"), [(6, 2, 3), (6, 2, 6), (8, 3, 5), (5, 1, 4)])
def test_l1_random_paths_are_kkt_and_monotone(rng, make_arrays, dg, dk, r):
    G, Sig, H = make_arrays(dg, dk)
    problem = transformed_problem(G, Sig, H, rng.standard_normal((dg, r)))
    states = hp.l1_path(problem)

    lams = np.array([s.lam for s in states])
    assert np.all(np.diff(lams) >= 0)
    inv = problem.invalid
    maxes = [np.max(np.abs(s.k[inv])) for s in states]
    assert np.all(np.diff(maxes) <= TOL)
    for s in states:
        assert_l1_kkt(problem, s)


def test_norms_agree_for_single_direction(rng, make_arrays):
    G, Sig, H = make_arrays(5, 2)
    problem = transformed_problem(G, Sig, H, rng.standard_normal((5, 1)))
    linf = hp.linf_path(problem)
    l1 = hp.l1_path(problem)
    assert len(linf) == len(l1)
    assert np.allclose([s.lam for s in linf], [s.lam for s in l1])
    assert np.allclose(np.vstack([s.k for s in linf]), np.vstack([s.k for s in l1]))

# ---------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------

def test_trace_path_step_cap():
    problem = hp.PathProblem(
        G=np.ones((2, 1)), Sig=np.eye(2), H=np.ones(1), invalid=np.array([True, True]),
    )
    start = hp.linf_start(problem)

    def creep(_problem, state):
        return hp.ActiveSetState(
            lam=state.lam + 1.0, k=state.k, mu=state.mu, A=state.A,
            k_d=state.k_d, mu_d=state.mu_d, s_d=state.s_d,
        )

    with pytest.raises(FatalNumericalError, match="did not terminate"):
        hp.trace_path(problem, start, creep, lambda p, s: False, max_steps=3)


def test_path_matrix_layout():
    G = np.ones((3, 1))
    problem = transformed_problem(G, np.eye(3), [1.0], np.array([[1.0], [0.0], [0.0]]))
    states = hp.linf_path(problem)
    M = hp.path_matrix(
        np.array([s.lam for s in states]),
        np.vstack([s.k for s in states]),
        np.vstack([s.A for s in states]),
    )
    assert M.shape == (2, 7)
    assert hp.path_matrix_columns(3) == ["lam", "1", "2", "3", "A1", "A2", "A3"]
    assert M[0, 0] == 0.0
    assert M[1, 4:].tolist() == [1.0, 1.0, 0.0]
