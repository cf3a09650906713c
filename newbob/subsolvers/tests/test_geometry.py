import numpy as np
import pytest

from newbob.subsolvers import cauchy_geometry, spider_geometry, lagrange_geometry, denominator_geometry


class TestCauchyGeometry:

    @pytest.mark.parametrize('n', [1, 2, 10, 50])
    def test_simple(self, n):
        tol = 10.0 * np.finfo(float).eps * n
        for seed in range(100):
            # Construct and solve a random subproblem.
            rng = np.random.default_rng(seed)
            const, grad, hess, xl, xu, delta = _subproblem(rng, n)
            step = cauchy_geometry(const, grad, lambda s: s @ hess @ s, xl, xu, delta, True)

            # Check whether the solution is valid and feasible.
            assert step.shape == (n,)
            assert np.isfinite(step).all()
            assert np.all(xl <= step)
            assert np.all(step <= xu)
            assert np.linalg.norm(step) < delta + tol

            # Check whether the solution increases the objective function value.
            assert abs(const + step @ grad + 0.5 * step @ hess @ step) >= abs(const)

    def test_exception(self):
        # Construct a random subproblem.
        rng = np.random.default_rng(0)
        const, grad, hess, xl, xu, delta = _subproblem(rng, 5)

        # We must have xl <= 0.
        with pytest.raises(AssertionError):
            xl_wrong = np.copy(xl)
            xl_wrong[0] = 0.1
            cauchy_geometry(const, grad, lambda s: s @ hess @ s, xl_wrong, xu, delta, True)

        # We must have delta > 0.
        with pytest.raises(AssertionError):
            cauchy_geometry(const, grad, lambda s: s @ hess @ s, xl, xu, -1.0, True)

    def test_bounds_inside_trust_region(self):
        # The move along the gradient stops at the bounds when they lie inside
        # the trust region.
        grad = np.array([1.0, -1.0])
        xl = np.full(2, -0.1)
        xu = np.full(2, 0.1)
        step = cauchy_geometry(0.0, grad, lambda s: 0.0, xl, xu, 1.0, True)
        np.testing.assert_allclose(step, [0.1, -0.1])

        # Only the components with a nonzero gradient are moved.
        grad = np.array([0.0, 2.0, 0.0])
        step = cauchy_geometry(0.5, grad, lambda s: s @ s, np.full(3, -1.0), np.full(3, 0.3), 1.0, True)
        np.testing.assert_allclose(step, [0.0, 0.3, 0.0])


class TestSpiderGeometry:

    @pytest.mark.parametrize('n', [1, 2, 10])
    @pytest.mark.parametrize('npt_f', [
        lambda n: n + 1,
        lambda n: 2 * n,
        lambda n: (n + 1) * (n + 2) // 2 - 1,
    ])
    def test_simple(self, n, npt_f):
        npt = npt_f(n)
        tol = 10.0 * np.finfo(float).eps * n
        for seed in range(100):
            # Construct and solve a random subproblem.
            rng = np.random.default_rng(seed)
            const, grad, hess, xl, xu, delta = _subproblem(rng, n)
            xpt = rng.standard_normal((n, npt))
            step = spider_geometry(const, grad, lambda s: s @ hess @ s, xpt, xl, xu, delta, True)

            # Check whether the solution is valid and feasible.
            assert step.shape == (n,)
            assert np.isfinite(step).all()
            assert np.all(xl <= step)
            assert np.all(step <= xu)
            assert np.linalg.norm(step) < delta + tol

            # Check whether the solution increases the objective function value
            # compared to the origin and the feasible interpolation points.
            q_val = const + step @ grad + 0.5 * step @ hess @ step
            assert abs(q_val) >= abs(const)
            for k in range(npt):
                if np.linalg.norm(xpt[:, k]) < delta + tol and np.all(xl <= xpt[:, k]) and np.all(xpt[:, k] <= xu):
                    assert abs(q_val) >= abs(const + xpt[:, k] @ grad + 0.5 * xpt[:, k] @ hess @ xpt[:, k]) - tol

    def test_exception(self):
        # Construct a random subproblem.
        rng = np.random.default_rng(0)
        const, grad, hess, xl, xu, delta = _subproblem(rng, 5)
        xpt = rng.standard_normal((5, 10))

        # We must have 0 <= xu.
        with pytest.raises(AssertionError):
            xu_wrong = np.copy(xu)
            xu_wrong[0] = -0.1
            spider_geometry(const, grad, lambda s: s @ hess @ s, xpt, xl, xu_wrong, delta, True)

        # We must have delta < inf.
        with pytest.raises(AssertionError):
            spider_geometry(const, grad, lambda s: s @ hess @ s, xpt, xl, xu, np.inf, True)

    def test_lines(self):
        # The best line is the first column, and the best direction along it
        # is limited by the trust region.
        grad = np.array([1.0, 0.0])
        xpt = np.array([[0.5, 0.0], [0.0, 1.0]])
        step = spider_geometry(0.0, grad, lambda s: 0.0, xpt, np.full(2, -1.0), np.full(2, 1.0), 1.0, True)
        np.testing.assert_allclose(step, [1.0, 0.0])

        # A zero column does not define any line.
        xpt = np.zeros((2, 3))
        step = spider_geometry(1.0, grad, lambda s: 0.0, xpt, np.full(2, -1.0), np.full(2, 1.0), 1.0, True)
        np.testing.assert_array_equal(step, 0.0)


class TestLagrangeGeometry:

    @pytest.mark.parametrize('n', [1, 2, 10, 50])
    def test_simple(self, n):
        for seed in range(100):
            # Construct and solve a random subproblem.
            rng = np.random.default_rng(seed)
            const, grad, hess, _, _, delta = _subproblem(rng, n)
            first_dir = rng.standard_normal(n)
            step = lagrange_geometry(const, grad, lambda s: hess @ s, first_dir, delta, True)

            # Check whether the solution is valid and on the boundary.
            assert step.shape == (n,)
            assert np.isfinite(step).all()
            assert np.linalg.norm(step) == pytest.approx(delta)

            # Check whether the solution improves the initial guess.
            q_val = abs(const + step @ grad + 0.5 * step @ hess @ step)
            guess = (delta / np.linalg.norm(first_dir)) * first_dir
            curv_guess = 0.5 * guess @ hess @ guess
            assert q_val >= max(abs(const + guess @ grad + curv_guess), abs(const - guess @ grad + curv_guess)) * (1.0 - 1e-10)

    def test_exception(self):
        rng = np.random.default_rng(0)
        const, grad, hess, _, _, delta = _subproblem(rng, 5)

        # The first direction must be nonzero.
        with pytest.raises(AssertionError):
            lagrange_geometry(const, grad, lambda s: hess @ s, np.zeros(5), delta, True)

        # We must have delta > 0.
        with pytest.raises(AssertionError):
            lagrange_geometry(const, grad, lambda s: hess @ s, np.ones(5), -1.0, True)


class TestDenominatorGeometry:

    @pytest.mark.parametrize('n', [1, 2, 10])
    def test_simple(self, n):
        for seed in range(20):
            # Construct a random quartic function playing the role of the
            # denominator, and solve the subproblem.
            rng = np.random.default_rng(seed)
            const, grad, hess, _, _, delta = _subproblem(rng, n)

            def sigma(d):
                return const + d @ grad + 0.5 * d @ hess @ d - 0.25 * (d @ d) ** 2

            def lag_grad(d):
                return grad + hess @ d

            first_dir = rng.standard_normal(n)
            guess = rng.standard_normal(n)
            guess *= delta / np.linalg.norm(guess)
            step = denominator_geometry(sigma, lag_grad, guess, first_dir, delta, True)

            # Check whether the solution is valid and on the boundary.
            assert step.shape == (n,)
            assert np.isfinite(step).all()
            assert np.linalg.norm(step) == pytest.approx(delta)
            assert abs(sigma(step)) >= abs(sigma(guess))

    def test_zero(self):
        step = denominator_geometry(lambda d: 1.0, lambda d: d, np.zeros(3), np.ones(3), 1.0, True)
        np.testing.assert_array_equal(step, 0.0)


def _subproblem(rng, n):
    const = rng.standard_normal()
    grad = rng.standard_normal(n)
    hess = rng.standard_normal((n, n))
    hess = 0.5 * (hess + hess.T)
    xl = -rng.random(n)
    xu = rng.random(n)
    delta = rng.random()
    return const, grad, hess, xl, xu, delta
