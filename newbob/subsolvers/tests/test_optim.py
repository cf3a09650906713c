import numpy as np
import pytest

from newbob.subsolvers import trust_region_step


class TestTrustRegionStep:

    @pytest.mark.parametrize('n', [1, 2, 10, 50])
    def test_simple(self, n):
        tol = 10.0 * np.finfo(float).eps * n
        for seed in range(100):
            # Construct and solve a random subproblem.
            rng = np.random.default_rng(seed)
            grad, hess, xl, xu, delta = _subproblem(rng, n)
            step, crvmin = trust_region_step(grad, lambda s: hess @ s, xl, xu, delta, True)

            # Check whether the solution is valid and feasible.
            assert step.shape == (n,)
            assert np.isfinite(step).all()
            assert np.all(xl <= step)
            assert np.all(step <= xu)
            assert np.linalg.norm(step) < delta * (1.0 + 1e-8) + tol
            assert crvmin >= 0.0

            # Check whether the solution decreases the objective function value.
            assert grad @ step + 0.5 * step @ hess @ step <= 0.0

    @pytest.mark.parametrize('n', [1, 2, 5, 10])
    def test_interior(self, n):
        # A strictly convex subproblem whose solution is interior is solved
        # exactly by the conjugate gradient iterations.
        rng = np.random.default_rng(n)
        hess = rng.standard_normal((n, n))
        hess = hess @ hess.T + n * np.eye(n)
        solution = 0.1 * rng.standard_normal(n)
        grad = -hess @ solution
        xl = np.full(n, -np.inf)
        xu = np.full(n, np.inf)
        step, crvmin = trust_region_step(grad, lambda s: hess @ s, xl, xu, 10.0, True, 1e-12)
        np.testing.assert_allclose(step, solution, atol=1e-6)
        assert crvmin > 0.0
        assert crvmin <= np.max(np.linalg.eigvalsh(hess)) * (1.0 + 1e-8)

    def test_boundary(self):
        # The solution of a concave subproblem lies on the trust-region
        # boundary, in which case no curvature is reported.
        n = 5
        grad = np.ones(n)
        hess = -np.eye(n)
        xl = np.full(n, -np.inf)
        xu = np.full(n, np.inf)
        step, crvmin = trust_region_step(grad, lambda s: hess @ s, xl, xu, 1.0, True)
        assert np.linalg.norm(step) == pytest.approx(1.0)
        np.testing.assert_allclose(step, -np.ones(n) / np.sqrt(n), atol=1e-8)
        assert crvmin == 0.0

    def test_boundary_arc(self):
        # The conjugate gradient iterations leave the trust region along the
        # steepest descent direction, and the searches along the boundary
        # bring the step close to the solution (-0.6, -0.8).
        hess = np.diag([1.0, 2.0])
        grad = np.array([1.2, 2.4])
        xl = np.full(2, -np.inf)
        xu = np.full(2, np.inf)
        step, crvmin = trust_region_step(grad, lambda s: hess @ s, xl, xu, 1.0, True)
        assert np.linalg.norm(step) == pytest.approx(1.0)
        assert crvmin == 0.0
        q_val = grad @ step + 0.5 * step @ hess @ step
        assert q_val < -1.81
        assert q_val >= -1.82 - 1e-10

    def test_active_bounds(self):
        n = 3
        grad = np.array([1.0, -1.0, 0.0])
        hess = np.eye(n)
        xl = np.array([-0.1, -1.0, -1.0])
        xu = np.array([1.0, 0.2, 1.0])
        step, _ = trust_region_step(grad, lambda s: hess @ s, xl, xu, 1.0, True)
        np.testing.assert_allclose(step, [-0.1, 0.2, 0.0], atol=1e-12)

    def test_zero_gradient(self):
        n = 4
        step, crvmin = trust_region_step(np.zeros(n), lambda s: s, np.full(n, -1.0), np.ones(n), 1.0, True)
        np.testing.assert_array_equal(step, 0.0)
        assert crvmin == 0.0

    def test_exception(self):
        # Construct a random subproblem.
        rng = np.random.default_rng(0)
        grad, hess, xl, xu, delta = _subproblem(rng, 5)

        # We must have xl <= 0.
        with pytest.raises(AssertionError):
            xl_wrong = np.copy(xl)
            xl_wrong[0] = 0.1
            trust_region_step(grad, lambda s: hess @ s, xl_wrong, xu, delta, True)

        # We must have 0 <= xu.
        with pytest.raises(AssertionError):
            xu_wrong = np.copy(xu)
            xu_wrong[0] = -0.1
            trust_region_step(grad, lambda s: hess @ s, xl, xu_wrong, delta, True)

        # We must have delta < inf.
        with pytest.raises(AssertionError):
            trust_region_step(grad, lambda s: hess @ s, xl, xu, np.inf, True)

        # We must have delta > 0.
        with pytest.raises(AssertionError):
            trust_region_step(grad, lambda s: hess @ s, xl, xu, -1.0, True)


def _subproblem(rng, n):
    grad = rng.standard_normal(n)
    hess = rng.standard_normal((n, n))
    hess = 0.5 * (hess + hess.T)
    xl = -rng.random(n)
    xu = rng.random(n)
    delta = rng.random()
    return grad, hess, xl, xu, delta
