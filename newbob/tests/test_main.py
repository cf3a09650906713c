import numpy as np
import pytest
from scipy.optimize import Bounds, rosen

from ..main import minimize
from ..settings import ExitStatus


class TestMinimize:

    def setup_method(self):
        self.x0 = [3.0, 3.0]
        self.options = {"debug": True}

    @staticmethod
    def fun(x, c=0.0):
        return np.sum((x - c) ** 2)

    @staticmethod
    def quadratic(x):
        hess = np.array([[4.0, 1.0, 0.0], [1.0, 3.0, 0.5], [0.0, 0.5, 2.0]])
        grad = np.array([1.0, -2.0, 0.5])
        return 0.5 * x @ hess @ x + grad @ x

    def test_simple(self):
        res = minimize(
            self.fun,
            self.x0,
            nb_points=5,
            store_history=True,
            options=self.options,
        )
        np.testing.assert_allclose(res.x, [0.0, 0.0], atol=1e-4)
        assert res.success, res.message
        assert res.status == ExitStatus.RADIUS_SUCCESS.value, res
        assert res.maxcv == 0.0, res
        assert res.nfev <= 100, res
        assert res.fun < 1e-8, res
        assert res.fun_history.size == res.nfev, res
        assert np.all(res.fun_history >= res.fun), res
        assert res.x_history.shape == (res.nfev, 2), res

    @pytest.mark.parametrize("npt", [5, 7, 10])
    def test_interpolation_points(self, npt):
        solution = np.linalg.solve(
            np.array([[4.0, 1.0, 0.0], [1.0, 3.0, 0.5], [0.0, 0.5, 2.0]]),
            -np.array([1.0, -2.0, 0.5]),
        )
        res = minimize(
            self.quadratic,
            [1.0, 1.0, 1.0],
            nb_points=npt,
            options=self.options,
        )
        np.testing.assert_allclose(res.x, solution, atol=1e-4)
        assert res.success, res.message
        assert res.fun < self.quadratic(solution) + 1e-8, res

    @pytest.mark.parametrize("npt", [5, 7, 10])
    def test_bounds(self, npt):
        # Case where some bounds are active at the solution.
        c = np.array([2.0, -3.0, 0.5])
        bounds = Bounds([-1.0, -1.0, -1.0], [1.0, 1.0, 1.0])
        res = minimize(
            self.fun,
            [0.0, 0.0, 0.0],
            args=(c,),
            bounds=bounds,
            nb_points=npt,
            options=self.options,
        )
        np.testing.assert_allclose(res.x, [1.0, -1.0, 0.5], atol=1e-4)
        assert res.success, res.message
        assert res.status == ExitStatus.RADIUS_SUCCESS.value, res
        assert res.maxcv == 0.0, res

        # The bounds may also be given as an array.
        bounds_alt = [[-1.0, 1.0], [-1.0, 1.0], [-1.0, 1.0]]
        res_alt = minimize(
            self.fun,
            [0.0, 0.0, 0.0],
            args=(c,),
            bounds=bounds_alt,
            nb_points=npt,
            options=self.options,
        )
        np.testing.assert_array_equal(res.x, res_alt.x)
        assert res.status == res_alt.status, res
        assert res.nfev == res_alt.nfev, res

    def test_one_dimensional(self):
        # Case where the lower bound is active at the solution.
        res = minimize(self.fun, 1.5, bounds=[(0.5, 2.0)], options=self.options)
        np.testing.assert_allclose(res.x, [0.5], atol=1e-6)
        assert res.success, res.message
        assert res.maxcv == 0.0, res

        # Case where the bounds are not active at the solution.
        res = minimize(self.fun, 0.5, args=0.2, bounds=[(-0.5, 1.0)], options=self.options)
        np.testing.assert_allclose(res.x, [0.2], atol=1e-4)
        assert res.success, res.message

    def test_rosen(self):
        x0 = [1.3, 0.7, 0.8]
        res = minimize(rosen, x0, radius_init=0.1, radius_final=1e-8)
        np.testing.assert_allclose(res.x, [1.0, 1.0, 1.0], atol=1e-4)
        assert res.success, res.message
        assert res.nfev <= 1500, res

        bounds = Bounds([0.0, 0.0, 0.0], [2.0, 2.0, 2.0])
        res = minimize(rosen, x0, bounds=bounds, radius_init=0.1, radius_final=1e-8, options=self.options)
        np.testing.assert_allclose(res.x, [1.0, 1.0, 1.0], atol=1e-4)
        assert res.success, res.message
        assert res.maxcv == 0.0, res

    def test_args(self):
        res = minimize(self.fun, self.x0, args=2.0, options=self.options)
        np.testing.assert_allclose(res.x, [2.0, 2.0], atol=1e-4)
        assert res.success, res.message

    def test_target(self):
        res = minimize(self.fun, self.x0, target=1.0, options=self.options)
        assert res.success, res.message
        assert res.status == ExitStatus.TARGET_SUCCESS.value, res
        assert res.fun <= 1.0, res

        # The target may be reached by the initial interpolation points.
        res = minimize(self.fun, self.x0, target=20.0, options=self.options)
        assert res.status == ExitStatus.TARGET_SUCCESS.value, res
        assert res.nit == 0, res
        assert res.nfev == 1, res

    def test_max_eval(self):
        res = minimize(rosen, [-1.2, 1.0], maxfev=10, options=self.options)
        assert not res.success, res.message
        assert res.status == ExitStatus.MAX_EVAL_WARNING.value, res
        assert res.nfev == 10, res

        # The budget may be exhausted by the initial interpolation points.
        res = minimize(rosen, [-1.2, 1.0], maxfev=3, options=self.options)
        assert res.status == ExitStatus.MAX_EVAL_WARNING.value, res
        assert res.nfev == 3, res
        assert res.nit == 0, res

    def test_max_iter(self):
        res = minimize(rosen, [-1.2, 1.0], maxiter=3, options=self.options)
        assert not res.success, res.message
        assert res.status == ExitStatus.MAX_ITER_WARNING.value, res
        assert res.nit == 3, res

    def test_callback(self):
        # The callback is called once after the initialization of the models,
        # before any trust-region step is evaluated.
        def callback(intermediate_result):
            assert intermediate_result.nit == 0
            assert intermediate_result.nfev == 5
            raise StopIteration

        res = minimize(rosen, [-1.2, 1.0], callback=callback, options=self.options)
        assert res.success, res.message
        assert res.status == ExitStatus.CALLBACK_SUCCESS.value, res
        assert res.nit == 0, res
        assert res.nfev == 5, res

        res = minimize(rosen, [-1.2, 1.0], callback=lambda xk: xk.size == 2, options=self.options)
        assert res.status == ExitStatus.CALLBACK_SUCCESS.value, res
        assert res.nit == 0, res
        assert res.nfev == 5, res

    def test_callback_iterations(self):
        # The callback is then called once per iteration, with the best point
        # so far.
        n_iters = []
        fun_values = []

        def callback(intermediate_result):
            n_iters.append(intermediate_result.nit)
            fun_values.append(intermediate_result.fun)
            assert intermediate_result.fun == pytest.approx(rosen(intermediate_result.x), rel=1e-12)
            if intermediate_result.nit == 3:
                raise StopIteration

        res = minimize(rosen, [-1.2, 1.0], callback=callback, options=self.options)
        assert res.success, res.message
        assert res.status == ExitStatus.CALLBACK_SUCCESS.value, res
        assert res.nit == 3, res
        assert n_iters == [0, 1, 2, 3]
        assert np.all(np.diff(fun_values) <= 0.0)
        assert res.fun <= fun_values[-1], res

    def test_fixed(self):
        # Case where all variables are fixed.
        bounds = Bounds([1.0, 2.0], [1.0, 2.0])
        res = minimize(self.fun, self.x0, bounds=bounds, options=self.options)
        np.testing.assert_array_equal(res.x, [1.0, 2.0])
        assert res.success, res.message
        assert res.status == ExitStatus.FIXED_SUCCESS.value, res
        assert res.fun == 5.0, res
        assert res.nfev == 1, res

        # Case where some variables are fixed.
        bounds = Bounds([-np.inf, 1.0], [np.inf, 1.0])
        res = minimize(self.fun, self.x0, bounds=bounds, options=self.options)
        np.testing.assert_allclose(res.x, [0.0, 1.0], atol=1e-4)
        assert res.x[1] == 1.0, res
        assert res.success, res.message
        assert res.fun == pytest.approx(1.0, abs=1e-6), res

    def test_history(self):
        res = minimize(self.fun, self.x0, store_history=True, history_size=5, options=self.options)
        assert res.fun_history.shape == (5,), res
        assert res.x_history.shape == (5, 2), res
        np.testing.assert_allclose(res.fun_history, [self.fun(x) for x in res.x_history])

        res = minimize(self.fun, self.x0, options=self.options)
        assert "fun_history" not in res, res

    def test_nan(self):
        def fun(x):
            return np.nan if x[0] > 2.5 else np.sum(x ** 2)

        res = minimize(fun, [1.0, 1.0], options=self.options)
        np.testing.assert_allclose(res.x, [0.0, 0.0], atol=1e-4)
        assert np.isfinite(res.fun), res

    def test_options(self):
        with pytest.raises(ValueError):
            minimize(self.fun, self.x0, radius_init=-1.0)
        with pytest.raises(ValueError):
            minimize(self.fun, self.x0, radius_final=0.0)
        with pytest.raises(ValueError):
            minimize(self.fun, self.x0, radius_init=1e-8, radius_final=1e-6)
        with pytest.raises(ValueError):
            minimize(self.fun, self.x0, nb_points=3)
        with pytest.raises(ValueError):
            minimize(self.fun, self.x0, nb_points=7)
        with pytest.raises(ValueError):
            minimize(self.fun, self.x0, maxfev=0)
        with pytest.raises(ValueError):
            minimize(self.fun, self.x0, maxiter=0)
        with pytest.raises(ValueError):
            minimize(self.fun, self.x0, eta1=0.8, eta2=0.5)
        with pytest.raises(ValueError):
            minimize(self.fun, self.x0, gamma1=1.5)
        with pytest.raises(ValueError):
            minimize(self.fun, self.x0, history_size=0)
        with pytest.raises(ValueError):
            minimize(self.fun, self.x0, bounds=[[0.0, 1.0]])
        with pytest.raises(TypeError):
            minimize(self.fun, self.x0, bounds=1.0)
        with pytest.warns(RuntimeWarning):
            minimize(self.fun, self.x0, unknown_option=1.0)

    def test_verbose(self, capsys):
        minimize(self.fun, self.x0, disp=True)
        captured = capsys.readouterr()
        assert "Starting the optimization procedure." in captured.out
        assert "The lower bound for the trust-region radius has been reached." in captured.out
