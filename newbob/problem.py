import logging
from inspect import signature

import numpy as np
from scipy.optimize import Bounds, OptimizeResult

from .settings import PRINT_OPTIONS, BARRIER
from .utils import CallbackSuccess, MaxEvalError, TargetSuccess, exact_1d_array, get_arrays_tol

_log = logging.getLogger(__name__)


class ObjectiveFunction:
    """
    Real-valued objective function.
    """

    def __init__(self, fun, verbose, debug, *args):
        """
        Initialize the objective function.

        Parameters
        ----------
        fun : callable
            Function to evaluate.

                ``fun(x, *args) -> float``

            where ``x`` is an array with shape (n,) and `args` is a tuple.
        verbose : bool
            Whether to print the function evaluations.
        debug : bool
            Whether to make debugging tests during the execution.
        *args : tuple
            Additional arguments to be passed to the function.
        """
        if debug:
            assert callable(fun)
            assert isinstance(verbose, bool)
            assert isinstance(debug, bool)

        self._fun = fun
        self._verbose = verbose
        self._args = args
        self._n_eval = 0

    def __call__(self, x):
        """
        Evaluate the objective function.

        Parameters
        ----------
        x : array_like, shape (n,)
            Point at which the objective function is evaluated.

        Returns
        -------
        float
            Function value at `x`.
        """
        x = np.array(x, dtype=float)
        f = float(np.squeeze(self._fun(x, *self._args)))
        self._n_eval += 1
        if self._verbose:
            with np.printoptions(**PRINT_OPTIONS):
                print(f'{self.name}({x}) = {f}')
        return f

    @property
    def n_eval(self):
        """
        Number of function evaluations.

        Returns
        -------
        int
            Number of function evaluations.
        """
        return self._n_eval

    @property
    def name(self):
        """
        Name of the objective function.

        Returns
        -------
        str
            Name of the objective function.
        """
        try:
            return self._fun.__name__
        except AttributeError:
            return 'fun'


class BoundConstraints:
    """
    Bound constraints ``xl <= x <= xu``.
    """

    def __init__(self, bounds):
        """
        Initialize the bound constraints.

        Parameters
        ----------
        bounds : scipy.optimize.Bounds
            Bound constraints.
        """
        self._xl = np.array(bounds.lb, float)
        self._xu = np.array(bounds.ub, float)

        # Remove the ill-defined bounds.
        self.xl[np.isnan(self.xl)] = -np.inf
        self.xu[np.isnan(self.xu)] = np.inf

    @property
    def xl(self):
        """
        Lower bound.

        Returns
        -------
        `numpy.ndarray`, shape (n,)
            Lower bound.
        """
        return self._xl

    @property
    def xu(self):
        """
        Upper bound.

        Returns
        -------
        `numpy.ndarray`, shape (n,)
            Upper bound.
        """
        return self._xu

    @property
    def m(self):
        """
        Number of finite bound constraints.

        Returns
        -------
        int
            Number of finite bound constraints.
        """
        return np.count_nonzero(self.xl > -np.inf) + np.count_nonzero(self.xu < np.inf)

    @property
    def is_feasible(self):
        """
        Whether the bound constraints are feasible.

        Returns
        -------
        bool
            Whether the bound constraints are feasible.
        """
        return np.all(self.xl <= self.xu) and np.all(self.xl < np.inf) and np.all(self.xu > -np.inf)

    def maxcv(self, x):
        """
        Evaluate the maximum constraint violation.

        Parameters
        ----------
        x : array_like, shape (n,)
            Point at which the maximum constraint violation is evaluated.

        Returns
        -------
        float
            Maximum constraint violation at `x`.
        """
        x = np.asarray(x, dtype=float)
        val = np.max(self.xl - x, initial=0.0)
        return np.max(x - self.xu, initial=val)

    def project(self, x):
        """
        Project a point onto the feasible set.

        Parameters
        ----------
        x : array_like, shape (n,)
            Point to be projected.

        Returns
        -------
        `numpy.ndarray`, shape (n,)
            Projection of `x` onto the feasible set.
        """
        return np.clip(x, self.xl, self.xu) if self.is_feasible else x


class History:
    """
    Ring buffer of function evaluations.

    The most recent `capacity` evaluations are kept. The slot of the ``i``-th
    evaluation (starting from 1) is ``(i - 1) % capacity``, so that the buffer
    wraps once more evaluations than its capacity are performed.
    """

    def __init__(self, n, capacity):
        if capacity <= 0:
            raise ValueError('The capacity of the history must be positive.')
        self._x = np.empty((capacity, n))
        self._fun = np.empty(capacity)
        self._n_save = 0

    @property
    def capacity(self):
        """
        Maximum number of evaluations stored.

        Returns
        -------
        int
            Maximum number of evaluations stored.
        """
        return self._fun.size

    @property
    def n_save(self):
        """
        Number of evaluations recorded since the creation of the buffer.

        Returns
        -------
        int
            Number of evaluations recorded.
        """
        return self._n_save

    def save(self, x, fun_val):
        """
        Record an evaluation.

        Parameters
        ----------
        x : numpy.ndarray, shape (n,)
            Point at which the function was evaluated.
        fun_val : float
            Function value at `x`.
        """
        self._n_save += 1
        k = (self._n_save - 1) % self.capacity
        self._x[k, :] = x
        self._fun[k] = fun_val

    def ordered(self):
        """
        Get the recorded evaluations in chronological order.

        Returns
        -------
        numpy.ndarray, shape (min(n_save, capacity), n)
            Recorded points, the oldest first.
        numpy.ndarray, shape (min(n_save, capacity),)
            Corresponding function values.
        """
        if self.n_save <= self.capacity:
            return np.copy(self._x[:self.n_save, :]), np.copy(self._fun[:self.n_save])
        shift = self.n_save % self.capacity
        return np.roll(self._x, -shift, axis=0), np.roll(self._fun, -shift)


class Problem:
    """
    Optimization problem.
    """

    def __init__(self, obj, x0, bounds, callback, debug):
        """
        Initialize the problem.

        The problem is preprocessed to remove all the variables that are fixed
        by the bound constraints. The evaluations are unlimited and not stored
        until `set_budget` is called.

        Parameters
        ----------
        obj : ObjectiveFunction
            Objective function.
        x0 : array_like, shape (n,)
            Initial guess.
        bounds : BoundConstraints
            Bound constraints.
        callback : {callable, None}
            Callback function.
        debug : bool
            Whether to make debugging tests during the execution.
        """
        if debug:
            assert isinstance(obj, ObjectiveFunction)
            assert isinstance(bounds, BoundConstraints)
            assert isinstance(debug, bool)

        self._obj = obj
        if callback is not None and not callable(callback):
            raise TypeError('The callback must be a callable function.')
        self._callback = callback
        self._target = -np.inf
        self._max_eval = np.inf

        # Check the consistency of the problem.
        x0 = exact_1d_array(x0, 'The initial guess must be a vector.')
        n = x0.size
        if bounds.xl.size != n:
            raise ValueError(f'The bounds must have {n} elements.')
        if not bounds.is_feasible:
            raise ValueError('The bound constraints are infeasible.')

        # Check which variables are fixed.
        tol = get_arrays_tol(bounds.xl, bounds.xu)
        self._fixed_idx = (bounds.xl <= bounds.xu) & (np.abs(bounds.xl - bounds.xu) < tol)
        self._fixed_val = 0.5 * (bounds.xl[self._fixed_idx] + bounds.xu[self._fixed_idx])
        self._fixed_val = np.clip(self._fixed_val, bounds.xl[self._fixed_idx], bounds.xu[self._fixed_idx])

        # Set the bound constraints and the initial guess.
        self._orig_bounds = bounds
        self._bounds = BoundConstraints(Bounds(bounds.xl[~self._fixed_idx], bounds.xu[~self._fixed_idx]))
        self._x0 = self._bounds.project(x0[~self._fixed_idx])

        # Set the best evaluation so far.
        self._history = None
        self._x_best = None
        self._fun_best = np.inf

    def set_budget(self, target, max_eval, store_history, history_size):
        """
        Set the stopping criteria on the evaluations and the history.

        Parameters
        ----------
        target : float
            Target value on the objective function.
        max_eval : int
            Maximum number of function evaluations.
        store_history : bool
            Whether to store the function evaluations.
        history_size : int
            Maximum number of function evaluations to store.
        """
        self._target = target
        self._max_eval = max_eval
        self._history = History(self.n_orig, min(history_size, max(max_eval, 1))) if store_history else None

    def __call__(self, x):
        """
        Evaluate the objective function.

        NaN values and values above `BARRIER` are replaced with `BARRIER`,
        so that the returned value is always finite.

        Parameters
        ----------
        x : array_like, shape (n,)
            Point at which the objective function is evaluated.

        Returns
        -------
        float
            Objective function value.

        Raises
        ------
        `newbob.utils.MaxEvalError`
            If the maximum number of evaluations was reached beforehand.
        `newbob.utils.TargetSuccess`
            If the objective function value is below the target.
        """
        if self.n_eval >= self._max_eval:
            raise MaxEvalError
        x = np.asarray(x, dtype=float)
        x_full = self.build_x(x)
        fun_val = self._obj(x_full)
        if np.isnan(fun_val):
            fun_val = BARRIER
        fun_val = max(min(fun_val, BARRIER), -BARRIER)
        if self._history is not None:
            self._history.save(x_full, fun_val)
        if fun_val < self._fun_best or self._x_best is None:
            self._x_best = np.copy(x)
            self._fun_best = fun_val
        if fun_val <= self._target:
            _log.info(f'The target {self._target} is reached.')
            raise TargetSuccess
        return fun_val

    @property
    def n(self):
        """
        Number of variables.

        Returns
        -------
        int
            Number of variables.
        """
        return self.x0.size

    @property
    def n_orig(self):
        """
        Number of variables in the original problem (with fixed variables).

        Returns
        -------
        int
            Number of variables in the original problem (with fixed variables).
        """
        return self._fixed_idx.size

    @property
    def x0(self):
        """
        Initial guess.

        Returns
        -------
        `numpy.ndarray`, shape (n,)
            Initial guess.
        """
        return self._x0

    @property
    def n_eval(self):
        """
        Number of function evaluations.

        Returns
        -------
        int
            Number of function evaluations.
        """
        return self._obj.n_eval

    @property
    def fun_name(self):
        """
        Name of the objective function.

        Returns
        -------
        str
            Name of the objective function.
        """
        return self._obj.name

    @property
    def bounds(self):
        """
        Bound constraints.

        Returns
        -------
        BoundConstraints
            Bound constraints.
        """
        return self._bounds

    @property
    def is_bound_constrained(self):
        """
        Whether at least one bound on the free variables is finite.

        Returns
        -------
        bool
            Whether the problem is bound-constrained.
        """
        return self.bounds.m > 0

    @property
    def history(self):
        """
        History of the function evaluations, if stored.

        Returns
        -------
        {History, None}
            History of the function evaluations.
        """
        return self._history

    def build_x(self, x):
        """
        Build the full vector of variables from the free variables.

        Parameters
        ----------
        x : array_like, shape (n,)
            Values of the free variables.

        Returns
        -------
        `numpy.ndarray`, shape (n_orig,)
            Full vector of variables.
        """
        x_full = np.empty(self.n_orig)
        x_full[self._fixed_idx] = self._fixed_val
        x_full[~self._fixed_idx] = x
        return x_full

    def maxcv(self, x):
        """
        Evaluate the maximum violation of the original bound constraints.

        Parameters
        ----------
        x : array_like, shape (n_orig,)
            Point at which the maximum constraint violation is evaluated,
            including the fixed variables.

        Returns
        -------
        float
            Maximum constraint violation at `x`.
        """
        return self._orig_bounds.maxcv(x)

    def best_eval(self):
        """
        Return the best point evaluated so far.

        If no function evaluation has been performed, the initial guess is
        returned with an infinite function value.

        Returns
        -------
        `numpy.ndarray`, shape (n_orig,)
            Best point, including the fixed variables.
        float
            Corresponding objective function value.
        """
        if self._x_best is None:
            return self.build_x(self.x0), np.inf
        return self.build_x(self.bounds.project(self._x_best)), self._fun_best

    def callback(self, x, fun_val, n_iter):
        """
        Invoke the callback function, if any.

        The callback may have the signature ``callback(intermediate_result)``,
        in which case it receives a `scipy.optimize.OptimizeResult`, or the
        signature ``callback(xk)``.

        Parameters
        ----------
        x : numpy.ndarray, shape (n,)
            Current best point.
        fun_val : float
            Objective function value at `x`.
        n_iter : int
            Number of iterations performed so far.

        Raises
        ------
        `newbob.utils.CallbackSuccess`
            If the callback raises a ``StopIteration`` or returns True.
        """
        if self._callback is None:
            return
        x_full = self.build_x(x)
        sig = signature(self._callback)
        try:
            if set(sig.parameters) == {'intermediate_result'}:
                intermediate_result = OptimizeResult(x=x_full, fun=fun_val, nfev=self.n_eval, nit=n_iter)
                terminate = self._callback(intermediate_result)
            else:
                terminate = self._callback(x_full)
        except StopIteration as exc:
            raise CallbackSuccess from exc
        if terminate is True:
            raise CallbackSuccess
