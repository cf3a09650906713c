import logging
import warnings

import numpy as np
from scipy.optimize import Bounds, OptimizeResult

from .framework import TrustRegion
from .problem import ObjectiveFunction, BoundConstraints, Problem
from .settings import ExitStatus, Options, DEFAULT_OPTIONS, PRINT_OPTIONS
from .utils import CallbackSuccess, MaxEvalError, TargetSuccess

_log = logging.getLogger(__name__)


def minimize(fun, x0, args=(), bounds=None, callback=None, options=None, **kwargs):
    r"""
    Minimize a scalar function using Powell's NEWUOA and BOBYQA methods.

    The method builds quadratic models of the objective function by
    interpolation, and minimizes them within a trust region. The models are
    updated by the derivative-free symmetric Broyden update, so that only one
    function evaluation is needed per iteration. If no bound is finite, the
    rules of NEWUOA [1]_ are used, and those of BOBYQA [2]_ otherwise.

    Parameters
    ----------
    fun : callable
        Objective function to be minimized.

            ``fun(x, *args) -> float``

        where ``x`` is an array with shape (n,) and `args` is a tuple.
    x0 : array_like, shape (n,)
        Initial guess.
    args : tuple, optional
        Extra arguments passed to the objective function.
    bounds : {`scipy.optimize.Bounds`, array_like, shape (n, 2)}, optional
        Bound constraints of the problem. It can be one of the cases below.

        #. An instance of `scipy.optimize.Bounds`.
        #. An array with shape (n, 2). The bound constraints for ``x[i]`` are
           ``bounds[i][0] <= x[i] <= bounds[i][1]``. Set ``bounds[i][0]`` to
           :math:`-\infty` if there is no lower bound, and set ``bounds[i][1]``
           to :math:`\infty` if there is no upper bound.

    callback : callable, optional
        A callback executed at the end of each iteration. The method
        terminates if a ``StopIteration`` exception is raised by the callback,
        or if it returns True. It should have one of the signatures:

            ``callback(intermediate_result)``

        where ``intermediate_result`` is an instance of
        `scipy.optimize.OptimizeResult`, with attributes ``x``, ``fun``,
        ``nfev``, and ``nit``, or

            ``callback(xk)``

        where ``xk`` is the best point so far.
    options : dict, optional
        Options passed to the solver. They may also be given as keyword
        arguments. Accepted keys are:

            disp : bool, optional
                Whether to print information about the optimization procedure.
            maxfev : int, optional
                Maximum number of function evaluations.
            maxiter : int, optional
                Maximum number of iterations.
            target : float, optional
                Target on the objective function value. The optimization
                procedure is terminated when the objective function value is
                less than or equal to this target.
            radius_init : float, optional
                Initial trust-region radius.
            radius_final : float, optional
                Final trust-region radius.
            nb_points : int, optional
                Number of interpolation points.
            eta1, eta2 : float, optional
                Thresholds on the reduction ratio for decreasing and
                increasing the trust-region radius.
            gamma1, gamma2 : float, optional
                Factors by which the trust-region radius is decreased and
                increased.
            store_history : bool, optional
                Whether to store the history of the function evaluations.
            history_size : int, optional
                Maximum number of function evaluations to store in the history.
            debug : bool, optional
                Whether to perform additional checks. This option should be
                used only for debugging purposes and is highly discouraged.

    Returns
    -------
    `scipy.optimize.OptimizeResult`
        Result of the optimization procedure, with the following fields:

            message : str
                Description of the cause of the termination.
            success : bool
                Whether the optimization procedure terminated successfully.
            status : int
                Termination status of the optimization procedure.
            x : `numpy.ndarray`, shape (n,)
                Solution point.
            fun : float
                Objective function value at the solution point.
            maxcv : float
                Maximum bound constraint violation at the solution point.
            nit : int
                Number of iterations.
            nfev : int
                Number of function evaluations.

        If the ``store_history`` option is True, the result also has the
        following fields:

            fun_history : `numpy.ndarray`, shape (min(nfev, history_size),)
                History of the objective function values.
            x_history : `numpy.ndarray`, shape (min(nfev, history_size), n)
                History of the points at which the objective function was
                evaluated.

        A description of the termination statuses is given below.

        .. list-table::
            :widths: 25 75
            :header-rows: 1

            * - Exit status
              - Description
            * - 0
              - The lower bound for the trust-region radius has been reached.
            * - 1
              - The target objective function value has been reached.
            * - 2
              - All variables are fixed by the bound constraints.
            * - 3
              - The callback requested to stop the optimization procedure.
            * - 4
              - The maximum number of function evaluations has been exceeded.
            * - 5
              - The maximum number of iterations has been exceeded.
            * - -1
              - The model of the objective function contains NaN or infinite
                values.
            * - -2
              - Rounding errors damaged the interpolation system.

    References
    ----------
    .. [1] M. J. D. Powell. The NEWUOA software for unconstrained optimization
       without derivatives. In G. Di Pillo and M. Roma, editors, *Large-Scale
       Nonlinear Optimization*, volume 83 of *Nonconvex Optimization and Its
       Applications*, pages 255--297. Springer, Boston, MA, USA, 2006.
    .. [2] M. J. D. Powell. The BOBYQA algorithm for bound constrained
       optimization without derivatives. Technical Report DAMTP 2009/NA06,
       Department of Applied Mathematics and Theoretical Physics, University of
       Cambridge, Cambridge, UK, 2009.

    Examples
    --------
    .. testsetup::

        import numpy as np
        np.set_printoptions(precision=3, suppress=True)

    >>> import numpy as np
    >>> from newbob import minimize
    >>> from scipy.optimize import rosen

    To minimize the Rosenbrock function without constraints, run:

    >>> x0 = [1.3, 0.7, 0.8, 1.9, 1.2]
    >>> res = minimize(rosen, x0, radius_init=0.1, radius_final=1e-8)
    >>> res.x
    array([1., 1., 1., 1., 1.])

    Bound constraints are handled by providing the `bounds` argument. For
    example, the minimizer of the sum of squares on the box
    :math:`[1, 2]^3` is:

    >>> def fun(x):
    ...     return np.sum(x ** 2.0)
    >>>
    >>> res = minimize(fun, [1.5, 1.5, 1.5], bounds=[(1.0, 2.0)] * 3)
    >>> res.x
    array([1., 1., 1.])
    """
    # Get basic options that are needed for the initialization.
    if options is None:
        options = {}
    else:
        options = dict(options)
    options.update(kwargs)
    verbose = options.get(Options.VERBOSE, DEFAULT_OPTIONS[Options.VERBOSE])
    verbose = bool(verbose)
    debug = options.get(Options.DEBUG, DEFAULT_OPTIONS[Options.DEBUG])
    debug = bool(debug)

    # Initialize the objective function.
    if not isinstance(args, tuple):
        args = (args,)
    obj = ObjectiveFunction(fun, verbose, debug, *args)

    # Initialize the bound constraints.
    if not hasattr(x0, '__len__'):
        x0 = [x0]
    n_orig = len(x0)
    xl, xu = _get_bounds(bounds, n_orig)
    bounds = BoundConstraints(Bounds(xl, xu))

    # Initialize the problem (and remove the fixed variables).
    pb = Problem(obj, x0, bounds, callback, debug)

    # Set the default options.
    _set_default_options(options, pb.n)
    pb.set_budget(options[Options.TARGET], options[Options.MAX_EVAL], options[Options.STORE_HISTORY], options[Options.HISTORY_SIZE])

    # Skip the computations whenever possible.
    if pb.n == 0:
        # All variables are fixed by the bound constraints.
        try:
            pb(pb.x0)
        except TargetSuccess:
            return _build_result(pb, True, ExitStatus.TARGET_SUCCESS, 0, options)
        return _build_result(pb, True, ExitStatus.FIXED_SUCCESS, 0, options)
    if verbose:
        print('Starting the optimization procedure.')
        print(f'Initial trust-region radius: {options[Options.RHOBEG]}.')
        print(f'Final trust-region radius: {options[Options.RHOEND]}.')
        print(f'Maximum number of function evaluations: {options[Options.MAX_EVAL]}.')
        print(f'Maximum number of iterations: {options[Options.MAX_ITER]}.')
        print()

    # Initialize the models.
    try:
        framework = TrustRegion(pb, options)
        pb.callback(framework.x_best, framework.fun_best, 0)
    except TargetSuccess:
        return _build_result(pb, True, ExitStatus.TARGET_SUCCESS, 0, options)
    except MaxEvalError:
        return _build_result(pb, False, ExitStatus.MAX_EVAL_WARNING, 0, options)
    except CallbackSuccess:
        return _build_result(pb, True, ExitStatus.CALLBACK_SUCCESS, 0, options)

    # Start the optimization procedure.
    rhoend = options[Options.RHOEND]
    eta1 = options[Options.ETA1]
    success = False
    n_iter = 0
    rescued = False
    short_step = False
    dnorm = 0.0
    step = np.zeros(pb.n)
    try:
        while True:
            # Stop the optimization procedure if the maximum number of
            # iterations has been exceeded. We do not write the main loop as a
            # for loop because we want to access the number of iterations
            # outside the loop.
            if n_iter >= options[Options.MAX_ITER]:
                status = ExitStatus.MAX_ITER_WARNING
                break
            n_iter += 1

            # Evaluate the trial step. If it is too short or if it does not
            # reduce the model, the objective function is not evaluated.
            step = framework.get_trust_region_step()
            dnorm = min(framework.radius, np.linalg.norm(step))
            short_step = dnorm <= 0.5 * framework.resolution
            qred = framework.get_model_reduction(step)
            failed_step = not qred > 1e-6 * framework.resolution ** 2.0
            ratio = -np.inf
            k_new = None
            error_bound = None
            if short_step or failed_step:
                framework.radius *= 0.1
                if framework.is_bound_constrained:
                    error_bound = framework.get_error_bound(step)
                _log.debug(f'Short trust-region step (norm {dnorm:.3e}, radius {framework.radius:.3e}).')
            else:
                fun_val, evaluated = _eval(pb, framework, step, options)
                if evaluated:
                    rescued = False
                framework.record_step(dnorm, fun_val - framework.fun_best + qred)
                ratio = framework.get_reduction_ratio(fun_val, qred, options)
                framework.update_radius(dnorm, ratio, options)
                _log.debug(f'Trust-region step (norm {dnorm:.3e}, ratio {ratio:.3e}, radius {framework.radius:.3e}).')

                # Recompute the inverse KKT matrix if rounding errors damaged
                # the denominators of the updating formula.
                x_improved = fun_val < framework.fun_best
                if framework.is_bound_constrained and x_improved and framework.is_denominator_damaged(step):
                    if rescued:
                        status = ExitStatus.DAMAGING_ROUNDING_ERROR
                        break
                    framework.rescue()
                    rescued = True

                # Include the trial point in the interpolation set.
                k_new = framework.get_index_to_remove(step, x_improved)
                if k_new is not None:
                    try:
                        framework.models.update_interpolation(k_new, step, fun_val)
                    except ZeroDivisionError:
                        _log.debug(f'The replacement of the interpolation point {k_new} is skipped.')
                        k_new = None
                    else:
                        framework.try_alternative(ratio)
                        if not framework.models.model.is_finite():
                            status = ExitStatus.NAN_INF_MODEL_ERROR
                            break

            # Decide whether the geometry of the interpolation set should be
            # improved, or whether the resolution should be reduced. Both
            # actions are never taken at the same iteration.
            adequate_geometry = short_step and framework.is_model_accurate(error_bound) or framework.is_interpolation_set_close()
            small_radius = max(framework.radius, dnorm) <= framework.resolution
            improve_geometry = (short_step or failed_step or ratio <= eta1 or k_new is None) and not adequate_geometry
            reduce_resolution = (short_step or failed_step or ratio <= 0.0 or k_new is None) and adequate_geometry and small_radius
            if debug:
                assert not (improve_geometry and reduce_resolution)

            # Improve the geometry of the interpolation set if necessary.
            if improve_geometry:
                k_new = int(np.argmax(framework.models.dist_sq()))
                radius_geometry = framework.get_geometry_radius()
                geometry_step = framework.get_geometry_step(k_new, radius_geometry)
                if framework.is_bound_constrained and framework.is_denominator_damaged(geometry_step, k_new):
                    if rescued:
                        status = ExitStatus.DAMAGING_ROUNDING_ERROR
                        break
                    framework.rescue()
                    rescued = True
                else:
                    fun_val, evaluated = _eval(pb, framework, geometry_step, options)
                    if evaluated:
                        rescued = False
                    moderr = fun_val - framework.fun_best + framework.get_model_reduction(geometry_step)
                    framework.record_step(min(radius_geometry, np.linalg.norm(geometry_step)), moderr)
                    _log.debug(f'Geometry step replacing the interpolation point {k_new} (radius {radius_geometry:.3e}).')
                    try:
                        framework.models.update_interpolation(k_new, geometry_step, fun_val)
                    except ZeroDivisionError:
                        _log.debug(f'The replacement of the interpolation point {k_new} is skipped.')
                    else:
                        if not framework.models.model.is_finite():
                            status = ExitStatus.NAN_INF_MODEL_ERROR
                            break

            # Reduce the resolution if necessary.
            if reduce_resolution:
                if framework.resolution <= rhoend:
                    success = True
                    status = ExitStatus.RADIUS_SUCCESS
                    break
                framework.reduce_resolution(options)
                if verbose:
                    _print_step(f'New trust-region radius: {framework.resolution}', pb, pb.build_x(framework.x_best), framework.fun_best, pb.n_eval, n_iter)
                    print()

            # Update the point around which the quadratic models are built.
            if framework.should_shift_x_base():
                framework.shift_x_base()

            # Report the best point so far to the callback function.
            pb.callback(framework.x_best, framework.fun_best, n_iter)
    except MaxEvalError:
        status = ExitStatus.MAX_EVAL_WARNING
    except TargetSuccess:
        success = True
        status = ExitStatus.TARGET_SUCCESS
    except CallbackSuccess:
        success = True
        status = ExitStatus.CALLBACK_SUCCESS
    except np.linalg.LinAlgError:
        # The inverse KKT matrix could not be recomputed.
        status = ExitStatus.DAMAGING_ROUNDING_ERROR

    # Attempt the last trust-region step if it has not been evaluated.
    if status == ExitStatus.RADIUS_SUCCESS and short_step and dnorm > 0.1 * rhoend and pb.n_eval < options[Options.MAX_EVAL]:
        try:
            _eval(pb, framework, step, options)
        except TargetSuccess:
            status = ExitStatus.TARGET_SUCCESS

    return _build_result(pb, success, status, n_iter, options)


def _get_bounds(bounds, n):
    """
    Get the lower and upper bounds from the `bounds` argument.
    """
    if bounds is None:
        return np.full(n, -np.inf), np.full(n, np.inf)
    elif isinstance(bounds, Bounds):
        return np.broadcast_to(bounds.lb, n), np.broadcast_to(bounds.ub, n)
    elif hasattr(bounds, '__len__'):
        bounds = np.asarray(bounds, dtype=float)
        if bounds.shape != (n, 2):
            raise ValueError('The shape of the bounds is not compatible with the number of variables.')
        return bounds[:, 0], bounds[:, 1]
    else:
        raise TypeError('The bounds must be an instance of scipy.optimize.Bounds or an array-like object.')


def _set_default_options(options, n):
    """
    Set the default options.
    """
    if Options.RHOBEG in options and options[Options.RHOBEG] <= 0.0:
        raise ValueError('The initial trust-region radius must be positive.')
    if Options.RHOEND in options and options[Options.RHOEND] <= 0.0:
        raise ValueError('The final trust-region radius must be positive.')
    if Options.RHOBEG in options and Options.RHOEND in options:
        if options[Options.RHOBEG] < options[Options.RHOEND]:
            raise ValueError('The initial trust-region radius must be greater than or equal to the final trust-region radius.')
    elif Options.RHOBEG in options:
        options[Options.RHOEND.value] = min(DEFAULT_OPTIONS[Options.RHOEND], options[Options.RHOBEG])
    elif Options.RHOEND in options:
        options[Options.RHOBEG.value] = max(DEFAULT_OPTIONS[Options.RHOBEG], options[Options.RHOEND])
    else:
        options[Options.RHOBEG.value] = DEFAULT_OPTIONS[Options.RHOBEG]
        options[Options.RHOEND.value] = DEFAULT_OPTIONS[Options.RHOEND]
    options[Options.RHOBEG.value] = float(options[Options.RHOBEG])
    options[Options.RHOEND.value] = float(options[Options.RHOEND])
    if n > 0 and Options.NPT in options and options[Options.NPT] < n + 2:
        raise ValueError(f'The number of interpolation points must be at least {n + 2}.')
    if n > 0 and Options.NPT in options and options[Options.NPT] > ((n + 1) * (n + 2)) // 2:
        raise ValueError(f'The number of interpolation points must be at most {((n + 1) * (n + 2)) // 2}.')
    options.setdefault(Options.NPT.value, DEFAULT_OPTIONS[Options.NPT](n))
    options[Options.NPT.value] = int(options[Options.NPT])
    if Options.MAX_EVAL in options and options[Options.MAX_EVAL] <= 0:
        raise ValueError('The maximum number of function evaluations must be positive.')
    options.setdefault(Options.MAX_EVAL.value, max(DEFAULT_OPTIONS[Options.MAX_EVAL](n), options[Options.NPT] + 1))
    options[Options.MAX_EVAL.value] = int(options[Options.MAX_EVAL])
    if Options.MAX_ITER in options and options[Options.MAX_ITER] <= 0:
        raise ValueError('The maximum number of iterations must be positive.')
    options.setdefault(Options.MAX_ITER.value, DEFAULT_OPTIONS[Options.MAX_ITER](options[Options.MAX_EVAL]))
    options[Options.MAX_ITER.value] = int(options[Options.MAX_ITER])
    options.setdefault(Options.TARGET.value, DEFAULT_OPTIONS[Options.TARGET])
    options[Options.TARGET.value] = float(options[Options.TARGET])
    options.setdefault(Options.ETA1.value, DEFAULT_OPTIONS[Options.ETA1])
    options[Options.ETA1.value] = float(options[Options.ETA1])
    options.setdefault(Options.ETA2.value, DEFAULT_OPTIONS[Options.ETA2])
    options[Options.ETA2.value] = float(options[Options.ETA2])
    if not 0.0 <= options[Options.ETA1] <= options[Options.ETA2] < 1.0:
        raise ValueError('The thresholds on the reduction ratio must satisfy 0 <= eta1 <= eta2 < 1.')
    options.setdefault(Options.GAMMA1.value, DEFAULT_OPTIONS[Options.GAMMA1])
    options[Options.GAMMA1.value] = float(options[Options.GAMMA1])
    options.setdefault(Options.GAMMA2.value, DEFAULT_OPTIONS[Options.GAMMA2])
    options[Options.GAMMA2.value] = float(options[Options.GAMMA2])
    if not 0.0 < options[Options.GAMMA1] < 1.0 < options[Options.GAMMA2]:
        raise ValueError('The factors of the trust-region radius must satisfy 0 < gamma1 < 1 < gamma2.')
    options.setdefault(Options.VERBOSE.value, DEFAULT_OPTIONS[Options.VERBOSE])
    options[Options.VERBOSE.value] = bool(options[Options.VERBOSE])
    options.setdefault(Options.STORE_HISTORY.value, DEFAULT_OPTIONS[Options.STORE_HISTORY])
    options[Options.STORE_HISTORY.value] = bool(options[Options.STORE_HISTORY])
    if Options.HISTORY_SIZE in options and options[Options.HISTORY_SIZE] <= 0:
        raise ValueError('The size of the history must be positive.')
    options.setdefault(Options.HISTORY_SIZE.value, DEFAULT_OPTIONS[Options.HISTORY_SIZE])
    options[Options.HISTORY_SIZE.value] = int(options[Options.HISTORY_SIZE])
    options.setdefault(Options.DEBUG.value, DEFAULT_OPTIONS[Options.DEBUG])
    options[Options.DEBUG.value] = bool(options[Options.DEBUG])

    # Check whether they are any unknown options.
    for key in options:
        if key not in Options.__members__.values():
            warnings.warn(f'Unknown option: {key}.', RuntimeWarning, 3)


def _eval(pb, framework, step, options):
    """
    Evaluate the objective function at the best point shifted by `step`.

    If the new point is very close to an interpolation point, the function
    value at this interpolation point is returned instead.

    Returns
    -------
    float
        Objective function value.
    bool
        Whether the objective function was actually evaluated.
    """
    interp = framework.models.interpolation
    x_new = interp.x_opt + step
    dist = np.linalg.norm(interp.xpt - x_new[:, np.newaxis], axis=0)
    k = int(np.argmin(dist))
    if dist[k] <= 1e-3 * options[Options.RHOEND]:
        return framework.models.fval[k], False
    x_eval = np.clip(interp.x_base + x_new, pb.bounds.xl, pb.bounds.xu)
    return pb(x_eval), True


def _build_result(pb, success, status, n_iter, options):
    """
    Build the result of the optimization process.
    """
    # Build the result.
    x, fun = pb.best_eval()
    result = OptimizeResult()
    result.message = {
        ExitStatus.RADIUS_SUCCESS: 'The lower bound for the trust-region radius has been reached',
        ExitStatus.TARGET_SUCCESS: 'The target objective function value has been reached',
        ExitStatus.FIXED_SUCCESS: 'All variables are fixed by the bound constraints',
        ExitStatus.CALLBACK_SUCCESS: 'The callback requested to stop the optimization procedure',
        ExitStatus.MAX_EVAL_WARNING: 'The maximum number of function evaluations has been exceeded',
        ExitStatus.MAX_ITER_WARNING: 'The maximum number of iterations has been exceeded',
        ExitStatus.NAN_INF_MODEL_ERROR: 'The model of the objective function contains NaN or infinite values',
        ExitStatus.DAMAGING_ROUNDING_ERROR: 'Rounding errors damaged the interpolation system',
    }.get(status, 'Unknown exit status')
    result.success = success
    result.status = status.value
    result.x = x
    result.fun = fun
    result.maxcv = pb.maxcv(x)
    result.nfev = pb.n_eval
    result.nit = n_iter
    if options[Options.STORE_HISTORY]:
        result.x_history, result.fun_history = pb.history.ordered()
    _log.info(f'{result.message} after {result.nfev} function evaluations and {result.nit} iterations.')

    # Print the result if requested.
    if options[Options.VERBOSE]:
        _print_step(result.message, pb, result.x, result.fun, result.nfev, result.nit)
    return result


def _print_step(message, pb, x, fun_val, n_eval, n_iter):
    """
    Print information about the current state of the optimization process.
    """
    print()
    print(f'{message}.')
    print(f'Number of function evaluations: {n_eval}.')
    print(f'Number of iterations: {n_iter}.')
    print(f'Least value of {pb.fun_name}: {fun_val}.')
    with np.printoptions(**PRINT_OPTIONS):
        print(f'Corresponding point: {x}.')
