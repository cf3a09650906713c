import numpy as np

from ..utils import get_arrays_tol


def cauchy_geometry(const, grad, curv, xl, xu, delta, debug):
    r"""
    Maximize approximately the absolute value of a quadratic function subject
    to bound constraints in a trust region.

    This function solves approximately

    .. math::

        \begin{aligned}
            \max_{d \in \R^n}   & \quad \abs[\bigg]{c + g^{\T}d + \frac{1}{2} d^{\T}Hd}\\
            \text{s.t.}         & \quad l \le d \le u,\\
                                & \quad \norm{d} \le \Delta,
        \end{aligned}

    by maximizing the objective function along the constrained Cauchy
    direction.

    Parameters
    ----------
    const : float
        Constant :math:`c` as shown above.
    grad : numpy.ndarray, shape (n,)
        Gradient :math:`g` as shown above.
    curv : callable
        Curvature of :math:`H` along any vector.

            ``curv(d) -> float``

        returns :math:`d^{\T}Hd`.
    xl : numpy.ndarray, shape (n,)
        Lower bounds :math:`l` as shown above.
    xu : numpy.ndarray, shape (n,)
        Upper bounds :math:`u` as shown above.
    delta : float
        Trust-region radius :math:`\Delta` as shown above.
    debug : bool
        Whether to make debugging tests during the execution.

    Returns
    -------
    numpy.ndarray, shape (n,)
        Approximate solution :math:`d`.

    Notes
    -----
    It is assumed that the origin is feasible with respect to the bound
    constraints `xl` and `xu`, and that `delta` is finite and positive.
    """
    if debug:
        tol = get_arrays_tol(xl, xu)
        assert np.max(xl) <= tol
        assert np.min(xu) >= -tol
        assert np.isfinite(delta) and delta > 0.0
    xl = np.minimum(xl, 0.0)
    xu = np.maximum(xu, 0.0)

    # Move up the function and down the function, and keep the move whose
    # endpoint has the largest absolute value.
    step_up, q_up = _cauchy_geom(const, grad, curv, xl, xu, delta, debug)
    step_down, q_down = _cauchy_geom(-const, -grad, lambda d: -curv(d), xl, xu, delta, debug)
    step = step_up if abs(q_up) >= abs(q_down) else step_down

    if debug:
        assert np.all(xl <= step)
        assert np.all(step <= xu)
        assert np.linalg.norm(step) < 1.1 * delta
    return step


def spider_geometry(const, grad, curv, xpt, xl, xu, delta, debug):
    r"""
    Maximize approximately the absolute value of a quadratic function subject
    to bound constraints in a trust region along specific straight lines.

    This function solves approximately

    .. math::

        \begin{aligned}
            \max_{d \in \R^n}   & \quad \abs[\bigg]{c + g^{\T}d + \frac{1}{2} d^{\T}Hd}\\
            \text{s.t.}         & \quad l \le d \le u,\\
                                & \quad \norm{d} \le \Delta,
        \end{aligned}

    by maximizing the objective function along the straight lines through the
    origin and the columns of `xpt`.

    Parameters
    ----------
    const : float
        Constant :math:`c` as shown above.
    grad : numpy.ndarray, shape (n,)
        Gradient :math:`g` as shown above.
    curv : callable
        Curvature of :math:`H` along any vector.

            ``curv(d) -> float``

        returns :math:`d^{\T}Hd`.
    xpt : numpy.ndarray, shape (n, npt)
        Points defining the straight lines as shown above.
    xl : numpy.ndarray, shape (n,)
        Lower bounds :math:`l` as shown above.
    xu : numpy.ndarray, shape (n,)
        Upper bounds :math:`u` as shown above.
    delta : float
        Trust-region radius :math:`\Delta` as shown above.
    debug : bool
        Whether to make debugging tests during the execution.

    Returns
    -------
    numpy.ndarray, shape (n,)
        Approximate solution :math:`d`.

    Notes
    -----
    It is assumed that the origin is feasible with respect to the bound
    constraints `xl` and `xu`, and that `delta` is finite and positive.
    """
    if debug:
        tol = get_arrays_tol(xl, xu)
        assert np.max(xl) <= tol
        assert np.min(xu) >= -tol
        assert np.isfinite(delta) and delta > 0.0
    xl = np.minimum(xl, 0.0)
    xu = np.maximum(xu, 0.0)

    # Restrict the problem to each straight line, parametrized by the multiple
    # alpha of the corresponding column of xpt, and bound alpha by the trust
    # region and the bound constraints.
    tiny = np.finfo(float).tiny
    npt = xpt.shape[1]
    s_norm = np.linalg.norm(xpt, axis=0)
    valid = s_norm > tiny * delta
    grad_step = grad @ xpt
    curv_step = np.array([curv(xpt[:, k]) if valid[k] else 0.0 for k in range(npt)])
    positive = xpt > tiny * delta
    negative = xpt < -tiny * delta
    with np.errstate(divide='ignore', invalid='ignore'):
        alpha_tr = np.where(valid, delta / s_norm, 0.0)
        ratio_xl = xl[:, np.newaxis] / xpt
        ratio_xu = xu[:, np.newaxis] / xpt
        alpha_xu = np.min(np.where(positive, ratio_xu, np.where(negative, ratio_xl, np.inf)), axis=0, initial=np.inf)
        alpha_xl = np.max(np.where(positive, ratio_xl, np.where(negative, ratio_xu, -np.inf)), axis=0, initial=-np.inf)

        # The critical point of each restriction bounds alpha in the
        # direction where the absolute value stops increasing.
        alpha_crit = -grad_step / curv_step
        tiny_grad = tiny * grad_step
        stop_pos = (grad_step >= 0.0) & (curv_step < -tiny_grad) | (grad_step <= 0.0) & (curv_step > -tiny_grad)
        stop_neg = (grad_step >= 0.0) & (curv_step > tiny_grad) | (grad_step <= 0.0) & (curv_step < tiny_grad)
        alpha_pos = np.where(stop_pos, np.maximum(alpha_crit, 0.0), np.inf)
        alpha_neg = np.where(stop_neg, np.minimum(alpha_crit, 0.0), -np.inf)
    alpha_pos = np.minimum(alpha_pos, np.minimum(alpha_tr, alpha_xu))
    alpha_neg = np.maximum(alpha_neg, np.maximum(-alpha_tr, alpha_xl))

    # Keep the line and the direction along it that provide the largest
    # absolute value, provided that it improves on the origin.
    q_pos = const + alpha_pos * grad_step + 0.5 * alpha_pos ** 2.0 * curv_step
    q_neg = const + alpha_neg * grad_step + 0.5 * alpha_neg ** 2.0 * curv_step
    use_pos = np.abs(q_pos) >= np.abs(q_neg)
    alpha = np.where(use_pos, alpha_pos, alpha_neg)
    q_abs = np.where(use_pos, np.abs(q_pos), np.abs(q_neg))
    step = np.zeros_like(grad)
    if npt > 0:
        k = int(np.argmax(q_abs))
        if q_abs[k] > abs(const):
            step = np.clip(alpha[k] * xpt[:, k], xl, xu)

    if debug:
        assert np.all(xl <= step)
        assert np.all(step <= xu)
        assert np.linalg.norm(step) < 1.1 * delta
    return step


def lagrange_geometry(const, grad, hess_prod, first_dir, delta, debug):
    r"""
    Maximize approximately the absolute value of a quadratic function on the
    boundary of a trust region.

    This function solves approximately

    .. math::

        \begin{aligned}
            \max_{d \in \R^n}   & \quad \abs[\bigg]{c + g^{\T}d + \frac{1}{2} d^{\T}Hd}\\
            \text{s.t.}         & \quad \norm{d} = \Delta,
        \end{aligned}

    by searching along great circles of the trust-region boundary.

    Parameters
    ----------
    const : float
        Constant :math:`c` as shown above.
    grad : numpy.ndarray, shape (n,)
        Gradient :math:`g` as shown above.
    hess_prod : callable
        Product of the Hessian matrix :math:`H` with any vector.

            ``hess_prod(d) -> numpy.ndarray, shape (n,)``

        returns the product :math:`Hd`.
    first_dir : numpy.ndarray, shape (n,)
        Nonzero direction along which the initial guess is taken.
    delta : float
        Trust-region radius :math:`\Delta` as shown above.
    debug : bool
        Whether to make debugging tests during the execution.

    Returns
    -------
    numpy.ndarray, shape (n,)
        Approximate solution :math:`d`.

    Notes
    -----
    The method is adapted from the BIGLAG algorithm of NEWUOA [1]_. Each
    iteration rotates the current step in the plane spanned by the step and
    the gradient of the quadratic function at the step, and stops when the
    improvement of the objective function is less than ten percent.

    References
    ----------
    .. [1] M. J. D. Powell. The NEWUOA software for unconstrained optimization
       without derivatives. In G. Di Pillo and M. Roma, editors, *Large-Scale
       Nonlinear Optimization*, volume 83 of Nonconvex Optim. Appl., pages
       255--297, Boston, MA, USA, 2006. Springer.
    """
    if debug:
        assert np.isfinite(delta) and delta > 0.0
        assert np.linalg.norm(first_dir) > 0.0
    n = grad.size

    # Choose the sign of the initial guess that gives the largest value.
    step = (delta / np.linalg.norm(first_dir)) * first_dir
    hess_step = hess_prod(step)
    grad_step = np.inner(grad, step)
    curv_step = np.inner(step, hess_step)
    if abs(const - grad_step + 0.5 * curv_step) > abs(const + grad_step + 0.5 * curv_step):
        step = -step
        hess_step = -hess_step
        grad_step = -grad_step
    q_val = const + grad_step + 0.5 * curv_step

    step_sq = delta ** 2.0
    for _ in range(n):
        # Build the direction orthogonal to the step in the plane spanned by
        # the step and the gradient at the step, with norm delta.
        grad_new = grad + hess_step
        step_grad = np.inner(step, grad_new)
        grad_sq = np.inner(grad_new, grad_new)
        temp = step_sq * grad_sq - step_grad ** 2.0
        if temp <= 1e-8 * step_sq * grad_sq:
            break
        sd = (step_sq * grad_new - step_grad * step) / np.sqrt(temp)
        hess_sd = hess_prod(sd)

        # Maximize the absolute value of the quadratic function along the
        # great circle through the step and the new direction.
        args = (
            const,
            np.inner(grad, step),
            np.inner(grad, sd),
            np.inner(step, hess_step),
            np.inner(step, hess_sd),
            np.inner(sd, hess_sd),
        )
        if not np.all(np.isfinite(args)):
            break
        angle = _circle_max(lambda t: abs(_circle_quadratic(t, *args)))
        q_val_new = _circle_quadratic(angle, *args)
        if not abs(q_val_new) > abs(q_val):
            break
        cos_angle = np.cos(angle)
        sin_angle = np.sin(angle)
        step = cos_angle * step + sin_angle * sd
        hess_step = cos_angle * hess_step + sin_angle * hess_sd
        q_val_old = q_val
        q_val = q_val_new
        if abs(q_val) <= 1.1 * abs(q_val_old):
            break

    if debug:
        assert np.all(np.isfinite(step))
        assert np.linalg.norm(step) < 1.1 * delta
    return step


def denominator_geometry(sigma, lag_grad, step, first_dir, delta, debug):
    r"""
    Maximize approximately the absolute value of the denominator of the
    updating formula of the inverse KKT matrix on the boundary of a trust
    region.

    Parameters
    ----------
    sigma : callable
        Denominator of the updating formula.

            ``sigma(d) -> float``

        returns the denominator when the point to be removed is replaced by the
        best interpolation point shifted by :math:`d`.
    lag_grad : callable
        Gradient of the Lagrange polynomial of the point to be removed.

            ``lag_grad(d) -> numpy.ndarray, shape (n,)``

        returns the gradient at the best interpolation point shifted by
        :math:`d`.
    step : numpy.ndarray, shape (n,)
        Initial guess, of norm `delta`.
    first_dir : numpy.ndarray, shape (n,)
        Direction used to build the first rotation plane.
    delta : float
        Trust-region radius.
    debug : bool
        Whether to make debugging tests during the execution.

    Returns
    -------
    numpy.ndarray, shape (n,)
        Approximate solution.

    Notes
    -----
    The method is adapted from the BIGDEN algorithm of NEWUOA. Along a great
    circle of the trust-region boundary, the denominator is a trigonometric
    polynomial of degree four in the angle. It is recovered from nine
    evaluations at equally-spaced angles, maximized in absolute value, and
    the resulting step is accepted only if the exact denominator improves.
    """
    if debug:
        assert np.isfinite(delta) and delta > 0.0
        assert np.all(np.isfinite(step))
    n = step.size
    step = np.copy(step)
    step_sq = np.inner(step, step)
    if step_sq <= 0.0:
        return step
    sigma_val = sigma(step)
    if not np.isfinite(sigma_val):
        return step

    # The basis of trigonometric polynomials of degree four is evaluated at the
    # nine interpolation angles once for all.
    angles = 2.0 * np.pi * np.arange(9) / 9.0
    basis = _trig_basis(angles)
    for k in range(n):
        direction = first_dir if k == 0 else lag_grad(step)
        sd = direction - (np.inner(direction, step) / step_sq) * step
        sd_norm = np.linalg.norm(sd)
        if not sd_norm > 1e-4 * np.linalg.norm(direction):
            break
        sd *= np.sqrt(step_sq) / sd_norm

        # Recover the trigonometric polynomial and maximize its absolute value.
        values = np.array([sigma(np.cos(t) * step + np.sin(t) * sd) for t in angles])
        if not np.all(np.isfinite(values)):
            break
        coefs = np.linalg.solve(basis, values)
        angle = _circle_max(lambda t: abs(_trig_basis(t) @ coefs))
        step_new = np.cos(angle) * step + np.sin(angle) * sd
        sigma_new = sigma(step_new)
        if not abs(sigma_new) > abs(sigma_val):
            break
        sigma_old = sigma_val
        step = step_new
        sigma_val = sigma_new
        if abs(sigma_val) <= 1.1 * abs(sigma_old):
            break

    if debug:
        assert np.all(np.isfinite(step))
        assert np.linalg.norm(step) < 1.1 * delta
    return step


def _cauchy_geom(const, grad, curv, xl, xu, delta, debug):
    """
    Same as `cauchy_geometry` without the absolute value.
    """
    # Move along the gradient up to the bounds. If the move is too long, the
    # components that are not stopped by a bound are shrunk until the move
    # fits in the trust region.
    step = np.zeros_like(grad)
    to_xl = (xl < 0.0) & (grad < 0.0)
    to_xu = (xu > 0.0) & (grad > 0.0)
    step[to_xl] = xl[to_xl]
    step[to_xu] = xu[to_xu]
    free = to_xl | to_xu
    if np.inner(step, step) > delta ** 2.0:
        while np.any(free):
            g_norm = np.linalg.norm(grad[free])
            radius_sq = max(delta ** 2.0 - np.inner(step[~free], step[~free]), 0.0)
            if not g_norm > np.finfo(float).tiny * delta:
                step[free] = 0.0
                break
            step[free] = (np.sqrt(radius_sq) / g_norm) * grad[free]
            hit = free & ((step < xl) | (step > xu))
            if not np.any(hit):
                break
            step[hit] = np.clip(step[hit], xl[hit], xu[hit])
            free &= ~hit

    # Maximize the quadratic function along the move.
    grad_step = np.inner(grad, step)
    s_norm = np.linalg.norm(step)
    if not grad_step > 0.0 or not s_norm > np.finfo(float).tiny * delta:
        return np.zeros_like(grad), const
    curv_step = curv(step)
    with np.errstate(divide='ignore', invalid='ignore'):
        alpha_xl = np.min(np.where(step < 0.0, xl / step, np.inf), initial=np.inf)
        alpha_xu = np.min(np.where(step > 0.0, xu / step, np.inf), initial=np.inf)
    alpha = min(delta / s_norm, alpha_xl, alpha_xu)
    if curv_step < 0.0:
        alpha = min(alpha, -grad_step / curv_step)
    step = np.clip(alpha * step, xl, xu)
    q_val = const + alpha * grad_step + 0.5 * alpha ** 2.0 * curv_step

    if debug:
        assert np.all(xl <= step)
        assert np.all(step <= xu)
        assert np.linalg.norm(step) < 1.1 * delta
    return step, q_val


def _circle_quadratic(angle, const, grad_step, grad_sd, curv_step, curv_step_sd, curv_sd):
    """
    Value of a quadratic function along a great circle.
    """
    cos_angle = np.cos(angle)
    sin_angle = np.sin(angle)
    return const + cos_angle * grad_step + sin_angle * grad_sd + 0.5 * (cos_angle ** 2.0 * curv_step + 2.0 * sin_angle * cos_angle * curv_step_sd + sin_angle ** 2.0 * curv_sd)


def _trig_basis(angle):
    """
    Evaluate the basis of the trigonometric polynomials of degree four.
    """
    angle = np.asarray(angle)
    orders = np.arange(1, 5)
    theta = np.multiply.outer(angle, orders)
    return np.concatenate((np.ones(angle.shape + (1,)), np.cos(theta), np.sin(theta)), axis=-1)


def _circle_max(fun, grid_size=50):
    """
    Maximize approximately a periodic function on ``[0, 2 * pi)``.

    The function is evaluated on a uniform grid, and the best grid point is
    refined by parabolic interpolation with its two neighbors.
    """
    grid = 2.0 * np.pi * np.arange(grid_size) / grid_size
    values = np.array([fun(t) for t in grid])
    i_max = np.argmax(values)
    value_prev = values[i_max - 1]
    value_next = values[(i_max + 1) % grid_size]
    denom = 2.0 * values[i_max] - value_prev - value_next
    frac = 0.0
    if denom > 0.0:
        frac = 0.5 * (value_next - value_prev) / denom
    return 2.0 * np.pi * (i_max + frac) / grid_size
