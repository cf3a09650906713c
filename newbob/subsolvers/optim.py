import logging

import numpy as np

from ..utils import get_arrays_tol

_log = logging.getLogger(__name__)


def trust_region_step(grad, hess_prod, xl, xu, delta, debug, tol=1e-2):
    r"""
    Minimize approximately a quadratic function subject to bound constraints
    in a trust region.

    This function solves approximately

    .. math::

        \begin{aligned}
            \min_{d \in \R^n}   & \quad g^{\T}d + \frac{1}{2} d^{\T}Hd\\
            \text{s.t.}         & \quad l \le d \le u,\\
                                & \quad \norm{d} \le \Delta,
        \end{aligned}

    using a truncated conjugate gradient method followed, when the boundary
    of the trust region is reached, by searches along arcs of the boundary.

    Parameters
    ----------
    grad : numpy.ndarray, shape (n,)
        Gradient :math:`g` as shown above.
    hess_prod : callable
        Product of the Hessian matrix :math:`H` with any vector.

            ``hess_prod(d) -> numpy.ndarray, shape (n,)``

        returns the product :math:`Hd`.
    xl : numpy.ndarray, shape (n,)
        Lower bounds :math:`l` as shown above. Use ``-numpy.inf`` for
        unbounded variables.
    xu : numpy.ndarray, shape (n,)
        Upper bounds :math:`u` as shown above. Use ``numpy.inf`` for
        unbounded variables.
    delta : float
        Trust-region radius :math:`\Delta` as shown above.
    debug : bool
        Whether to make debugging tests during the execution.
    tol : float, optional
        Relative tolerance on the reduction of the quadratic function used to
        stop the iterations.

    Returns
    -------
    numpy.ndarray, shape (n,)
        Approximate solution :math:`d`.
    float
        Least curvature of :math:`H` met along the conjugate directions of the
        first stage. It is zero if the boundary of the trust region was
        reached, or if no such curvature was positive.

    Notes
    -----
    The method is adapted from the TRSBOX algorithm [1]_. It is assumed that
    the origin is feasible with respect to the bound constraints `xl` and
    `xu`, and that `delta` is finite and positive. If the components of `grad`
    exceed ``1e12`` in absolute value, the problem is scaled to prevent
    overflow.

    References
    ----------
    .. [1] M. J. D. Powell. The BOBYQA algorithm for bound constrained
       optimization without derivatives. Technical Report DAMTP 2009/NA06,
       Department of Applied Mathematics and Theoretical Physics, University of
       Cambridge, Cambridge, UK, 2009.
    """
    n = grad.size
    if debug:
        bd_tol = get_arrays_tol(xl, xu)
        assert np.max(xl) <= bd_tol
        assert np.min(xu) >= -bd_tol
        assert np.isfinite(delta) and delta > 0.0
    xl = np.minimum(xl, 0.0)
    xu = np.maximum(xu, 0.0)

    # Scale the problem if the gradient is huge.
    grad_max = np.max(np.abs(grad), initial=0.0)
    scaled = grad_max > 1e12
    if scaled:
        scale = max(2.0 * np.finfo(float).tiny, 1.0 / grad_max)
        grad = scale * grad
        hess_prod_unscaled = hess_prod

        def hess_prod(v):
            return scale * hess_prod_unscaled(v)

    # The vector xbdi indicates the variables fixed at their bounds. A value of
    # -1 (respectively 1) means that the variable is fixed at its lower
    # (respectively upper) bound, and 0 means that the variable is free.
    xbdi = np.zeros(n, dtype=int)
    xbdi[(xu <= 0.0) & (grad <= 0.0)] = 1
    xbdi[(xl >= 0.0) & (grad >= 0.0)] = -1
    n_act = np.count_nonzero(xbdi)

    # Start the truncated conjugate gradient iterations.
    step = np.zeros(n)
    sd = np.zeros(n)
    crvmin = -np.inf
    grad_new = np.copy(grad)
    free = xbdi == 0
    grad_sq = np.inner(grad_new[free], grad_new[free])
    delta_sq = delta ** 2.0
    q_red = 0.0
    beta = 0.0
    grad_sq_old = 0.0
    iter_cg = 0
    boundary_reached = False
    for _ in range(min(10 ** 4, (n - n_act) ** 2)):
        free = xbdi == 0
        resid = delta_sq - np.inner(step[free], step[free])
        if resid <= 0.0:
            boundary_reached = True
            break

        # Set the next search direction.
        if iter_cg == 0:
            sd = -grad_new
        else:
            sd = beta * sd - grad_new
        sd[~free] = 0.0
        sd_sq = np.inner(sd, sd)
        step_sd = np.inner(step[free], sd[free])
        if not (sd_sq > np.finfo(float).eps * delta_sq and grad_sq * delta_sq > (tol * q_red) ** 2.0 and np.isfinite(step_sd)):
            break

        # Set alpha_tr to the step size to the trust-region boundary. The
        # maximum below guards against cancellations in the discriminant.
        sqrt_disc = max(np.sqrt(sd_sq * resid + step_sd ** 2.0), np.sqrt(sd_sq * resid), abs(step_sd))
        if step_sd >= 0.0:
            alpha_tr = resid / (sqrt_disc + step_sd)
        else:
            alpha_tr = (sqrt_disc - step_sd) / sd_sq
        if not (alpha_tr > 0.0 and np.isfinite(alpha_tr)):
            break

        # Set alpha to the step size along the search direction, with respect
        # to the curvature, the trust-region constraint, and the bounds.
        hess_sd = hess_prod(sd)
        curv_sd = np.inner(sd[free], hess_sd[free])
        alpha = alpha_tr
        if curv_sd > 0.0:
            alpha = min(alpha_tr, grad_sq / curv_sd)
        x_test = step + alpha * sd
        alpha_bd = np.full(n, alpha)
        i_xu = (sd > 0.0) & (x_test > xu)
        i_xl = (sd < 0.0) & (x_test < xl)
        alpha_bd[i_xu] = (xu[i_xu] - step[i_xu]) / sd[i_xu]
        alpha_bd[i_xl] = (xl[i_xl] - step[i_xl]) / sd[i_xl]
        alpha_bd[np.isnan(alpha_bd)] = alpha
        i_act = -1
        if np.any(alpha_bd < alpha):
            i_act = np.argmin(alpha_bd)
            alpha = alpha_bd[i_act]

        # Update the step and the reduction of the quadratic function.
        q_dec = 0.0
        if alpha > 0.0:
            iter_cg += 1
            rayleigh = curv_sd / sd_sq
            if i_act < 0 and rayleigh > 0.0:
                crvmin = rayleigh if crvmin == -np.inf else min(crvmin, rayleigh)
            grad_sq_old = grad_sq
            grad_new += alpha * hess_sd
            grad_sq = np.inner(grad_new[free], grad_new[free])
            step_old = np.copy(step)
            step += alpha * sd
            if not np.all(np.isfinite(step)):
                step = step_old
                break
            q_dec = max(alpha * (grad_sq_old - 0.5 * alpha * curv_sd), 0.0)
            q_red += q_dec

        if i_act >= 0:
            # A new variable has reached a bound. Restart the conjugate
            # gradient iterations in the reduced subspace.
            n_act += 1
            xbdi[i_act] = 1 if sd[i_act] > 0.0 else -1
            if n_act >= n:
                break
            delta_sq -= step[i_act] ** 2.0
            if delta_sq <= 0.0:
                boundary_reached = True
                break
            beta = 0.0
            iter_cg = 0
            free = xbdi == 0
            grad_sq = np.inner(grad_new[free], grad_new[free])
        elif alpha < alpha_tr:
            if iter_cg >= n - n_act or not q_dec > tol * q_red:
                break
            beta = grad_sq / grad_sq_old
        else:
            boundary_reached = True
            break

    # Improve the step by searching along arcs of the trust-region boundary in
    # the two-dimensional subspaces spanned by the step and the reduced
    # gradient. The searches are parametrized by the tangent of half the angle.
    if boundary_reached:
        crvmin = 0.0
        max_iter = 10 * (n - n_act)
    else:
        max_iter = 0
    n_act_old = n_act - 1
    step_red_sq = 0.0
    hess_step_red = np.zeros(n)
    for k in range(max_iter):
        xbdi[(xbdi == 0) & (step >= xu)] = 1
        xbdi[(xbdi == 0) & (step <= xl)] = -1
        n_act = np.count_nonzero(xbdi)
        if n_act >= n - 1:
            break
        free = xbdi == 0
        grad_sq = np.inner(grad_new[free], grad_new[free])
        step_grad = np.inner(step[free], grad_new[free])
        if k == 0 or n_act > n_act_old:
            step_red = np.copy(step)
            step_red[~free] = 0.0
            step_red_sq = np.inner(step_red, step_red)
            hess_step_red = hess_prod(step_red)
            n_act_old = n_act

        # Build the direction orthogonal to the step in the reduced subspace.
        temp = grad_sq * step_red_sq - step_grad ** 2.0
        if not temp > tol ** 2.0 * q_red ** 2.0:
            break
        temp = np.sqrt(temp)
        sd = (step_grad * step - step_red_sq * grad_new) / temp
        sd[~free] = 0.0
        sd_grad = -temp

        # Compute the largest tangent of half the angle allowed by the bounds.
        sd_sq = step ** 2.0 + sd ** 2.0
        tan_bd = np.ones(n)
        with np.errstate(invalid='ignore'):
            disc = np.full(n, -np.inf)
            i_xl = free & (-xl < np.sqrt(sd_sq))
            disc[i_xl] = np.sqrt(np.maximum(0.0, sd_sq[i_xl] - xl[i_xl] ** 2.0))
            i_xl = disc - sd > 0.0
            tan_bd[i_xl] = np.minimum(tan_bd[i_xl], (step[i_xl] - xl[i_xl]) / (disc[i_xl] - sd[i_xl]))
            disc = np.full(n, -np.inf)
            i_xu = free & (xu < np.sqrt(sd_sq))
            disc[i_xu] = np.sqrt(np.maximum(0.0, sd_sq[i_xu] - xu[i_xu] ** 2.0))
            i_xu = disc + sd > 0.0
            tan_bd[i_xu] = np.minimum(tan_bd[i_xu], (xu[i_xu] - step[i_xu]) / (disc[i_xu] + sd[i_xu]))
        tan_bd[np.isnan(tan_bd)] = 0.0
        i_act = -1
        tan_max = 1.0
        if np.any(tan_bd < 1.0):
            i_act = np.argmin(tan_bd)
            tan_max = tan_bd[i_act]
        if tan_max <= 0.0:
            break

        # Search for the best angle along the arc.
        hess_sd = hess_prod(sd)
        curv_sd = np.inner(sd[free], hess_sd[free])
        curv_step_sd = np.inner(step[free], hess_sd[free])
        curv_step = np.inner(step[free], hess_step_red[free])
        args = (curv_sd, curv_step, curv_step_sd, step_grad, sd_grad)
        if not np.all(np.isfinite(args)):
            break
        grid_size = 2 * int(np.round(17.0 * tan_max + 4.1))
        tan_half = _interval_max(_arc_reduction, tan_max, args, grid_size)
        q_dec = _arc_reduction(tan_half, *args)
        if not q_dec > 0.0:
            break

        # Update the step and the gradient of the quadratic function.
        cos_angle = min((1.0 - tan_half ** 2.0) / (1.0 + tan_half ** 2.0), 1.0 - tan_half ** 2.0)
        sin_angle = min(2.0 * tan_half / (1.0 + tan_half ** 2.0), 2.0 * tan_half)
        grad_new += (cos_angle - 1.0) * hess_step_red + sin_angle * hess_sd
        step_old = np.copy(step)
        step[free] = cos_angle * step[free] + sin_angle * sd[free]
        if not np.all(np.isfinite(step)):
            step = step_old
            break
        hess_step_red = cos_angle * hess_step_red + sin_angle * hess_sd
        q_red += q_dec
        if i_act >= 0 and tan_half >= tan_max:
            xbdi[i_act] = 1 if step[i_act] >= 0.5 * (xl[i_act] + xu[i_act]) else -1
        elif not q_dec > tol * q_red:
            break

    # Ensure that the bound constraints are respected.
    step = np.clip(step, xl, xu)
    step[xbdi == -1] = xl[xbdi == -1]
    step[xbdi == 1] = xu[xbdi == 1]
    if crvmin == -np.inf or np.isnan(crvmin):
        crvmin = 0.0
    if scaled and crvmin > 0.0:
        crvmin /= scale
    _log.debug(f'Trust-region step of norm {np.linalg.norm(step):.3e} computed (radius {delta:.3e}).')

    if debug:
        assert np.all(np.isfinite(step))
        assert np.all(xl <= step)
        assert np.all(step <= xu)
        assert np.linalg.norm(step) <= 2.0 * delta
        assert crvmin >= 0.0
    return step, crvmin


def _arc_reduction(tan_half, curv_sd, curv_step, curv_step_sd, step_grad, sd_grad):
    """
    Reduction of the quadratic function along an arc of the trust-region
    boundary, as a function of the tangent of half the angle.
    """
    if abs(tan_half) <= 0.0:
        return 0.0
    sin_angle = 2.0 * tan_half / (1.0 + tan_half ** 2.0)
    curv = curv_sd + tan_half * (tan_half * curv_step - 2.0 * curv_step_sd)
    return sin_angle * (tan_half * step_grad - sd_grad - 0.5 * sin_angle * curv)


def _interval_max(fun, upper, args, grid_size):
    """
    Maximize approximately a univariate function on ``[0, upper]``.

    The function is evaluated on a uniform grid of the interval, and the best
    grid point is refined by parabolic interpolation with its neighbors. The
    function must vanish at the origin.
    """
    grid = upper * np.arange(1, grid_size + 1) / grid_size
    values = np.array([fun(x, *args) for x in grid])
    i_max = np.argmax(values)
    if not values[i_max] > 0.0:
        return 0.0
    if i_max < grid_size - 1:
        value_prev = values[i_max - 1] if i_max > 0 else 0.0
        value_next = values[i_max + 1]
        denom = 2.0 * values[i_max] - value_prev - value_next
        if denom > 0.0:
            return upper * (i_max + 1 + 0.5 * (value_next - value_prev) / denom) / grid_size
    return grid[i_max]
