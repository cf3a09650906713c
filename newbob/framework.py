import logging

import numpy as np

from .models import Models
from .settings import Options
from .subsolvers import trust_region_step
from .utils import reduction_ratio

_log = logging.getLogger(__name__)


class TrustRegion:
    """
    Trust-region framework.

    This class holds the models of the objective function, the trust-region
    radius and its lower bound (the resolution), together with the records of
    the recent steps used to decide whether the resolution should be reduced.
    """

    def __init__(self, pb, options):
        """
        Initialize the trust-region framework.

        Parameters
        ----------
        pb : Problem
            Problem to be solved.
        options : dict
            Options of the solver.

        Raises
        ------
        `newbob.utils.MaxEvalError`
            If the maximum number of evaluations is reached during the
            construction of the initial models.
        `newbob.utils.TargetSuccess`
            If the target value is reached during the construction of the
            initial models.
        """
        self._pb = pb
        self._debug = options[Options.DEBUG]
        self._is_bound_constrained = pb.is_bound_constrained

        # Initialize the models. The initial trust-region radius may be
        # reduced by the interpolation set if the bounds are too tight.
        self._models = Models(pb, options)

        # Set the initial trust-region radius and the resolution.
        self._resolution = options[Options.RHOBEG]
        self._radius = self._resolution

        # Set the records of the recent steps.
        self.crvmin = 0.0
        self._dnorm_rec = np.full(2, np.inf)
        self._moderr_rec = np.full(2, np.inf)
        self._n_alt_models = 0

    @property
    def models(self):
        """
        Models of the objective function.

        Returns
        -------
        Models
            Models of the objective function.
        """
        return self._models

    @property
    def radius(self):
        """
        Trust-region radius.

        Returns
        -------
        float
            Trust-region radius.
        """
        return self._radius

    @radius.setter
    def radius(self, radius):
        """
        Set the trust-region radius.

        The radius is set to the resolution if it is close to or below it.

        Parameters
        ----------
        radius : float
            New trust-region radius.
        """
        self._radius = radius
        if self.radius <= 1.5 * self.resolution:
            self._radius = self.resolution

    @property
    def resolution(self):
        """
        Resolution of the trust-region framework.

        The resolution is a lower bound on the trust-region radius.

        Returns
        -------
        float
            Resolution of the trust-region framework.
        """
        return self._resolution

    @property
    def is_bound_constrained(self):
        """
        Whether the rules of the bound-constrained variant are used.

        Returns
        -------
        bool
            Whether at least one bound is finite.
        """
        return self._is_bound_constrained

    @property
    def x_best(self):
        """
        Best point so far, relative to the origin.

        Returns
        -------
        numpy.ndarray, shape (n,)
            Best point so far.
        """
        return self.models.x_best

    @property
    def fun_best(self):
        """
        Objective function value at the best point so far.

        Returns
        -------
        float
            Objective function value at the best point so far.
        """
        return self.models.fun_opt

    def get_step_bounds(self):
        """
        Get the bounds on the steps from the best interpolation point.

        Returns
        -------
        numpy.ndarray, shape (n,)
            Lower bound on the steps.
        numpy.ndarray, shape (n,)
            Upper bound on the steps.
        """
        interp = self.models.interpolation
        xl = np.minimum(self._pb.bounds.xl - interp.x_base - interp.x_opt, 0.0)
        xu = np.maximum(self._pb.bounds.xu - interp.x_base - interp.x_opt, 0.0)
        return xl, xu

    def get_trust_region_step(self):
        """
        Get the trust-region step.

        The least curvature met by the truncated conjugate gradient method is
        stored in `crvmin`.

        Returns
        -------
        numpy.ndarray, shape (n,)
            Trust-region step, from the best interpolation point.
        """
        xl, xu = self.get_step_bounds()
        interp = self.models.interpolation
        model = self.models.model
        step, self.crvmin = trust_region_step(model.grad, lambda v: model.hess_prod(v, interp), xl, xu, self.radius, self._debug)
        return step

    def get_model_reduction(self, step):
        """
        Evaluate the reduction of the model along a step.

        Parameters
        ----------
        step : numpy.ndarray, shape (n,)
            Step from the best interpolation point.

        Returns
        -------
        float
            Model value at the best interpolation point minus the model value
            at the best interpolation point shifted by `step`.
        """
        return -self.models.model.value_change(step, self.models.interpolation)

    def get_reduction_ratio(self, fun_val, qred, options):
        """
        Evaluate the ratio between the actual and the predicted reductions.

        Parameters
        ----------
        fun_val : float
            Objective function value at the trial point.
        qred : float
            Predicted reduction of the objective function.
        options : dict
            Options of the solver.

        Returns
        -------
        float
            Reduction ratio.
        """
        return reduction_ratio(self.fun_best - fun_val, qred, options[Options.ETA1])

    def update_radius(self, dnorm, ratio, options):
        """
        Update the trust-region radius.

        Parameters
        ----------
        dnorm : float
            Length of the trust-region step.
        ratio : float
            Reduction ratio.
        options : dict
            Options of the solver.
        """
        gamma1 = options[Options.GAMMA1]
        gamma2 = options[Options.GAMMA2]
        if ratio <= options[Options.ETA1]:
            self.radius = min(gamma1 * self.radius, dnorm)
        elif ratio <= options[Options.ETA2]:
            self.radius = max(gamma1 * self.radius, dnorm)
        else:
            self.radius = max(gamma1 * self.radius, gamma2 * dnorm)

    def reduce_resolution(self, options):
        """
        Reduce the resolution of the trust-region framework.

        The trust-region radius is updated accordingly, and the records of the
        recent steps are discarded.

        Parameters
        ----------
        options : dict
            Options of the solver.
        """
        rhoend = options[Options.RHOEND]
        if self.resolution <= 16.0 * rhoend:
            resolution = rhoend
        elif self.resolution <= 250.0 * rhoend:
            resolution = np.sqrt(self.resolution * rhoend)
        else:
            resolution = 0.1 * self.resolution
        self._radius = max(0.5 * self.resolution, resolution)
        self._resolution = resolution
        self.reset_records()
        _log.debug(f'Resolution reduced to {self.resolution:.3e} (radius {self.radius:.3e}).')

    def record_step(self, dnorm, moderr):
        """
        Record the length of a step and the error of the model along it.
        """
        self._dnorm_rec = np.r_[self._dnorm_rec[1:], dnorm]
        self._moderr_rec = np.r_[self._moderr_rec[1:], moderr]

    def reset_records(self):
        """
        Discard the records of the recent steps.
        """
        self._dnorm_rec.fill(np.inf)
        self._moderr_rec.fill(np.inf)

    def get_error_bound(self, step):
        """
        Get the bound on the errors of the recent models.

        This bound is computed only by the bound-constrained variant, when the
        trust-region step is too short to be evaluated. It estimates the
        reduction of the objective function that could be achieved within a
        distance ``0.5 * resolution`` of the best point, the bounds being taken
        into account.

        Parameters
        ----------
        step : numpy.ndarray, shape (n,)
            Trust-region step, from the best interpolation point.

        Returns
        -------
        float
            Bound on the errors of the recent models.
        """
        interp = self.models.interpolation
        model = self.models.model
        xl, xu = self.get_step_bounds()
        rho = self.resolution
        grad_new = model.grad + model.hess_prod(step, interp)
        bound_first = np.full(self.models.n, np.max(np.abs(self._moderr_rec)))
        lower_idx = step <= xl
        upper_idx = step >= xu
        bound_first[lower_idx] = grad_new[lower_idx] * rho
        bound_first[upper_idx] = -grad_new[upper_idx] * rho
        bound_second = 0.5 * np.diag(model.hess(interp)) * rho ** 2.0
        error_bound = np.min(np.maximum(bound_first, bound_first + bound_second))
        if self.crvmin > 0.0:
            error_bound = min(error_bound, 0.125 * self.crvmin * rho ** 2.0)
        return error_bound

    def is_model_accurate(self, error_bound=None):
        """
        Whether the recent models predicted the objective function accurately.

        Parameters
        ----------
        error_bound : float, optional
            Bound on the errors of the recent models. It is required by the
            bound-constrained variant only.

        Returns
        -------
        bool
            Whether the errors of the recent models are small.
        """
        if self.is_bound_constrained:
            small_error = np.all(np.abs(self._moderr_rec) <= error_bound)
        else:
            small_error = np.all(np.abs(self._moderr_rec) <= 0.125 * self.crvmin * self.resolution ** 2.0)
        return bool(small_error and np.all(self._dnorm_rec <= self.resolution))

    def is_interpolation_set_close(self):
        """
        Whether all the interpolation points are close to the best one.

        Returns
        -------
        bool
            Whether all the interpolation points are close to the best one.
        """
        dist_sq = self.models.dist_sq()
        if self.is_bound_constrained:
            threshold = max(self.radius ** 2.0, (10.0 * self.resolution) ** 2.0)
        else:
            threshold = 4.0 * self.radius ** 2.0
        return bool(np.all(dist_sq <= threshold))

    def try_alternative(self, ratio):
        """
        Replace the model by the alternative one if the recent iterations
        suggest that it is more appropriate.

        The model is replaced by the least Frobenius norm interpolant if three
        consecutive reduction ratios are small while the gradient of the model
        is much larger than the gradient of the alternative model.

        Parameters
        ----------
        ratio : float
            Reduction ratio of the current iteration.
        """
        if ratio > 1e-2:
            self._n_alt_models = 0
            return
        model_alt = self.models.get_alternative_model()
        grad = self._project_grad(self.models.model.grad)
        grad_alt = self._project_grad(model_alt.grad)
        if np.inner(grad, grad) < 1e2 * np.inner(grad_alt, grad_alt):
            self._n_alt_models = 0
        else:
            self._n_alt_models += 1
        if self._n_alt_models >= 3:
            self.models.reset_models(model_alt)
            self._n_alt_models = 0

    def _project_grad(self, grad):
        """
        Project a model gradient onto the bound constraints at the best point.
        """
        if not self.is_bound_constrained:
            return grad
        xl, xu = self.get_step_bounds()
        grad = np.copy(grad)
        grad[(xl >= 0.0) & (grad >= 0.0)] = 0.0
        grad[(xu <= 0.0) & (grad <= 0.0)] = 0.0
        return grad

    def should_shift_x_base(self):
        """
        Whether the best point is far from the base point.
        """
        x_opt = self.models.interpolation.x_opt
        factor = 1e3 if self.is_bound_constrained else 1e2
        return np.inner(x_opt, x_opt) >= factor * self.radius ** 2.0

    def shift_x_base(self):
        """
        Move the base point to the best point.
        """
        self.models.shift_x_base()

    def get_index_to_remove(self, step, x_improved):
        """
        Get the index of the interpolation point to be replaced by the best
        point shifted by `step`.

        Returns
        -------
        {int, None}
            Index of the interpolation point to be replaced, or None if no
            replacement is acceptable.
        """
        return self.models.get_index_to_remove(step, self.radius, self.resolution, x_improved)

    def get_geometry_radius(self):
        """
        Get the radius of the geometry-improving step.

        Returns
        -------
        float
            Radius of the geometry-improving step.
        """
        dist_max = np.sqrt(np.max(self.models.dist_sq()))
        radius = self.radius if self.is_bound_constrained else 0.5 * self.radius
        return max(min(0.1 * dist_max, radius), self.resolution)

    def get_geometry_step(self, k_new, radius):
        """
        Get the geometry-improving step.

        Parameters
        ----------
        k_new : int
            Index of the interpolation point to be replaced.
        radius : float
            Radius of the geometry-improving step.

        Returns
        -------
        numpy.ndarray, shape (n,)
            Geometry-improving step, from the best interpolation point.
        """
        return self.models.get_geometry_step(k_new, radius)

    def is_denominator_damaged(self, step, k_new=None):
        """
        Whether the denominators of the updating formula for `step` suggest
        that computer rounding errors have damaged the inverse KKT matrix.

        Parameters
        ----------
        step : numpy.ndarray, shape (n,)
            Step from the best interpolation point.
        k_new : int, optional
            Index of the interpolation point to be replaced by a geometry
            step. If None, `step` is a trust-region step.

        Returns
        -------
        bool
            Whether the inverse KKT matrix should be recomputed.
        """
        interp = self.models.interpolation
        lag_values, _ = interp.get_lag_values(step)
        if not np.isfinite(np.sum(np.abs(lag_values))):
            return True
        sigma = interp.get_denominators(step)
        if k_new is None:
            return not np.any(sigma > np.max(lag_values[:interp.npt] ** 2.0))
        return not sigma[k_new] > 0.5 * lag_values[k_new] ** 2.0

    def rescue(self):
        """
        Recompute the inverse KKT matrix from the interpolation points.

        Raises
        ------
        numpy.linalg.LinAlgError
            If the KKT matrix is singular.
        """
        self.models.rescue()
        self.reset_records()
        _log.debug('The inverse KKT matrix is recomputed from the interpolation points.')
