import logging
import warnings

import numpy as np
from scipy.linalg import eigh, get_blas_funcs, solve

from .settings import Options
from .subsolvers import cauchy_geometry, spider_geometry, lagrange_geometry, denominator_geometry
from .utils import get_arrays_tol, omega_matrix, omega_product

_log = logging.getLogger(__name__)


class Interpolation:
    """
    Interpolation set.

    This class stores a base point around which the models are expanded, the
    interpolation points, and the inverse of the coefficient matrix of the KKT
    system of interpolation. The coordinates of the interpolation points are
    relative to the base point.
    """

    def __init__(self, pb, options):
        """
        Initialize the interpolation set.

        The initial interpolation points lie along the coordinate directions,
        and the factorization of the inverse KKT matrix is built only once the
        function values at these points are known, because some points may be
        swapped beforehand (see `swap_points`).

        Parameters
        ----------
        pb : Problem
            Problem to be solved.
        options : dict
            Options of the solver.
        """
        # Reduce the initial trust-region radius if necessary.
        self._debug = options[Options.DEBUG]
        max_radius = 0.5 * np.min(pb.bounds.xu - pb.bounds.xl)
        if options[Options.RHOBEG] > max_radius:
            options[Options.RHOBEG.value] = max_radius
            options[Options.RHOEND.value] = min(options[Options.RHOEND], max_radius)
        rhobeg = options[Options.RHOBEG]
        self._rhobeg = rhobeg

        # Set the initial point around which the models are expanded. Each
        # coordinate either equals a bound or is at least rhobeg away from it.
        xl = pb.bounds.xl
        xu = pb.bounds.xu
        self._x_base = np.copy(pb.x0)
        very_close_xl_idx = self.x_base <= xl + 0.5 * rhobeg
        self.x_base[very_close_xl_idx] = xl[very_close_xl_idx]
        close_xl_idx = (xl + 0.5 * rhobeg < self.x_base) & (self.x_base <= xl + rhobeg)
        self.x_base[close_xl_idx] = np.minimum(xl[close_xl_idx] + rhobeg, xu[close_xl_idx])
        very_close_xu_idx = self.x_base >= xu - 0.5 * rhobeg
        self.x_base[very_close_xu_idx] = xu[very_close_xu_idx]
        close_xu_idx = (self.x_base < xu - 0.5 * rhobeg) & (xu - rhobeg <= self.x_base)
        self.x_base[close_xu_idx] = np.maximum(xu[close_xu_idx] - rhobeg, xl[close_xu_idx])

        # Set the initial interpolation set.
        n = pb.n
        npt = options[Options.NPT]
        self._xpt = np.zeros((n, npt))
        for k in range(1, min(npt, 2 * n + 1)):
            if k <= n:
                if very_close_xu_idx[k - 1]:
                    self.xpt[k - 1, k] = -rhobeg
                else:
                    self.xpt[k - 1, k] = rhobeg
            else:
                if very_close_xl_idx[k - n - 1]:
                    self.xpt[k - n - 1, k] = 2.0 * rhobeg
                elif very_close_xu_idx[k - n - 1]:
                    self.xpt[k - n - 1, k] = -2.0 * rhobeg
                else:
                    self.xpt[k - n - 1, k] = -rhobeg
        self.set_combined_points()
        self._k_opt = 0

        # The following hold the inverse of the coefficient matrix of the KKT
        # system of interpolation, using the representation designed by Powell
        # for NEWUOA. The matrix bmat holds the last n columns of the inverse
        # matrix, and the matrix zmat holds a rank factorization of its leading
        # npt-by-npt submatrix, this factorization being zmat times diag(dz)
        # times zmat.T, where dz[:idz] = -1 and dz[idz:] = 1. In theory, idz is
        # always zero, but this may not be true in practice due to computer
        # rounding errors.
        self._bmat = np.zeros((npt + n, n))
        self._zmat = np.zeros((npt, npt - n - 1))
        self._idz = 0

    @property
    def n(self):
        """
        Number of variables.

        Returns
        -------
        int
            Number of variables.
        """
        return self.xpt.shape[0]

    @property
    def npt(self):
        """
        Number of interpolation points.

        Returns
        -------
        int
            Number of interpolation points.
        """
        return self.xpt.shape[1]

    @property
    def xpt(self):
        """
        Interpolation points, relative to the base point.

        Returns
        -------
        numpy.ndarray, shape (n, npt)
            Interpolation points.
        """
        return self._xpt

    @property
    def x_base(self):
        """
        Base point around which the models are expanded.

        Returns
        -------
        numpy.ndarray, shape (n,)
            Base point around which the models are expanded.
        """
        return self._x_base

    @property
    def k_opt(self):
        """
        Index of the best interpolation point.

        Returns
        -------
        int
            Index of the best interpolation point.
        """
        return self._k_opt

    @k_opt.setter
    def k_opt(self, k_opt):
        assert 0 <= k_opt < self.npt, 'The index `k_opt` is not valid.'
        self._k_opt = k_opt

    @property
    def x_opt(self):
        """
        Best interpolation point, relative to the base point.

        Returns
        -------
        numpy.ndarray, shape (n,)
            Best interpolation point.
        """
        return self.xpt[:, self.k_opt]

    @property
    def bmat(self):
        """
        Last ``n`` columns of the inverse KKT matrix.

        Returns
        -------
        numpy.ndarray, shape (npt + n, n)
            Last ``n`` columns of the inverse KKT matrix.
        """
        return self._bmat

    @property
    def zmat(self):
        """
        Rank factor of the leading submatrix of the inverse KKT matrix.

        Returns
        -------
        numpy.ndarray, shape (npt, npt - n - 1)
            Rank factor of the leading submatrix of the inverse KKT matrix.
        """
        return self._zmat

    @property
    def idz(self):
        """
        Number of columns of `zmat` carrying a negative sign.

        Returns
        -------
        int
            Number of columns of `zmat` carrying a negative sign.
        """
        return self._idz

    def point(self, k):
        """
        Get the `k`-th interpolation point.

        The returned point is relative to the origin.

        Parameters
        ----------
        k : int
            Index of the interpolation point.

        Returns
        -------
        numpy.ndarray, shape (n,)
            `k`-th interpolation point.
        """
        assert 0 <= k < self.npt, 'The index `k` is not valid.'
        return self.x_base + self.xpt[:, k]

    def combined_indices(self, k):
        """
        Get the two coordinates along which the `k`-th initial point is
        displaced, for ``k > 2 * n``.
        """
        spread = (k - self.n - 1) // self.n
        k1 = k - (1 + spread) * self.n - 1
        k2 = (k1 + spread) % self.n
        return k1, k2

    def set_combined_points(self):
        """
        Set the initial interpolation points beyond the first ``2 * n + 1``
        ones, each of them combining two coordinate steps.
        """
        for k in range(2 * self.n + 1, self.npt):
            k1, k2 = self.combined_indices(k)
            self.xpt[:, k] = 0.0
            self.xpt[k1, k] = self.xpt[k1, k1 + 1]
            self.xpt[k2, k] = self.xpt[k2, k2 + 1]

    def swap_points(self, k1, k2):
        """
        Swap two initial interpolation points.
        """
        self.xpt[:, [k1, k2]] = self.xpt[:, [k2, k1]]
        self.set_combined_points()

    def build_factorization(self):
        """
        Set the inverse KKT matrix of the initial interpolation set.

        The initial interpolation set has a known structure, so that the
        factorization is given in closed form. Details on the calculations are
        provided in [1]_.

        References
        ----------
        .. [1] M. J. D. Powell. The BOBYQA algorithm for bound constrained
           optimization without derivatives. Technical Report DAMTP 2009/NA06,
           Department of Applied Mathematics and Theoretical Physics,
           University of Cambridge, Cambridge, UK, 2009.
        """
        n, npt = self.n, self.npt
        rhosq = self._rhobeg ** 2.0
        n_diag = min(n, npt - n - 1)
        self._bmat = np.zeros((npt + n, n))
        self._zmat = np.zeros((npt, npt - n - 1))
        self._idz = 0
        for i in range(n):
            alpha = self.xpt[i, i + 1]
            if i < n_diag:
                beta = self.xpt[i, i + n + 1]
                self._bmat[0, i] = -(alpha + beta) / (alpha * beta)
                self._bmat[i + n + 1, i] = -0.5 / alpha
                self._bmat[i + 1, i] = -self._bmat[0, i] - self._bmat[i + n + 1, i]
                self._zmat[0, i] = np.sqrt(2.0) / (alpha * beta)
                self._zmat[i + n + 1, i] = np.sqrt(0.5) / rhosq
                self._zmat[i + 1, i] = -self._zmat[0, i] - self._zmat[i + n + 1, i]
            else:
                self._bmat[0, i] = -1.0 / alpha
                self._bmat[i + 1, i] = 1.0 / alpha
                self._bmat[npt + i, i] = -0.5 * rhosq
        for k in range(2 * n + 1, npt):
            k1, k2 = self.combined_indices(k)
            self._zmat[0, k - n - 1] = 1.0 / rhosq
            self._zmat[k, k - n - 1] = 1.0 / rhosq
            self._zmat[k1 + 1, k - n - 1] = -1.0 / rhosq
            self._zmat[k2 + 1, k - n - 1] = -1.0 / rhosq
        if self._debug:
            self.check_inverse()

    def kkt_matrix(self):
        """
        Build the coefficient matrix of the KKT system of interpolation.

        Returns
        -------
        numpy.ndarray, shape (npt + n + 1, npt + n + 1)
            Coefficient matrix of the KKT system of interpolation.
        """
        n, npt = self.n, self.npt
        a = np.zeros((npt + n + 1, npt + n + 1))
        a[:npt, :npt] = 0.5 * np.square(self.xpt.T @ self.xpt)
        a[:npt, npt] = 1.0
        a[:npt, npt + 1:] = self.xpt.T
        a[npt, :npt] = 1.0
        a[npt + 1:, :npt] = self.xpt
        return a

    def inverse_kkt(self):
        """
        Assemble the stored blocks of the inverse KKT matrix.

        The row and the column corresponding to the constant term are not
        stored, and are hence omitted.

        Returns
        -------
        numpy.ndarray, shape (npt + n, npt + n)
            Stored blocks of the inverse KKT matrix.
        """
        npt = self.npt
        h = np.empty((npt + self.n, npt + self.n))
        h[:npt, :npt] = omega_matrix(self.zmat, self.idz)
        h[:npt, npt:] = self.bmat[:npt, :]
        h[npt:, :npt] = self.bmat[:npt, :].T
        h[npt:, npt:] = self.bmat[npt:, :]
        return h

    def check_inverse(self):
        """
        Evaluate the error in the stored inverse KKT matrix.

        A `RuntimeWarning` is raised if the error is large.

        Returns
        -------
        float
            Maximum absolute error, relative to the largest element of the
            inverse KKT matrix.
        """
        npt = self.npt
        a = self.kkt_matrix()
        a_inv = solve(a, np.eye(a.shape[0]), assume_a='sym')
        a_inv = np.delete(np.delete(a_inv, npt, 0), npt, 1)
        error = np.max(np.abs(self.inverse_kkt() - a_inv)) / max(1.0, np.max(np.abs(a_inv)))
        if error > 1e-3:
            warnings.warn(f'The error in the inverse KKT matrix is {error}.', RuntimeWarning, 2)
        return error

    def rebuild(self):
        """
        Recompute the inverse KKT matrix from the interpolation points.

        The inverse KKT matrix is evaluated densely, and its leading
        ``npt``-by-``npt`` submatrix is factorized using its eigenvalue
        decomposition, the eigenvectors of largest eigenvalues in absolute
        value being kept.

        Raises
        ------
        numpy.linalg.LinAlgError
            If the KKT matrix is singular.
        """
        n, npt = self.n, self.npt
        a = self.kkt_matrix()
        a_inv = solve(a, np.eye(a.shape[0]), assume_a='sym')
        self._bmat = np.vstack([a_inv[npt + 1:, :npt].T, a_inv[npt + 1:, npt + 1:]])
        self._bmat[npt:, :] = 0.5 * (self._bmat[npt:, :] + self._bmat[npt:, :].T)
        omega = a_inv[:npt, :npt]
        eig_values, eig_vectors = eigh(0.5 * (omega + omega.T))
        idx = np.argsort(np.abs(eig_values))[::-1][:npt - n - 1]
        eig_values = eig_values[idx]
        eig_vectors = eig_vectors[:, idx]
        order = np.argsort(eig_values >= 0.0, kind='stable')
        eig_values = eig_values[order]
        self._zmat = eig_vectors[:, order] * np.sqrt(np.abs(eig_values))[np.newaxis, :]
        self._idz = int(np.count_nonzero(eig_values < 0.0))
        _log.debug(f'Inverse KKT matrix rebuilt ({self.idz} negative columns).')

    def lagrange(self, k):
        """
        Get the `k`-th Lagrange polynomial.

        Parameters
        ----------
        k : int
            Index of the Lagrange polynomial.

        Returns
        -------
        numpy.ndarray, shape (n,)
            Gradient of the Lagrange polynomial at the best interpolation point.
        numpy.ndarray, shape (npt,)
            Implicit Hessian matrix of the Lagrange polynomial.
        """
        i_hess = omega_product(self.zmat, self.idz, k)
        grad = self.bmat[k, :] + self.xpt @ (i_hess * (self.xpt.T @ self.x_opt))
        return grad, i_hess

    def get_lag_values(self, step):
        r"""
        Evaluate the quantities needed to replace an interpolation point by
        the best interpolation point shifted by `step`.

        Parameters
        ----------
        step : numpy.ndarray, shape (n,)
            Displacement from the best interpolation point.

        Returns
        -------
        numpy.ndarray, shape (npt + n,)
            Product of the inverse KKT matrix with the vector :math:`w - v` of
            the updating formula, whose first `npt` elements are the values of
            the Lagrange polynomials at the new point.
        float
            Scalar :math:`\beta` of the updating formula.
        """
        npt = self.npt
        x_opt = self.x_opt
        lag_values = np.empty(npt + self.n)
        step_sq = np.inner(step, step)
        x_opt_sq = np.inner(x_opt, x_opt)
        step_x_opt = np.inner(step, x_opt)
        xpt_step = self.xpt.T @ step
        xpt_x_opt = self.xpt.T @ x_opt
        check = xpt_step * (0.5 * xpt_step + xpt_x_opt)
        temp = self.zmat.T @ check
        beta = np.inner(temp[:self.idz], temp[:self.idz]) - np.inner(temp[self.idz:], temp[self.idz:])
        temp[:self.idz] = -temp[:self.idz]
        lag_values[:npt] = self.bmat[:npt, :] @ step + self.zmat @ temp
        lag_values[self.k_opt] += 1.0
        lag_values[npt:] = self.bmat[:npt, :].T @ check
        bsp = np.inner(lag_values[npt:], step)
        lag_values[npt:] += self.bmat[npt:, :] @ step
        bsp += np.inner(lag_values[npt:], step)
        beta += step_x_opt ** 2.0 + step_sq * (x_opt_sq + 2.0 * step_x_opt + 0.5 * step_sq) - bsp
        return lag_values, beta

    def get_alpha(self, k=None):
        """
        Get the diagonal elements of the leading submatrix of the inverse KKT
        matrix.

        Parameters
        ----------
        k : int, optional
            Index of the diagonal element. All of them are returned by default.

        Returns
        -------
        {float, numpy.ndarray, shape (npt,)}
            Diagonal element(s).
        """
        if k is None:
            z_sq = self.zmat ** 2.0
            return np.sum(z_sq[:, self.idz:], axis=1) - np.sum(z_sq[:, :self.idz], axis=1)
        z_sq = self.zmat[k, :] ** 2.0
        return np.sum(z_sq[self.idz:]) - np.sum(z_sq[:self.idz])

    def get_denominators(self, step, k=None):
        """
        Get the denominators of the updating formula when an interpolation
        point is replaced by the best interpolation point shifted by `step`.

        The denominators that cannot be evaluated are set to zero, so that the
        corresponding replacement is never accepted.

        Parameters
        ----------
        step : numpy.ndarray, shape (n,)
            Displacement from the best interpolation point.
        k : int, optional
            Index of the interpolation point to be replaced. All denominators
            are returned by default.

        Returns
        -------
        {float, numpy.ndarray, shape (npt,)}
            Denominator(s) of the updating formula.
        """
        lag_values, beta = self.get_lag_values(step)
        with np.errstate(invalid='ignore', over='ignore'):
            if k is not None:
                sigma = self.get_alpha(k) * beta + lag_values[k] ** 2.0
                return sigma if np.isfinite(sigma) else 0.0
            sigma = self.get_alpha() * beta + lag_values[:self.npt] ** 2.0
        sigma[~np.isfinite(sigma)] = 0.0
        return sigma

    def update(self, k_new, step):
        """
        Replace the `k_new`-th interpolation point by the best interpolation
        point shifted by `step`, and update the inverse KKT matrix.

        Parameters
        ----------
        k_new : int
            Index of the interpolation point to be replaced.
        step : numpy.ndarray, shape (n,)
            Displacement from the best interpolation point.

        Raises
        ------
        ZeroDivisionError
            If the denominator of the updating formula is too small. In this
            case, only orthogonal transformations have been applied to `zmat`,
            and the interpolation set is unchanged.
        """
        assert 0 <= k_new < self.npt, 'The index `k_new` is not valid.'
        n, npt = self.n, self.npt
        lag_values, beta = self.get_lag_values(step)
        temp_prod = lag_values[npt:]
        lag_values = lag_values[:npt]

        # Put zeros in the k_new-th row of zmat by applying a sequence of
        # Givens rotations. The remaining updates are performed below.
        rotg, = get_blas_funcs(('rotg',), (self._zmat,))
        rot, = get_blas_funcs(('rot',), (self._zmat,))
        jdz = 0
        for j in range(1, npt - n - 1):
            if j == self._idz:
                jdz = self._idz
            elif abs(self._zmat[k_new, j]) > 0.0:
                c, s = rotg(self._zmat[k_new, jdz], self._zmat[k_new, j])
                self._zmat[:, jdz], self._zmat[:, j] = rot(self._zmat[:, jdz], self._zmat[:, j], c, s)
                self._zmat[k_new, j] = 0.0

        # Evaluate the denominator in Equation (2.12) of Powell (2004).
        scala = self._zmat[k_new, 0] if self._idz == 0 else -self._zmat[k_new, 0]
        scalb = 0.0 if jdz == 0 else self._zmat[k_new, jdz]
        omega = scala * self._zmat[:, 0] + scalb * self._zmat[:, jdz]
        alpha = omega[k_new]
        tau = lag_values[k_new]
        sigma = alpha * beta + tau ** 2.0
        lag_values[k_new] -= 1.0
        b_max = np.max(np.abs(self._bmat), initial=1.0)
        z_max = np.max(np.abs(self._zmat), initial=1.0)
        if not np.isfinite(sigma) or abs(sigma) < np.finfo(float).tiny * max(b_max, z_max):
            # The denominator of the updating formula is too small to safely
            # divide the coefficients of the KKT matrix of interpolation.
            # Theoretically, the value of abs(sigma) is always positive, and
            # becomes small only for ill-conditioned problems.
            raise ZeroDivisionError('The denominator of the updating formula is zero.')

        # Complete the update of the matrix zmat.
        reduce = False
        hypot = np.sqrt(abs(sigma))
        if jdz == 0:
            scala = tau / hypot
            scalb = self._zmat[k_new, 0] / hypot
            self._zmat[:, 0] = scala * self._zmat[:, 0] - scalb * lag_values
            if sigma < 0.0:
                if self._idz == 0:
                    self._idz = 1
                else:
                    reduce = True
        else:
            kdz = jdz if beta >= 0.0 else 0
            jdz -= kdz
            tempa = self._zmat[k_new, jdz] * beta / sigma
            tempb = self._zmat[k_new, jdz] * tau / sigma
            temp = self._zmat[k_new, kdz]
            scala = 1.0 / np.sqrt(abs(beta) * temp ** 2.0 + tau ** 2.0)
            scalb = scala * hypot
            self._zmat[:, kdz] = tau * self._zmat[:, kdz] - temp * lag_values
            self._zmat[:, kdz] *= scala
            self._zmat[:, jdz] -= tempa * omega + tempb * lag_values
            self._zmat[:, jdz] *= scalb
            if sigma <= 0.0:
                if beta < 0.0:
                    self._idz += 1
                else:
                    reduce = True
        if reduce:
            self._idz -= 1
            self._zmat[:, [0, self._idz]] = self._zmat[:, [self._idz, 0]]

        # Update accordingly bmat. The copy below is crucial, as the slicing
        # would otherwise return a view of the k_new-th row of bmat only.
        b_sav = np.copy(self._bmat[k_new, :])
        for j in range(n):
            cosine = (alpha * temp_prod[j] - tau * b_sav[j]) / sigma
            sine = (tau * temp_prod[j] + beta * b_sav[j]) / sigma
            self._bmat[:npt, j] += cosine * lag_values - sine * omega
            self._bmat[npt:npt + j + 1, j] += cosine * temp_prod[:j + 1]
            self._bmat[npt:npt + j + 1, j] -= sine * b_sav[:j + 1]
            self._bmat[npt + j, :j + 1] = self._bmat[npt:npt + j + 1, j]

        # Finally, update the interpolation set.
        self.xpt[:, k_new] = self.x_opt + step

    def shift_x_base(self):
        """
        Move the base point to the best interpolation point.

        The interpolation set and the inverse KKT matrix are re-expressed
        around the new base point. The matrix zmat is left unchanged.
        """
        npt = self.npt
        x_opt = np.copy(self.x_opt)

        # Make the changes to bmat that do not depend on zmat.
        length = 0.25 * np.inner(x_opt, x_opt)
        h_update = self.xpt.T @ x_opt - 2.0 * length
        h_xpt = self.xpt - 0.5 * x_opt[:, np.newaxis]
        steps = h_update[:, np.newaxis] * h_xpt.T + length * x_opt[np.newaxis, :]
        update = self._bmat[:npt, :].T @ steps
        self._bmat[npt:, :] += update + update.T

        # Revise bmat to incorporate the changes that depend on zmat.
        update = length * np.outer(x_opt, np.sum(self._zmat, axis=0)) + h_xpt @ (self._zmat * h_update[:, np.newaxis])
        for k in range(self._idz):
            self._bmat[:npt, :] -= np.outer(self._zmat[:, k], update[:, k])
            self._bmat[npt:, :] -= np.outer(update[:, k], update[:, k])
        for k in range(self._idz, npt - self.n - 1):
            self._bmat[:npt, :] += np.outer(self._zmat[:, k], update[:, k])
            self._bmat[npt:, :] += np.outer(update[:, k], update[:, k])

        # Update the interpolation set.
        self._x_base += x_opt
        self._xpt -= x_opt[:, np.newaxis]


class Quadratic:
    """
    Quadratic model.

    This class stores the gradient of the quadratic model at the best
    interpolation point, and its Hessian matrix using the implicit/explicit
    representation designed by Powell for NEWUOA [1]_. The model value at the
    best interpolation point is the corresponding function value, and is hence
    not stored.

    References
    ----------
    .. [1] M. J. D. Powell. The NEWUOA software for unconstrained optimization
       without derivatives. In G. Di Pillo and M. Roma, editors, *Large-Scale
       Nonlinear Optimization*, volume 83 of *Nonconvex Optimization and Its
       Applications*, pages 255--297. Springer, Boston, MA, USA, 2006.
    """

    def __init__(self, grad, e_hess, i_hess):
        """
        Initialize the quadratic model.

        Parameters
        ----------
        grad : numpy.ndarray, shape (n,)
            Gradient of the model at the best interpolation point.
        e_hess : numpy.ndarray, shape (n, n)
            Explicit part of the Hessian matrix.
        i_hess : numpy.ndarray, shape (npt,)
            Implicit part of the Hessian matrix.
        """
        self._grad = grad
        self._e_hess = e_hess
        self._i_hess = i_hess

    @staticmethod
    def initial(interpolation, fval):
        """
        Build the initial quadratic model by finite differences.

        Parameters
        ----------
        interpolation : Interpolation
            Initial interpolation set.
        fval : numpy.ndarray, shape (npt,)
            Function values at the interpolation points.

        Returns
        -------
        Quadratic
            Quadratic model interpolating `fval`.
        """
        n, npt = interpolation.n, interpolation.npt
        xpt = interpolation.xpt
        grad = np.zeros(n)
        e_hess = np.zeros((n, n))
        fun_base = fval[0]
        n_diag = min(n, npt - n - 1)
        for i in range(n):
            alpha = xpt[i, i + 1]
            diff_alpha = (fval[i + 1] - fun_base) / alpha
            grad[i] = diff_alpha
            if i < n_diag:
                beta = xpt[i, i + n + 1]
                diff_beta = (fval[i + n + 1] - fun_base) / beta
                grad[i] = (diff_alpha * beta - diff_beta * alpha) / (beta - alpha)
                e_hess[i, i] = 2.0 * (diff_alpha - diff_beta) / (alpha - beta)
        for k in range(2 * n + 1, npt):
            i, j = interpolation.combined_indices(k)
            e_hess[i, j] = (fun_base - fval[i + 1] - fval[j + 1] + fval[k]) / (xpt[i, k] * xpt[j, k])
            e_hess[j, i] = e_hess[i, j]
        grad += e_hess @ interpolation.x_opt
        return Quadratic(grad, e_hess, np.zeros(npt))

    @staticmethod
    def least_frobenius(interpolation, fval):
        """
        Build the quadratic model of least Frobenius norm of its Hessian matrix
        that interpolates `fval`.

        Parameters
        ----------
        interpolation : Interpolation
            Interpolation set.
        fval : numpy.ndarray, shape (npt,)
            Function values at the interpolation points.

        Returns
        -------
        Quadratic
            Quadratic model interpolating `fval`.
        """
        rhs = fval - fval[interpolation.k_opt]
        i_hess = omega_product(interpolation.zmat, interpolation.idz, rhs)
        grad = interpolation.bmat[:interpolation.npt, :].T @ rhs
        grad += interpolation.xpt @ (i_hess * (interpolation.xpt.T @ interpolation.x_opt))
        return Quadratic(grad, np.zeros((interpolation.n, interpolation.n)), i_hess)

    @property
    def n(self):
        """
        Number of variables.

        Returns
        -------
        int
            Number of variables.
        """
        return self._grad.size

    @property
    def grad(self):
        """
        Gradient of the model at the best interpolation point.

        Returns
        -------
        numpy.ndarray, shape (n,)
            Gradient of the model at the best interpolation point.
        """
        return self._grad

    def value_change(self, step, interpolation):
        """
        Evaluate the change of the model from the best interpolation point.

        Parameters
        ----------
        step : numpy.ndarray, shape (n,)
            Displacement from the best interpolation point.
        interpolation : Interpolation
            Interpolation set.

        Returns
        -------
        float
            Difference between the model values at the best interpolation
            point shifted by `step` and at the best interpolation point.
        """
        return np.inner(self._grad, step) + 0.5 * self.curv(step, interpolation)

    def value(self, step, fun_opt, interpolation):
        """
        Evaluate the model at the best interpolation point shifted by `step`.
        """
        return fun_opt + self.value_change(step, interpolation)

    def hess(self, interpolation):
        """
        Evaluate the Hessian matrix of the model.

        Parameters
        ----------
        interpolation : Interpolation
            Interpolation set.

        Returns
        -------
        numpy.ndarray, shape (n, n)
            Hessian matrix of the model.
        """
        return self._e_hess + interpolation.xpt @ (self._i_hess[:, np.newaxis] * interpolation.xpt.T)

    def hess_prod(self, v, interpolation):
        """
        Evaluate the right product of the Hessian matrix of the model with a
        given vector.

        Parameters
        ----------
        v : numpy.ndarray, shape (n,)
            Vector with which the Hessian matrix is multiplied from the right.
        interpolation : Interpolation
            Interpolation set.

        Returns
        -------
        numpy.ndarray, shape (n,)
            Right product of the Hessian matrix with `v`.
        """
        return self._e_hess @ v + interpolation.xpt @ (self._i_hess * (interpolation.xpt.T @ v))

    def curv(self, v, interpolation):
        """
        Evaluate the curvature of the model along a given direction.

        Parameters
        ----------
        v : numpy.ndarray, shape (n,)
            Direction along which the curvature is evaluated.
        interpolation : Interpolation
            Interpolation set.

        Returns
        -------
        float
            Curvature of the model along `v`.
        """
        return v @ self._e_hess @ v + self._i_hess @ np.square(interpolation.xpt.T @ v)

    def update(self, interpolation, k_new, x_old, x_opt, moderr):
        """
        Update the model after an interpolation point has been replaced.

        This method applies the derivative-free symmetric Broyden update to the
        model. The interpolation set must be updated before calling this
        method.

        Parameters
        ----------
        interpolation : Interpolation
            Updated interpolation set.
        k_new : int
            Index of the updated interpolation point.
        x_old : numpy.ndarray, shape (n,)
            Previous value of ``interpolation.xpt[:, k_new]``.
        x_opt : numpy.ndarray, shape (n,)
            Best interpolation point before the update, at which the gradient
            of the model is expressed.
        moderr : float
            Difference between the function value at the new point and the
            value of the model before the update.
        """
        # Forward the k_new-th element of the implicit Hessian matrix to the
        # explicit Hessian matrix. This must be done because the implicit
        # Hessian matrix is related to the interpolation points, and the
        # k_new-th interpolation point is modified.
        self._e_hess += self._i_hess[k_new] * np.outer(x_old, x_old)
        self._i_hess[k_new] = 0.0

        # Add a multiple of the k_new-th Lagrange polynomial.
        i_hess = omega_product(interpolation.zmat, interpolation.idz, k_new)
        self._i_hess += moderr * i_hess
        self._grad += moderr * (interpolation.bmat[k_new, :] + interpolation.xpt @ (i_hess * (interpolation.xpt.T @ x_opt)))

    def change_best(self, step, interpolation):
        """
        Express the gradient of the model at the best interpolation point
        shifted by `step`.
        """
        self._grad += self.hess_prod(step, interpolation)

    def shift_x_base(self, interpolation, x_opt_old):
        """
        Re-express the Hessian matrix of the model after a shift of the base
        point.

        Parameters
        ----------
        interpolation : Interpolation
            Shifted interpolation set.
        x_opt_old : numpy.ndarray, shape (n,)
            Best interpolation point before the shift, which became the new
            base point.
        """
        h_xpt = interpolation.xpt + 0.5 * x_opt_old[:, np.newaxis]
        update = np.outer(h_xpt @ self._i_hess, x_opt_old)
        self._e_hess += update + update.T

    def is_finite(self):
        """
        Whether all the coefficients of the model are finite.
        """
        return np.all(np.isfinite(self._grad)) and np.all(np.isfinite(self._e_hess)) and np.all(np.isfinite(self._i_hess))

    def check(self, interpolation, fval):
        """
        Check whether the interpolation conditions are met.

        A `RuntimeWarning` is raised if the error is large.

        Returns
        -------
        float
            Maximum error in the interpolation conditions.
        """
        x_opt = interpolation.x_opt
        fun_opt = fval[interpolation.k_opt]
        diff = max(abs(self.value(interpolation.xpt[:, k] - x_opt, fun_opt, interpolation) - fval[k]) for k in range(interpolation.npt))
        tol = 10.0 * np.sqrt(np.finfo(float).eps) * interpolation.npt * max(np.max(np.abs(fval), initial=1.0), 1.0)
        if diff > tol:
            warnings.warn(f'The error in the interpolation conditions is {diff}.', RuntimeWarning, 2)
        return diff


class Models:
    """
    Interpolation set, quadratic model, and function values.

    These three objects must be mutually consistent: the model interpolates the
    function values at the interpolation points. They are only modified
    together through the methods of this class.
    """

    def __init__(self, pb, options):
        """
        Initialize the models.

        The function is evaluated at the initial interpolation points. Since
        the evaluations may raise the exceptions of `Problem.__call__`, the
        models are only usable if this method returns normally.

        Parameters
        ----------
        pb : Problem
            Problem to be solved.
        options : dict
            Options of the solver.
        """
        self._debug = options[Options.DEBUG]
        self._xl = pb.bounds.xl
        self._xu = pb.bounds.xu
        self._interpolation = Interpolation(pb, options)
        n, npt = self.n, self.npt

        # Evaluate the function at the points along the coordinate directions.
        # If two points along the same direction are on both sides of the base
        # point, the best one becomes the first, so that the combined points
        # are displaced toward decreasing function values.
        self._fval = np.full(npt, np.nan)
        for k in range(min(npt, 2 * n + 1)):
            self._fval[k] = pb(self.interpolation.point(k))
        for i in range(min(n, npt - n - 1)):
            if self.interpolation.xpt[i, i + 1] * self.interpolation.xpt[i, i + n + 1] < 0.0 and self._fval[i + n + 1] < self._fval[i + 1]:
                self.interpolation.swap_points(i + 1, i + n + 1)
                self._fval[[i + 1, i + n + 1]] = self._fval[[i + n + 1, i + 1]]
        for k in range(2 * n + 1, npt):
            self._fval[k] = pb(self.interpolation.point(k))

        # Build the inverse KKT matrix and the initial quadratic model.
        self.interpolation.k_opt = int(np.argmin(self._fval))
        self.interpolation.build_factorization()
        self._model = Quadratic.initial(self.interpolation, self._fval)
        if self._debug:
            self._model.check(self.interpolation, self._fval)

    @property
    def n(self):
        """
        Number of variables.

        Returns
        -------
        int
            Number of variables.
        """
        return self.interpolation.n

    @property
    def npt(self):
        """
        Number of interpolation points.

        Returns
        -------
        int
            Number of interpolation points.
        """
        return self.interpolation.npt

    @property
    def interpolation(self):
        """
        Interpolation set.

        Returns
        -------
        Interpolation
            Interpolation set.
        """
        return self._interpolation

    @property
    def model(self):
        """
        Quadratic model of the objective function.

        Returns
        -------
        Quadratic
            Quadratic model of the objective function.
        """
        return self._model

    @property
    def fval(self):
        """
        Function values at the interpolation points.

        Returns
        -------
        numpy.ndarray, shape (npt,)
            Function values at the interpolation points.
        """
        return self._fval

    @property
    def k_opt(self):
        """
        Index of the best interpolation point.

        Returns
        -------
        int
            Index of the best interpolation point.
        """
        return self.interpolation.k_opt

    @property
    def x_best(self):
        """
        Best interpolation point, relative to the origin.

        Returns
        -------
        numpy.ndarray, shape (n,)
            Best interpolation point.
        """
        return self.interpolation.point(self.k_opt)

    @property
    def fun_opt(self):
        """
        Function value at the best interpolation point.

        Returns
        -------
        float
            Function value at the best interpolation point.
        """
        return self._fval[self.k_opt]

    def dist_sq(self, step=None):
        """
        Squared distances from the interpolation points to the best
        interpolation point, shifted by `step` if provided.
        """
        x_ref = self.interpolation.x_opt if step is None else self.interpolation.x_opt + step
        return np.sum(np.square(self.interpolation.xpt - x_ref[:, np.newaxis]), axis=0)

    def update_interpolation(self, k_new, step, fun_val):
        """
        Replace the `k_new`-th interpolation point by the best interpolation
        point shifted by `step`.

        Parameters
        ----------
        k_new : int
            Index of the interpolation point to be replaced.
        step : numpy.ndarray, shape (n,)
            Displacement from the best interpolation point.
        fun_val : float
            Function value at the new point.

        Returns
        -------
        float
            Difference between `fun_val` and the value of the model at the new
            point before the update.

        Raises
        ------
        ZeroDivisionError
            If the replacement is ill-conditioned. In this case, the
            interpolation set, the model, and the function values are
            unchanged.
        """
        x_old = np.copy(self.interpolation.xpt[:, k_new])
        x_opt = np.copy(self.interpolation.x_opt)
        fun_opt = self.fun_opt
        moderr = fun_val - fun_opt - self._model.value_change(step, self.interpolation)
        self.interpolation.update(k_new, step)
        self._fval[k_new] = fun_val
        self._model.update(self.interpolation, k_new, x_old, x_opt, moderr)
        if fun_val < fun_opt or k_new == self.k_opt:
            self._model.change_best(step, self.interpolation)
            self.interpolation.k_opt = k_new
        if self._debug:
            self._model.check(self.interpolation, self._fval)
            self.interpolation.check_inverse()
        return moderr

    def get_index_to_remove(self, step, delta, rho, x_improved):
        """
        Choose the interpolation point to be replaced by the best
        interpolation point shifted by `step`.

        Parameters
        ----------
        step : numpy.ndarray, shape (n,)
            Displacement from the best interpolation point.
        delta : float
            Trust-region radius.
        rho : float
            Lower bound on the trust-region radius.
        x_improved : bool
            Whether the new point improves the best function value.

        Returns
        -------
        {int, None}
            Index of the interpolation point to be replaced, or None if no
            replacement is acceptable.
        """
        sigma = np.abs(self.interpolation.get_denominators(step))
        dist_sq = self.dist_sq(step if x_improved else None)
        weight = np.maximum(1.0, dist_sq / max(0.1 * delta, rho) ** 2.0) ** 3.0
        score = weight * sigma
        if not x_improved:
            score[self.k_opt] = -1.0
        if np.any(score > 1.0) or x_improved and np.any(score > 0.0):
            return int(np.argmax(score))
        if x_improved:
            return int(np.argmax(dist_sq))
        return None

    def get_geometry_step(self, k_new, delta):
        """
        Get a step that improves the geometry of the interpolation set when
        the `k_new`-th interpolation point is replaced.

        Parameters
        ----------
        k_new : int
            Index of the interpolation point to be replaced.
        delta : float
            Trust-region radius.

        Returns
        -------
        numpy.ndarray, shape (n,)
            Displacement from the best interpolation point.
        """
        interp = self.interpolation
        lag_grad, lag_i_hess = interp.lagrange(k_new)
        const = 1.0 if k_new == self.k_opt else 0.0

        def lag_hess_prod(v):
            return interp.xpt @ (lag_i_hess * (interp.xpt.T @ v))

        def lag_curv(v):
            return lag_i_hess @ np.square(interp.xpt.T @ v)

        if np.any(self._xl > -np.inf) or np.any(self._xu < np.inf):
            # The constrained Cauchy step and the steps along the lines through
            # the other interpolation points are compared using the
            # denominators of the updating formula.
            xl = np.minimum(self._xl - interp.x_base - interp.x_opt, 0.0)
            xu = np.maximum(self._xu - interp.x_base - interp.x_opt, 0.0)
            step = cauchy_geometry(const, lag_grad, lag_curv, xl, xu, delta, self._debug)
            sigma = interp.get_denominators(step, k_new)
            xpt = interp.xpt - interp.x_opt[:, np.newaxis]
            xpt = np.delete(xpt, self.k_opt, 1)
            step_alt = spider_geometry(const, lag_grad, lag_curv, xpt, xl, xu, delta, self._debug)
            sigma_alt = interp.get_denominators(step_alt, k_new)
            if abs(sigma_alt) > abs(sigma):
                step = step_alt
                sigma = sigma_alt
            _log.debug(f'Bound-constrained geometry step computed (denominator {sigma:.3e}).')
        else:
            first_dir = interp.xpt[:, k_new] - interp.x_opt
            step = lagrange_geometry(const, lag_grad, lag_hess_prod, first_dir, delta, self._debug)
            lag_values, _ = interp.get_lag_values(step)
            sigma = interp.get_denominators(step, k_new)
            if abs(sigma) <= 0.8 * lag_values[k_new] ** 2.0:
                # The denominator is small compared with the Lagrange value,
                # and it is hence maximized directly.
                step = denominator_geometry(lambda d: interp.get_denominators(d, k_new), lambda d: lag_grad + lag_hess_prod(d), step, first_dir, delta, self._debug)
            _log.debug(f'Geometry step computed (denominator {interp.get_denominators(step, k_new):.3e}).')
        return step

    def shift_x_base(self):
        """
        Move the base point to the best interpolation point.
        """
        x_opt = np.copy(self.interpolation.x_opt)
        self.interpolation.shift_x_base()
        self._model.shift_x_base(self.interpolation, x_opt)
        _log.debug('The base point is moved to the best interpolation point.')
        if self._debug:
            self._model.check(self.interpolation, self._fval)
            self.interpolation.check_inverse()

    def get_alternative_model(self):
        """
        Build the quadratic model of least Frobenius norm of its Hessian
        matrix that interpolates the function values.

        Returns
        -------
        Quadratic
            Alternative quadratic model.
        """
        return Quadratic.least_frobenius(self.interpolation, self._fval)

    def reset_models(self, model=None):
        """
        Replace the quadratic model by the alternative one.
        """
        self._model = self.get_alternative_model() if model is None else model
        _log.debug('The model is replaced by the alternative one.')

    def rescue(self):
        """
        Recompute the inverse KKT matrix from the interpolation points.

        The quadratic model is kept, since it still interpolates the function
        values.
        """
        self.interpolation.rebuild()
        if self._debug:
            self.interpolation.check_inverse()
