import numpy as np


def get_arrays_tol(*arrays):
    """
    Get a relative tolerance for a set of arrays.

    Parameters
    ----------
    *arrays: tuple
        Set of `arrays` to get the tolerance for.

    Returns
    -------
    float
        Relative tolerance for the set of arrays.

    Raises
    ------
    ValueError
        If no array is provided.
    """
    if len(arrays) == 0:
        raise ValueError('At least one array must be provided.')
    size = max(array.size for array in arrays)
    weight = max(np.max(np.abs(array[np.isfinite(array)]), initial=1.0) for array in arrays)
    return 10.0 * np.finfo(float).eps * max(size, 1.0) * weight


def exact_1d_array(x, message):
    """
    Preprocess a 1-dimensional array.

    Parameters
    ----------
    x : array_like
        Array to be preprocessed.
    message : str
        Error message if `x` cannot be interpreted as a 1-dimensional array.

    Returns
    -------
    numpy.ndarray
        Preprocessed array.
    """
    x = np.atleast_1d(np.squeeze(x)).astype(float)
    if x.ndim != 1:
        raise ValueError(message)
    return x


def omega_product(zmat, idz, x):
    r"""
    Multiply the leading submatrix of the inverse KKT matrix with a vector.

    The leading submatrix is :math:`\Omega = Z D Z^{\T}`, where :math:`D` is
    diagonal, its first `idz` diagonal entries are :math:`-1`, and the other
    ones are :math:`1`.

    Parameters
    ----------
    zmat : numpy.ndarray, shape (npt, npt - n - 1)
        Factor :math:`Z` as shown above.
    idz : int
        Number of diagonal entries of :math:`D` equal to :math:`-1`.
    x : {int, numpy.ndarray, shape (npt,)}
        Vector to multiply with. If `x` is an integer, it is interpreted as
        the corresponding coordinate vector.

    Returns
    -------
    numpy.ndarray, shape (npt,)
        Product :math:`\Omega x`.
    """
    if isinstance(x, (int, np.integer)):
        zx = np.copy(zmat[x, :])
    else:
        zx = zmat.T @ x
    zx[:idz] = -zx[:idz]
    return zmat @ zx


def omega_matrix(zmat, idz):
    r"""
    Build the leading submatrix :math:`\Omega` of the inverse KKT matrix.

    Parameters
    ----------
    zmat : numpy.ndarray, shape (npt, npt - n - 1)
        Factor of :math:`\Omega`.
    idz : int
        Number of columns of `zmat` carrying a negative sign.

    Returns
    -------
    numpy.ndarray, shape (npt, npt)
        Matrix :math:`\Omega`.
    """
    signs = np.ones(zmat.shape[1])
    signs[:idz] = -1.0
    return zmat @ (signs[:, np.newaxis] * zmat.T)


def reduction_ratio(ared, pred, eta1):
    """
    Evaluate the ratio between the actual and the predicted reductions.

    Special cases that would produce a NaN with IEEE arithmetic are resolved
    as follows.

    ===================================  ==============
     Case                                 Ratio
    ===================================  ==============
     ``ared`` is NaN                      ``-inf``
     ``pred == 0`` and ``ared == 0``      ``1``
     both infinite, same sign             ``1``
     both infinite, opposite signs        ``-1``
     ``pred`` NaN or nonpositive          ``eta1 / 2`` if ``ared > 0``,
                                          ``-inf`` otherwise
    ===================================  ==============

    Parameters
    ----------
    ared : float
        Actual reduction.
    pred : float
        Predicted reduction.
    eta1 : float
        Lowest ratio of a successful trust-region iteration.

    Returns
    -------
    float
        Reduction ratio.
    """
    if np.isnan(ared):
        return -np.inf
    if pred == 0.0 and ared == 0.0:
        return 1.0
    if np.isinf(pred) and np.isinf(ared):
        return 1.0 if np.sign(pred) == np.sign(ared) else -1.0
    if np.isnan(pred) or pred <= 0.0:
        return 0.5 * eta1 if ared > 0.0 else -np.inf
    return ared / pred
