from .exceptions import MaxEvalError, TargetSuccess, CallbackSuccess
from .math import get_arrays_tol, exact_1d_array, omega_matrix, omega_product, reduction_ratio
from ._show_versions import show_versions

__all__ = ['MaxEvalError', 'TargetSuccess', 'CallbackSuccess', 'get_arrays_tol', 'exact_1d_array', 'omega_matrix', 'omega_product', 'reduction_ratio', 'show_versions']
