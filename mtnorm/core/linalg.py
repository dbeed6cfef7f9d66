"""Dense linear least-squares used by the normalisation estimators."""

import numpy as np
from scipy import linalg as scipy_linalg

from mtnorm.utils.logging import logger


def least_squares(X, y, *, label="system"):
    """Solve ``min ||X b - y||`` with a column-pivoted QR factorisation.

    Parameters
    ----------
    X : ndarray
        Design matrix, shape (N, K).
    y : ndarray
        Target values, shape (N,).
    label : str, optional
        Name of the system, only used in the rank-deficiency warning.

    Returns
    -------
    beta : ndarray
        Coefficient vector, shape (K,).
    rank : int
        Effective rank of ``X``.
    """
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if X.ndim != 2 or X.shape[0] != y.shape[0]:
        raise ValueError(
            f"Incompatible least-squares shapes: X {X.shape}, y {y.shape}"
        )
    if X.shape[0] == 0:
        raise ValueError(f"Cannot solve {label}: design matrix has no rows")

    # relative rank threshold, as numpy.linalg.lstsq uses by default
    cond = np.finfo(np.float64).eps * max(X.shape)
    beta, _, rank, _ = scipy_linalg.lstsq(X, y, cond=cond, lapack_driver="gelsy")
    if rank < X.shape[1]:
        logger.warning(
            "Rank-deficient %s: rank %d for %d unknowns (%d equations)",
            label,
            rank,
            X.shape[1],
            X.shape[0],
        )
    return beta, int(rank)
