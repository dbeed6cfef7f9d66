"""Smooth bias field model for multi-tissue intensity normalisation.

The bias field is a cubic polynomial of the scanner-space position,
fitted in the log domain so that a multiplicative field becomes an additive
term of the summed, scaled tissue signal.
"""

import numpy as np
from nibabel.affines import apply_affine

from mtnorm.core.linalg import least_squares

# Exponents (x, y, z) of the 20 basis monomials, in fitting order:
# 1, x, y, z, x², y², z², xy, xz, yz, x³, y³, z³, x²y, x²z, xy², y²z, xz²,
# yz², xyz
MONOMIAL_EXPONENTS = (
    (0, 0, 0),
    (1, 0, 0),
    (0, 1, 0),
    (0, 0, 1),
    (2, 0, 0),
    (0, 2, 0),
    (0, 0, 2),
    (1, 1, 0),
    (1, 0, 1),
    (0, 1, 1),
    (3, 0, 0),
    (0, 3, 0),
    (0, 0, 3),
    (2, 1, 0),
    (2, 0, 1),
    (1, 2, 0),
    (0, 2, 1),
    (1, 0, 2),
    (0, 1, 2),
    (1, 1, 1),
)

N_BASIS = len(MONOMIAL_EXPONENTS)


def polynomial_basis(points):
    """Evaluate the 20 basis monomials at scanner-space positions.

    Parameters
    ----------
    points : array_like
        Positions, shape (3,) or (N, 3).

    Returns
    -------
    basis : ndarray
        Basis values, shape (20,) for a single point or (N, 20).
    """
    points = np.asarray(points, dtype=np.float64)
    single = points.ndim == 1
    points = np.atleast_2d(points)
    if points.shape[-1] != 3:
        raise ValueError(f"Positions must have 3 coordinates, got {points.shape}")

    x, y, z = points[:, 0], points[:, 1], points[:, 2]
    basis = np.empty((points.shape[0], N_BASIS), dtype=np.float64)
    for col, (i, j, k) in enumerate(MONOMIAL_EXPONENTS):
        basis[:, col] = x**i * y**j * z**k
    return basis[0] if single else basis


def voxel_positions(affine, voxels):
    """Map integer voxel indices (N, 3) to scanner coordinates (N, 3)."""
    return apply_affine(affine, np.asarray(voxels, dtype=np.float64))


def evaluate_polynomial(weights, affine, shape):
    """Evaluate the fitted polynomial at every voxel of a grid.

    The field is accumulated one monomial at a time, so memory stays at a
    few volumes regardless of the number of basis terms.

    Parameters
    ----------
    weights : ndarray
        Basis weights, shape (20,).
    affine : ndarray
        4x4 voxel to scanner transform.
    shape : tuple of int
        3D grid shape.

    Returns
    -------
    field : ndarray
        Polynomial values, float64 array of the given shape.
    """
    weights = np.asarray(weights, dtype=np.float64)
    if weights.shape != (N_BASIS,):
        raise ValueError(f"Expected {N_BASIS} basis weights, got {weights.shape}")

    grid = np.indices(shape, dtype=np.float64)
    positions = apply_affine(affine, np.moveaxis(grid, 0, -1))
    x, y, z = positions[..., 0], positions[..., 1], positions[..., 2]

    field = np.zeros(shape, dtype=np.float64)
    for w, (i, j, k) in zip(weights, MONOMIAL_EXPONENTS):
        field += w * x**i * y**j * z**k
    return field


def fit_log_bias_field(stack, mask, scale_factors, affine, *, log_norm_value):
    """Fit the log-domain bias field to the scaled tissue sum.

    For every voxel of ``mask`` the target is
    ``log(sum_j c_j * tissue_j) - log_norm_value``; the polynomial fitted to
    these targets is then evaluated over the whole grid.

    Parameters
    ----------
    stack : ndarray
        Tissue stack, shape (X, Y, Z, N).
    mask : ndarray
        3D boolean working mask.
    scale_factors : ndarray
        Per-tissue scale factors, shape (N,).
    affine : ndarray
        4x4 voxel to scanner transform.
    log_norm_value : float
        Natural log of the normalisation target.

    Returns
    -------
    weights : ndarray
        Basis weights, shape (20,).
    log_bias : ndarray
        Log-domain bias field, shape (X, Y, Z).
    """
    voxels = np.argwhere(mask)
    if len(voxels) == 0:
        raise ValueError("Cannot fit the bias field: mask contains no voxels")

    summed = stack[mask] @ np.asarray(scale_factors, dtype=np.float64)
    y = np.log(summed) - log_norm_value
    X = polynomial_basis(voxel_positions(affine, voxels))

    weights, _ = least_squares(X, y, label="bias field fit")
    log_bias = evaluate_polynomial(weights, affine, mask.shape)
    return weights, log_bias
