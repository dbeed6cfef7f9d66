"""Multi-tissue informed log-domain intensity normalisation.

Given N co-registered tissue compartment maps (e.g. WM, GM and CSF from
multi-tissue CSD), jointly estimate one scale factor per tissue and a smooth
multiplicative bias field such that

.. math::

   \\sum_j c_j \\, T_j(\\mathbf{x}) / B(\\mathbf{x}) \\approx 1

inside the mask. Scale factors are found by least squares with quartile
based outlier rejection; the bias field is a cubic polynomial fitted to the
log of the scaled tissue sum (see :mod:`mtnorm.normalize.bias_field`). The
two estimates alternate for a fixed number of iterations.
"""

import numpy as np

from mtnorm.core.linalg import least_squares
from mtnorm.normalize.bias_field import fit_log_bias_field
from mtnorm.utils.logging import logger

# sqrt(1 / (4 * pi)), the l=0 SH coefficient of a unit-integral function
DEFAULT_NORM_VALUE = 0.282094
DEFAULT_MAX_ITER = 10
OUTLIER_FENCE = 1.6
CONVERGENCE_TOL = 1e-3


def refine_mask(summed, mask):
    """Keep the mask voxels where ``summed`` is finite and positive.

    Parameters
    ----------
    summed : ndarray
        3D scalar volume.
    mask : ndarray
        3D binary mask on the same grid.

    Returns
    -------
    refined : ndarray
        3D boolean mask, a subset of ``mask``.
    """
    summed = np.asarray(summed)
    mask = np.asarray(mask, dtype=bool)
    if summed.shape != mask.shape:
        raise ValueError(
            f"Volume shape {summed.shape} does not match mask shape {mask.shape}"
        )
    with np.errstate(invalid="ignore"):
        return np.isfinite(summed) & (summed > 0) & mask


def _estimation_volume(tissue):
    """Return the 3D volume used for estimation (first volume of 4D input)."""
    tissue = np.asarray(tissue)
    if tissue.ndim == 4:
        return tissue[..., 0]
    if tissue.ndim != 3:
        raise ValueError(f"Tissue volumes must be 3D or 4D, got {tissue.ndim}D")
    return tissue


def build_tissue_stack(tissues):
    """Pack 3D tissue volumes into a (X, Y, Z, N) array clamped at zero.

    Parameters
    ----------
    tissues : sequence of ndarray
        Tissue compartment volumes sharing the same 3D grid. For 4D inputs
        only the first volume is used.

    Returns
    -------
    stack : ndarray
        float64 array, shape (X, Y, Z, N).
    """
    volumes = [_estimation_volume(t) for t in tissues]
    shapes = {v.shape for v in volumes}
    if len(shapes) != 1:
        raise ValueError(f"Tissue volumes must share the same grid, got {shapes}")
    stack = np.stack(volumes, axis=-1).astype(np.float64)
    return np.clip(stack, 0, None)


def geometric_mean(values):
    """Return ``exp(mean(log(values)))``."""
    return float(np.exp(np.mean(np.log(values))))


def solve_scale_factors(stack, bias_field, mask):
    """Solve for per-tissue scale factors within the mask.

    Finds ``c`` minimising ``||X c - 1||`` with
    ``X[i, j] = tissue_j(v_i) / bias(v_i)`` over the masked voxels, then
    rescales ``c`` so that its geometric mean is 1.

    Parameters
    ----------
    stack : ndarray
        Tissue stack, shape (X, Y, Z, N).
    bias_field : ndarray
        Image-domain bias field, shape (X, Y, Z).
    mask : ndarray
        3D boolean mask.

    Returns
    -------
    scale_factors : ndarray
        Strictly positive factors with unit geometric mean, shape (N,).

    Raises
    ------
    ValueError
        If any raw factor is not strictly positive.
    """
    X = stack[mask] / bias_field[mask][:, None]
    y = np.ones(X.shape[0], dtype=np.float64)
    scale_factors, _ = least_squares(X, y, label="scale factor system")

    for j, factor in enumerate(scale_factors):
        if factor <= 0:
            raise ValueError(
                "Non-positive tissue intensity normalisation scale factor was "
                f"computed. Tissue index: {j} Scale factor: {factor} "
                "Needs to be strictly positive!"
            )
    return scale_factors / geometric_mean(scale_factors)


def _quartile_index(n, q):
    # nearest index, halves rounded up
    return min(int(np.floor(n * q + 0.5)), n - 1)


def outlier_thresholds(values, *, fence=OUTLIER_FENCE):
    """Return the (lower, upper) outlier fences of a sample.

    Quartiles are read from the sorted sample at indices ``round(n / 4)``
    and ``round(3 n / 4)``, without interpolation.

    Parameters
    ----------
    values : ndarray
        1D sample.
    fence : float, optional
        Multiple of the inter-quartile range added beyond the quartiles.

    Returns
    -------
    lower, upper : float
    """
    n = len(values)
    if n == 0:
        raise ValueError("Outlier rejection requires at least one voxel")
    ordered = np.sort(values)
    lower_quartile = ordered[_quartile_index(n, 0.25)]
    upper_quartile = ordered[_quartile_index(n, 0.75)]
    iqr = upper_quartile - lower_quartile
    return lower_quartile - fence * iqr, upper_quartile + fence * iqr


def reject_outliers(summed_log, mask, *, fence=OUTLIER_FENCE):
    """Remove mask voxels whose value lies outside the quartile fences.

    Parameters
    ----------
    summed_log : ndarray
        3D log-domain summed signal.
    mask : ndarray
        3D boolean mask.
    fence : float, optional
        Inter-quartile range multiplier.

    Returns
    -------
    mask : ndarray
        New boolean mask, a subset of the input mask.
    """
    values = summed_log[mask]
    lower, upper = outlier_thresholds(values, fence=fence)
    kept = mask.copy()
    kept[mask] = (values >= lower) & (values <= upper)
    logger.debug(
        "Outlier rejection: fences [%.4f, %.4f], %d of %d voxels removed",
        lower,
        upper,
        values.size - int(kept.sum()),
        values.size,
    )
    return kept


def summed_signal(stack, scale_factors, bias_field):
    """Return ``sum_j c_j * tissue_j / bias`` over the full grid."""
    return stack @ np.asarray(scale_factors, dtype=np.float64) / bias_field


def estimate_scale_factors(
    stack,
    bias_field,
    initial_mask,
    mask,
    *,
    previous=None,
    check_convergence=True,
    max_iter=DEFAULT_MAX_ITER,
    tol=CONVERGENCE_TOL,
):
    """Robust scale factor estimation with iterative outlier rejection.

    Each iteration solves for the scale factors on the current working
    mask. Unless converged, the working mask is then rebuilt from
    ``initial_mask`` and the summed scaled signal, and voxels whose log
    lies outside the quartile fences are removed from it.

    Parameters
    ----------
    stack : ndarray
        Tissue stack, shape (X, Y, Z, N).
    bias_field : ndarray
        Image-domain bias field, shape (X, Y, Z).
    initial_mask : ndarray
        Fixed 3D mask every working mask is derived from.
    mask : ndarray
        Working mask to start from.
    previous : ndarray, optional
        Scale factors from the previous iteration.
    check_convergence : bool, optional
        Test relative change against ``previous``.
    max_iter : int, optional
        Iterations run while ``iteration < max_iter``, starting at 1.
    tol : float, optional
        Mean relative change below which the factors are converged.

    Returns
    -------
    scale_factors : ndarray
        Final scale factors, shape (N,).
    mask : ndarray
        Final working mask.
    converged : bool
    """
    scale_factors = previous
    converged = False
    norm_iter = 1
    while not converged and norm_iter < max_iter:
        logger.debug("norm iteration: %d", norm_iter)
        scale_factors = solve_scale_factors(stack, bias_field, mask)

        if check_convergence and previous is not None:
            change = np.abs(previous - scale_factors) / previous
            logger.debug(
                "percentage change in estimated scale factors: %g",
                change.mean() * 100,
            )
            converged = change.mean() < tol

        if not converged:
            # refine on the linear sum, fence on its log
            summed = summed_signal(stack, scale_factors, bias_field)
            mask = refine_mask(summed, initial_mask)
            with np.errstate(divide="ignore", invalid="ignore"):
                mask = reject_outliers(np.log(summed), mask)

        previous = scale_factors
        norm_iter += 1

    return scale_factors, mask, converged


def _check_inputs(tissues, mask, affine, value, max_iter):
    if len(tissues) < 2:
        raise ValueError("At least two tissue types must be provided")
    if value <= 0:
        raise ValueError("Intensity normalisation value must be strictly positive.")
    if max_iter < 1:
        raise ValueError(f"max_iter must be at least 1, got {max_iter}")
    if np.shape(affine) != (4, 4):
        raise ValueError(f"affine must be 4x4, got {np.shape(affine)}")
    for i, tissue in enumerate(tissues):
        if np.shape(tissue)[:3] != np.shape(mask):
            raise ValueError(
                f"Tissue {i} has shape {np.shape(tissue)}, which does not "
                f"match the mask shape {np.shape(mask)}"
            )


def apply_normalization(tissues, scale_factors, bias_field, *, independent=False):
    """Apply scale factors and bias field to the tissue volumes.

    Parameters
    ----------
    tissues : sequence of ndarray
        Tissue volumes, 3D or 4D.
    scale_factors : ndarray
        Per-tissue factors, shape (N,).
    bias_field : ndarray
        3D image-domain bias field.
    independent : bool, optional
        Apply each tissue's own factor. Otherwise every tissue uses the
        geometric mean of all factors.

    Returns
    -------
    normalized : list of ndarray
        ``max(0, c_j * tissue_j / bias)`` per tissue; floating inputs keep
        their dtype.
    applied : ndarray
        Scale factors actually applied, shape (N,).
    """
    applied = np.asarray(scale_factors, dtype=np.float64)
    if not independent:
        applied = np.full_like(applied, geometric_mean(applied))

    normalized = []
    for tissue, factor in zip(tissues, applied):
        tissue = np.asarray(tissue)
        bias = bias_field if tissue.ndim == 3 else bias_field[..., None]
        out = np.maximum(factor * tissue.astype(np.float64) / bias, 0)
        if np.issubdtype(tissue.dtype, np.floating):
            out = out.astype(tissue.dtype)
        normalized.append(out)
    return normalized, applied


def mtlog_normalize(
    tissues,
    mask,
    affine,
    *,
    value=DEFAULT_NORM_VALUE,
    independent=False,
    max_iter=DEFAULT_MAX_ITER,
    return_bias_field=False,
    return_mask=False,
):
    """Multi-tissue log-domain intensity normalisation and bias correction.

    Parameters
    ----------
    tissues : sequence of ndarray
        N >= 2 tissue compartment volumes on the grid of ``mask``. 4D inputs
        (e.g. SH coefficients) are estimated from their first volume and
        corrected as a whole.
    mask : ndarray
        3D binary mask to compute the normalisation within.
    affine : ndarray
        4x4 voxel to scanner transform of the tissue grid.
    value : float, optional
        Value the summed tissue compartments are normalised to.
    independent : bool, optional
        Normalise each tissue with its own scale factor instead of a common
        one.
    max_iter : int, optional
        Number of iterations; the outer loop runs ``max_iter - 1`` times.
    return_bias_field : bool, optional
        Also return the image-domain bias field.
    return_mask : bool, optional
        Also return the final working mask, which excludes the outlier
        regions ignored by the bias field fit.

    Returns
    -------
    normalized : list of ndarray
        Bias corrected, scaled, non-negative tissue volumes.
    scale_factors : ndarray
        Scale factors applied to each tissue.
    bias_field : ndarray
        3D bias field (only if ``return_bias_field``).
    mask : ndarray
        Final working mask (only if ``return_mask``).
    """
    mask = np.asarray(mask, dtype=bool)
    _check_inputs(tissues, mask, affine, value, max_iter)

    raw_sum = sum(_estimation_volume(t).astype(np.float64) for t in tissues)
    initial_mask = refine_mask(raw_sum, mask)
    if not initial_mask.any():
        raise ValueError(
            "Error in automatic mask generation. Mask contains no voxels"
        )

    stack = build_tissue_stack(tissues)
    log_norm_value = np.log(value)

    bias_field = np.ones(mask.shape, dtype=np.float64)
    scale_factors = np.ones(stack.shape[-1], dtype=np.float64)
    working_mask = initial_mask.copy()
    previous = None

    for iteration in range(1, max_iter):
        logger.debug("iteration: %d", iteration)
        scale_factors, working_mask, _ = estimate_scale_factors(
            stack,
            bias_field,
            initial_mask,
            working_mask,
            previous=previous,
            check_convergence=iteration > 1,
            max_iter=max_iter,
        )
        previous = scale_factors
        logger.info("scale factors: %s", np.array2string(scale_factors))

        _, log_bias = fit_log_bias_field(
            stack,
            working_mask,
            scale_factors,
            affine,
            log_norm_value=log_norm_value,
        )
        bias_field = np.exp(log_bias)

    normalized, applied = apply_normalization(
        tissues, scale_factors, bias_field, independent=independent
    )

    result = (normalized, applied)
    if return_bias_field:
        result += (bias_field,)
    if return_mask:
        result += (working_mask,)
    return result
