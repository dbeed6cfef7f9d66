"""
=====================================================================
Multi-Tissue Intensity Normalisation and Bias Field Correction
=====================================================================

Why normalise tissue compartments?
----------------------------------

Multi-tissue spherical deconvolution splits every voxel of a diffusion
dataset into tissue compartments (white matter, grey matter, CSF). The
compartment maps inherit two nuisances from the acquisition:

* a smooth, spatially varying **bias field** from the coil sensitivity;
* a **global scale** that differs from subject to subject.

If the voxel-wise tissue densities really add up to a constant, the sum of
the compartments after removing both nuisances should be flat inside the
brain:

.. math::

   \\sum_j c_j \\, T_j(\\mathbf{x}) / B(\\mathbf{x}) = \\text{value}

How does mtnorm estimate it?
----------------------------

1. Solve for the scale factors :math:`c_j` by least squares on the masked
   voxels, rejecting voxels whose log-summed signal falls outside the
   quartile fences.
2. Fit a cubic polynomial of the scanner coordinates to the log of the
   scaled tissue sum: this is the log bias field.
3. Alternate both steps for a fixed number of iterations.

This example builds synthetic compartments with known scales and bias, and
checks how much of both the method recovers.
"""

import matplotlib.pyplot as plt
import numpy as np

from mtnorm.normalize import mtlog_normalize

###############################################################################
# Synthetic tissue compartments
# -----------------------------
# Three compartments whose fractions sum to one at every voxel, each with its
# own intensity scale, all modulated by the same smooth bias field.

rng = np.random.default_rng(2024)
shape = (40, 48, 36)
affine = np.diag([2.0, 2.0, 2.0, 1.0])
affine[:3, 3] = -(np.array(shape) - 1)

ii, jj, kk = np.indices(shape)
x, y, z = (2 * ii - (shape[0] - 1), 2 * jj - (shape[1] - 1), 2 * kk - (shape[2] - 1))
true_bias = np.exp(0.01 * x - 0.008 * y + 0.0002 * z**2)

wm = rng.uniform(0.2, 0.7, shape)
gm = rng.uniform(0.1, 0.25, shape)
csf = 1.0 - wm - gm
scales = np.array([1.8, 0.6, 1.1])
tissues = [s * f * true_bias for s, f in zip(scales, (wm, gm, csf))]

center = (np.array(shape) - 1) / 2.0
radii = np.array(shape) / 2.5
mask = (
    ((ii - center[0]) / radii[0]) ** 2
    + ((jj - center[1]) / radii[1]) ** 2
    + ((kk - center[2]) / radii[2]) ** 2
) < 1.0

print(f"Volume shape : {shape}")
print(f"Mask voxels  : {mask.sum()}")

###############################################################################
# Run the normalisation
# ---------------------
# ``independent=True`` keeps one scale factor per tissue; the default applies
# their geometric mean to every tissue so that relative tissue intensities
# are preserved.

normalized, factors, bias, final_mask = mtlog_normalize(
    tissues,
    mask,
    affine,
    independent=True,
    return_bias_field=True,
    return_mask=True,
)

expected = (1 / scales) / np.exp(np.mean(np.log(1 / scales)))
print(f"Estimated scale factors : {np.round(factors, 4)}")
print(f"Expected scale factors  : {np.round(expected, 4)}")
print(f"Voxels kept by outlier rejection: {final_mask.sum()} / {mask.sum()}")

###############################################################################
# Coefficient of variation of the summed compartments
# ----------------------------------------------------


def cov(img):
    vals = img[mask]
    return vals.std() / vals.mean()


raw_sum = sum(tissues)
corrected_sum = sum(normalized)
print(f"CoV before : {cov(raw_sum):.4f}")
print(f"CoV after  : {cov(corrected_sum):.4f}")

###############################################################################
# Visualise the central axial slice
# ---------------------------------

sl = shape[2] // 2
fig, axes = plt.subplots(1, 4, figsize=(16, 4))
panels = [
    (raw_sum, "Summed tissues"),
    (true_bias / true_bias[mask].mean(), "True bias (scaled)"),
    (bias / bias[mask].mean(), "Estimated bias (scaled)"),
    (corrected_sum, "Corrected sum"),
]
for ax, (img, title) in zip(axes, panels):
    im = ax.imshow(np.where(mask, img, np.nan)[:, :, sl].T, origin="lower")
    ax.set_title(title)
    ax.axis("off")
    fig.colorbar(im, ax=ax, fraction=0.046)
plt.tight_layout()
plt.savefig("multi_tissue_normalization.png", dpi=100, bbox_inches="tight")
