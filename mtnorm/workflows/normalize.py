from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np

from mtnorm.io.image import load_nifti, save_nifti, scale_factor_description
from mtnorm.normalize.mtlognorm import (
    DEFAULT_MAX_ITER,
    DEFAULT_NORM_VALUE,
    mtlog_normalize,
)
from mtnorm.utils.logging import logger
from mtnorm.workflows.workflow import Workflow


@dataclass
class MTNormConfig:
    """Resolved options of a multi-tissue normalisation run.

    Attributes
    ----------
    tissue_pairs : list[tuple[str, str]]
        (input, output) path of every tissue compartment.
    mask : str
        Mask to compute the normalisation within.
    value : float
        Value the summed tissue compartments are normalised to.
    independent : bool
        Normalise each tissue type independently.
    max_iter : int
        Number of iterations.
    out_bias : str or None
        Where to save the estimated bias field.
    out_mask : str or None
        Where to save the final mask used for the bias field fit.
    """

    tissue_pairs: list
    mask: str
    value: float = DEFAULT_NORM_VALUE
    independent: bool = False
    max_iter: int = DEFAULT_MAX_ITER
    out_bias: Optional[str] = None
    out_mask: Optional[str] = None

    @classmethod
    def from_arguments(
        cls,
        input_output,
        mask,
        *,
        value=DEFAULT_NORM_VALUE,
        independent=False,
        max_iter=DEFAULT_MAX_ITER,
        out_bias=None,
        out_mask=None,
    ):
        """Build and validate a configuration from a flat path list.

        ``input_output`` alternates input and output tissue files:
        ``[wm, wm_norm, gm, gm_norm, csf, csf_norm]``.
        """
        input_output = [str(p) for p in input_output]
        if len(input_output) % 2:
            raise ValueError(
                "The number of input arguments must be even. There must be an "
                "output file provided for every input tissue image"
            )
        if len(input_output) < 4:
            raise ValueError("At least two tissue types must be provided")
        if mask is None:
            raise ValueError("A mask is required to compute the normalisation")
        value = float(value)
        if value <= 0:
            raise ValueError("Intensity normalisation value must be strictly positive.")
        max_iter = int(max_iter)
        if max_iter < 1:
            raise ValueError(f"maxiter must be at least 1, got {max_iter}")

        pairs = list(zip(input_output[::2], input_output[1::2]))
        return cls(
            tissue_pairs=pairs,
            mask=str(mask),
            value=value,
            independent=bool(independent),
            max_iter=max_iter,
            out_bias=None if out_bias is None else str(out_bias),
            out_mask=None if out_mask is None else str(out_mask),
        )

    def output_files(self):
        """Return every file the run writes, keyed by role."""
        outputs = {f"tissue_{i}": out for i, (_, out) in enumerate(self.tissue_pairs)}
        if self.out_bias is not None:
            outputs["bias"] = self.out_bias
        if self.out_mask is not None:
            outputs["check"] = self.out_mask
        return outputs


class MTLogNormFlow(Workflow):
    @classmethod
    def get_short_name(cls):
        return "mtnorm"

    def run(
        self,
        input_output,
        mask,
        value=DEFAULT_NORM_VALUE,
        bias=None,
        independent=False,
        maxiter=DEFAULT_MAX_ITER,
        check=None,
    ):
        """Multi-tissue informed log-domain intensity normalisation.

        Inputs N tissue components (e.g. from multi-tissue CSD) and outputs
        N bias corrected, intensity normalised tissue components. By default
        a common global normalisation factor is determined for all tissue
        types; with ``independent`` each tissue type gets its own factor.

        Parameters
        ----------
        input_output : list of string or Path
            Input and output tissue files, alternating:
            ``wm.nii.gz wm_norm.nii.gz gm.nii.gz gm_norm.nii.gz ...``.
        mask : string or Path
            Mask to compute the normalisation within, e.g. a brain mask.
        value : float, optional
            Value the summed tissue compartments are normalised to
            (default: sqrt(1/(4*pi))).
        bias : string or Path, optional
            Output the estimated bias field.
        independent : bool, optional
            Intensity normalise each tissue type independently.
        maxiter : int, optional
            Number of iterations.
        check : string or Path, optional
            Output the final mask used to compute the bias field. It excludes
            outlier regions ignored by the bias field fit; these regions are
            still corrected based on the other image data.

        Returns
        -------
        scale_factors : ndarray
            Scale factor applied to each tissue.
        """
        config = MTNormConfig.from_arguments(
            input_output,
            mask,
            value=value,
            independent=independent,
            max_iter=maxiter,
            out_bias=bias,
            out_mask=check,
        )

        if not self.set_outputs(config.output_files()):
            raise ValueError(
                "Some output paths exist. "
                "If you want to overwrite please use the --force option."
            )

        tissues = []
        headers = []
        affine = None
        for in_path, _ in config.tissue_pairs:
            logger.info(f"Loading tissue compartment {in_path}")
            data, tissue_affine, img = load_nifti(in_path, return_img=True)
            if affine is None:
                affine = tissue_affine
            elif data.shape[:3] != tissues[0].shape[:3]:
                raise ValueError(
                    f"Dimensions of {in_path} {data.shape[:3]} do not match "
                    f"{config.tissue_pairs[0][0]} {tissues[0].shape[:3]}"
                )
            tissues.append(data)
            headers.append(img.header)

        mask_data, _ = load_nifti(config.mask)
        if mask_data.shape[:3] != tissues[0].shape[:3]:
            raise ValueError(
                f"Mask dimensions {mask_data.shape[:3]} do not match tissue "
                f"dimensions {tissues[0].shape[:3]}"
            )
        if mask_data.ndim > 3:
            mask_data = mask_data[..., 0]

        normalized, scale_factors, bias_field, final_mask = mtlog_normalize(
            tissues,
            mask_data.astype(bool),
            affine,
            value=config.value,
            independent=config.independent,
            max_iter=config.max_iter,
            return_bias_field=True,
            return_mask=True,
        )

        for out_path in self.flat_outputs:
            Path(out_path).parent.mkdir(parents=True, exist_ok=True)

        if config.out_bias is not None:
            save_nifti(config.out_bias, bias_field.astype(np.float32), affine)
            logger.info(f"Bias field saved as {config.out_bias}")

        if config.out_mask is not None:
            save_nifti(config.out_mask, final_mask.astype(np.float32), affine)
            logger.info(f"Outlier-rejected mask saved as {config.out_mask}")

        for (_, out_path), data, header, factor in zip(
            config.tissue_pairs, normalized, headers, scale_factors
        ):
            save_nifti(
                out_path,
                data.astype(np.float32),
                affine,
                hdr=header,
                description=scale_factor_description(factor),
            )
            logger.info(f"Normalised tissue saved as {out_path} (scale factor {factor:g})")

        return scale_factors
