"""Command line entry point of the ``mtnorm`` program."""

import argparse
import sys

from mtnorm.normalize.mtlognorm import DEFAULT_MAX_ITER, DEFAULT_NORM_VALUE
from mtnorm.utils.logging import logger, set_log_level
from mtnorm.workflows.normalize import MTLogNormFlow

DESCRIPTION = """\
Multi-tissue informed log-domain intensity normalisation.

Inputs N tissue components (e.g. from multi-tissue CSD) and outputs N
corrected tissue components. Intensity normalisation is performed by either
determining a common global normalisation factor for all tissue types
(default) or by normalising each tissue type independently with a single
tissue-specific global scale factor.

Example usage: mtnorm wm.nii.gz wm_norm.nii.gz gm.nii.gz gm_norm.nii.gz
csf.nii.gz csf_norm.nii.gz --mask mask.nii.gz
"""


def build_parser():
    parser = argparse.ArgumentParser(
        prog=MTLogNormFlow.get_short_name(),
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "input_output",
        nargs="+",
        help="list of all input and output tissue compartment files. "
        "Any number of tissues can be normalised.",
    )
    parser.add_argument(
        "--mask",
        required=True,
        help="mask to compute the normalisation within, optimally a brain mask.",
    )
    parser.add_argument(
        "--value",
        type=float,
        default=DEFAULT_NORM_VALUE,
        help="value to which the summed tissue compartments will be "
        f"normalised (default: sqrt(1/(4*pi)) = {DEFAULT_NORM_VALUE})",
    )
    parser.add_argument("--bias", help="output the estimated bias field")
    parser.add_argument(
        "--independent",
        action="store_true",
        help="intensity normalise each tissue type independently",
    )
    parser.add_argument(
        "--maxiter",
        type=int,
        default=DEFAULT_MAX_ITER,
        help=f"number of iterations (default: {DEFAULT_MAX_ITER})",
    )
    parser.add_argument(
        "--check",
        help="output the final mask used to compute the bias field. It "
        "excludes outlier regions ignored by the bias field fit; these "
        "regions are still corrected based on the other image data.",
    )
    parser.add_argument(
        "--force", action="store_true", help="overwrite existing output files"
    )
    parser.add_argument(
        "--log_level",
        default="INFO",
        help="log level: DEBUG, INFO, WARNING, ERROR or CRITICAL",
    )
    return parser


def mtnorm_main(argv=None):
    args = build_parser().parse_args(argv)
    set_log_level(args.log_level)

    flow = MTLogNormFlow(force=args.force)
    try:
        flow.run(
            args.input_output,
            args.mask,
            value=args.value,
            bias=args.bias,
            independent=args.independent,
            maxiter=args.maxiter,
            check=args.check,
        )
    except ValueError as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(mtnorm_main())
