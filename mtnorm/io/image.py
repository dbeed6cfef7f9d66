"""Read and write NIfTI tissue volumes."""

import re

import nibabel as nib
import numpy as np

SCALE_FACTOR_KEY = "normalisation_scale_factor"


def load_nifti(fname, return_img=False, as_ndarray=True):
    """Load data and affine from a NIfTI file.

    Parameters
    ----------
    fname : str or Path
        Full path to a NIfTI file.
    return_img : bool, optional
        Whether to also return the nibabel image object.
    as_ndarray : bool, optional
        Convert the image proxy to an ``ndarray``.

    Returns
    -------
    data : ndarray
    affine : ndarray
        4x4 voxel to scanner transform.
    img : Nifti1Image
        Only returned when ``return_img`` is True.
    """
    img = nib.load(str(fname))
    data = np.asanyarray(img.dataobj) if as_ndarray else img.dataobj
    if return_img:
        return data, img.affine, img
    return data, img.affine


def save_nifti(fname, data, affine, hdr=None, dtype=None, description=None):
    """Save data to a NIfTI file.

    Parameters
    ----------
    fname : str or Path
        Output file name.
    data : ndarray
        Image data.
    affine : ndarray
        4x4 voxel to scanner transform.
    hdr : Nifti1Header, optional
        Header to copy geometry and metadata from.
    dtype : data-type, optional
        On-disk data type; defaults to the dtype of ``data``.
    description : str, optional
        Text stored in the ``descrip`` header field (at most 80 bytes).
    """
    if dtype is not None:
        data = data.astype(dtype)
    result_img = nib.Nifti1Image(data, affine, header=hdr)
    result_img.set_data_dtype(data.dtype)
    if description is not None:
        if len(description.encode()) > 80:
            raise ValueError(f"NIfTI description is limited to 80 bytes: {description}")
        result_img.header["descrip"] = description
    result_img.to_filename(str(fname))


def scale_factor_description(scale_factor):
    """Return the header tag recording a normalisation scale factor."""
    return f"{SCALE_FACTOR_KEY}={scale_factor:.9g}"


def read_scale_factor(fname):
    """Read the normalisation scale factor stored in a NIfTI header.

    Returns None when the file carries no scale factor tag.
    """
    header = nib.load(str(fname)).header
    descrip = header["descrip"].item()
    if isinstance(descrip, bytes):
        descrip = descrip.decode("latin-1")
    match = re.search(rf"{SCALE_FACTOR_KEY}=(\S+)", descrip)
    if match is None:
        return None
    return float(match.group(1))
