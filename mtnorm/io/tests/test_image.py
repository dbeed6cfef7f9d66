import nibabel as nib
import numpy as np
import numpy.testing as npt
import pytest

from mtnorm.io.image import (
    load_nifti,
    read_scale_factor,
    save_nifti,
    scale_factor_description,
)


def _affine():
    affine = np.diag([2.0, 2.0, 2.5, 1.0])
    affine[:3, 3] = [-10, -12, 4]
    return affine


def test_save_load_nifti(tmp_path):
    fname = tmp_path / "vol.nii.gz"
    data = np.random.default_rng(0).normal(size=(4, 5, 6)).astype(np.float32)
    save_nifti(fname, data, _affine())

    loaded, affine = load_nifti(fname)
    npt.assert_array_equal(loaded, data)
    npt.assert_allclose(affine, _affine())

    loaded, affine, img = load_nifti(fname, return_img=True)
    assert isinstance(img, nib.Nifti1Image)
    assert loaded.dtype == np.float32


def test_save_nifti_dtype_and_header(tmp_path):
    src = tmp_path / "src.nii"
    save_nifti(src, np.ones((3, 3, 3, 4), dtype=np.int16), _affine())
    _, _, img = load_nifti(src, return_img=True)

    out = tmp_path / "out.nii"
    save_nifti(out, np.full((3, 3, 3, 4), 0.5), _affine(), hdr=img.header, dtype=np.float32)
    loaded, _ = load_nifti(out)
    assert loaded.shape == (3, 3, 3, 4)
    assert loaded.dtype == np.float32
    npt.assert_allclose(loaded, 0.5)


def test_scale_factor_tag(tmp_path):
    fname = tmp_path / "wm_norm.nii.gz"
    save_nifti(
        fname,
        np.zeros((2, 2, 2), dtype=np.float32),
        np.eye(4),
        description=scale_factor_description(1.2345678),
    )
    npt.assert_allclose(read_scale_factor(fname), 1.2345678)


def test_read_scale_factor_missing(tmp_path):
    fname = tmp_path / "plain.nii.gz"
    save_nifti(fname, np.zeros((2, 2, 2), dtype=np.float32), np.eye(4))
    assert read_scale_factor(fname) is None


def test_description_too_long(tmp_path):
    with pytest.raises(ValueError, match="80 bytes"):
        save_nifti(
            tmp_path / "x.nii", np.zeros((2, 2, 2)), np.eye(4), description="x" * 81
        )
