from pathlib import Path
from typing import Optional, get_type_hints

import numpy as np
import numpy.testing as npt
import pytest

from mtnorm.io.image import load_nifti, read_scale_factor, save_nifti
from mtnorm.workflows.cli import build_parser, mtnorm_main
from mtnorm.workflows.normalize import MTLogNormFlow, MTNormConfig


def _write_tissues(out_dir, *, shape=(12, 12, 10), rng=None):
    """Write WM/GM/CSF maps with a smooth bias and a spherical mask."""
    if rng is None:
        rng = np.random.default_rng(0)
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    affine[:3, 3] = -(np.array(shape) - 1)

    ii, jj, kk = np.indices(shape)
    x, y, z = 2 * ii - (shape[0] - 1), 2 * jj - (shape[1] - 1), 2 * kk - (shape[2] - 1)
    bias = np.exp(0.03 * x + 0.01 * y - 0.02 * z)

    wm = rng.uniform(0.3, 0.6, shape)
    gm = rng.uniform(0.1, 0.3, shape)
    csf = 1.0 - wm - gm

    paths = []
    for name, scale, frac in (("wm", 0.9, wm), ("gm", 0.4, gm), ("csf", 1.5, csf)):
        fname = Path(out_dir) / f"{name}.nii.gz"
        save_nifti(fname, (scale * frac * bias).astype(np.float32), affine)
        paths.append(fname)

    c = (np.array(shape) - 1) / 2.0
    mask = ((ii - c[0]) ** 2 + (jj - c[1]) ** 2 + (kk - c[2]) ** 2) < 4.5**2
    mask_fname = Path(out_dir) / "mask.nii.gz"
    save_nifti(mask_fname, mask.astype(np.uint8), affine)
    return paths, mask_fname, mask


def _input_output(paths, out_dir):
    args = []
    for p in paths:
        args += [str(p), str(Path(out_dir) / p.name.replace(".nii.gz", "_norm.nii.gz"))]
    return args


def test_config_from_arguments():
    config = MTNormConfig.from_arguments(
        ["a.nii", "a_out.nii", "b.nii", "b_out.nii"],
        "mask.nii",
        value=1,
        max_iter="5",
        out_bias="bias.nii",
    )
    assert config.tissue_pairs == [("a.nii", "a_out.nii"), ("b.nii", "b_out.nii")]
    assert config.value == 1.0
    assert config.max_iter == 5
    assert not config.independent
    assert config.output_files() == {
        "tissue_0": "a_out.nii",
        "tissue_1": "b_out.nii",
        "bias": "bias.nii",
    }


def test_config_optional_outputs():
    hints = get_type_hints(MTNormConfig)
    assert hints["out_bias"] == Optional[str]
    assert hints["out_mask"] == Optional[str]

    config = MTNormConfig.from_arguments(["a", "a_out", "b", "b_out"], "mask")
    assert config.out_bias is None
    assert config.out_mask is None
    assert set(config.output_files()) == {"tissue_0", "tissue_1"}


@pytest.mark.parametrize(
    "input_output, kwargs, message",
    [
        (["a", "a_out", "b"], {}, "must be even"),
        (["a", "a_out"], {}, "At least two tissue types"),
        (["a", "a_out", "b", "b_out"], {"value": 0}, "strictly positive"),
        (["a", "a_out", "b", "b_out"], {"max_iter": 0}, "maxiter"),
    ],
)
def test_config_validation(input_output, kwargs, message):
    with pytest.raises(ValueError, match=message):
        MTNormConfig.from_arguments(input_output, "mask", **kwargs)


def test_mtlognorm_flow(tmp_path):
    paths, mask_fname, mask = _write_tissues(tmp_path)
    out_dir = tmp_path / "out"
    args = _input_output(paths, out_dir)
    bias_fname = out_dir / "bias.nii.gz"
    check_fname = out_dir / "check.nii.gz"

    flow = MTLogNormFlow()
    factors = flow.run(
        args, mask_fname, value=1.0, bias=bias_fname, maxiter=5, check=check_fname
    )

    assert len(factors) == 3
    npt.assert_allclose(factors, factors[0])

    summed = 0
    for out in args[1::2]:
        assert Path(out).is_file()
        data, _ = load_nifti(out)
        assert data.min() >= 0
        npt.assert_allclose(read_scale_factor(out), factors[0], rtol=1e-6)
        summed = summed + data

    bias, affine = load_nifti(bias_fname)
    assert bias.shape == mask.shape
    assert np.all(bias > 0)
    npt.assert_allclose(affine[:3, :3], np.diag([2.0, 2.0, 2.0]))

    check, _ = load_nifti(check_fname)
    assert not (check.astype(bool) & ~mask).any()

    raw = sum(load_nifti(p)[0] for p in paths)
    cov = summed[mask].std() / summed[mask].mean()
    cov_raw = raw[mask].std() / raw[mask].mean()
    assert cov < cov_raw
    assert set(flow.last_generated_outputs) == {
        "tissue_0",
        "tissue_1",
        "tissue_2",
        "bias",
        "check",
    }


def test_mtlognorm_flow_independent(tmp_path):
    paths, mask_fname, mask = _write_tissues(tmp_path)
    args = _input_output(paths, tmp_path)

    factors = MTLogNormFlow().run(args, mask_fname, value=1.0, independent=True)

    assert not np.allclose(factors, factors[0])
    summed = sum(load_nifti(out)[0] for out in args[1::2])
    npt.assert_allclose(np.median(summed[mask]), 1.0, rtol=0.05)


def test_mtlognorm_flow_existing_outputs(tmp_path):
    paths, mask_fname, _ = _write_tissues(tmp_path)
    args = _input_output(paths, tmp_path)
    save_nifti(args[1], np.zeros((2, 2, 2), dtype=np.float32), np.eye(4))

    with pytest.raises(ValueError, match="--force"):
        MTLogNormFlow().run(args, mask_fname, maxiter=2)
    assert load_nifti(args[1])[0].shape == (2, 2, 2)

    MTLogNormFlow(force=True).run(args, mask_fname, maxiter=2)
    assert load_nifti(args[1])[0].shape == (12, 12, 10)


def test_mtlognorm_flow_dimension_mismatch(tmp_path):
    paths, mask_fname, _ = _write_tissues(tmp_path)
    save_nifti(paths[1], np.ones((6, 6, 6), dtype=np.float32), np.eye(4))
    with pytest.raises(ValueError, match="do not match"):
        MTLogNormFlow().run(_input_output(paths, tmp_path / "out"), mask_fname)


def test_mtlognorm_flow_4d_tissue(tmp_path):
    paths, mask_fname, _ = _write_tissues(tmp_path)
    wm, affine = load_nifti(paths[0])
    sh = np.stack([wm, 0.1 * wm, -0.05 * wm], axis=-1)
    save_nifti(paths[0], sh, affine)
    args = _input_output(paths, tmp_path / "out")

    MTLogNormFlow().run(args, mask_fname, maxiter=3)

    out, _ = load_nifti(args[1])
    assert out.shape == sh.shape
    npt.assert_allclose(out[..., 1], 0.1 * out[..., 0], rtol=1e-5, atol=1e-7)
    npt.assert_array_equal(out[..., 2], 0)


def test_cli_parser_defaults():
    args = build_parser().parse_args(["a", "b", "c", "d", "--mask", "m"])
    assert args.input_output == ["a", "b", "c", "d"]
    assert args.value == pytest.approx(0.282094)
    assert args.maxiter == 10
    assert not args.independent
    assert args.bias is None
    assert args.check is None


def test_cli_main(tmp_path):
    paths, mask_fname, _ = _write_tissues(tmp_path)
    args = _input_output(paths, tmp_path / "out")

    assert mtnorm_main(args + ["--mask", str(mask_fname), "--maxiter", "3"]) == 0
    assert all(Path(out).is_file() for out in args[1::2])

    # outputs exist now and --force was not given
    assert mtnorm_main(args + ["--mask", str(mask_fname)]) == 1
    assert mtnorm_main(args[:-1] + ["--mask", str(mask_fname)]) == 1
