# tests/test_cli.py
import os
import sys
import subprocess
from pathlib import Path

import numpy as np
import rasterio
from rasterio.transform import from_origin

SRC = Path(__file__).resolve().parents[1] / "src"
TRANSFORM = from_origin(-58.4, -34.6, 0.00027, 0.00027)
YEARS = list(range(2000, 2005))


def _write_prob(path: Path, layers: dict, transform=TRANSFORM):
    """Write a probability stack with one band per year, described as classification_<year>."""
    years = sorted(layers)
    H, W = layers[years[0]].shape
    path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(path, "w", driver="GTiff", width=W, height=H, count=len(years),
                       dtype="float32", crs="EPSG:4326", transform=transform) as dst:
        for i, y in enumerate(years, start=1):
            dst.write(layers[y].astype(np.float32), i)
            dst.set_band_description(i, f"classification_{y}")


def _write_mask(path: Path, arr: np.ndarray):
    H, W = arr.shape
    with rasterio.open(path, "w", driver="GTiff", width=W, height=H, count=1,
                       dtype="uint8", crs="EPSG:4326", transform=TRANSFORM) as dst:
        dst.write(arr.astype(np.uint8), 1)


def _scene(years=YEARS):
    """Stable 10x10 settlement plus an 8x8 patch that shows up in 2002 only."""
    layers = {}
    for y in years:
        arr = np.full((30, 30), 5.0, dtype=np.float32)
        arr[5:15, 5:15] = 80.0
        if y == 2002:
            arr[18:26, 18:26] = 80.0
        layers[y] = arr
    return layers


def _half_mask():
    mask = np.ones((30, 30), dtype=np.uint8)
    mask[:, :10] = 0
    return mask


def _run_cli(tmpdir: Path, *args, check=True):
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(SRC), env.get("PYTHONPATH")) if p)
    cmd = [sys.executable, "-m", "urban_timeseries.cli", *args]
    res = subprocess.run(cmd, cwd=tmpdir, capture_output=True, text=True, env=env)
    if check and res.returncode != 0:
        raise AssertionError(f"CLI failed:\nSTDOUT:\n{res.stdout}\nSTDERR:\n{res.stderr}")
    return res


def _run(tmpdir: Path, inputs: str, mask: str, outdir: Path, *extra, check=True):
    return _run_cli(tmpdir, "run", inputs, "--mask", mask, "--outdir", str(outdir),
                    "--start-year", "2000", "--end-year", "2004", *extra, check=check)


def test_cli_run_full_cascade(tmp_path: Path):
    _write_prob(tmp_path / "prob_GID_72.tif", _scene())
    _write_mask(tmp_path / "mask.tif", _half_mask())
    outdir = tmp_path / "out"

    _run(tmp_path, "prob_GID_*.tif", "mask.tif", outdir)

    out = outdir / "urban_mask_filter_2000_2004_v1_GID_72.tif"
    assert out.exists()
    with rasterio.open(out) as ds:
        arr = ds.read()
        assert arr.dtype == np.uint8
        assert ds.count == 5
        assert ds.descriptions[0] == "classification_2000"
        assert ds.tags()["stage"] == "mask_filter"
        assert ds.tags()["stages"].split(",") == [
            "spatial_filter", "temporal_filter1", "temporal_filter2",
            "temporal_filter3", "temporal_filter4", "mask_filter"]
    # stable settlement survives inside the valid area
    assert (arr[:, 9, 12] == 24).all()
    # masked columns are empty in every year
    assert not arr[:, :, :10].any()
    # the one-year patch is removed by the temporal filters
    assert not arr[:, 21, 21].any()
    assert set(np.unique(arr)) <= {0, 24}
    assert (tmp_path / "logs" / "urban_timeseries.log").exists()


def test_cli_missing_year_is_carried_by_continuity(tmp_path: Path):
    layers = _scene(years=YEARS[:-1])  # no 2004 band
    _write_prob(tmp_path / "prob_GID_72.tif", layers)
    _write_mask(tmp_path / "mask.tif", _half_mask())
    outdir = tmp_path / "out"

    res = _run(tmp_path, "prob_GID_*.tif", "mask.tif", outdir)
    assert "missing_year_data" in res.stderr

    with rasterio.open(outdir / "urban_mask_filter_2000_2004_v1_GID_72.tif") as ds:
        last = ds.read(5)
    assert last[9, 12] == 24


def test_cli_skips_patagonia_unless_included(tmp_path: Path):
    _write_prob(tmp_path / "prob_GID_72.tif", _scene())
    _write_prob(tmp_path / "prob_GID_13.tif", _scene())
    _write_mask(tmp_path / "mask.tif", _half_mask())

    _run(tmp_path, "prob_GID_*.tif", "mask.tif", tmp_path / "a")
    assert (tmp_path / "a" / "urban_mask_filter_2000_2004_v1_GID_72.tif").exists()
    assert not (tmp_path / "a" / "urban_mask_filter_2000_2004_v1_GID_13.tif").exists()

    _run(tmp_path, "prob_GID_*.tif", "mask.tif", tmp_path / "b", "--include-patagonia")
    assert (tmp_path / "b" / "urban_mask_filter_2000_2004_v1_GID_13.tif").exists()


def test_cli_failed_tile_does_not_stop_others(tmp_path: Path):
    _write_prob(tmp_path / "prob_GID_72.tif", _scene())
    _write_prob(tmp_path / "prob_GID_77.tif", _scene())
    _write_mask(tmp_path / "mask_GID_72.tif", _half_mask())
    _write_mask(tmp_path / "mask_GID_77.tif", np.ones((12, 12), dtype=np.uint8))
    outdir = tmp_path / "out"

    res = _run(tmp_path, "prob_GID_*.tif", "mask_GID_{gid}.tif", outdir, check=False)
    assert res.returncode == 1
    assert "shape_mismatch" in res.stderr
    assert (outdir / "urban_mask_filter_2000_2004_v1_GID_72.tif").exists()
    assert not (outdir / "urban_mask_filter_2000_2004_v1_GID_77.tif").exists()


def test_cli_dump_stages_and_temporal_rerun(tmp_path: Path):
    _write_prob(tmp_path / "prob_GID_72.tif", _scene())
    _write_mask(tmp_path / "mask.tif", _half_mask())
    outdir = tmp_path / "out"

    _run(tmp_path, "prob_GID_*.tif", "mask.tif", outdir, "--dump-stages", "--workers", "2")

    stages = ["spatial_filter", "temporal_filter1", "temporal_filter2",
              "temporal_filter3", "temporal_filter4", "mask_filter"]
    for stage in stages:
        assert (outdir / f"urban_{stage}_2000_2004_v1_GID_72.tif").exists(), stage

    with rasterio.open(outdir / "urban_spatial_filter_2000_2004_v1_GID_72.tif") as ds:
        spatial = ds.read()
    # the one-year patch is still present after the spatial filter
    assert spatial[2, 21, 21] == 24

    rerun = tmp_path / "rerun"
    _run_cli(tmp_path, "temporal", str(outdir / "urban_spatial_filter_*_GID_72.tif"),
             "--mask", "mask.tif", "--outdir", str(rerun),
             "--start-year", "2000", "--end-year", "2004")
    with rasterio.open(outdir / "urban_mask_filter_2000_2004_v1_GID_72.tif") as a, \
            rasterio.open(rerun / "urban_mask_filter_2000_2004_v1_GID_72.tif") as b:
        np.testing.assert_array_equal(a.read(), b.read())


def test_cli_show_config(tmp_path: Path):
    res = _run_cli(tmp_path, "show-config")
    assert "configured_gids: 28" in res.stdout
    assert "excluded_gids: 11" in res.stdout
    assert "GID   72" in res.stdout
    assert "GID   13" not in res.stdout
