from __future__ import annotations
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple
import glob
import math

import numpy as np
import rasterio
from rasterio.io import DatasetReader
from rasterio.transform import from_origin

from .masking import build_validity_mask
from .thresholds import region_for
from .types import BAND_YEAR_RE, Options, RasterStack, band_name, gid_from_path


def discover_inputs(patterns: Sequence[str]) -> List[Path]:
    """Expand glob patterns and sort by the GID encoded in the file name."""
    files: List[Path] = []
    for patt in patterns:
        files.extend(Path(f) for f in glob.glob(patt))
    files = list({f.resolve() for f in files})  # unique
    if not files:
        raise SystemExit("No input files found.")

    def sort_key(p: Path):
        gid = gid_from_path(p)
        return (gid, p.name) if gid is not None else (math.inf, p.name)

    files.sort(key=sort_key)
    return files


def band_years(ds: DatasetReader) -> Dict[int, int]:
    """Map year -> 1-based band index from ``classification_<year>`` band descriptions."""
    out: Dict[int, int] = {}
    for idx, desc in enumerate(ds.descriptions, start=1):
        m = BAND_YEAR_RE.match(desc or "")
        if m:
            out[int(m.group("year"))] = idx
    return out


def _single_band_profile(ds: DatasetReader) -> dict:
    prof = ds.profile.copy()
    prof.update(count=1)
    return prof


def _read_band(ds: DatasetReader, idx: int) -> np.ndarray:
    arr = ds.read(idx).astype("float32")
    mask = ds.read_masks(idx) == 0
    arr[mask] = np.nan
    return arr


def _read_layers(path: Path, years: Sequence[int]) -> Tuple[Dict[int, np.ndarray], dict]:
    with rasterio.open(path) as ds:
        profile = _single_band_profile(ds)
        index = band_years(ds)
        layers = {y: _read_band(ds, index[y]) for y in years if y in index}
    return layers, profile


def read_probability_stack(path: Path, years: Sequence[int], gid: Optional[int] = None) -> Tuple[RasterStack, Tuple[int, ...]]:
    """Probability stack (0-100, NaN where masked) for ``years`` and the years with no band.

    Missing years come back as all-NaN layers; callers decide the policy.
    """
    layers, profile = _read_layers(path, years)
    gid = gid if gid is not None else gid_from_path(path)
    return RasterStack.from_layers(layers, years, fill_value=np.nan, profile=profile, gid=gid)


def read_class_stack(path: Path, years: Sequence[int], urban_code: int, gid: Optional[int] = None) -> Tuple[RasterStack, Tuple[int, ...]]:
    """Binary stack from a class-code raster (urban where value == ``urban_code``)."""
    layers, profile = _read_layers(path, years)
    codes = {y: np.nan_to_num(a, nan=0) for y, a in layers.items()}
    gid = gid if gid is not None else gid_from_path(path)
    stack, missing = RasterStack.from_layers(codes, years, fill_value=0, profile=profile, gid=gid)
    return stack.is_urban(urban_code), missing


def read_validity_mask(path: Path, mask_value: int = 1) -> Tuple[np.ndarray, dict]:
    with rasterio.open(path) as ds:
        profile = _single_band_profile(ds)
        arr = ds.read(1, masked=True).filled(0)
    return build_validity_mask(arr, mask_value), profile


def output_path(outdir: Path, stage: str, opts: Options, gid: Optional[int]) -> Path:
    tile = f"_GID_{gid}" if gid is not None else ""
    return Path(outdir) / f"urban_{stage}_{opts.suffix}{tile}.tif"


def write_stack(path: Path, stack: RasterStack, opts: Options) -> Path:
    """Write a binary stack as uint8 {0, urban_code}, one band per year, with provenance tags."""
    path.parent.mkdir(parents=True, exist_ok=True)
    prof = dict(stack.profile)
    h, w = stack.shape
    prof.update(driver="GTiff", count=len(stack), dtype="uint8", nodata=None, height=h, width=w)
    prof.setdefault("crs", None)
    prof.setdefault("transform", from_origin(0, 0, 1, 1))
    data = stack.encode(opts.urban_code)
    stage = stack.provenance[-1].stage if stack.provenance else "unknown"
    rules = stack.rules()
    tags = {
        "stage": stage,
        "stages": ",".join(p.stage for p in stack.provenance),
        "first_year": stack.first_year,
        "last_year": stack.last_year,
        "urban_value": opts.urban_code,
        "version": opts.version,
        "include_patagonia": opts.include_patagonia,
        "processing_date": date.today().isoformat(),
    }
    if stack.gid is not None:
        tags.update(gid=stack.gid, region=region_for(stack.gid))
    with rasterio.open(path, "w", **prof) as dst:
        dst.write(data)
        dst.update_tags(**tags)
        for i, year in enumerate(stack.years, start=1):
            dst.set_band_description(i, band_name(year))
            if year in rules:
                dst.update_tags(i, rule=rules[year])
    return path
