from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Tuple
import logging

import numpy as np
from scipy import ndimage

from .errors import IssueKind, IssueLog, UrbanTimeseriesError
from .thresholds import ThresholdTable, threshold_layer
from .types import MorphologyParams, Options, Provenance, RasterStack

logger = logging.getLogger("urban_timeseries")

STAGE = "spatial_filter"

# Components are counted with diagonal neighbours.
EIGHT_CONNECTED = np.ones((3, 3), dtype=bool)


def disk(radius: int) -> np.ndarray:
    """Circular structuring element: offsets within ``radius`` pixels of the centre."""
    r = int(radius)
    y, x = np.ogrid[-r:r + 1, -r:r + 1]
    return (x * x + y * y) <= r * r


def closing(mask: np.ndarray, radius: int = 1) -> np.ndarray:
    """Dilate then erode. Outside the grid counts as urban for the erosion so edges are not eaten."""
    se = disk(radius)
    grown = ndimage.binary_dilation(mask, structure=se, border_value=0)
    return ndimage.binary_erosion(grown, structure=se, border_value=1)


def opening(mask: np.ndarray, radius: int = 1) -> np.ndarray:
    """Erode then dilate."""
    se = disk(radius)
    shrunk = ndimage.binary_erosion(mask, structure=se, border_value=1)
    return ndimage.binary_dilation(shrunk, structure=se, border_value=0)


def component_sizes(mask: np.ndarray) -> np.ndarray:
    """Per-pixel size of the 8-connected component the pixel belongs to (0 off the mask)."""
    labels, n = ndimage.label(mask, structure=EIGHT_CONNECTED)
    if n == 0:
        return np.zeros(mask.shape, dtype=np.int64)
    counts = np.bincount(labels.ravel())
    counts[0] = 0
    return counts[labels]


def fill_small_holes(mask: np.ndarray, hole_size: int = 60) -> np.ndarray:
    """Set non-urban components smaller than ``hole_size`` pixels to urban."""
    holes = ~mask
    sizes = component_sizes(holes)
    return mask | (holes & (sizes < hole_size))


def remove_small_components(mask: np.ndarray, min_component: int = 5) -> np.ndarray:
    """Drop urban components of ``min_component`` pixels or fewer."""
    sizes = component_sizes(mask)
    return mask & (sizes > min_component)


def spatial_filter(urban: np.ndarray, params: MorphologyParams = MorphologyParams()) -> np.ndarray:
    """Closing, small-hole fill, opening and small-component removal, in that order."""
    m = np.asarray(urban, dtype=bool)
    m = closing(m, params.radius)
    m = fill_small_holes(m, params.hole_size)
    m = opening(m, params.radius)
    m = remove_small_components(m, params.min_component)
    return m


def reclass(thresholded: np.ndarray, filtered: np.ndarray, urban_code: int, nodata_code: int) -> np.ndarray:
    """Encode the filtered mask as {0, urban_code}; no-data pixels are always 0."""
    out = np.where(filtered, urban_code, 0).astype(np.uint8)
    out[thresholded == nodata_code] = 0
    return out


def filter_year(prob: np.ndarray, threshold: float, opts: Options) -> np.ndarray:
    """Threshold one probability layer and run the morphological filter; returns class codes."""
    thresholded = threshold_layer(prob, threshold, opts.nodata_code)
    filtered = spatial_filter(thresholded == 1, opts.morphology)
    return reclass(thresholded, filtered, opts.urban_code, opts.nodata_code)


def apply_spatial_filter(
    prob_stack: RasterStack,
    table: ThresholdTable,
    opts: Options,
    issues: Optional[IssueLog] = None,
    missing: Iterable[int] = (),
) -> Tuple[RasterStack, List[Tuple[int, Exception]]]:
    """Per-year threshold + morphology over a probability stack of one tile.

    Each year is an isolated unit: a year that fails is logged, returned in
    the failure list and zero-filled (not urban) in the output stack. Years in
    ``missing`` had no input layer and are zero-filled without filtering.
    Returns a binary stack and the per-year failures.
    """
    gid = prob_stack.gid
    missing = set(missing)
    out = np.zeros(prob_stack.data.shape, dtype=bool)
    rules: Dict[int, str] = {}
    failures: List[Tuple[int, Exception]] = []
    for i, (year, prob) in enumerate(prob_stack):
        if year in missing:
            if issues is not None:
                issues.add(IssueKind.MISSING_YEAR_DATA, "no probability layer; treated as not urban",
                           gid=gid, year=year, stage=STAGE)
            rules[year] = "missing layer, zero-filled"
            continue
        lookup = table.lookup(gid, year, opts, issues)
        thr = lookup.value
        try:
            thresholded = threshold_layer(prob, thr, opts.nodata_code)
            codes = reclass(thresholded, spatial_filter(thresholded == 1, opts.morphology),
                            opts.urban_code, opts.nodata_code)
        except (UrbanTimeseriesError, ValueError, MemoryError) as exc:
            logger.error("Spatial filter failed for GID %s year %s: %s", gid, year, exc)
            failures.append((year, exc))
            rules[year] = "failed, zero-filled"
            continue
        out[i] = codes == opts.urban_code
        if issues is not None and (thresholded == 1).any() and not out[i].any():
            issues.add(IssueKind.EMPTY_OUTPUT, "morphology removed every thresholded pixel; review manually",
                       gid=gid, year=year, stage=STAGE)
        source = f" ({lookup.source})" if lookup.is_fallback else ""
        rules[year] = f"prob >= {thr}{source}, close r={opts.morphology.radius}, " \
                      f"fill holes < {opts.morphology.hole_size}, open, drop <= {opts.morphology.min_component}"
        logger.debug("GID %s year %s: threshold %s, %d urban pixels", gid, year, thr, int(out[i].sum()))
    prov = Provenance(STAGE, rules, {
        "radius": opts.morphology.radius,
        "hole_size": opts.morphology.hole_size,
        "min_component": opts.morphology.min_component,
        "nodata_code": opts.nodata_code,
    })
    return prob_stack.derive(out, prov), failures
