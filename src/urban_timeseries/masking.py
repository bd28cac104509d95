from __future__ import annotations
from typing import Mapping, Optional
import logging

import numpy as np

from .errors import ShapeMismatchError
from .types import Provenance, RasterStack

logger = logging.getLogger("urban_timeseries")

STAGE = "mask_filter"


def build_validity_mask(raster: np.ndarray, mask_value: int = 1) -> np.ndarray:
    """Boolean validity grid: True where the mask raster equals ``mask_value``."""
    return np.asarray(raster) == mask_value


def check_alignment(stack: RasterStack, grid_shape, profile: Optional[Mapping] = None) -> None:
    """Raise ShapeMismatchError unless the grid matches the stack's shape and georeferencing."""
    if tuple(grid_shape) != tuple(stack.shape):
        raise ShapeMismatchError(f"Mask shape {tuple(grid_shape)} does not match stack shape {stack.shape}")
    if not profile or not stack.profile:
        return
    for key in ("crs", "transform"):
        a, b = stack.profile.get(key), profile.get(key)
        if a is not None and b is not None and a != b:
            raise ShapeMismatchError(f"Mask {key} {b} does not match stack {key} {a}")


def mask_coverage(validity: np.ndarray) -> float:
    return float(validity.mean()) if validity.size else 0.0


def apply_validity_mask(stack: RasterStack, validity: np.ndarray, profile: Optional[Mapping] = None) -> RasterStack:
    """Zero every year of ``stack`` where ``validity`` is False; the same mask for all years."""
    validity = np.asarray(validity, dtype=bool)
    check_alignment(stack, validity.shape, profile)
    out = stack.data.astype(bool) & validity[np.newaxis, :, :]
    logger.info("%s: valid area %.1f%% of grid", STAGE, 100 * mask_coverage(validity))
    rules = {y: "zero outside validity mask" for y in stack.years}
    return stack.derive(out, Provenance(STAGE, rules, {"filter_effect": "pixels_outside_spatial_mask_set_to_zero"}))
