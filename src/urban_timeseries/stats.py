from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from .errors import IssueKind, IssueLog
from .types import RasterStack


@dataclass(frozen=True)
class YearStats:
    year: int
    before: int
    after: int

    @property
    def change_percent(self) -> float:
        if self.before == 0:
            return 0.0 if self.after == 0 else float("inf")
        return 100.0 * (self.after - self.before) / self.before

    @property
    def is_valid(self) -> bool:
        """For removal stages and the mask the urban count must not grow."""
        return self.after <= self.before


def pixel_area(profile) -> Optional[float]:
    """Area of one pixel in squared CRS units, from the profile's transform."""
    transform = profile.get("transform") if profile else None
    if transform is None:
        return None
    return abs(transform.a * transform.e - transform.b * transform.d)


def urban_counts(stack: RasterStack) -> Dict[int, int]:
    return {y: int(np.count_nonzero(layer)) for y, layer in stack}


def compare_stages(before: RasterStack, after: RasterStack) -> List[YearStats]:
    a, b = urban_counts(before), urban_counts(after)
    return [YearStats(y, a.get(y, 0), b.get(y, 0)) for y in after.years]


def flag_empty_outputs(before: RasterStack, after: RasterStack, stage: str, issues: IssueLog) -> List[int]:
    """Years where a stage emptied a tile that had urban pixels; reported, never corrected."""
    empty = [s.year for s in compare_stages(before, after) if s.before > 0 and s.after == 0]
    for year in empty:
        issues.add(IssueKind.EMPTY_OUTPUT, "stage removed every urban pixel; review manually",
                   gid=after.gid, year=year, stage=stage)
    return empty


def change_summary(stack: RasterStack) -> Dict[str, int]:
    """Pixels gained and lost between the first and last year of a stack."""
    first = stack.data[0].astype(bool)
    last = stack.data[-1].astype(bool)
    return {
        "first_year": stack.first_year,
        "last_year": stack.last_year,
        "gained": int((last & ~first).sum()),
        "lost": int((first & ~last).sum()),
        "stable_urban": int((first & last).sum()),
    }
