from __future__ import annotations
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple
import re

import numpy as np

from .errors import ShapeMismatchError, StackError

URBAN_CODE = 24
NODATA_CODE = 27

GID_RE = re.compile(r"GID_(?P<gid>\d+)", re.IGNORECASE)
BAND_YEAR_RE = re.compile(r"^classification_(?P<year>\d{4})$")


@dataclass(frozen=True)
class MorphologyParams:
    """Structuring-element radius and size limits (pixels) for the spatial filter."""
    radius: int = 1
    hole_size: int = 60       # holes smaller than this are filled
    min_component: int = 5    # urban components this size or smaller are dropped


@dataclass(frozen=True)
class Options:
    start_year: int = 1985
    end_year: int = 2024
    include_patagonia: bool = False
    urban_code: int = URBAN_CODE
    nodata_code: int = NODATA_CODE
    mask_value: int = 1
    default_threshold: int = 50
    degenerate_threshold: int = 95
    version: str = "1"
    morphology: MorphologyParams = field(default_factory=MorphologyParams)

    @property
    def years(self) -> Tuple[int, ...]:
        return tuple(range(self.start_year, self.end_year + 1))

    @property
    def suffix(self) -> str:
        return f"{self.start_year}_{self.end_year}_v{self.version}"


@dataclass(frozen=True)
class Provenance:
    """Audit record attached by each stage; carries no runtime behaviour."""
    stage: str
    rules: Mapping[int, str] = field(default_factory=dict)
    parameters: Mapping[str, object] = field(default_factory=dict)


def gid_from_path(p: Path) -> Optional[int]:
    m = GID_RE.search(Path(p).name)
    return int(m.group("gid")) if m else None


def band_name(year: int) -> str:
    return f"classification_{year}"


@dataclass(frozen=True)
class RasterStack:
    """Year-indexed stack of co-registered grids, shape ``(T, H, W)``.

    Years are contiguous and ascending. The array is copied on construction
    and marked read-only, so a stage can never modify the stack it was given.
    """
    years: Tuple[int, ...]
    data: np.ndarray
    profile: Mapping = field(default_factory=dict)
    gid: Optional[int] = None
    provenance: Tuple[Provenance, ...] = ()

    def __post_init__(self):
        years = tuple(int(y) for y in self.years)
        data = np.array(self.data, copy=True)
        if data.ndim != 3:
            raise StackError(f"Stack data must be 3-D (T, H, W), got shape {data.shape}")
        if len(years) != data.shape[0]:
            raise StackError(f"{len(years)} years for {data.shape[0]} layers")
        if not years:
            raise StackError("Stack has no years")
        if years != tuple(range(years[0], years[0] + len(years))):
            raise StackError(f"Years must be contiguous and ascending: {years}")
        data.setflags(write=False)
        object.__setattr__(self, "years", years)
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "provenance", tuple(self.provenance))

    @classmethod
    def from_layers(
        cls,
        layers: Mapping[int, np.ndarray],
        years: Iterable[int],
        fill_value=0,
        **kwargs,
    ) -> Tuple["RasterStack", Tuple[int, ...]]:
        """Assemble a stack for ``years``; absent layers are filled and returned as missing."""
        years = tuple(years)
        if not years:
            raise StackError("No years requested")
        present = [layers[y] for y in years if y in layers]
        if not present:
            raise StackError(f"None of the years {years[0]}-{years[-1]} have a layer")
        shape = present[0].shape
        dtype = present[0].dtype
        missing = []
        out = np.full((len(years),) + shape, fill_value, dtype=dtype)
        for i, y in enumerate(years):
            if y not in layers:
                missing.append(y)
                continue
            if layers[y].shape != shape:
                raise ShapeMismatchError(f"Layer {y} has shape {layers[y].shape}, expected {shape}")
            out[i] = layers[y]
        return cls(years=years, data=out, **kwargs), tuple(missing)

    @property
    def first_year(self) -> int:
        return self.years[0]

    @property
    def last_year(self) -> int:
        return self.years[-1]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape[1:]

    def __len__(self) -> int:
        return len(self.years)

    def __contains__(self, year) -> bool:
        return year in self.years

    def __iter__(self) -> Iterator[Tuple[int, np.ndarray]]:
        return iter(zip(self.years, self.data))

    def index(self, year: int) -> int:
        return year - self.years[0]

    def layer(self, year: int) -> Optional[np.ndarray]:
        if year not in self:
            return None
        return self.data[self.index(year)]

    def derive(self, data: np.ndarray, provenance: Optional[Provenance] = None) -> "RasterStack":
        """New stack on the same grid and years, with ``provenance`` appended."""
        chain = self.provenance + ((provenance,) if provenance is not None else ())
        return replace(self, data=data, provenance=chain)

    def encode(self, urban_code: int = URBAN_CODE) -> np.ndarray:
        """Binary stack as uint8 class codes {0, urban_code}."""
        return np.where(self.data.astype(bool), urban_code, 0).astype(np.uint8)

    def is_urban(self, urban_code: int = URBAN_CODE) -> "RasterStack":
        """Binary view of a class-code stack (urban where value == urban_code)."""
        return replace(self, data=self.data == urban_code)

    def rules(self) -> Dict[int, str]:
        return dict(self.provenance[-1].rules) if self.provenance else {}
