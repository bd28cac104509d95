from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, NamedTuple, Optional
import json

import numpy as np

from .errors import ConfigError, IssueKind, IssueLog
from .types import NODATA_CODE, Options


class Period(NamedTuple):
    start: int
    end: int

    @classmethod
    def parse(cls, key: str) -> "Period":
        try:
            a, b = key.split("-")
            period = cls(int(a), int(b))
        except ValueError:
            raise ConfigError(f"Bad period {key!r}, expected 'YYYY-YYYY'") from None
        if period.start > period.end:
            raise ConfigError(f"Period {key!r} ends before it starts")
        return period

    def __contains__(self, year) -> bool:
        return self.start <= year <= self.end

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


PATAGONIA_GIDS = frozenset({13, 39, 43, 50, 54, 107, 110, 143, 147, 195, 229})

REGIONS: Dict[int, str] = {
    **{gid: "Patagonia" for gid in PATAGONIA_GIDS},
    72: "Cuyo", 77: "Cuyo", 83: "Cuyo", 88: "Cuyo",
    121: "Chaco", 128: "Chaco", 149: "Chaco", 180: "Chaco", 182: "Chaco",
    133: "Pampa", 171: "Pampa", 187: "Pampa", 247: "Pampa", 248: "Pampa",
    140: "Pampa/Chaco", 232: "Cuyo/Chaco", 196: "Bosque Atlántico",
}

# Probability thresholds (0-100) per chart and period, tuned per tile.
DEFAULT_THRESHOLDS: Dict[int, Dict[str, int]] = {
    13: {"1985-2004": 58, "2005-2019": 50, "2020-2024": 48},
    39: {"1985-2004": 46, "2005-2019": 49, "2020-2024": 52},
    43: {"1985-2004": 57, "2005-2019": 57, "2020-2024": 58},
    50: {"1985-2004": 65, "2005-2019": 55, "2020-2024": 55},
    54: {"1985-2004": 49, "2005-2019": 49, "2020-2024": 55},
    107: {"1985-2004": 60, "2005-2019": 60, "2020-2024": 54},
    110: {"1985-2004": 55, "2005-2019": 49, "2020-2024": 55},
    143: {"1985-2004": 58, "2005-2019": 58, "2020-2024": 60},
    147: {"1985-2004": 55, "2005-2019": 45, "2020-2024": 57},
    195: {"1985-2004": 15, "2005-2019": 80, "2020-2024": 80},
    229: {"1985-2004": 40, "2005-2019": 61, "2020-2024": 67},
    72: {"1985-2004": 50, "2005-2019": 50, "2020-2024": 51},
    77: {"1985-2004": 60, "2005-2019": 60, "2020-2024": 66},
    83: {"1985-2004": 60, "2005-2019": 60, "2020-2024": 48},
    88: {"1985-2004": 60, "2005-2019": 60, "2020-2024": 66},
    121: {"1985-2004": 53, "2005-2019": 53, "2020-2024": 53},
    128: {"1985-2004": 45, "2005-2019": 46, "2020-2024": 54},
    149: {"1985-2004": 53, "2005-2019": 47, "2020-2024": 48},
    180: {"1985-2004": 54, "2005-2019": 43, "2020-2024": 51},
    182: {"1985-2004": 51, "2005-2019": 50, "2020-2024": 60},
    133: {"1985-2004": 50, "2005-2019": 57, "2020-2024": 54},
    140: {"1985-2004": 47, "2005-2019": 49, "2020-2024": 56},
    171: {"1985-2004": 54, "2005-2019": 60, "2020-2024": 58},
    187: {"1985-2004": 47, "2005-2019": 53, "2020-2024": 55},
    196: {"1985-2004": 46, "2005-2019": 56, "2020-2024": 52},
    232: {"1985-2004": 49, "2005-2019": 50, "2020-2024": 52},
    247: {"1985-2004": 42, "2005-2019": 50, "2020-2024": 67},
    248: {"1985-2004": 46, "2005-2019": 47, "2020-2024": 52},
}


def region_for(gid: int) -> str:
    return REGIONS.get(gid, "Unknown")


@dataclass(frozen=True)
class ThresholdLookup:
    """Outcome of a threshold lookup: the value to apply and where it came from."""
    value: int
    source: str  # "table", "missing" or "degenerate"
    period: Optional[Period] = None

    @property
    def is_fallback(self) -> bool:
        return self.source != "table"


class ThresholdTable:
    """Read-only GID x period -> probability threshold table."""

    def __init__(self, table: Mapping[int, Mapping[str, int]]):
        parsed: Dict[int, Dict[Period, int]] = {}
        for gid, periods in table.items():
            entries: Dict[Period, int] = {}
            for key, thr in periods.items():
                thr = int(thr)
                if not 0 <= thr <= 100:
                    raise ConfigError(f"Threshold {thr} for GID {gid} period {key} outside 0-100")
                entries[Period.parse(key)] = thr
            parsed[int(gid)] = entries
        self._table = parsed

    @classmethod
    def default(cls) -> "ThresholdTable":
        return cls(DEFAULT_THRESHOLDS)

    @classmethod
    def from_json(cls, path: Path) -> "ThresholdTable":
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read threshold table {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Threshold table {path} must be a JSON object keyed by GID")
        try:
            return cls({int(gid): periods for gid, periods in raw.items()})
        except (ValueError, AttributeError) as exc:
            raise ConfigError(f"Malformed threshold table {path}: {exc}") from exc

    @property
    def gids(self) -> List[int]:
        return sorted(self._table)

    def available_gids(self, include_patagonia: bool) -> List[int]:
        if include_patagonia:
            return self.gids
        return [g for g in self.gids if g not in PATAGONIA_GIDS]

    def lookup(self, gid: Optional[int], year: int, opts: Options, issues: Optional[IssueLog] = None) -> ThresholdLookup:
        """Threshold for ``gid`` in ``year`` with the fallback policy applied.

        A tile or year without an entry gets ``opts.default_threshold``; a
        configured value at or above ``opts.degenerate_threshold`` would leave
        the tile empty and is replaced by the default as well. Both cases are
        recorded in ``issues``.
        """
        periods = self._table.get(gid)
        match = None
        if periods:
            match = next(((p, thr) for p, thr in periods.items() if year in p), None)
        if match is None:
            reason = "GID not in table" if periods is None else f"no period covers {year}"
            if issues is not None:
                issues.add(IssueKind.MISSING_THRESHOLD, f"{reason}; using {opts.default_threshold}",
                           gid=gid, year=year, stage="threshold")
            return ThresholdLookup(opts.default_threshold, "missing")
        period, thr = match
        if thr >= opts.degenerate_threshold:
            if issues is not None:
                issues.add(IssueKind.DEGENERATE_THRESHOLD,
                           f"threshold {thr} for {period} excludes every pixel; using {opts.default_threshold}",
                           gid=gid, year=year, stage="threshold")
            return ThresholdLookup(opts.default_threshold, "degenerate", period)
        return ThresholdLookup(thr, "table", period)

    def summary(self, opts: Options) -> Dict[str, object]:
        included = self.available_gids(opts.include_patagonia)
        return {
            "configured_gids": len(self.gids),
            "included_gids": len(included),
            "excluded_gids": len(self.gids) - len(included),
            "years": len(opts.years),
            "units": len(included) * len(opts.years),
            "regions": sorted({region_for(g) for g in included}),
        }


def threshold_layer(prob: np.ndarray, threshold: float, nodata_code: int = NODATA_CODE) -> np.ndarray:
    """Binarize a probability layer: 1 where prob >= threshold, 0 below, ``nodata_code`` where invalid."""
    valid = np.isfinite(prob)
    out = np.zeros(prob.shape, dtype=np.uint8)
    with np.errstate(invalid="ignore"):
        out[valid & (prob >= threshold)] = 1
    out[~valid] = nodata_code
    return out
