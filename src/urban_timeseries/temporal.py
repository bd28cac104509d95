"""Per-pixel temporal filters over binary urban stacks.

Each filter maps a binary stack to a new binary stack of the same years and
shape. Every output year is computed from the *input* stack only, so years of
one filter are independent of each other and a filter must finish before the
next one starts. Windows that reach outside the stack vote "not urban".

Filters, in the order the cascade applies them:

1. ``consistency_filter``   majority vote, removal only
2. ``smoothing_filter``     gentler vote with a permissive final year, removal only
3. ``gap_fill_filter``      fills one-year gaps and carries the last year, additive only
4. ``consolidation_filter`` cumulative maximum with first-year retraction
"""
from __future__ import annotations
from typing import Dict, List, NamedTuple, Optional, Sequence, Set
import logging

import numpy as np

from .errors import IssueKind, IssueLog
from .types import Provenance, RasterStack

logger = logging.getLogger("urban_timeseries")


class Window(NamedTuple):
    """Vote rule for one target year: ``min_votes`` of the years at ``offsets`` must be urban."""
    year: int
    offsets: Sequence[int]
    min_votes: int
    kind: str

    @property
    def years(self) -> List[int]:
        return [self.year + o for o in self.offsets]

    def describe(self) -> str:
        ys = self.years
        return f"{self.kind} {ys[0]}-{ys[-1]}, >={self.min_votes} of {len(ys)}"


def _log_rule(stage: str, stack: RasterStack, year: int, rule: str) -> None:
    edge = year in stack.years[:2] or year in stack.years[-2:]
    level = logging.INFO if edge or year % 5 == 0 else logging.DEBUG
    logger.log(level, "%s year %s (%s)", stage, year, rule)


class _Layers:
    """Binary layer access with zero-fill for years outside the stack."""

    def __init__(self, stack: RasterStack, stage: str, issues: Optional[IssueLog]):
        self.stack = stack
        self.stage = stage
        self.issues = issues
        self._zeros = np.zeros(stack.shape, dtype=bool)
        self._flagged: Set[int] = set()

    def __call__(self, year: int) -> np.ndarray:
        layer = self.stack.layer(year)
        if layer is not None:
            return layer.astype(bool)
        if year not in self._flagged:
            self._flagged.add(year)
            if self.issues is not None:
                self.issues.add(IssueKind.MISSING_YEAR_DATA,
                                "window year outside the stack; voted as not urban",
                                gid=self.stack.gid, year=year, stage=self.stage)
            else:
                logger.debug("%s: year %s outside stack, zero-filled", self.stage, year)
        return self._zeros

    def votes(self, window: Window) -> np.ndarray:
        counts = np.zeros(self.stack.shape, dtype=np.int16)
        for y in window.years:
            counts += self(y)
        return counts


def vote_filter(
    stack: RasterStack,
    windows: Sequence[Window],
    stage: str,
    issues: Optional[IssueLog] = None,
    parameters: Optional[Dict[str, object]] = None,
) -> RasterStack:
    """Keep a pixel only where it is urban and its window vote passes.

    ``output(y) = input(y) AND (sum(window) >= min_votes)``; positives are
    never added.
    """
    layers = _Layers(stack, stage, issues)
    out = np.zeros(stack.data.shape, dtype=bool)
    rules: Dict[int, str] = {}
    for w in windows:
        i = stack.index(w.year)
        out[i] = layers(w.year) & (layers.votes(w) >= w.min_votes)
        rules[w.year] = w.describe()
        _log_rule(stage, stack, w.year, rules[w.year])
    return stack.derive(out, Provenance(stage, rules, parameters or {}))


def consistency_windows(years: Sequence[int]) -> List[Window]:
    """Edge pairs use 3-year one-sided windows (>=2), interior years a centered 5-year window (>=3)."""
    first, last = set(years[:2]), set(years[-2:])
    windows = []
    for y in years:
        if y in first:
            windows.append(Window(y, (0, 1, 2), 2, "forward"))
        elif y in last:
            windows.append(Window(y, (-2, -1, 0), 2, "backward"))
        else:
            windows.append(Window(y, (-2, -1, 0, 1, 2), 3, "centered"))
    return windows


def consistency_filter(stack: RasterStack, issues: Optional[IssueLog] = None) -> RasterStack:
    """Temporal filter 1: remove positives not confirmed by a majority of neighbouring years."""
    return vote_filter(stack, consistency_windows(stack.years), "temporal_filter1", issues, {
        "first_years": "gte_2_of_3_future_window",
        "middle_years": "gte_3_of_5_centered_window",
        "last_years": "gte_2_of_3_past_window",
    })


def smoothing_windows(years: Sequence[int]) -> List[Window]:
    """Years with three future years vote 2 of 4 forward; the next two vote 2 of 4
    around themselves; the final year keeps a pixel seen once in its last 3 years."""
    n = len(years)
    split = max(n - 3, 0)
    windows = []
    for i, y in enumerate(years):
        if i == n - 1:
            windows.append(Window(y, (-2, -1, 0), 1, "final"))
        elif i < split:
            windows.append(Window(y, (0, 1, 2, 3), 2, "intermediate"))
        else:
            windows.append(Window(y, (-2, -1, 0, 1), 2, "penultimate"))
    return windows


def smoothing_filter(stack: RasterStack, issues: Optional[IssueLog] = None) -> RasterStack:
    """Temporal filter 2: second, gentler removal pass over filter 1's output."""
    return vote_filter(stack, smoothing_windows(stack.years), "temporal_filter2", issues, {
        "intermediate": "gte_2_of_4_future",
        "penultimate": "gte_2_of_4_mixed",
        "last": "gte_1_of_3_past",
    })


def gap_fill_filter(stack: RasterStack, issues: Optional[IssueLog] = None) -> RasterStack:
    """Temporal filter 3: the only pass allowed to add urban pixels.

    * first year: ``in(Y0) OR (in(Y0) AND in(Y0+1))``, i.e. unchanged
    * interior: a year flanked by urban years on both sides becomes urban
    * last year: urban if it or the year before is urban
    """
    stage = "temporal_filter3"
    layers = _Layers(stack, stage, issues)
    years = stack.years
    out = np.zeros(stack.data.shape, dtype=bool)
    rules: Dict[int, str] = {}
    for i, y in enumerate(years):
        cur = layers(y)
        if i == 0:
            out[i] = cur | (cur & layers(y + 1))
            rules[y] = "first: current OR (current AND next)"
        elif i == len(years) - 1:
            out[i] = cur | layers(y - 1)
            rules[y] = "last: current OR previous"
        else:
            gap = layers(y - 1) & ~cur & layers(y + 1)
            out[i] = cur | gap
            rules[y] = "gap fill: previous AND NOT current AND next"
        _log_rule(stage, stack, y, rules[y])
    filled = int((out & ~stack.data.astype(bool)).sum())
    logger.info("%s: %d pixel-years added", stage, filled)
    return stack.derive(out, Provenance(stage, rules, {
        "first": "current_AND_next_urban_persistence",
        "middle": "gap_fill_prev_AND_next_urban",
        "last": "prev_urban_continuity_permissive",
    }))


def consolidation_filter(stack: RasterStack, issues: Optional[IssueLog] = None) -> RasterStack:
    """Temporal filter 4: once urban, always urban.

    Every year becomes the running maximum of the input from the first year.
    The first year alone is then retracted where it was urban but the second
    year was not; later years keep the cumulative value. This pass inflates
    growth on purpose and guarantees monotonicity, not accuracy.
    """
    stage = "temporal_filter4"
    src = stack.data.astype(bool)
    out = np.maximum.accumulate(src, axis=0)
    rules: Dict[int, str] = {y: f"max {stack.first_year}-{y}" for y in stack.years}
    if len(stack) > 1:
        lone_start = src[0] & ~src[1]
        out[0] = np.where(lone_start, False, out[0])
        y0, y1 = stack.years[0], stack.years[1]
        rules[y0] = f"max {y0}-{y0}, removed if urban {y0} and not urban {y1}"
        logger.info("%s: %d first-year pixels retracted", stage, int(lone_start.sum()))
    for y in stack.years:
        _log_rule(stage, stack, y, rules[y])
    return stack.derive(out, Provenance(stage, rules, {"consolidation": "once_urban_always_urban"}))

