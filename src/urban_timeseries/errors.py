from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, List, Optional
import logging

logger = logging.getLogger("urban_timeseries")


class UrbanTimeseriesError(Exception):
    """Base class for fatal pipeline errors."""


class StackError(UrbanTimeseriesError):
    """Stack is malformed (dimensions, year sequence, length)."""


class ShapeMismatchError(UrbanTimeseriesError):
    """Grids disagree in shape or georeferencing; the stage cannot proceed."""


class ConfigError(UrbanTimeseriesError):
    pass


class IssueKind(str, Enum):
    MISSING_YEAR_DATA = "missing_year_data"
    MISSING_THRESHOLD = "missing_threshold"
    DEGENERATE_THRESHOLD = "degenerate_threshold"
    SHAPE_MISMATCH = "shape_mismatch"
    EMPTY_OUTPUT = "empty_output"


class Policy(str, Enum):
    ZERO_FILL = "zero_fill"                  # layer treated as not urban
    DEFAULT_THRESHOLD = "default_threshold"  # configured default threshold used instead
    FATAL = "fatal"                          # stage aborted for the unit
    REPORT = "report"                        # flagged for manual review only


POLICIES = {
    IssueKind.MISSING_YEAR_DATA: Policy.ZERO_FILL,
    IssueKind.MISSING_THRESHOLD: Policy.DEFAULT_THRESHOLD,
    IssueKind.DEGENERATE_THRESHOLD: Policy.DEFAULT_THRESHOLD,
    IssueKind.SHAPE_MISMATCH: Policy.FATAL,
    IssueKind.EMPTY_OUTPUT: Policy.REPORT,
}


@dataclass(frozen=True)
class Issue:
    kind: IssueKind
    message: str
    gid: Optional[int] = None
    year: Optional[int] = None
    stage: Optional[str] = None

    @property
    def policy(self) -> Policy:
        return POLICIES[self.kind]

    def __str__(self) -> str:
        where = ", ".join(
            f"{k}={v}" for k, v in (("stage", self.stage), ("gid", self.gid), ("year", self.year)) if v is not None
        )
        return f"{self.kind.value} [{where}] {self.message} -> {self.policy.value}"


class IssueLog:
    """Collects non-fatal data-quality issues and logs each one as a warning."""

    def __init__(self, issues: Iterable[Issue] = ()) -> None:
        self._issues: List[Issue] = list(issues)

    def add(self, kind: IssueKind, message: str, **where) -> Issue:
        issue = Issue(kind, message, **where)
        self._issues.append(issue)
        logger.warning("%s", issue)
        return issue

    def of_kind(self, kind: IssueKind) -> List[Issue]:
        return [i for i in self._issues if i.kind == kind]

    def __iter__(self) -> Iterator[Issue]:
        return iter(list(self._issues))

    def __len__(self) -> int:
        return len(self._issues)
