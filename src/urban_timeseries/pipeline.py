from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence
import logging

import numpy as np
from rasterio.errors import RasterioError

from .errors import IssueKind, IssueLog, ShapeMismatchError, UrbanTimeseriesError
from .io import (discover_inputs, output_path, read_class_stack, read_probability_stack,
                 read_validity_mask, write_stack)
from .masking import STAGE as MASK_STAGE, apply_validity_mask, check_alignment
from .spatial import STAGE as SPATIAL_STAGE, apply_spatial_filter
from .stats import YearStats, change_summary, compare_stages, flag_empty_outputs, pixel_area
from .temporal import consistency_filter, consolidation_filter, gap_fill_filter, smoothing_filter
from .thresholds import PATAGONIA_GIDS, ThresholdTable
from .types import Options, RasterStack, gid_from_path

logger = logging.getLogger("urban_timeseries")

TEMPORAL_STAGES = (
    ("temporal_filter1", consistency_filter),
    ("temporal_filter2", smoothing_filter),
    ("temporal_filter3", gap_fill_filter),
    ("temporal_filter4", consolidation_filter),
)


@dataclass(frozen=True)
class UnitFailure:
    gid: Optional[int]
    stage: str
    error: str
    year: Optional[int] = None


@dataclass
class TileResult:
    gid: Optional[int]
    source: Path
    output: Optional[Path] = None
    stage_stats: Dict[str, List[YearStats]] = field(default_factory=dict)
    change: Dict[str, int] = field(default_factory=dict)
    failures: List[UnitFailure] = field(default_factory=list)
    issues: IssueLog = field(default_factory=IssueLog)


@dataclass
class RunReport:
    tiles: List[TileResult] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)

    @property
    def failures(self) -> List[UnitFailure]:
        return [f for t in self.tiles for f in t.failures]

    @property
    def issues(self) -> IssueLog:
        return IssueLog(i for t in self.tiles for i in t.issues)

    @property
    def ok(self) -> bool:
        return not self.failures


def run_cascade(
    binary: RasterStack,
    validity: np.ndarray,
    mask_profile: Optional[Mapping] = None,
    issues: Optional[IssueLog] = None,
) -> Dict[str, RasterStack]:
    """Temporal filters 1-4 then the validity mask over one tile's binary stack.

    Returns every stage's output keyed by stage name, in cascade order. Each
    stage consumes the previous stage's complete stack.
    """
    check_alignment(binary, np.shape(validity), mask_profile)
    stacks: Dict[str, RasterStack] = {}
    current = binary
    for stage, fn in TEMPORAL_STAGES:
        nxt = fn(current, issues)
        if issues is not None:
            flag_empty_outputs(current, nxt, stage, issues)
        stacks[stage] = current = nxt
    masked = apply_validity_mask(current, validity, mask_profile)
    if issues is not None:
        flag_empty_outputs(current, masked, MASK_STAGE, issues)
    stacks[MASK_STAGE] = masked
    return stacks


def mask_path_for(template: str, gid: Optional[int]) -> Path:
    """Validity mask for a tile; ``{gid}`` in the template is replaced by the tile's GID."""
    if "{gid}" in template:
        if gid is None:
            raise UrbanTimeseriesError(f"Mask template {template!r} needs a GID but the input has none")
        return Path(template.format(gid=gid))
    return Path(template)


def _load_binary(path: Path, gid: Optional[int], opts: Options, table: ThresholdTable,
                 from_classes: bool, result: TileResult) -> RasterStack:
    if from_classes:
        stack, missing = read_class_stack(path, opts.years, opts.urban_code, gid=gid)
        for year in missing:
            result.issues.add(IssueKind.MISSING_YEAR_DATA, "no class layer; treated as not urban",
                              gid=gid, year=year, stage="load")
        return stack
    prob, missing = read_probability_stack(path, opts.years, gid=gid)
    binary, failures = apply_spatial_filter(prob, table, opts, result.issues, missing)
    for year, exc in failures:
        result.failures.append(UnitFailure(gid, SPATIAL_STAGE, str(exc), year))
    return binary


def process_tile(
    path: Path,
    mask_template: str,
    outdir: Path,
    opts: Options,
    table: ThresholdTable,
    from_classes: bool = False,
    dump_stages: bool = False,
) -> TileResult:
    """Run one tile through the cascade and write the masked product.

    Errors confined to this tile are recorded on the result instead of raised.
    """
    gid = gid_from_path(path)
    result = TileResult(gid=gid, source=path)
    logger.info("GID %s: processing %s", gid, path.name)
    try:
        binary = _load_binary(path, gid, opts, table, from_classes, result)
        validity, mask_profile = read_validity_mask(mask_path_for(mask_template, gid), opts.mask_value)
        stacks = run_cascade(binary, validity, mask_profile, result.issues)
        if dump_stages and not from_classes:
            write_stack(output_path(outdir, SPATIAL_STAGE, opts, gid), binary, opts)
        previous = binary
        for stage, stack in stacks.items():
            result.stage_stats[stage] = compare_stages(previous, stack)
            previous = stack
            if dump_stages or stage == MASK_STAGE:
                path_out = write_stack(output_path(outdir, stage, opts, gid), stack, opts)
                if stage == MASK_STAGE:
                    result.output = path_out
    except (UrbanTimeseriesError, RasterioError, OSError) as exc:
        logger.error("GID %s failed: %s", gid, exc)
        if isinstance(exc, ShapeMismatchError):
            result.issues.add(IssueKind.SHAPE_MISMATCH, str(exc), gid=gid, stage="tile")
        result.failures.append(UnitFailure(gid, "tile", str(exc)))
        return result

    final = stacks[MASK_STAGE]
    result.change = change_summary(final)
    logger.info("GID %s: %d urban pixels in %s, %d in %s", gid,
                int(final.data[0].sum()), final.first_year, int(final.data[-1].sum()), final.last_year)
    area = pixel_area(final.profile)
    if area is not None:
        logger.info("GID %s: %.1f units^2 gained, %.1f lost", gid,
                    result.change["gained"] * area, result.change["lost"] * area)
    return result


def run_pipeline(
    inputs: Sequence[str],
    mask_template: str,
    outdir: Path,
    opts: Options,
    table: Optional[ThresholdTable] = None,
    from_classes: bool = False,
    dump_stages: bool = False,
    workers: int = 1,
) -> RunReport:
    table = table or ThresholdTable.default()
    paths = discover_inputs(inputs)
    report = RunReport()
    todo: List[Path] = []
    for p in paths:
        gid = gid_from_path(p)
        if gid in PATAGONIA_GIDS and not opts.include_patagonia:
            logger.info("GID %s is in Patagonia and excluded; skipping %s", gid, p.name)
            report.skipped.append(p)
            continue
        todo.append(p)

    def _run(p: Path) -> TileResult:
        return process_tile(p, mask_template, outdir, opts, table, from_classes, dump_stages)

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            report.tiles.extend(pool.map(_run, todo))
    else:
        report.tiles.extend(_run(p) for p in todo)
    return report
