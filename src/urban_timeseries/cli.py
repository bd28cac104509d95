from __future__ import annotations
from pathlib import Path
from typing import List, Optional
import logging

import typer

from .errors import ConfigError
from .logging_utils import setup_logger
from .pipeline import RunReport, run_pipeline
from .thresholds import ThresholdTable, region_for
from .types import MorphologyParams, Options

app = typer.Typer(add_completion=False, no_args_is_help=True)


def _options(start_year: int, end_year: int, include_patagonia: bool,
             radius: int, hole_size: int, min_component: int) -> Options:
    if end_year < start_year:
        raise typer.BadParameter(f"end year {end_year} is before start year {start_year}")
    return Options(
        start_year=start_year,
        end_year=end_year,
        include_patagonia=include_patagonia,
        morphology=MorphologyParams(radius=radius, hole_size=hole_size, min_component=min_component),
    )


def _table(thresholds: Optional[Path]) -> ThresholdTable:
    if thresholds is None:
        return ThresholdTable.default()
    try:
        return ThresholdTable.from_json(thresholds)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc), param_hint="--thresholds") from exc


def _summarize(report: RunReport, logger: logging.Logger) -> None:
    for tile in report.tiles:
        if tile.output is not None:
            logger.info("GID %s -> %s (gained %s, lost %s)", tile.gid, tile.output,
                        tile.change.get("gained"), tile.change.get("lost"))
        for stage, stats in tile.stage_stats.items():
            for s in stats:
                logger.debug("GID %s %s %s: %d -> %d (%+.1f%%)", tile.gid, stage, s.year,
                             s.before, s.after, s.change_percent)
            bad = [s.year for s in stats if stage not in ("temporal_filter3", "temporal_filter4") and not s.is_valid]
            if bad:
                logger.warning("GID %s: %s grew urban count in %s", tile.gid, stage, bad)
    for f in report.failures:
        where = f"year {f.year}" if f.year is not None else "all years"
        logger.error("FAILED GID %s %s (%s): %s", f.gid, f.stage, where, f.error)
    logger.info("Tiles: %d processed, %d skipped, %d failures, %d data-quality issues",
                len(report.tiles), len(report.skipped), len(report.failures), len(report.issues))


@app.command()
def run(
    inputs: List[str] = typer.Argument(..., help="Glob patterns for per-GID probability stacks (*_GID_<gid>.tif)"),
    mask: str = typer.Option(..., help="Validity mask GeoTIFF; may contain {gid} for per-tile masks"),
    outdir: Path = typer.Option(Path("outputs"), help="Output directory"),
    start_year: int = typer.Option(1985, help="First year of the series"),
    end_year: int = typer.Option(2024, help="Last year of the series"),
    include_patagonia: bool = typer.Option(False, help="Process Patagonian tiles"),
    thresholds: Optional[Path] = typer.Option(None, help="JSON threshold table {gid: {'YYYY-YYYY': thr}}"),
    radius: int = typer.Option(1, help="Structuring element radius (pixels)"),
    hole_size: int = typer.Option(60, help="Fill non-urban holes smaller than this (pixels)"),
    min_component: int = typer.Option(5, help="Drop urban components of this size or smaller (pixels)"),
    dump_stages: bool = typer.Option(False, help="Write every intermediate stage"),
    workers: int = typer.Option(1, help="Tiles processed in parallel"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
):
    """Probability stacks -> spatial filter -> temporal filters 1-4 -> validity mask."""
    logger = setup_logger(level=logging.DEBUG if verbose else logging.INFO)
    opts = _options(start_year, end_year, include_patagonia, radius, hole_size, min_component)
    report = run_pipeline(inputs, mask, outdir, opts, _table(thresholds),
                          dump_stages=dump_stages, workers=workers)
    _summarize(report, logger)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command()
def temporal(
    inputs: List[str] = typer.Argument(..., help="Glob patterns for spatially filtered class stacks (*_GID_<gid>.tif)"),
    mask: str = typer.Option(..., help="Validity mask GeoTIFF; may contain {gid} for per-tile masks"),
    outdir: Path = typer.Option(Path("outputs"), help="Output directory"),
    start_year: int = typer.Option(1985, help="First year of the series"),
    end_year: int = typer.Option(2024, help="Last year of the series"),
    include_patagonia: bool = typer.Option(False, help="Process Patagonian tiles"),
    dump_stages: bool = typer.Option(False, help="Write every intermediate stage"),
    workers: int = typer.Option(1, help="Tiles processed in parallel"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
):
    """Re-run temporal filters 1-4 and the mask from persisted spatial-filter outputs."""
    logger = setup_logger(level=logging.DEBUG if verbose else logging.INFO)
    opts = _options(start_year, end_year, include_patagonia, 1, 60, 5)
    report = run_pipeline(inputs, mask, outdir, opts, from_classes=True,
                          dump_stages=dump_stages, workers=workers)
    _summarize(report, logger)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command("show-config")
def show_config(
    start_year: int = typer.Option(1985),
    end_year: int = typer.Option(2024),
    include_patagonia: bool = typer.Option(False),
    thresholds: Optional[Path] = typer.Option(None),
):
    """Print the GID / threshold / region configuration."""
    opts = _options(start_year, end_year, include_patagonia, 1, 60, 5)
    table = _table(thresholds)
    for key, value in table.summary(opts).items():
        typer.echo(f"{key}: {value}")
    for gid in table.available_gids(opts.include_patagonia):
        t0 = table.lookup(gid, opts.start_year, opts).value
        t1 = table.lookup(gid, opts.end_year, opts).value
        typer.echo(f"GID {gid:>4} {region_for(gid):<18} {opts.start_year}: {t0:>3}  {opts.end_year}: {t1:>3}")


def entrypoint():
    app()


if __name__ == "__main__":
    entrypoint()
