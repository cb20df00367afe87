"""
SWIFT — CLI Entry Point
========================
Exposes the pipeline as the ``swift-water`` command group.

Usage::

    swift-water run \\
        --config swift.json \\
        --manifest scenes/manifest.csv \\
        --water-points waterPoints.shp \\
        --nonwater-points nonWaterPoints.shp \\
        --regions allotments.shp \\
        --output-dir output/big_lake

    swift-water accuracy --config swift.json --manifest scenes/manifest.csv \\
        --water-points waterPoints.shp --nonwater-points nonWaterPoints.shp

    swift-water regions --regions allotments.shp --state Arizona

Run ``swift-water <command> --help`` for the full option list.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from shared.python.exceptions import SwiftError

from swift_water.config import load_config
from swift_water.labels import load_points, merge_labeled_points
from swift_water.pipeline import (
    SurfaceWaterPipeline,
    build_training_samples,
    evaluate_models,
    grid_for_bounds,
)
from swift_water.regions import RegionCatalog
from swift_water.service import LocalRasterService

logger = logging.getLogger("swift.cli")

_existing_file = click.Path(exists=True, dir_okay=False)


def _configure(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


@click.group("swift-water")
def cli() -> None:
    """Surface-water classification and area time series for grazing allotments."""


@cli.command("run")
@click.option("--config", "config_path", required=True, type=_existing_file,
              help="JSON run configuration.")
@click.option("--manifest", "manifest_path", required=True, type=_existing_file,
              help="CSV manifest of scene GeoTIFFs (source_id, path, acquired, …).")
@click.option("--water-points", "water_path", required=True, type=_existing_file,
              help="Point layer of water observations.")
@click.option("--nonwater-points", "nonwater_path", required=True, type=_existing_file,
              help="Point layer of non-water observations.")
@click.option("--regions", "regions_path", required=True, type=_existing_file,
              help="Allotment polygons with State_Name, National_F, ADMIN_ORG_, ALLOTMENT_.")
@click.option("--output-dir", "output_dir", default="output", show_default=True,
              help="Directory for the CSV, chart, and GeoTIFF.")
@click.option("--verbose", is_flag=True, default=False, help="Enable DEBUG-level logging.")
def run_command(
    config_path: str,
    manifest_path: str,
    water_path: str,
    nonwater_path: str,
    regions_path: str,
    output_dir: str,
    verbose: bool,
) -> None:
    """Train, classify, and write the water-area time series of one region.

    \b
    Outputs in OUTPUT_DIR:
        water_area.csv          region_id, date, area_m2, image_count, …
        water_area.png          time-series chart
        latest_composite.tif    classification + red, green, blue
    """
    _configure(verbose)
    tool = SurfaceWaterPipeline(
        input_path=Path(config_path),
        output_path=Path(output_dir),
        manifest_path=Path(manifest_path),
        water_points_path=Path(water_path),
        nonwater_points_path=Path(nonwater_path),
        regions_path=Path(regions_path),
        verbose=verbose,
    )
    try:
        tool.run()
    except SwiftError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    series = tool.result.time_series  # type: ignore[union-attr]
    click.echo(f"\n{len(series)} period(s) for region '{series.region_id}' written to: {output_dir}")
    for record in series:
        area = "null" if record.water_area_m2 is None else f"{record.water_area_m2:,.0f} m²"
        flag = f"  [{record.flag}]" if record.flag else ""
        click.echo(f"  {record.period_start}  {area}  ({record.image_count} image(s)){flag}")


@cli.command("accuracy")
@click.option("--config", "config_path", required=True, type=_existing_file,
              help="JSON run configuration.")
@click.option("--manifest", "manifest_path", required=True, type=_existing_file,
              help="CSV manifest of scene GeoTIFFs.")
@click.option("--water-points", "water_path", required=True, type=_existing_file,
              help="Point layer of water observations.")
@click.option("--nonwater-points", "nonwater_path", required=True, type=_existing_file,
              help="Point layer of non-water observations.")
@click.option("--verbose", is_flag=True, default=False, help="Enable DEBUG-level logging.")
def accuracy_command(
    config_path: str,
    manifest_path: str,
    water_path: str,
    nonwater_path: str,
    verbose: bool,
) -> None:
    """Hold-out accuracy of the optical and radar classifiers."""
    _configure(verbose)
    try:
        config = load_config(Path(config_path))
        points = merge_labeled_points(
            load_points(Path(water_path), water=1, crs=config.crs),
            load_points(Path(nonwater_path), water=0, crs=config.crs),
        )
        xs = [p.x for p in points]
        ys = [p.y for p in points]
        origin = LocalRasterService.scene_origin(Path(manifest_path), config.crs)
        grid = grid_for_bounds((min(xs), min(ys), max(xs), max(ys)), config, origin)
        service = LocalRasterService(
            Path(manifest_path),
            grid,
            retry_attempts=config.retry_attempts,
            retry_delay=config.retry_delay_s,
        )
        reports = evaluate_models(build_training_samples(service, config, points), config)
    except (SwiftError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    for modality, report in reports.items():
        matrix = report.confusion_matrix
        click.echo(f"\n{modality} ({report.n_train} train / {report.n_test} test)")
        click.echo("               pred 0  pred 1")
        click.echo(f"  actual 0   {matrix[0, 0]:>7d} {matrix[0, 1]:>7d}")
        click.echo(f"  actual 1   {matrix[1, 0]:>7d} {matrix[1, 1]:>7d}")
        click.echo(f"  overall accuracy: {report.overall_accuracy:.3f}")
        click.echo(f"  kappa:            {report.kappa:.3f}")


@cli.command("regions")
@click.option("--regions", "regions_path", required=True, type=_existing_file,
              help="Allotment polygons with the hierarchy columns.")
@click.option("--state", default=None, help="List the national forests of this state.")
@click.option("--forest", default=None, help="List the ranger districts of this forest.")
@click.option("--district", default=None, help="List the allotments of this district.")
def regions_command(
    regions_path: str,
    state: str | None,
    forest: str | None,
    district: str | None,
) -> None:
    """Browse the state → forest → district → allotment hierarchy."""
    try:
        catalog = RegionCatalog.from_file(Path(regions_path))
    except SwiftError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if district:
        names = catalog.allotments(district)
    elif forest:
        names = catalog.districts(forest)
    elif state:
        names = catalog.forests(state)
    else:
        names = catalog.states()
    for name in names:
        click.echo(name)


if __name__ == "__main__":
    cli()
