"""
SWIFT — Pipeline Orchestrator
==============================
One parameterized pipeline from labeled points to per-region water-area
time series.

Training
    Optical (Landsat 8 + harmonized Sentinel-2) and radar (Sentinel-1)
    scenes in the training window are feature-extracted, mosaicked with
    explicit precedence, and sampled at the labeled points.  One random
    forest is fitted per modality and returned as :class:`FittedModels`.

Query
    Scenes in the query range are classified with the fitted models.
    Radar classifications are smoothed and wind-masked per period; every
    classification is median-composited per week or month; the HAND
    drainage mask is applied to each composite; water area is summed per
    region.  :func:`run_regions` composites once over the union of its
    regions and reduces each region separately.

Fitted models are always passed in explicitly, so concurrent runs over
different regions or windows share nothing mutable.

Usage::

    models = train_models(build_training_samples(service, config, points), config)
    series = run_pipeline(region, (config.start_date, config.end_date), config,
                          models=models, service=service)
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Sequence

import numpy as np
import numpy.typing as npt
from shapely.geometry import MultiPoint
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from shared.python.base_tool import GeoTool
from shared.python.exceptions import (
    DataQualityWarning,
    InputValidationError,
    InsufficientTrainingDataError,
)
from shared.python.validators import Validators

from swift_water.accuracy import AccuracyReport, evaluate_accuracy
from swift_water.classifier import CLASSIFICATION_BAND, WaterClassifier, train
from swift_water.compositor import Composite, Period, TemporalCompositor, as_datetime, make_periods
from swift_water.config import PipelineConfig, load_config
from swift_water.environment import (
    HAND_BAND,
    apply_mask,
    drainage_mask,
    max_wind_components,
    smooth_radar_classification,
    wind_mask,
)
from swift_water.export import plot_time_series, write_composite, write_time_series
from swift_water.indices import FeatureExtractor
from swift_water.labels import (
    LabeledPoint,
    SampleSet,
    build_training_mosaic,
    load_points,
    merge_labeled_points,
    sample_points,
)
from swift_water.quality import OPTICAL_SENSORS
from swift_water.raster import RasterCollection, RasterGrid, RasterImage
from swift_water.regions import RegionCatalog, RegionPolygon
from swift_water.service import (
    RADAR_PREPROCESS_DEFAULTS,
    LocalRasterService,
    RadarPreprocessor,
    RasterDataService,
    SchemaCheckingPreprocessor,
    call_with_retry,
)
from swift_water.zonal import TimeSeries, ZonalAggregator, aggregate_regions

logger = logging.getLogger("swift.pipeline")

TRUE_COLOR_BANDS = ("red", "green", "blue")

DateWindow = tuple[date, date]


# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TrainingSamples:
    """Sampled training points per modality."""

    optical: SampleSet
    radar: SampleSet


@dataclass(frozen=True)
class FittedModels:
    """One fitted classifier per modality."""

    optical: WaterClassifier
    radar: WaterClassifier


@dataclass(frozen=True)
class PipelineResult:
    """Everything one query produces.

    Attributes:
        time_series: Water area per period for the queried region.
        latest_composite: Most recent non-empty composite, with
            ``classification`` plus ``red, green, blue`` when an optical
            scene was available; ``None`` if every period was empty.
    """

    time_series: TimeSeries
    latest_composite: RasterImage | None


def _window(window: DateWindow) -> tuple[datetime, datetime]:
    start, end = as_datetime(window[0]), as_datetime(window[1])
    Validators.assert_date_range(start, end)
    return start, end


# ---------------------------------------------------------------------------
# Scene queries
# ---------------------------------------------------------------------------


def query_optical(
    service: RasterDataService,
    config: PipelineConfig,
    bounds: BaseGeometry | None,
    window: DateWindow,
    cloud_cover_pct: float,
    seasonal: bool,
) -> RasterCollection:
    """Cloud-filtered, QA-masked, harmonized optical scenes in *window*."""
    merged = RasterCollection.empty(label="optical")
    for source_id in config.optical_sources:
        sensor = OPTICAL_SENSORS.get(source_id)
        if sensor is None:
            raise InputValidationError(
                f"Unknown optical source '{source_id}'. Known: {', '.join(OPTICAL_SENSORS)}"
            )
        scenes = service.filter(
            source_id, bounds, _window(window), sensor.cloud_cover_below(cloud_cover_pct)
        )
        if seasonal and config.season_months is not None:
            scenes = scenes.filter(lambda im: config.in_season(im.acquired.month))
        merged = merged.merge(service.map(scenes, sensor.prepare))
    return merged


def query_radar(
    service: RasterDataService,
    config: PipelineConfig,
    bounds: BaseGeometry | None,
    window: DateWindow,
    preprocessor: RadarPreprocessor,
) -> RasterCollection:
    """Calibrated ``VV, VH, angle`` scenes in *window*."""
    scenes = service.filter(config.radar_source, bounds, _window(window))
    return preprocessor.preprocess(scenes, RADAR_PREPROCESS_DEFAULTS)


# ---------------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------------


def _points_bounds(points: Sequence[LabeledPoint]) -> BaseGeometry:
    return MultiPoint([(p.x, p.y) for p in points]).envelope


def build_training_samples(
    service: RasterDataService,
    config: PipelineConfig,
    points: Sequence[LabeledPoint],
    preprocessor: RadarPreprocessor | None = None,
) -> TrainingSamples:
    """Mosaic each modality over the training window and sample *points*.

    Raises:
        InputValidationError: If *points* is empty or a modality has no
            training scenes.
    """
    if not points:
        raise InputValidationError("No labeled points were supplied for training.")
    preprocessor = preprocessor or SchemaCheckingPreprocessor()
    bounds = _points_bounds(points)
    window = config.training_window

    optical = FeatureExtractor("optical")
    optical_scenes = query_optical(
        service, config, bounds, window, config.cloud_cover_threshold_pct, seasonal=False
    )
    optical_mosaic = build_training_mosaic(
        service, service.map(optical_scenes, optical.extract), config.mosaic_order
    )

    radar = FeatureExtractor("radar")
    radar_scenes = query_radar(service, config, bounds, window, preprocessor)
    radar_mosaic = build_training_mosaic(
        service, service.map(radar_scenes, radar.extract), config.mosaic_order
    )

    return TrainingSamples(
        optical=sample_points(optical_mosaic, points, seed=config.seed),
        radar=sample_points(radar_mosaic, points, seed=config.seed),
    )


def train_models(samples: TrainingSamples, config: PipelineConfig) -> FittedModels:
    """Fit one classifier per modality on all sampled points."""
    fit = dict(ensemble_size=config.ensemble_size, seed=config.seed, min_samples=config.min_training_samples)
    return FittedModels(
        optical=train(samples.optical, FeatureExtractor("optical").predictors, **fit),
        radar=train(samples.radar, FeatureExtractor("radar").predictors, **fit),
    )


def evaluate_models(samples: TrainingSamples, config: PipelineConfig) -> dict[str, AccuracyReport]:
    """Hold-out accuracy per modality; the production models are untouched."""
    options = dict(
        split_ratio=config.split_ratio,
        ensemble_size=config.ensemble_size,
        seed=config.seed,
        min_samples=config.min_training_samples,
    )
    return {
        "optical": evaluate_accuracy(samples.optical, FeatureExtractor("optical").predictors, **options),
        "radar": evaluate_accuracy(samples.radar, FeatureExtractor("radar").predictors, **options),
    }


# ---------------------------------------------------------------------------
# Environmental masks
# ---------------------------------------------------------------------------


def _period_wind_masks(
    service: RasterDataService,
    config: PipelineConfig,
    bounds: BaseGeometry,
    periods: Sequence[Period],
) -> Callable[[RasterImage], RasterImage]:
    """Return a function wind-masking a radar image by its period's maxima."""
    masks: dict[Period, npt.NDArray[np.bool_] | None] = {}

    def mask_for(period: Period) -> npt.NDArray[np.bool_] | None:
        if period not in masks:
            wind = call_with_retry(
                lambda: service.filter(config.wind_source, bounds, (period.start, period.end)).to_list(),
                attempts=config.retry_attempts,
                delay=config.retry_delay_s,
            )
            components = max_wind_components(wind)
            if components is None:
                message = f"No wind data for period {period.label}; radar wind mask skipped."
                logger.warning(message)
                warnings.warn(message, DataQualityWarning, stacklevel=2)
                masks[period] = None
            else:
                masks[period] = wind_mask(*components, threshold_kmh=config.wind_speed_threshold_kmh)
        return masks[period]

    def apply(image: RasterImage) -> RasterImage:
        for period in periods:
            if period.contains(image.acquired):
                keep = mask_for(period)
                return image if keep is None else apply_mask(image, keep)
        return image

    return apply


def _drainage_keep(
    service: RasterDataService,
    config: PipelineConfig,
    bounds: BaseGeometry,
) -> npt.NDArray[np.bool_] | None:
    hand = call_with_retry(
        lambda: service.filter(config.hand_source, bounds).first(),
        attempts=config.retry_attempts,
        delay=config.retry_delay_s,
    )
    if hand is None:
        message = f"No HAND raster in source '{config.hand_source}'; drainage mask skipped."
        logger.warning(message)
        warnings.warn(message, DataQualityWarning, stacklevel=2)
        return None
    return drainage_mask(hand.band(HAND_BAND), threshold_m=config.hand_threshold_m)


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


def classify_query(
    service: RasterDataService,
    config: PipelineConfig,
    models: FittedModels,
    bounds: BaseGeometry,
    window: DateWindow,
    periods: Sequence[Period],
    preprocessor: RadarPreprocessor,
) -> RasterCollection:
    """Lazy, time-ordered collection of classified and masked images."""
    optical = FeatureExtractor("optical")
    optical_classified = service.map(
        query_optical(
            service, config, bounds, window, config.query_cloud_cover_threshold_pct, seasonal=True
        ),
        lambda im: models.optical.classify_image(optical.extract(im)),
    )

    radar = FeatureExtractor("radar")
    wind = _period_wind_masks(service, config, bounds, periods)
    radar_classified = service.map(
        query_radar(service, config, bounds, window, preprocessor),
        lambda im: wind(
            smooth_radar_classification(
                models.radar.classify_image(radar.extract(im)),
                radius=config.smoothing_radius_px,
                threshold=config.smoothing_threshold,
                service=service,
            )
        ),
    )
    return optical_classified.merge(radar_classified)


def build_composites(
    region: RegionPolygon,
    window: DateWindow,
    config: PipelineConfig,
    models: FittedModels,
    service: RasterDataService,
    preprocessor: RadarPreprocessor | None = None,
) -> list[Composite]:
    """Classified, composited, and drainage-masked periods for *region*."""
    preprocessor = preprocessor or SchemaCheckingPreprocessor()
    start, end = _window(window)
    periods = make_periods(start, end, config.period_granularity)
    classified = classify_query(
        service, config, models, region.geometry, window, periods, preprocessor
    )
    composites = TemporalCompositor().build(classified, periods)

    keep = _drainage_keep(service, config, region.geometry)
    if keep is None:
        return composites
    return [
        c if c.image is None else c.with_image(apply_mask(c.image, keep))
        for c in composites
    ]


def run_pipeline(
    region: RegionPolygon,
    date_range: DateWindow,
    config: PipelineConfig,
    *,
    models: FittedModels,
    service: RasterDataService,
    preprocessor: RadarPreprocessor | None = None,
) -> TimeSeries:
    """Water-area time series of one region, one record per period."""
    composites = build_composites(region, date_range, config, models, service, preprocessor)
    aggregator = ZonalAggregator(
        service,
        max_pixels=config.max_pixels,
        retry_attempts=config.retry_attempts,
        retry_delay=config.retry_delay_s,
    )
    series = aggregator.time_series(region, composites)
    logger.info("Region %s: %d period(s) aggregated.", region.region_id, len(series))
    return series


def _true_color(
    service: RasterDataService,
    config: PipelineConfig,
    region: RegionPolygon,
    window: DateWindow,
    until: datetime,
) -> RasterImage | None:
    """Most recent prepared optical scene acquired before *until*."""
    latest: RasterImage | None = None
    scenes = query_optical(
        service, config, region.geometry, window, config.query_cloud_cover_threshold_pct, seasonal=True
    )
    for scene in scenes:
        if scene.acquired >= until:
            break
        latest = scene
    return latest


def run_query(
    region: RegionPolygon,
    date_range: DateWindow,
    config: PipelineConfig,
    *,
    models: FittedModels,
    service: RasterDataService,
    preprocessor: RadarPreprocessor | None = None,
) -> PipelineResult:
    """Time series plus the latest classified true-colour composite."""
    composites = build_composites(region, date_range, config, models, service, preprocessor)
    aggregator = ZonalAggregator(
        service,
        max_pixels=config.max_pixels,
        retry_attempts=config.retry_attempts,
        retry_delay=config.retry_delay_s,
    )
    series = aggregator.time_series(region, composites)

    latest = next((c for c in reversed(composites) if c.image is not None), None)
    if latest is None:
        return PipelineResult(series, None)

    image = latest.image.select([CLASSIFICATION_BAND])
    scene = _true_color(service, config, region, date_range, latest.period.end)
    if scene is None:
        logger.warning("No optical scene for the true-colour bands of %s.", latest.period.label)
    else:
        image = image.with_bands({band: scene.bands[band] for band in TRUE_COLOR_BANDS})
    return PipelineResult(series, image)


def run_regions(
    regions: Sequence[RegionPolygon],
    date_range: DateWindow,
    config: PipelineConfig,
    *,
    models: FittedModels,
    service: RasterDataService,
    preprocessor: RadarPreprocessor | None = None,
) -> dict[str, TimeSeries]:
    """Water-area time series for each of *regions*.

    Imagery is classified and composited once over the union of the
    regions, then each region is reduced concurrently.  Results are
    never summed into a parent.  Input errors for any region propagate.
    """
    if not regions:
        return {}
    study_area = RegionPolygon(
        "study_area", unary_union([region.geometry for region in regions])
    )
    composites = build_composites(study_area, date_range, config, models, service, preprocessor)
    aggregator = ZonalAggregator(
        service,
        max_pixels=config.max_pixels,
        retry_attempts=config.retry_attempts,
        retry_delay=config.retry_delay_s,
    )
    return aggregate_regions(aggregator, regions, composites, max_workers=config.max_workers)


# ---------------------------------------------------------------------------
# File-driven tool
# ---------------------------------------------------------------------------


def grid_for_bounds(
    bounds: tuple[float, float, float, float],
    config: PipelineConfig,
    origin: tuple[float, float] = (0.0, 0.0),
) -> RasterGrid:
    """Analysis grid covering *bounds* on the pixel lattice through *origin*.

    Args:
        bounds: ``(west, south, east, north)`` in ``config.crs``.
        config: Supplies the CRS and pixel size.
        origin: Any pixel corner of the lattice, usually the upper-left
                corner of a reference scene
                (:meth:`LocalRasterService.scene_origin`).
    """
    res = config.resolution_m
    x0, y0 = origin
    west, south, east, north = bounds
    west = x0 + np.floor((west - x0) / res) * res
    south = y0 + np.floor((south - y0) / res) * res
    east = x0 + np.ceil((east - x0) / res) * res
    north = y0 + np.ceil((north - y0) / res) * res
    east, north = max(east, west + res), max(north, south + res)
    return RasterGrid.from_bounds(west, south, east, north, res, config.crs)


class SurfaceWaterPipeline(GeoTool):
    """Train, classify, and export a water-area time series from files.

    Args:
        input_path: JSON configuration (see :mod:`swift_water.config`).
        output_path: Output directory for the CSV and GeoTIFF.
        manifest_path: Scene manifest CSV for :class:`LocalRasterService`.
        water_points_path: Water observation points.
        nonwater_points_path: Non-water observation points.
        regions_path: Allotment polygons with the hierarchy columns.
        verbose: Enable DEBUG logging.
    """

    def __init__(
        self,
        input_path: Path,
        output_path: Path,
        manifest_path: Path,
        water_points_path: Path,
        nonwater_points_path: Path,
        regions_path: Path,
        *,
        verbose: bool = False,
    ) -> None:
        super().__init__(input_path, output_path, verbose=verbose)
        self.manifest_path = Path(manifest_path)
        self.water_points_path = Path(water_points_path)
        self.nonwater_points_path = Path(nonwater_points_path)
        self.regions_path = Path(regions_path)
        self.config: PipelineConfig | None = None
        self.result: PipelineResult | None = None
        self.accuracy: dict[str, AccuracyReport] = {}

    def validate_inputs(self) -> None:
        for path in (
            self.input_path,
            self.manifest_path,
            self.water_points_path,
            self.nonwater_points_path,
            self.regions_path,
        ):
            Validators.assert_file_exists(path)
        Validators.assert_output_dir_writable(self.output_path / "water_area.csv")
        self.config = load_config(self.input_path)
        if not self.config.region:
            raise InputValidationError("The configuration does not name a region.")

    def process(self) -> None:
        config = self.config or load_config(self.input_path)

        catalog = RegionCatalog.from_file(self.regions_path, crs=config.crs)
        region = catalog.region(config.region)
        points = merge_labeled_points(
            load_points(self.water_points_path, water=1, crs=config.crs),
            load_points(self.nonwater_points_path, water=0, crs=config.crs),
        )
        # The grid must hold both the region and every training point.
        extent = unary_union([region.geometry, _points_bounds(points)]).bounds
        origin = LocalRasterService.scene_origin(self.manifest_path, config.crs)
        grid = grid_for_bounds(extent, config, origin)
        service = LocalRasterService(
            self.manifest_path,
            grid,
            retry_attempts=config.retry_attempts,
            retry_delay=config.retry_delay_s,
        )

        samples = build_training_samples(service, config, points)
        try:
            self.accuracy = evaluate_models(samples, config)
        except InsufficientTrainingDataError as exc:
            logger.warning("Accuracy assessment skipped: %s", exc)
        models = train_models(samples, config)

        self.result = run_query(
            region, (config.start_date, config.end_date), config, models=models, service=service
        )
        self.output_path.mkdir(parents=True, exist_ok=True)
        write_time_series(self.result.time_series, self.output_path / "water_area.csv")
        plot_time_series(self.result.time_series, self.output_path / "water_area.png")
        if self.result.latest_composite is not None:
            write_composite(self.result.latest_composite, self.output_path / "latest_composite.tif")
