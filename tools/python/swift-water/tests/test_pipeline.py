"""
Tests for the Pipeline Orchestrator
====================================
A synthetic 10×10 scene (300 m × 300 m on UTM 12N) is used throughout:
the western five columns are open water, the eastern five are dry
grassland.  One Landsat 8 and one Sentinel-1 scene fall in the training
window; in the query range a Landsat 8 scene lands in the first week and
a Sentinel-1 scene in the second.

Expected areas with a 1-pixel radar smoothing radius:
    week 1 (optical)  50 water pixels → 45 000 m²
    week 2 (radar)    40 water pixels → 36 000 m²   (edge column smoothed away)

Test classes:
    TestTrainingStage          Sampling and model fitting.
    TestRunPipeline            One region, in-memory service.
    TestSameWeekFusion         One optical and one radar scene in a period.
    TestEnvironmentalMasks     Wind and drainage masks inside the pipeline.
    TestRunQuery               Latest-composite output.
    TestRunRegions             Independent concurrent regions.
    TestGridForBounds          Analysis grid on the scene pixel lattice.
    TestSurfaceWaterPipeline   File-driven run with GeoTIFF scenes.
"""

from __future__ import annotations

import json
from collections import Counter
from datetime import date, datetime
from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
import rasterio
from shapely.geometry import Point, box

from swift_water.classifier import CLASSIFICATION_BAND
from swift_water.config import PipelineConfig
from swift_water.environment import HAND_BAND, WIND_U_BAND, WIND_V_BAND
from swift_water.labels import LabeledPoint
from swift_water.pipeline import (
    FittedModels,
    SurfaceWaterPipeline,
    build_composites,
    build_training_samples,
    grid_for_bounds,
    run_pipeline,
    run_query,
    run_regions,
    train_models,
)
from swift_water.raster import RasterGrid, RasterImage
from swift_water.regions import RegionPolygon
from swift_water.service import InMemoryRasterService
from shared.python.exceptions import DataQualityWarning, InputValidationError

WEST, SOUTH, EAST, NORTH = 500000.0, 3800000.0, 500300.0, 3800300.0
GRID = RasterGrid.from_bounds(WEST, SOUTH, EAST, NORTH, 30, "EPSG:32612")
WATER_COLS = slice(0, 5)

WATER_DN = {"SR_B2": 500, "SR_B3": 800, "SR_B4": 600, "SR_B5": 400, "SR_B6": 200, "SR_B7": 100}
LAND_DN = {"SR_B2": 400, "SR_B3": 700, "SR_B4": 900, "SR_B5": 3000, "SR_B6": 2500, "SR_B7": 1800}
WATER_DB = {"VV": -22.0, "VH": -28.0, "angle": 35.0}
LAND_DB = {"VV": -8.0, "VH": -14.0, "angle": 35.0}

WHOLE = RegionPolygon("Big Lake", box(WEST + 1, SOUTH + 1, EAST - 1, NORTH - 1))
PIXEL_M2 = 900.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _split(water: dict[str, float], land: dict[str, float]) -> dict[str, np.ndarray]:
    """Bands that hold *water* values in the western half, *land* in the east."""
    bands = {}
    for name in water:
        arr = np.full(GRID.shape, float(land[name]))
        arr[:, WATER_COLS] = float(water[name])
        bands[name] = arr
    return bands


def _landsat_bands() -> dict[str, np.ndarray]:
    return {**_split(WATER_DN, LAND_DN), "QA_PIXEL": np.zeros(GRID.shape)}


def _radar_bands() -> dict[str, np.ndarray]:
    return _split(WATER_DB, LAND_DB)


def _wind_bands(speed_ms: float) -> dict[str, np.ndarray]:
    return {WIND_U_BAND: np.full(GRID.shape, speed_ms), WIND_V_BAND: np.zeros(GRID.shape)}


def _hand_bands(hand: np.ndarray | None = None) -> dict[str, np.ndarray]:
    return {HAND_BAND: hand if hand is not None else np.full(GRID.shape, 2.0)}


def _scene(source_id: str, acquired: datetime, bands: dict[str, np.ndarray], **properties) -> RasterImage:
    return RasterImage(bands=bands, grid=GRID, acquired=acquired, source_id=source_id, properties=properties)


def _scenes(wind_ms: float = 1.0, hand: np.ndarray | None = None, with_hand: bool = True,
            with_wind: bool = True) -> dict[str, list[RasterImage]]:
    scenes = {
        "LANDSAT_8": [
            _scene("LANDSAT_8", datetime(2021, 5, 5, 17, 50), _landsat_bands(), CLOUD_COVER=2.0),
            _scene("LANDSAT_8", datetime(2021, 6, 3, 17, 50), _landsat_bands(), CLOUD_COVER=5.0),
        ],
        "SENTINEL_1": [
            _scene("SENTINEL_1", datetime(2021, 5, 6, 1, 10), _radar_bands()),
            _scene("SENTINEL_1", datetime(2021, 6, 10, 1, 10), _radar_bands()),
        ],
    }
    if with_wind:
        scenes["WIND"] = [_scene("WIND", datetime(2021, 6, 10), _wind_bands(wind_ms))]
    if with_hand:
        scenes["HAND"] = [_scene("HAND", datetime(2000, 1, 1), _hand_bands(hand))]
    return scenes


def _center(row: int, col: int) -> tuple[float, float]:
    return WEST + 30 * col + 15, NORTH - 30 * row - 15


def _points() -> list[LabeledPoint]:
    """Ten water and ten non-water points on pixel centres."""
    water = [LabeledPoint(*_center(r, c), water=1) for r in (0, 9) for c in range(5)]
    land = [LabeledPoint(*_center(r, c), water=0) for r in (0, 9) for c in range(5, 10)]
    return water + land


def _config(**overrides) -> PipelineConfig:
    options = dict(
        start_date=date(2021, 6, 1),
        end_date=date(2021, 6, 15),
        region="Big Lake",
        training_start=date(2021, 5, 1),
        training_end=date(2021, 5, 15),
        ensemble_size=10,
        smoothing_radius_px=1,
        optical_sources=["LANDSAT_8"],
        crs="EPSG:32612",
        retry_delay_s=0.0,
    )
    options.update(overrides)
    return PipelineConfig(**options)


def _models(service: InMemoryRasterService, config: PipelineConfig) -> FittedModels:
    return train_models(build_training_samples(service, config, _points()), config)


@pytest.fixture(scope="module")
def trained() -> tuple[InMemoryRasterService, PipelineConfig, FittedModels]:
    config = _config()
    service = InMemoryRasterService(GRID, _scenes())
    return service, config, _models(service, config)


# ---------------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------------

class TestTrainingStage:
    """build_training_samples() and train_models()."""

    def test_every_point_sampled(self) -> None:
        config = _config()
        samples = build_training_samples(InMemoryRasterService(GRID, _scenes()), config, _points())
        assert len(samples.optical) == 20
        assert len(samples.radar) == 20
        assert samples.optical.class_counts() == {0: 10, 1: 10}

    def test_predictor_schemas(self, trained) -> None:
        _, _, models = trained
        assert models.optical.predictor_order == ("MNDWI", "AWEIsh", "TCW", "NDVI")
        assert models.radar.predictor_order == ("VV", "VH", "angle")
        assert models.optical.ensemble_size == 10

    def test_no_points_raises(self) -> None:
        with pytest.raises(InputValidationError, match="No labeled points"):
            build_training_samples(InMemoryRasterService(GRID, _scenes()), _config(), [])

    def test_no_training_scenes_raises(self) -> None:
        config = _config(training_start=date(2020, 1, 1), training_end=date(2020, 2, 1))
        with pytest.raises(InputValidationError, match="empty collection"):
            build_training_samples(InMemoryRasterService(GRID, _scenes()), config, _points())

    def test_cloudy_training_scene_excluded(self) -> None:
        scenes = _scenes()
        scenes["LANDSAT_8"][0] = scenes["LANDSAT_8"][0].with_properties(CLOUD_COVER=60.0)
        with pytest.raises(InputValidationError):
            build_training_samples(InMemoryRasterService(GRID, scenes), _config(), _points())


# ---------------------------------------------------------------------------
# Single region
# ---------------------------------------------------------------------------

class TestRunPipeline:
    """run_pipeline() produces one record per period."""

    def test_one_record_per_week(self, trained) -> None:
        service, config, models = trained
        series = run_pipeline(WHOLE, (config.start_date, config.end_date), config,
                              models=models, service=service)
        assert len(series) == 2
        assert [r.period_start for r in series] == [date(2021, 6, 1), date(2021, 6, 8)]
        assert all(r.region_id == "Big Lake" for r in series)

    def test_areas(self, trained) -> None:
        service, config, models = trained
        series = run_pipeline(WHOLE, (config.start_date, config.end_date), config,
                              models=models, service=service)
        assert series[0].water_area_m2 == pytest.approx(50 * PIXEL_M2)
        assert series[1].water_area_m2 == pytest.approx(40 * PIXEL_M2)

    def test_image_counts_and_dates(self, trained) -> None:
        service, config, models = trained
        series = run_pipeline(WHOLE, (config.start_date, config.end_date), config,
                              models=models, service=service)
        assert [r.image_count for r in series] == [1, 1]
        assert series[0].source_image_dates == ("2021-06-03",)
        assert series[1].source_image_dates == ("2021-06-10",)

    def test_empty_period_reported_as_null(self, trained) -> None:
        service, _, models = trained
        config = _config(end_date=date(2021, 6, 22))
        with pytest.warns(DataQualityWarning, match="No images"):
            series = run_pipeline(WHOLE, (config.start_date, config.end_date), config,
                                  models=models, service=service)
        assert len(series) == 3
        assert series[2].water_area_m2 is None
        assert series[2].flag == "no_images"
        assert series[2].image_count == 0

    def test_monthly_granularity(self, trained) -> None:
        service, _, models = trained
        config = _config(period_granularity="month", end_date=date(2021, 7, 1))
        series = run_pipeline(WHOLE, (config.start_date, config.end_date), config,
                              models=models, service=service)
        assert len(series) == 1
        assert series[0].image_count == 2

    def test_out_of_season_optical_ignored(self, trained) -> None:
        service, _, models = trained
        config = _config(season_months=(9, 10))
        with pytest.warns(DataQualityWarning, match="No images"):
            series = run_pipeline(WHOLE, (config.start_date, config.end_date), config,
                                  models=models, service=service)
        assert series[0].image_count == 0
        assert series[1].image_count == 1

    def test_reversed_range_raises(self, trained) -> None:
        service, config, models = trained
        with pytest.raises(InputValidationError):
            run_pipeline(WHOLE, (date(2021, 6, 15), date(2021, 6, 1)), config,
                         models=models, service=service)


class TestSameWeekFusion:
    """Optical and radar votes fused inside one week."""

    def _service(self) -> InMemoryRasterService:
        scenes = _scenes()
        scenes["SENTINEL_1"][1] = _scene("SENTINEL_1", datetime(2021, 6, 4, 1, 10), _radar_bands())
        scenes["WIND"] = [_scene("WIND", datetime(2021, 6, 4), _wind_bands(1.0))]
        return InMemoryRasterService(GRID, scenes)

    def test_fused_area_and_count(self, trained) -> None:
        _, config, models = trained
        config = _config(end_date=date(2021, 6, 8))
        series = run_pipeline(WHOLE, (config.start_date, config.end_date), config,
                              models=models, service=self._service())
        assert len(series) == 1
        record = series[0]
        assert record.image_count == 2
        assert record.source_image_dates == ("2021-06-03", "2021-06-04")
        # Column 4 is water to optical and smoothed away by radar: a tie, so dry.
        assert record.water_area_m2 == pytest.approx(40 * PIXEL_M2)

    def test_tied_column_is_dry(self, trained) -> None:
        _, config, models = trained
        config = _config(end_date=date(2021, 6, 8))
        composites = build_composites(WHOLE, (config.start_date, config.end_date), config,
                                      models, self._service())
        labels = composites[0].image.band(CLASSIFICATION_BAND)
        assert labels[:, :4].filled(0).min() == 1.0
        assert labels[:, 4:].filled(1).max() == 0.0


# ---------------------------------------------------------------------------
# Environmental masks
# ---------------------------------------------------------------------------

class TestEnvironmentalMasks:
    """Wind and drainage masks applied by the pipeline."""

    def test_windy_period_masks_radar(self, trained) -> None:
        _, config, models = trained
        service = InMemoryRasterService(GRID, _scenes(wind_ms=10.0))   # 36 km/h
        series = run_pipeline(WHOLE, (config.start_date, config.end_date), config,
                              models=models, service=service)
        assert series[0].water_area_m2 == pytest.approx(50 * PIXEL_M2)
        assert series[1].water_area_m2 == 0.0

    def test_missing_wind_warns_and_keeps_radar(self, trained) -> None:
        _, config, models = trained
        service = InMemoryRasterService(GRID, _scenes(with_wind=False))
        with pytest.warns(DataQualityWarning, match="wind"):
            series = run_pipeline(WHOLE, (config.start_date, config.end_date), config,
                                  models=models, service=service)
        assert series[1].water_area_m2 == pytest.approx(40 * PIXEL_M2)

    def test_high_ground_masked(self, trained) -> None:
        _, config, models = trained
        hand = np.full(GRID.shape, 2.0)
        hand[0, :] = 25.0
        service = InMemoryRasterService(GRID, _scenes(hand=hand))
        series = run_pipeline(WHOLE, (config.start_date, config.end_date), config,
                              models=models, service=service)
        assert series[0].water_area_m2 == pytest.approx(45 * PIXEL_M2)
        assert series[1].water_area_m2 == pytest.approx(36 * PIXEL_M2)

    def test_missing_hand_warns(self, trained) -> None:
        _, config, models = trained
        service = InMemoryRasterService(GRID, _scenes(with_hand=False))
        with pytest.warns(DataQualityWarning, match="HAND"):
            series = run_pipeline(WHOLE, (config.start_date, config.end_date), config,
                                  models=models, service=service)
        assert series[0].water_area_m2 == pytest.approx(50 * PIXEL_M2)

    def test_high_ground_lowers_coverage(self, trained) -> None:
        _, config, models = trained
        hand = np.full(GRID.shape, 2.0)
        hand[0, :] = 25.0
        service = InMemoryRasterService(GRID, _scenes(hand=hand))
        composites = build_composites(WHOLE, (config.start_date, config.end_date), config,
                                      models, service)
        assert [c.coverage for c in composites] == pytest.approx([0.9, 0.9])


# ---------------------------------------------------------------------------
# Query output
# ---------------------------------------------------------------------------

class TestRunQuery:
    """run_query() returns the latest composite with true-colour bands."""

    def test_latest_composite_bands(self, trained) -> None:
        service, config, models = trained
        result = run_query(WHOLE, (config.start_date, config.end_date), config,
                           models=models, service=service)
        image = result.latest_composite
        assert image is not None
        assert image.band_names == (CLASSIFICATION_BAND, "red", "green", "blue")
        assert image.acquired == datetime(2021, 6, 8)
        assert image.band("red")[0, 0] == pytest.approx(600 / 10000)

    def test_time_series_included(self, trained) -> None:
        service, config, models = trained
        result = run_query(WHOLE, (config.start_date, config.end_date), config,
                           models=models, service=service)
        assert len(result.time_series) == 2

    def test_all_periods_empty(self, trained) -> None:
        service, _, models = trained
        config = _config(start_date=date(2021, 8, 1), end_date=date(2021, 8, 8))
        with pytest.warns(DataQualityWarning):
            result = run_query(WHOLE, (config.start_date, config.end_date), config,
                               models=models, service=service)
        assert result.latest_composite is None
        assert result.time_series[0].water_area_m2 is None


# ---------------------------------------------------------------------------
# Many regions
# ---------------------------------------------------------------------------

class _CountingService(InMemoryRasterService):
    """In-memory service that counts ``filter`` calls per source."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.calls: Counter[str] = Counter()

    def filter(self, source_id, *args, **kwargs):
        self.calls[source_id] += 1
        return super().filter(source_id, *args, **kwargs)


class TestRunRegions:
    """run_regions() keeps regions independent."""

    def test_left_and_right_halves(self, trained) -> None:
        service, config, models = trained
        left = RegionPolygon("west", box(WEST + 1, SOUTH + 1, WEST + 140, NORTH - 1))
        right = RegionPolygon("east", box(WEST + 160, SOUTH + 1, EAST - 1, NORTH - 1))
        results = run_regions([right, left], (config.start_date, config.end_date), config,
                              models=models, service=service)
        assert list(results) == ["east", "west"]
        assert results["west"][0].water_area_m2 == pytest.approx(50 * PIXEL_M2)
        assert results["east"][0].water_area_m2 == 0.0
        assert results["east"][1].water_area_m2 == 0.0

    def test_results_equal_single_runs(self, trained) -> None:
        service, config, models = trained
        window = (config.start_date, config.end_date)
        single = run_pipeline(WHOLE, window, config, models=models, service=service)
        many = run_regions([WHOLE], window, config, models=models, service=service)
        assert [r.water_area_m2 for r in many["Big Lake"]] == [r.water_area_m2 for r in single]

    def test_imagery_queried_once_for_all_regions(self, trained) -> None:
        _, config, models = trained
        window = (config.start_date, config.end_date)
        left = RegionPolygon("west", box(WEST + 1, SOUTH + 1, WEST + 140, NORTH - 1))
        right = RegionPolygon("east", box(WEST + 160, SOUTH + 1, EAST - 1, NORTH - 1))

        one = _CountingService(GRID, _scenes())
        run_regions([WHOLE], window, config, models=models, service=one)
        three = _CountingService(GRID, _scenes())
        results = run_regions([left, right, WHOLE], window, config, models=models, service=three)

        assert three.calls == one.calls
        assert results["west"][1].water_area_m2 + results["east"][1].water_area_m2 == pytest.approx(
            results["Big Lake"][1].water_area_m2
        )


# ---------------------------------------------------------------------------
# File-driven tool
# ---------------------------------------------------------------------------

def _write_tif(path: Path, bands: dict[str, np.ndarray]) -> str:
    profile = {
        "driver": "GTiff",
        "dtype": "float32",
        "count": len(bands),
        "height": GRID.height,
        "width": GRID.width,
        "crs": GRID.crs,
        "transform": GRID.transform,
    }
    with rasterio.open(path, "w", **profile) as dst:
        for index, (name, values) in enumerate(bands.items(), start=1):
            dst.write(values.astype("float32"), index)
            dst.set_band_description(index, name)
    return path.name


def _write_inputs(tmp_path: Path, **config_overrides) -> dict[str, Path]:
    """Write scenes, manifest, point layers, allotments, and config to disk."""
    rows = []
    for source_id, images in _scenes().items():
        for image in images:
            name = _write_tif(tmp_path / f"{source_id}_{image.date_str}.tif",
                              {b: image.bands[b].filled(np.nan) for b in image.band_names})
            rows.append({
                "source_id": source_id,
                "path": name,
                "acquired": image.acquired.isoformat(),
                "CLOUD_COVER": image.properties.get("CLOUD_COVER"),
            })
    manifest = tmp_path / "manifest.csv"
    pd.DataFrame(rows).to_csv(manifest, index=False)

    points = _points()
    paths = {"manifest": manifest}
    for label, name in ((1, "waterPoints"), (0, "nonWaterPoints")):
        layer = [Point(p.x, p.y) for p in points if p.water == label]
        paths[name] = tmp_path / f"{name}.geojson"
        gpd.GeoDataFrame({"id": range(len(layer))}, geometry=layer, crs="EPSG:32612").to_file(
            paths[name], driver="GeoJSON"
        )

    paths["regions"] = tmp_path / "allotments.geojson"
    gpd.GeoDataFrame(
        {"State_Name": ["Arizona"], "National_F": ["Tonto"],
         "ADMIN_ORG_": ["Payson"], "ALLOTMENT_": ["Big Lake"]},
        geometry=[WHOLE.geometry],
        crs="EPSG:32612",
    ).to_file(paths["regions"], driver="GeoJSON")

    config = {
        "start_date": "2021-06-01",
        "end_date": "2021-06-15",
        "region": "Big Lake",
        "training_start": "2021-05-01",
        "training_end": "2021-05-15",
        "ensemble_size": 10,
        "smoothing_radius_px": 1,
        "optical_sources": ["LANDSAT_8"],
        "crs": "EPSG:32612",
        "retry_delay_s": 0,
        **config_overrides,
    }
    paths["config"] = tmp_path / "swift.json"
    paths["config"].write_text(json.dumps(config), encoding="utf-8")
    return paths


def _tool(paths: dict[str, Path], output: Path) -> SurfaceWaterPipeline:
    return SurfaceWaterPipeline(
        input_path=paths["config"],
        output_path=output,
        manifest_path=paths["manifest"],
        water_points_path=paths["waterPoints"],
        nonwater_points_path=paths["nonWaterPoints"],
        regions_path=paths["regions"],
    )


class TestGridForBounds:
    """grid_for_bounds() keeps scene pixels unshifted."""

    def test_snapped_to_scene_origin(self) -> None:
        grid = grid_for_bounds((WEST + 1, SOUTH + 1, EAST - 1, NORTH - 1), _config(), (WEST, NORTH))
        assert grid.shape == (10, 10)
        assert grid.bounds == pytest.approx((WEST, SOUTH, EAST, NORTH))

    def test_offset_origin_respected(self) -> None:
        grid = grid_for_bounds((WEST + 1, SOUTH + 1, EAST - 1, NORTH - 1), _config(), (WEST + 10, NORTH))
        assert grid.bounds == pytest.approx((WEST - 20, SOUTH, EAST + 10, NORTH))

    def test_degenerate_bounds_get_one_pixel(self) -> None:
        grid = grid_for_bounds((WEST, SOUTH, WEST, SOUTH), _config(), (WEST, NORTH))
        assert grid.shape == (1, 1)

    def test_file_run_grid_matches_scenes(self, tmp_path: Path) -> None:
        paths = _write_inputs(tmp_path)
        tool = _tool(paths, tmp_path / "output")
        tool.run()
        assert tool.result is not None
        assert tool.result.latest_composite is not None
        assert tool.result.latest_composite.grid.bounds == pytest.approx((WEST, SOUTH, EAST, NORTH))


class TestSurfaceWaterPipeline:
    """End-to-end run from files on disk."""

    def test_outputs_written(self, tmp_path: Path) -> None:
        paths = _write_inputs(tmp_path)
        output = tmp_path / "output"
        _tool(paths, output).run()
        assert (output / "water_area.csv").exists()
        assert (output / "water_area.png").exists()
        assert (output / "latest_composite.tif").exists()

    def test_csv_areas(self, tmp_path: Path) -> None:
        paths = _write_inputs(tmp_path)
        output = tmp_path / "output"
        _tool(paths, output).run()
        frame = pd.read_csv(output / "water_area.csv")
        assert frame["date"].tolist() == ["2021-06-01", "2021-06-08"]
        assert frame["area_m2"].tolist() == pytest.approx([50 * PIXEL_M2, 40 * PIXEL_M2])
        assert frame["image_count"].tolist() == [1, 1]

    def test_composite_bands(self, tmp_path: Path) -> None:
        paths = _write_inputs(tmp_path)
        output = tmp_path / "output"
        _tool(paths, output).run()
        with rasterio.open(output / "latest_composite.tif") as src:
            assert src.descriptions == (CLASSIFICATION_BAND, "red", "green", "blue")

    def test_config_without_region_raises(self, tmp_path: Path) -> None:
        paths = _write_inputs(tmp_path, region="")
        with pytest.raises(InputValidationError, match="region"):
            _tool(paths, tmp_path / "output").run()

    def test_unknown_allotment_raises(self, tmp_path: Path) -> None:
        paths = _write_inputs(tmp_path, region="Nowhere")
        with pytest.raises(InputValidationError, match="Nowhere"):
            _tool(paths, tmp_path / "output").run()
