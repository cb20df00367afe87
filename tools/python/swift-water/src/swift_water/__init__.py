"""
SWIFT Water
============
Surface Water Identification and Forecasting Tool: classify water from
Landsat 8, Sentinel-2, and Sentinel-1 imagery and report water area per
grazing allotment as a weekly or monthly time series.
"""

from swift_water.accuracy import AccuracyReport, cohen_kappa, evaluate_accuracy
from swift_water.classifier import WaterClassifier, train
from swift_water.compositor import Composite, Period, TemporalCompositor, composite_period, make_periods
from swift_water.config import PipelineConfig, load_config
from swift_water.indices import FeatureExtractor, compute_index_values
from swift_water.labels import LabeledPoint, MosaicOrder, merge_labeled_points, sample_points
from swift_water.pipeline import (
    FittedModels,
    PipelineResult,
    SurfaceWaterPipeline,
    build_training_samples,
    run_pipeline,
    run_query,
    run_regions,
    train_models,
)
from swift_water.raster import RasterCollection, RasterGrid, RasterImage
from swift_water.regions import RegionCatalog, RegionPolygon
from swift_water.service import InMemoryRasterService, LocalRasterService, RasterDataService
from swift_water.zonal import AreaRecord, TimeSeries, ZonalAggregator

__version__ = "1.0.0"

__all__ = [
    "AccuracyReport",
    "AreaRecord",
    "Composite",
    "FeatureExtractor",
    "FittedModels",
    "InMemoryRasterService",
    "LabeledPoint",
    "LocalRasterService",
    "MosaicOrder",
    "Period",
    "PipelineConfig",
    "PipelineResult",
    "RasterCollection",
    "RasterDataService",
    "RasterGrid",
    "RasterImage",
    "RegionCatalog",
    "RegionPolygon",
    "SurfaceWaterPipeline",
    "TemporalCompositor",
    "TimeSeries",
    "WaterClassifier",
    "ZonalAggregator",
    "build_training_samples",
    "cohen_kappa",
    "composite_period",
    "compute_index_values",
    "evaluate_accuracy",
    "load_config",
    "make_periods",
    "merge_labeled_points",
    "run_pipeline",
    "run_query",
    "run_regions",
    "sample_points",
    "train",
    "train_models",
]
