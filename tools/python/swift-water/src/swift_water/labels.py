"""
SWIFT — Label Store & Sampler
==============================
Turns digitized water / non-water observation points into labeled
feature samples for training and accuracy assessment.

Steps:

1. :func:`merge_labeled_points` — one labeled set from the two point sets.
2. :func:`build_training_mosaic` — one best-coverage feature image from
   every training-window scene, with explicit pixel precedence.
3. :func:`sample_points` — read each point's feature vector at the
   mosaic's native resolution and attach a split key in ``[0, 1)``.

Usage::

    points = merge_labeled_points(
        load_points(Path("waterPoints.shp"), water=1, crs=grid.crs),
        load_points(Path("nonWaterPoints.shp"), water=0, crs=grid.crs),
    )
    mosaic = build_training_mosaic(service, features, MosaicOrder.MOST_RECENT_FIRST)
    samples = sample_points(mosaic, points, seed=0)
"""

from __future__ import annotations

import enum
import logging
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

import geopandas as gpd
import numpy as np

from shared.python.exceptions import DataQualityWarning, InputValidationError
from shared.python.validators import Validators

from swift_water.raster import RasterCollection, RasterImage
from swift_water.service import RasterDataService

logger = logging.getLogger("swift.labels")

VECTOR_EXTENSIONS = [".shp", ".geojson", ".json", ".gpkg"]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LabeledPoint:
    """An observation point in the analysis grid CRS.

    Attributes:
        x: Easting / longitude in the grid CRS.
        y: Northing / latitude in the grid CRS.
        water: ``1`` for water, ``0`` for non-water.
    """

    x: float
    y: float
    water: int

    def __post_init__(self) -> None:
        if self.water not in (0, 1):
            raise InputValidationError(f"Label must be 0 or 1, got {self.water!r}.")


@dataclass(frozen=True)
class FeatureVector:
    """Fixed-order named predictors for one point or pixel.

    ``None`` values mean "no data".
    """

    names: tuple[str, ...]
    values: tuple[float | None, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "names", tuple(self.names))
        object.__setattr__(self, "values", tuple(self.values))
        if len(self.names) != len(self.values):
            raise InputValidationError(
                f"FeatureVector has {len(self.names)} name(s) but {len(self.values)} value(s)."
            )

    @property
    def is_complete(self) -> bool:
        return all(v is not None for v in self.values)

    def as_dict(self) -> dict[str, float | None]:
        return dict(zip(self.names, self.values))


@dataclass(frozen=True)
class LabeledSample:
    """A sampled feature vector with its label and split key."""

    point: LabeledPoint
    features: FeatureVector
    split_key: float

    @property
    def label(self) -> int:
        return self.point.water


@dataclass
class SampleSet:
    """Result of :func:`sample_points`.

    Attributes:
        samples: Retained samples, in point order.
        dropped: Points outside the mosaic or on no-data pixels.
    """

    samples: list[LabeledSample] = field(default_factory=list)
    dropped: int = 0

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self):
        return iter(self.samples)

    def class_counts(self) -> dict[int, int]:
        counts = {0: 0, 1: 0}
        for sample in self.samples:
            counts[sample.label] += 1
        return counts


class MosaicOrder(str, enum.Enum):
    """Which scene wins a pixel when several training scenes overlap it."""

    MOST_RECENT_FIRST = "most_recent_first"
    LOWEST_CLOUD_FIRST = "lowest_cloud_first"


# ---------------------------------------------------------------------------
# Point loading / merging
# ---------------------------------------------------------------------------


def load_points(path: Path, water: int, crs: Any = None) -> list[LabeledPoint]:
    """Read a point layer and label every point with *water*.

    Args:
        path: Shapefile, GeoJSON, or GeoPackage of point observations.
        water: Label applied to every point (``1`` or ``0``).
        crs: Reproject to this CRS when given (the analysis grid CRS).

    Raises:
        InputValidationError: If the file is missing or holds non-point geometry.
    """
    Validators.assert_file_exists(path)
    Validators.assert_supported_extension(path, VECTOR_EXTENSIONS)
    gdf = gpd.read_file(path)
    if crs is not None and gdf.crs is not None:
        gdf = gdf.to_crs(crs)

    non_points = ~gdf.geometry.geom_type.isin(["Point"])
    if non_points.any():
        raise InputValidationError(
            f"'{Path(path).name}' contains {int(non_points.sum())} non-point geometries."
        )
    return [LabeledPoint(float(p.x), float(p.y), water) for p in gdf.geometry]


def merge_labeled_points(
    water: Iterable[LabeledPoint],
    nonwater: Iterable[LabeledPoint],
) -> list[LabeledPoint]:
    """Merge the water and non-water point sets into one labeled set.

    Two points at the same coordinate keep the later one (non-water
    points come after water points).  Each collision is reported with a
    :class:`DataQualityWarning`; it is never fatal.
    """
    merged: dict[tuple[float, float], LabeledPoint] = {}
    duplicates = 0
    for point in [*water, *nonwater]:
        key = (point.x, point.y)
        previous = merged.get(key)
        if previous is not None:
            duplicates += 1
            logger.warning(
                "Duplicate label at (%.3f, %.3f): %d replaced by %d.",
                point.x, point.y, previous.water, point.water,
            )
        merged[key] = point

    if duplicates:
        warnings.warn(
            f"{duplicates} duplicate point coordinate(s) found; the last label was kept.",
            DataQualityWarning,
            stacklevel=2,
        )
    return list(merged.values())


# ---------------------------------------------------------------------------
# Training mosaic
# ---------------------------------------------------------------------------


def order_for_mosaic(images: Sequence[RasterImage], order: MosaicOrder) -> list[RasterImage]:
    """Sort *images* so the scene that should win a pixel comes first.

    ``MOST_RECENT_FIRST`` sorts by acquisition time, newest first.
    ``LOWEST_CLOUD_FIRST`` sorts by the ``cloud_cover`` property (scenes
    without one go last), newest first among equals.
    """
    by_recency = sorted(images, key=lambda im: im.acquired, reverse=True)
    if order == MosaicOrder.MOST_RECENT_FIRST:
        return by_recency

    def cloud(image: RasterImage) -> float:
        value = image.properties.get("cloud_cover")
        return float(value) if value is not None else float("inf")

    return sorted(by_recency, key=cloud)


def build_training_mosaic(
    service: RasterDataService,
    collection: RasterCollection,
    order: MosaicOrder = MosaicOrder.MOST_RECENT_FIRST,
) -> RasterImage:
    """Mosaic a feature collection with explicit precedence.

    Raises:
        InputValidationError: If the collection is empty.
    """
    ordered = order_for_mosaic(collection.to_list(), MosaicOrder(order))
    logger.info(
        "Building training mosaic from %d scene(s) (%s).", len(ordered), MosaicOrder(order).value
    )
    return service.mosaic(RasterCollection(lambda: iter(ordered), label=collection.label))


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


def sample_points(
    mosaic: RasterImage,
    points: Sequence[LabeledPoint],
    seed: int = 0,
) -> SampleSet:
    """Sample *mosaic* at each point and attach a split key.

    Points outside the mosaic, or on a pixel where any predictor is
    masked, are dropped and counted.  Split keys come from
    ``numpy.random.default_rng(seed)`` in point order, so the same seed
    and points give the same keys.
    """
    names = mosaic.band_names
    rng = np.random.default_rng(seed)
    result = SampleSet()

    for point in points:
        index = mosaic.grid.index(point.x, point.y)
        if index is None:
            result.dropped += 1
            continue
        row, col = index
        values: list[float | None] = []
        for name in names:
            value = mosaic.bands[name][row, col]
            values.append(None if np.ma.is_masked(value) else float(value))
        vector = FeatureVector(names, tuple(values))
        if not vector.is_complete:
            result.dropped += 1
            continue
        result.samples.append(LabeledSample(point, vector, float(rng.random())))

    if result.dropped:
        logger.warning(
            "%d of %d point(s) fell outside the mosaic or on no-data pixels and were dropped.",
            result.dropped, len(points),
        )
    logger.info("Sampled %d labeled point(s): %s", len(result), result.class_counts())
    return result
