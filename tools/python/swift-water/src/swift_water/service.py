"""
SWIFT — Raster Data Service
============================
Boundary to the raster storage/compute backend.

The pipeline never reads files or reduces pixels itself: it asks a
:class:`RasterDataService` to filter collections, mosaic, convolve, and
reduce over regions.  Two services ship with the package:

    InMemoryRasterService   Serves already-loaded images (tests, notebooks).
    LocalRasterService      Serves GeoTIFF scenes listed in a CSV manifest,
                            warped onto one analysis grid with rasterio.

Also here:

    call_with_retry             Bounded exponential backoff for idempotent reads.
    RadarPreprocessor           Black-box SAR preprocessing interface.
    SchemaCheckingPreprocessor  Pass-through for scenes that are already
                                border-noise corrected, speckle filtered,
                                and terrain flattened.

Manifest format (CSV)::

    source_id,path,acquired,cloud_cover
    LANDSAT_8,scenes/LC08_20210603.tif,2021-06-03T17:52:00,3.1
    S1,scenes/S1_20210605.tif,2021-06-05T01:12:00,
    HAND,static/merit_hand.tif,2000-01-01,

Band names come from the GeoTIFF band descriptions.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Literal, Mapping, Sequence, TypeVar

import numpy as np
import pandas as pd
import rasterio
from rasterio.features import geometry_mask
from rasterio.warp import Resampling, reproject, transform, transform_bounds
from scipy.ndimage import uniform_filter
from shapely.geometry import box, mapping
from shapely.geometry.base import BaseGeometry

from shared.python.exceptions import (
    CoverageError,
    ExternalServiceError,
    InputValidationError,
    RasterError,
    ResourceLimitError,
)
from shared.python.validators import Validators

from swift_water.raster import RasterCollection, RasterGrid, RasterImage

logger = logging.getLogger("swift.service")

DateRange = tuple[datetime, datetime]
MetadataPredicate = Callable[[Mapping[str, Any]], bool]
Reducer = Literal["sum", "mean", "count"]

T = TypeVar("T")

RADAR_BANDS: tuple[str, ...] = ("VV", "VH", "angle")


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


def call_with_retry(
    fn: Callable[..., T],
    *args: Any,
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    **kwargs: Any,
) -> T:
    """Call *fn*, retrying on :class:`ExternalServiceError`.

    Only use this for idempotent reads.  The wait before retry *n* is
    ``delay * backoff ** (n - 1)`` seconds.

    Raises:
        ExternalServiceError: When every attempt failed.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn(*args, **kwargs)
        except ExternalServiceError as exc:
            logger.warning("Raster service attempt %d/%d failed: %s", attempt, attempts, exc)
            if attempt < attempts:
                time.sleep(delay * backoff ** (attempt - 1))
            else:
                raise
    raise ExternalServiceError("call_with_retry() needs attempts >= 1.")


# ---------------------------------------------------------------------------
# Focal mean
# ---------------------------------------------------------------------------


def masked_box_mean(band: np.ma.MaskedArray, radius: int) -> np.ma.MaskedArray:
    """Mean of the valid pixels in a ``2 * radius + 1`` square window.

    Masked pixels carry no weight: each output value is the window sum of
    valid values divided by the window count of valid pixels.  Pixels
    masked in *band* stay masked.
    """
    size = 2 * int(radius) + 1
    mask = np.ma.getmaskarray(band)
    totals = uniform_filter(np.ma.filled(band, 0.0).astype(np.float64), size=size, mode="nearest")
    weights = uniform_filter((~mask).astype(np.float64), size=size, mode="nearest")
    with np.errstate(divide="ignore", invalid="ignore"):
        values = np.where(weights > 0, totals / np.where(weights > 0, weights, 1.0), 0.0)
    return np.ma.MaskedArray(values, mask=mask)


# ---------------------------------------------------------------------------
# Service ABC
# ---------------------------------------------------------------------------


class RasterDataService(ABC):
    """Abstract raster backend bound to one analysis grid.

    Subclasses implement :meth:`filter`.  Mosaicking, convolution, and
    region reduction are provided here with numpy/scipy/rasterio and may
    be overridden by backends that push the work elsewhere.

    Args:
        grid: The analysis grid every served image is aligned to.
    """

    def __init__(self, grid: RasterGrid) -> None:
        self.grid = grid

    @abstractmethod
    def filter(
        self,
        source_id: str,
        bounds: BaseGeometry | None = None,
        date_range: DateRange | None = None,
        predicate: MetadataPredicate | None = None,
    ) -> RasterCollection:
        """Return the lazy, time-ordered collection matching the filters.

        Args:
            source_id: Collection identifier, e.g. ``"LANDSAT_8"``.
            bounds: Keep scenes whose footprint intersects this geometry.
            date_range: Keep scenes acquired in ``[start, end)``.
            predicate: Keep scenes whose metadata satisfies this callable.
        """

    def map(
        self,
        collection: RasterCollection,
        fn: Callable[[RasterImage], RasterImage],
    ) -> RasterCollection:
        return collection.map(fn)

    def mosaic(self, collection: RasterCollection) -> RasterImage:
        """Fill each pixel from the first image, in sequence order, that has data.

        Every image must carry the first image's bands.  The result is
        stamped with the latest acquisition time in the collection.

        Raises:
            InputValidationError: If the collection is empty.
            BandNotFoundError: If an image lacks one of the bands.
        """
        filled: dict[str, np.ma.MaskedArray] | None = None
        first: RasterImage | None = None
        latest: datetime | None = None
        count = 0

        for image in collection:
            count += 1
            latest = image.acquired if latest is None else max(latest, image.acquired)
            if filled is None:
                first = image
                filled = {name: arr.copy() for name, arr in image.bands.items()}
                continue
            Validators.assert_bands_present(list(filled), image.band_names)
            for name, arr in filled.items():
                gap = np.ma.getmaskarray(arr)
                if not gap.any():
                    continue
                incoming = image.bands[name]
                take = gap & ~np.ma.getmaskarray(incoming)
                arr[take] = incoming.data[take]

        if filled is None or first is None or latest is None:
            raise InputValidationError(
                f"Cannot mosaic an empty collection ({collection.label or 'unnamed'})."
            )

        logger.debug("Mosaicked %d image(s) from %s.", count, collection.label or "collection")
        return RasterImage(
            bands=filled,
            grid=first.grid,
            acquired=latest,
            source_id=first.source_id,
            properties={"image_count": count},
        )

    def convolve(self, image: RasterImage, radius: int) -> RasterImage:
        """Apply a square box kernel of ``2 * radius + 1`` pixels.

        The kernel is normalised over valid pixels only (see
        :func:`masked_box_mean`), so no-data never counts as a zero.
        """
        smoothed = {name: masked_box_mean(arr, radius) for name, arr in image.bands.items()}
        return image.with_bands(smoothed, replace=True)

    def reduce_region(
        self,
        image: RasterImage,
        band: str,
        region: BaseGeometry,
        reducer: Reducer = "sum",
        scale: float | None = None,
        max_pixels: float = 1e10,
    ) -> float:
        """Reduce *band* over the pixels of *image* that intersect *region*.

        Args:
            image: Image to reduce.
            band: Band to reduce.
            region: Polygon in the grid CRS.
            reducer: ``"sum"``, ``"mean"``, or ``"count"`` of valid pixels.
            scale: Pixel size in metres; must match the native resolution
                   (resampling happens when scenes are served).
            max_pixels: Pixel budget for the region's bounding window.

        Raises:
            ResourceLimitError: If the region window exceeds *max_pixels*.
            CoverageError: If the region does not touch the grid.
            InputValidationError: If *scale* differs from the native size.
        """
        grid = image.grid
        x_res, y_res = grid.resolution
        if scale is not None and not np.isclose(scale, x_res, rtol=1e-6):
            raise InputValidationError(
                f"Requested scale {scale} m differs from the native resolution {x_res} m."
            )

        # Budget check on the region's bounding window before rasterising.
        minx, miny, maxx, maxy = region.bounds
        window_pixels = int(np.ceil((maxx - minx) / x_res) * np.ceil((maxy - miny) / y_res))
        if window_pixels > max_pixels:
            raise ResourceLimitError(window_pixels, max_pixels)

        if not region.intersects(grid.footprint()):
            raise CoverageError("Region does not intersect the analysis grid.")

        inside = geometry_mask(
            [mapping(region)],
            out_shape=grid.shape,
            transform=grid.transform,
            all_touched=True,
            invert=True,
        )
        values = image.band(band)
        selected = inside & ~np.ma.getmaskarray(values)

        if reducer == "count":
            return float(selected.sum())
        if reducer == "sum":
            return float(values.data[selected].sum())
        if reducer == "mean":
            return float(values.data[selected].mean()) if selected.any() else float("nan")
        raise InputValidationError(f"Unsupported reducer {reducer!r}.")


# ---------------------------------------------------------------------------
# In-memory service
# ---------------------------------------------------------------------------


class InMemoryRasterService(RasterDataService):
    """Serve images that are already on the analysis grid.

    Args:
        grid: The analysis grid.
        images: Mapping ``source_id → images``.
    """

    def __init__(
        self,
        grid: RasterGrid,
        images: Mapping[str, Sequence[RasterImage]] | None = None,
    ) -> None:
        super().__init__(grid)
        self._images: dict[str, list[RasterImage]] = {
            source: sorted(items, key=lambda im: im.acquired)
            for source, items in (images or {}).items()
        }

    def add(self, source_id: str, image: RasterImage) -> None:
        Validators.assert_raster_shapes_match(image.grid.shape, self.grid.shape, "image", "grid")
        items = self._images.setdefault(source_id, [])
        items.append(image)
        items.sort(key=lambda im: im.acquired)

    def filter(
        self,
        source_id: str,
        bounds: BaseGeometry | None = None,
        date_range: DateRange | None = None,
        predicate: MetadataPredicate | None = None,
    ) -> RasterCollection:
        def factory() -> Iterator[RasterImage]:
            for image in list(self._images.get(source_id, [])):
                if date_range is not None and not date_range[0] <= image.acquired < date_range[1]:
                    continue
                if bounds is not None and not bounds.intersects(image.grid.footprint()):
                    continue
                if predicate is not None and not predicate(image.properties):
                    continue
                yield image

        return RasterCollection(factory, label=source_id)


# ---------------------------------------------------------------------------
# GeoTIFF manifest service
# ---------------------------------------------------------------------------


class LocalRasterService(RasterDataService):
    """Serve GeoTIFF scenes from a CSV manifest, warped onto *grid*.

    Scene metadata (every manifest column other than ``path``) is
    evaluated before any pixels are read, so predicates such as a
    cloud-cover threshold cost nothing for rejected scenes.

    Args:
        manifest: Path to the manifest CSV, or a DataFrame with the same columns.
        grid: The analysis grid.
        resampling: rasterio resampling used when warping scenes.
        retry_attempts: Attempts per scene read.
        retry_delay: Initial wait between attempts, in seconds.
    """

    REQUIRED_COLUMNS = ["source_id", "path", "acquired"]

    def __init__(
        self,
        manifest: Path | pd.DataFrame,
        grid: RasterGrid,
        resampling: Resampling = Resampling.nearest,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        super().__init__(grid)
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._table = self.read_manifest(manifest)
        self.resampling = resampling

    @classmethod
    def read_manifest(cls, manifest: Path | pd.DataFrame) -> pd.DataFrame:
        """Load *manifest* with absolute scene paths, sorted by acquisition time."""
        if isinstance(manifest, pd.DataFrame):
            table = manifest.copy()
            base_dir = Path(".")
        else:
            manifest = Path(manifest)
            Validators.assert_file_exists(manifest)
            table = pd.read_csv(manifest)
            base_dir = manifest.parent

        Validators.assert_columns_exist(table, cls.REQUIRED_COLUMNS)
        table["acquired"] = pd.to_datetime(table["acquired"])
        table["path"] = [
            str(p if Path(p).is_absolute() else base_dir / p) for p in table["path"]
        ]
        return table.sort_values("acquired", kind="stable").reset_index(drop=True)

    @classmethod
    def scene_origin(cls, manifest: Path | pd.DataFrame, crs: Any) -> tuple[float, float]:
        """Upper-left corner of the first manifest scene, in *crs*.

        Analysis grids snapped to this point share the scenes' pixel
        lattice, so nearest-neighbour warping does not shift pixels.

        Raises:
            InputValidationError: If the manifest lists no scenes.
            ExternalServiceError: If the reference scene cannot be opened.
        """
        table = cls.read_manifest(manifest)
        if table.empty:
            raise InputValidationError("The scene manifest lists no scenes.")
        path = table.loc[0, "path"]
        try:
            with rasterio.open(path) as src:
                x, y = src.transform.c, src.transform.f
                src_crs = src.crs
        except rasterio.errors.RasterioIOError as exc:
            raise ExternalServiceError(f"Could not read scene '{path}': {exc}") from exc
        if src_crs is not None and src_crs != rasterio.crs.CRS.from_user_input(crs):
            xs, ys = transform(src_crs, crs, [x], [y])
            x, y = xs[0], ys[0]
        return float(x), float(y)

    @property
    def sources(self) -> list[str]:
        return sorted(self._table["source_id"].unique())

    def filter(
        self,
        source_id: str,
        bounds: BaseGeometry | None = None,
        date_range: DateRange | None = None,
        predicate: MetadataPredicate | None = None,
    ) -> RasterCollection:
        rows = self._table[self._table["source_id"] == source_id]
        if date_range is not None:
            start, end = pd.Timestamp(date_range[0]), pd.Timestamp(date_range[1])
            rows = rows[(rows["acquired"] >= start) & (rows["acquired"] < end)]

        def factory() -> Iterator[RasterImage]:
            for record in rows.to_dict("records"):
                properties = {
                    k: v for k, v in record.items()
                    if k not in ("path", "acquired") and not (isinstance(v, float) and np.isnan(v))
                }
                if predicate is not None and not predicate(properties):
                    continue
                image = call_with_retry(
                    self._load,
                    record["path"],
                    record["acquired"].to_pydatetime(),
                    properties,
                    attempts=self.retry_attempts,
                    delay=self.retry_delay,
                )
                if bounds is not None and not bounds.intersects(
                    box(*image.properties["footprint"])
                ):
                    continue
                yield image

        return RasterCollection(factory, label=source_id)

    def _load(self, path: str, acquired: datetime, properties: dict[str, Any]) -> RasterImage:
        """Read every band of *path* and warp it onto the analysis grid.

        Raises:
            ExternalServiceError: If the file cannot be opened or read.
        """
        try:
            with rasterio.open(path) as src:
                footprint = transform_bounds(src.crs, self.grid.crs, *src.bounds)
                bands: dict[str, np.ma.MaskedArray] = {}
                for index in range(1, src.count + 1):
                    name = src.descriptions[index - 1] or f"b{index}"
                    destination = np.full(self.grid.shape, np.nan, dtype=np.float64)
                    reproject(
                        source=rasterio.band(src, index),
                        destination=destination,
                        src_nodata=src.nodata,
                        dst_transform=self.grid.transform,
                        dst_crs=self.grid.crs,
                        dst_nodata=np.nan,
                        resampling=self.resampling,
                    )
                    bands[name] = np.ma.masked_invalid(destination)
        except rasterio.errors.RasterioIOError as exc:
            raise ExternalServiceError(f"Could not read scene '{path}': {exc}") from exc

        if not bands:
            raise RasterError(f"Scene '{path}' has no bands.")

        logger.debug("Loaded %s (%d band(s)) from %s.", properties.get("source_id"), len(bands), path)
        return RasterImage(
            bands=bands,
            grid=self.grid,
            acquired=acquired,
            source_id=str(properties.get("source_id", "")),
            properties={**properties, "footprint": tuple(footprint)},
        )


# ---------------------------------------------------------------------------
# Radar preprocessing boundary
# ---------------------------------------------------------------------------

# Reference configuration handed to the upstream SAR preprocessor.
RADAR_PREPROCESS_DEFAULTS: dict[str, Any] = dict(
    polarization="VVVH",
    orbit="BOTH",
    apply_additional_border_noise_correction=True,
    apply_speckle_filtering=True,
    speckle_filter_framework="MULTI",
    speckle_filter="LEE",
    speckle_filter_kernel_size=9,
    speckle_filter_nr_of_images=10,
    apply_terrain_flattening=True,
    terrain_flattening_model="VOLUME",
    terrain_flattening_additional_layover_shadow_buffer=0,
    output_format="DB",
)


class RadarPreprocessor(ABC):
    """Opaque SAR preprocessing step.

    Implementations take raw radar scenes and return calibrated scenes
    carrying exactly the ``VV``, ``VH``, ``angle`` bands.
    """

    @abstractmethod
    def preprocess(
        self,
        collection: RasterCollection,
        config: Mapping[str, Any] | None = None,
    ) -> RasterCollection:
        """Return the calibrated collection."""


class SchemaCheckingPreprocessor(RadarPreprocessor):
    """Pass through scenes that were calibrated upstream.

    Each scene is checked for the ``VV, VH, angle`` schema and restricted
    to those bands.
    """

    def preprocess(
        self,
        collection: RasterCollection,
        config: Mapping[str, Any] | None = None,
    ) -> RasterCollection:
        settings = {**RADAR_PREPROCESS_DEFAULTS, **(config or {})}
        logger.debug("Radar scenes assumed calibrated upstream with %s", settings)
        return collection.map(lambda image: image.select(RADAR_BANDS))
