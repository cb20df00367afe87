"""
SWIFT — Raster Data Model
==========================
Immutable in-memory raster types shared by every pipeline stage.

Classes:
    RasterGrid        Affine transform + CRS + shape of the analysis grid.
    RasterImage       Ordered band name → masked array mapping with a timestamp.
    RasterCollection  Lazy, restartable, time-ordered sequence of images.

Functions:
    combine_masks     Logical AND of boolean keep-masks.

Masked pixels are "no data".  Every operation returns a new object; the
arrays held by an image are never written to after construction.

Usage::

    grid = RasterGrid.from_bounds(500000, 3800000, 503000, 3803000, 30, "EPSG:32612")
    image = RasterImage(
        bands={"VV": vv, "VH": vh, "angle": angle},
        grid=grid,
        acquired=datetime(2021, 6, 3),
        source_id="S1",
    )
"""

from __future__ import annotations

import heapq
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

import numpy as np
import numpy.typing as npt
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds, from_origin, rowcol
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from shared.python.exceptions import InputValidationError
from shared.python.validators import Validators


# ---------------------------------------------------------------------------
# Grid
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RasterGrid:
    """Pixel grid every served image is aligned to.

    Attributes:
        transform: Affine transform from pixel to grid CRS coordinates.
        crs: Coordinate reference system of the grid.
        width: Number of columns.
        height: Number of rows.
    """

    transform: Affine
    crs: CRS
    width: int
    height: int

    @classmethod
    def from_bounds(
        cls,
        west: float,
        south: float,
        east: float,
        north: float,
        resolution: float,
        crs: str | CRS,
    ) -> "RasterGrid":
        """Build a north-up grid covering the given bounds at *resolution*."""
        width = int(math.ceil((east - west) / resolution))
        height = int(math.ceil((north - south) / resolution))
        return cls(
            transform=from_origin(west, north, resolution, resolution),
            crs=CRS.from_user_input(crs),
            width=width,
            height=height,
        )

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height, self.width)

    @property
    def resolution(self) -> tuple[float, float]:
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def pixel_area_m2(self) -> float:
        """Area of one pixel in squared CRS units (m² for projected grids)."""
        x_res, y_res = self.resolution
        return x_res * y_res

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        """``(west, south, east, north)`` of the grid."""
        return array_bounds(self.height, self.width, self.transform)

    def footprint(self) -> BaseGeometry:
        return box(*self.bounds)

    def index(self, x: float, y: float) -> tuple[int, int] | None:
        """Return ``(row, col)`` of the pixel containing ``(x, y)``, or ``None``."""
        row, col = rowcol(self.transform, x, y)
        if 0 <= row < self.height and 0 <= col < self.width:
            return int(row), int(col)
        return None


# ---------------------------------------------------------------------------
# Image
# ---------------------------------------------------------------------------


def _as_masked(values: npt.ArrayLike) -> np.ma.MaskedArray:
    """Coerce *values* to a float64 masked array with an explicit mask."""
    arr = np.ma.masked_invalid(np.ma.asarray(values, dtype=np.float64))
    return np.ma.MaskedArray(arr.data, mask=np.ma.getmaskarray(arr))


@dataclass(frozen=True)
class RasterImage:
    """One acquisition on the analysis grid.

    Attributes:
        bands: Ordered mapping band name → 2-D float64 masked array.
        grid: The grid the arrays are aligned to.
        acquired: Acquisition timestamp.
        source_id: Collection the image came from (e.g. ``"LANDSAT_8"``).
        properties: Scene metadata such as ``cloud_cover``.
    """

    bands: Mapping[str, np.ma.MaskedArray]
    grid: RasterGrid
    acquired: datetime
    source_id: str = ""
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        normalised: dict[str, np.ma.MaskedArray] = {}
        for name, values in self.bands.items():
            arr = _as_masked(values)
            Validators.assert_raster_shapes_match(
                arr.shape, self.grid.shape, f"band '{name}'", "grid"
            )
            normalised[name] = arr
        object.__setattr__(self, "bands", normalised)
        object.__setattr__(self, "properties", dict(self.properties))

    # ------------------------------------------------------------------
    # Band access
    # ------------------------------------------------------------------

    @property
    def band_names(self) -> tuple[str, ...]:
        return tuple(self.bands)

    def band(self, name: str) -> np.ma.MaskedArray:
        """Return band *name*.

        Raises:
            BandNotFoundError: If the band does not exist.
        """
        Validators.assert_bands_present([name], self.band_names)
        return self.bands[name]

    def select(
        self,
        names: Sequence[str],
        rename: Sequence[str] | None = None,
    ) -> "RasterImage":
        """Return an image with only *names*, in that order, optionally renamed.

        Raises:
            BandNotFoundError: If any of *names* is missing.
        """
        Validators.assert_bands_present(names, self.band_names)
        targets = list(rename) if rename is not None else list(names)
        if len(targets) != len(names):
            raise InputValidationError(
                f"Cannot rename {len(names)} band(s) to {len(targets)} name(s)."
            )
        return self.with_bands(
            {new: self.bands[old] for old, new in zip(names, targets)},
            replace=True,
        )

    def with_bands(
        self,
        bands: Mapping[str, npt.ArrayLike],
        *,
        replace: bool = False,
    ) -> "RasterImage":
        """Return a copy with *bands* added (or used exclusively if *replace*)."""
        merged: dict[str, npt.ArrayLike] = {} if replace else dict(self.bands)
        merged.update(bands)
        return RasterImage(
            bands=merged,
            grid=self.grid,
            acquired=self.acquired,
            source_id=self.source_id,
            properties=self.properties,
        )

    def with_properties(self, **properties: Any) -> "RasterImage":
        return RasterImage(
            bands=self.bands,
            grid=self.grid,
            acquired=self.acquired,
            source_id=self.source_id,
            properties={**self.properties, **properties},
        )

    # ------------------------------------------------------------------
    # Masking
    # ------------------------------------------------------------------

    def update_mask(self, keep: npt.NDArray[np.bool_]) -> "RasterImage":
        """Exclude every pixel where *keep* is ``False`` from all bands."""
        keep = np.asarray(keep, dtype=bool)
        Validators.assert_raster_shapes_match(keep.shape, self.grid.shape, "mask", "grid")
        return self.with_bands(
            {
                name: np.ma.MaskedArray(arr.data, mask=np.ma.getmaskarray(arr) | ~keep)
                for name, arr in self.bands.items()
            },
            replace=True,
        )

    def valid_mask(self) -> npt.NDArray[np.bool_]:
        """``True`` where every band holds data."""
        valid = np.ones(self.grid.shape, dtype=bool)
        for arr in self.bands.values():
            valid &= ~np.ma.getmaskarray(arr)
        return valid

    @property
    def date_str(self) -> str:
        return self.acquired.strftime("%Y-%m-%d")

    def __repr__(self) -> str:
        return (
            f"<RasterImage {self.source_id or '?'} {self.date_str} "
            f"bands={list(self.band_names)} grid={self.grid.width}x{self.grid.height}>"
        )


def combine_masks(*masks: npt.NDArray[np.bool_]) -> npt.NDArray[np.bool_]:
    """Combine keep-masks by logical AND.

    Raises:
        InputValidationError: If no masks are given or shapes differ.
    """
    if not masks:
        raise InputValidationError("combine_masks() needs at least one mask.")
    combined = np.asarray(masks[0], dtype=bool).copy()
    for mask in masks[1:]:
        mask = np.asarray(mask, dtype=bool)
        Validators.assert_raster_shapes_match(mask.shape, combined.shape, "mask", "mask")
        combined &= mask
    return combined


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


def _by_time(image: RasterImage) -> datetime:
    return image.acquired


class RasterCollection:
    """Lazy, finite, restartable sequence of :class:`RasterImage`.

    The collection holds a zero-argument *factory* rather than images.
    Each iteration calls the factory again, so re-iterating reproduces the
    same sequence for the same source state, and abandoning an iterator
    abandons any work not yet done.

    Args:
        factory: Callable returning an iterable of images in time order.
        label: Short description used in ``repr`` and log messages.
    """

    def __init__(self, factory: Callable[[], Iterable[RasterImage]], label: str = "") -> None:
        self._factory = factory
        self.label = label

    @classmethod
    def from_images(cls, images: Iterable[RasterImage], label: str = "") -> "RasterCollection":
        """Build a collection from concrete images, sorted by acquisition time."""
        ordered = sorted(images, key=_by_time)
        return cls(lambda: iter(ordered), label=label)

    @classmethod
    def empty(cls, label: str = "") -> "RasterCollection":
        return cls(lambda: iter(()), label=label)

    def __iter__(self) -> Iterator[RasterImage]:
        return iter(self._factory())

    # ------------------------------------------------------------------
    # Lazy transforms
    # ------------------------------------------------------------------

    def map(self, fn: Callable[[RasterImage], RasterImage]) -> "RasterCollection":
        return RasterCollection(lambda: (fn(im) for im in self), label=self.label)

    def filter(self, predicate: Callable[[RasterImage], bool]) -> "RasterCollection":
        return RasterCollection(lambda: (im for im in self if predicate(im)), label=self.label)

    def filter_date(self, start: datetime, end: datetime) -> "RasterCollection":
        """Keep images acquired in ``[start, end)``."""
        return self.filter(lambda im: start <= im.acquired < end)

    def merge(self, other: "RasterCollection") -> "RasterCollection":
        """Interleave two time-ordered collections, keeping time order."""
        label = "+".join(part for part in (self.label, other.label) if part)
        return RasterCollection(
            lambda: heapq.merge(iter(self), iter(other), key=_by_time),
            label=label,
        )

    # ------------------------------------------------------------------
    # Terminal operations
    # ------------------------------------------------------------------

    def size(self) -> int:
        return sum(1 for _ in self)

    def first(self) -> RasterImage | None:
        return next(iter(self), None)

    def to_list(self) -> list[RasterImage]:
        return list(self)

    def __repr__(self) -> str:
        return f"<RasterCollection {self.label or 'unnamed'}>"
