"""
SWIFT — Zonal Aggregator
=========================
Reduces each period's water composite to a water area per region.

``water_area_m2`` is the sum of pixel area over composite pixels labeled
``1`` that touch the region polygon, reduced by the raster service at the
grid's native resolution under an explicit pixel budget.

Failures for one (region, period) never abort the others:

    ResourceLimitError     → record with ``water_area_m2=None``, flag ``"resource_limit"``
    ExternalServiceError   → retried, then flag ``"external_service"``
    empty period           → flag ``"no_images"``

Input errors (a region outside the grid, a geographic CRS) are fatal and
propagate.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Iterator, Sequence

import numpy as np
import pandas as pd

from shared.python.exceptions import (
    ExternalServiceError,
    InputValidationError,
    ResourceLimitError,
)
from shared.python.validators import Validators

from swift_water.classifier import CLASSIFICATION_BAND
from swift_water.compositor import Composite
from swift_water.regions import RegionPolygon
from swift_water.service import RasterDataService, call_with_retry

logger = logging.getLogger("swift.zonal")

AREA_BAND = "water_area"

FLAG_NO_IMAGES = "no_images"
FLAG_RESOURCE_LIMIT = "resource_limit"
FLAG_EXTERNAL_SERVICE = "external_service"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AreaRecord:
    """Water area of one region in one period.

    ``water_area_m2`` is ``None`` exactly when ``flag`` is set.
    """

    region_id: str
    period_start: date
    water_area_m2: float | None
    image_count: int
    source_image_dates: tuple[str, ...] = field(default_factory=tuple)
    flag: str | None = None

    def __post_init__(self) -> None:
        if self.water_area_m2 is not None and self.water_area_m2 < 0:
            raise InputValidationError(
                f"water_area_m2 must be >= 0, got {self.water_area_m2} for {self.region_id}."
            )
        if self.image_count < 0:
            raise InputValidationError(f"image_count must be >= 0, got {self.image_count}.")


class TimeSeries:
    """AreaRecords of one region, sorted by ``period_start``.

    Raises:
        InputValidationError: If records belong to another region or a
            period appears twice.
    """

    COLUMNS = ["region_id", "period_start", "water_area_m2", "image_count", "source_image_dates", "flag"]

    def __init__(self, region_id: str, records: Iterable[AreaRecord] = ()) -> None:
        self.region_id = region_id
        ordered = sorted(records, key=lambda r: r.period_start)
        seen: set[date] = set()
        for record in ordered:
            if record.region_id != region_id:
                raise InputValidationError(
                    f"Record for '{record.region_id}' added to time series of '{region_id}'."
                )
            if record.period_start in seen:
                raise InputValidationError(
                    f"Duplicate period {record.period_start} for region '{region_id}'."
                )
            seen.add(record.period_start)
        self.records: tuple[AreaRecord, ...] = tuple(ordered)

    def __iter__(self) -> Iterator[AreaRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __getitem__(self, index: int) -> AreaRecord:
        return self.records[index]

    def to_frame(self) -> pd.DataFrame:
        """One row per period, columns as in :attr:`COLUMNS`."""
        rows = [
            {
                "region_id": r.region_id,
                "period_start": r.period_start,
                "water_area_m2": r.water_area_m2,
                "image_count": r.image_count,
                "source_image_dates": ";".join(r.source_image_dates),
                "flag": r.flag,
            }
            for r in self.records
        ]
        return pd.DataFrame(rows, columns=self.COLUMNS)

    def __repr__(self) -> str:
        return f"<TimeSeries {self.region_id} records={len(self)}>"


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class ZonalAggregator:
    """Sum water pixel area per region through a raster service.

    Args:
        service: Backend performing the region reduction.
        max_pixels: Pixel budget per reduction.
        retry_attempts: Attempts for each reduction on service errors.
        retry_delay: Initial wait between attempts, in seconds.
    """

    def __init__(
        self,
        service: RasterDataService,
        max_pixels: float = 1e10,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.service = service
        self.max_pixels = max_pixels
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    def _flagged(self, region: RegionPolygon, composite: Composite, flag: str) -> AreaRecord:
        return AreaRecord(
            region_id=region.region_id,
            period_start=composite.period.start.date(),
            water_area_m2=None,
            image_count=composite.image_count,
            source_image_dates=composite.source_image_dates,
            flag=flag,
        )

    def aggregate(self, region: RegionPolygon, composite: Composite) -> AreaRecord:
        """Water area of *region* in *composite*.

        Raises:
            CRSError: If the grid is not projected.
            CoverageError: If the region lies outside the grid.
        """
        if composite.image is None:
            return self._flagged(region, composite, FLAG_NO_IMAGES)

        grid = composite.image.grid
        Validators.assert_projected_crs(grid.crs)
        labels = composite.image.band(CLASSIFICATION_BAND)
        area = composite.image.with_bands(
            {AREA_BAND: np.ma.where(labels == 1, grid.pixel_area_m2, 0.0)}, replace=True
        )

        try:
            total = call_with_retry(
                self.service.reduce_region,
                area,
                AREA_BAND,
                region.geometry,
                reducer="sum",
                scale=grid.resolution[0],
                max_pixels=self.max_pixels,
                attempts=self.retry_attempts,
                delay=self.retry_delay,
            )
        except ResourceLimitError as exc:
            logger.error("Region %s, period %s: %s", region.region_id, composite.period.label, exc)
            return self._flagged(region, composite, FLAG_RESOURCE_LIMIT)
        except ExternalServiceError as exc:
            logger.error(
                "Region %s, period %s: raster service failed after %d attempt(s): %s",
                region.region_id, composite.period.label, self.retry_attempts, exc,
            )
            return self._flagged(region, composite, FLAG_EXTERNAL_SERVICE)

        return AreaRecord(
            region_id=region.region_id,
            period_start=composite.period.start.date(),
            water_area_m2=max(float(total), 0.0),
            image_count=composite.image_count,
            source_image_dates=composite.source_image_dates,
        )

    def time_series(self, region: RegionPolygon, composites: Sequence[Composite]) -> TimeSeries:
        return TimeSeries(region.region_id, (self.aggregate(region, c) for c in composites))


def aggregate_regions(
    aggregator: ZonalAggregator,
    regions: Iterable[RegionPolygon],
    composites: Sequence[Composite],
    max_workers: int | None = None,
) -> dict[str, TimeSeries]:
    """Independent time series per region; nothing is summed across regions.

    Regions are reduced concurrently on up to *max_workers* threads.  The
    result keeps the order of *regions*.
    """
    regions = list(regions)
    results: dict[str, TimeSeries] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {
            pool.submit(aggregator.time_series, region, composites): region.region_id
            for region in regions
        }
        for future in as_completed(futures):
            results[futures[future]] = future.result()
    return {region.region_id: results[region.region_id] for region in regions}
