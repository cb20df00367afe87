"""
SWIFT — Temporal Compositor
============================
Fuses classified images from every sensor into one composite per period.

The query range ``[start, end)`` is cut into contiguous weekly or
monthly periods.  Within a period the per-pixel median of all
contributing 0/1 classifications is taken and re-labeled ``median > 0.5``,
so three votes ``{1, 1, 0}`` give water and a tie ``{1, 0}`` gives
non-water.  The median is order-independent, so images may arrive in
any order.

A period with no images still yields a :class:`Composite` with
``image=None`` and ``coverage=0.0`` so it can be reported with a null
area instead of silently disappearing.

Usage::

    periods = make_periods(date(2021, 3, 1), date(2021, 4, 1), "week")
    composites = TemporalCompositor().build(classified, periods)
"""

from __future__ import annotations

import bisect
import logging
import warnings
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Iterable, Literal, Sequence

import numpy as np
import pandas as pd

from shared.python.exceptions import DataQualityWarning, InputValidationError
from shared.python.validators import Validators

from swift_water.classifier import CLASSIFICATION_BAND
from swift_water.raster import RasterImage

logger = logging.getLogger("swift.compositor")

Granularity = Literal["week", "month"]


def as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class Period:
    """Half-open time bucket ``[start, end)``."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    @property
    def label(self) -> str:
        return self.start.strftime("%Y-%m-%d")


def make_periods(
    start: date | datetime,
    end: date | datetime,
    granularity: Granularity = "week",
) -> list[Period]:
    """Partition ``[start, end)`` into contiguous periods.

    Weeks are seven days from *start*; months step by calendar month from
    *start* (day-of-month clamped by pandas).  The last period is clipped
    to *end*.

    Raises:
        InputValidationError: If ``start >= end`` or *granularity* is unknown.
    """
    start, end = as_datetime(start), as_datetime(end)
    Validators.assert_date_range(start, end)
    if granularity == "week":
        offset = pd.DateOffset(weeks=1)
    elif granularity == "month":
        offset = pd.DateOffset(months=1)
    else:
        raise InputValidationError(
            f"Unknown period granularity {granularity!r}; expected 'week' or 'month'."
        )

    # Each boundary is offset from start, not from the previous boundary,
    # so month-end clamping never accumulates.
    origin = pd.Timestamp(start)
    periods: list[Period] = []
    k = 1
    lower = start
    while lower < end:
        upper = (origin + offset * k).to_pydatetime()
        periods.append(Period(lower, min(upper, end)))
        lower = upper
        k += 1
    return periods


# ---------------------------------------------------------------------------
# Composites
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Composite:
    """One period's fused classification.

    Attributes:
        period: The time bucket.
        image: Composite with a 0/1 ``classification`` band, or ``None``
               when nothing was acquired in the period.
        image_count: Number of contributing images.
        source_image_dates: ``YYYY-MM-DD`` of each contributing image.
        coverage: Fraction of grid pixels with a composite label.
    """

    period: Period
    image: RasterImage | None
    image_count: int
    source_image_dates: tuple[str, ...] = field(default_factory=tuple)
    coverage: float = 0.0

    @property
    def is_empty(self) -> bool:
        return self.image is None

    def with_image(self, image: RasterImage, band: str = CLASSIFICATION_BAND) -> "Composite":
        """Copy holding *image*, with ``coverage`` recomputed from its mask."""
        coverage = float((~np.ma.getmaskarray(image.band(band))).mean())
        return replace(self, image=image, coverage=coverage)


def composite_period(
    images: Iterable[RasterImage],
    period: Period,
    band: str = CLASSIFICATION_BAND,
) -> Composite:
    """Median-composite the images acquired within *period*.

    Images outside the period are ignored.
    """
    contributing = [im for im in images if period.contains(im.acquired)]
    if not contributing:
        message = f"No images contributed to period {period.label}; area will be null."
        logger.warning(message)
        warnings.warn(message, DataQualityWarning, stacklevel=2)
        return Composite(period=period, image=None, image_count=0)

    stack = np.ma.stack([im.band(band) for im in contributing])
    median = np.ma.median(stack, axis=0)
    no_data = np.ma.getmaskarray(median)
    labels = np.ma.MaskedArray((median.filled(0.0) > 0.5).astype(np.float64), mask=no_data)

    dates = tuple(im.date_str for im in sorted(contributing, key=lambda im: im.acquired))
    image = RasterImage(
        bands={band: labels},
        grid=contributing[0].grid,
        acquired=period.start,
        source_id="composite",
        properties={
            "period_start": period.label,
            "image_count": len(contributing),
            "source_image_dates": dates,
        },
    )
    coverage = float((~no_data).mean())
    logger.debug(
        "Composite %s: %d image(s), coverage %.1f%%.", period.label, len(contributing), coverage * 100
    )
    return Composite(
        period=period,
        image=image,
        image_count=len(contributing),
        source_image_dates=dates,
        coverage=coverage,
    )


class TemporalCompositor:
    """Bucket a classified collection into periods and composite each.

    The collection is consumed once.

    Args:
        band: Name of the 0/1 classification band.
    """

    def __init__(self, band: str = CLASSIFICATION_BAND) -> None:
        self.band = band

    def bucket(
        self,
        images: Iterable[RasterImage],
        periods: Sequence[Period],
    ) -> dict[Period, list[RasterImage]]:
        ordered = sorted(periods)
        starts = [p.start for p in ordered]
        buckets: dict[Period, list[RasterImage]] = {p: [] for p in ordered}
        for image in images:
            index = bisect.bisect_right(starts, image.acquired) - 1
            if index >= 0 and ordered[index].contains(image.acquired):
                buckets[ordered[index]].append(image)
        return buckets

    def build(
        self,
        images: Iterable[RasterImage],
        periods: Sequence[Period],
    ) -> list[Composite]:
        """Return one composite per period, in period order."""
        buckets = self.bucket(images, periods)
        return [composite_period(members, period, self.band) for period, members in buckets.items()]
