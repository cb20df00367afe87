"""
SWIFT — Pipeline Configuration
===============================
JSON-backed run configuration.

Example ``swift.json``::

    {
        "start_date": "2021-03-01",
        "end_date": "2021-11-01",
        "region": "Big Lake",
        "period_granularity": "month",
        "training_start": "2018-01-27",
        "training_end": "2018-02-07",
        "ensemble_size": 500,
        "split_ratio": 0.8,
        "wind_speed_threshold_kmh": 12.0,
        "hand_threshold_m": 10.0,
        "cloud_cover_threshold_pct": 10.0,
        "crs": "EPSG:5070",
        "resolution_m": 30.0
    }

Keys that are absent take the defaults below.  Unknown keys are an error.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Optional

from shared.python.exceptions import InputValidationError
from shared.python.validators import Validators

from swift_water.labels import MosaicOrder

_DATE_FIELDS = ("start_date", "end_date", "training_start", "training_end")


@dataclass
class PipelineConfig:
    """Recognized run options.

    Attributes:
        start_date: First day of the query range (inclusive).
        end_date: Day after the query range (exclusive).
        region: Allotment name (or region id) to report on.
        period_granularity: ``"week"`` or ``"month"``.
        ensemble_size: Trees per random forest.
        split_ratio: Training share of the labeled samples.
        wind_speed_threshold_kmh: Radar pixels at or above this wind speed are masked.
        hand_threshold_m: Pixels at or above this HAND are masked.
        cloud_cover_threshold_pct: Scene cloud-cover limit for training imagery.
        query_cloud_cover_threshold_pct: Scene cloud-cover limit for query imagery.
        training_start: First day of the training window.
        training_end: Day after the training window.
        seed: Random seed for split keys and the forests.
        season_months: ``(first, last)`` calendar months kept in query
                       imagery, or ``None`` for all months.
        mosaic_order: Pixel precedence of the training mosaic.
        smoothing_radius_px: Radar box-filter radius.
        smoothing_threshold: Radar re-threshold after smoothing.
        max_pixels: Pixel budget per region reduction.
        min_training_samples: Smallest acceptable training set.
        max_workers: Regions processed concurrently.
        retry_attempts: Attempts per raster service read.
        retry_delay_s: Initial wait between attempts.
        crs: CRS of the analysis grid (projected).
        resolution_m: Pixel size of the analysis grid.
        optical_sources: Optical collections to use.
        radar_source: Calibrated radar collection id.
        wind_source: Wind-component collection id.
        hand_source: HAND collection id.
    """

    start_date: date
    end_date: date
    region: str = ""
    period_granularity: str = "week"
    ensemble_size: int = 500
    split_ratio: float = 0.8
    wind_speed_threshold_kmh: float = 12.0
    hand_threshold_m: float = 10.0
    cloud_cover_threshold_pct: float = 10.0
    query_cloud_cover_threshold_pct: float = 50.0
    training_start: Optional[date] = None
    training_end: Optional[date] = None
    seed: int = 0
    season_months: Optional[tuple[int, int]] = (3, 11)
    mosaic_order: MosaicOrder = MosaicOrder.MOST_RECENT_FIRST
    smoothing_radius_px: int = 5
    smoothing_threshold: float = 0.97
    max_pixels: float = 1e10
    min_training_samples: int = 10
    max_workers: int = 4
    retry_attempts: int = 3
    retry_delay_s: float = 1.0
    crs: str = "EPSG:5070"
    resolution_m: float = 30.0
    optical_sources: list[str] = field(default_factory=lambda: ["LANDSAT_8", "SENTINEL_2"])
    radar_source: str = "SENTINEL_1"
    wind_source: str = "WIND"
    hand_source: str = "HAND"

    @property
    def training_window(self) -> tuple[date, date]:
        """The training window, defaulting to the query range."""
        return (self.training_start or self.start_date, self.training_end or self.end_date)

    def in_season(self, month: int) -> bool:
        if self.season_months is None:
            return True
        first, last = self.season_months
        if first <= last:
            return first <= month <= last
        return month >= first or month <= last

    def validate(self) -> None:
        """Check every option.

        Raises:
            InputValidationError: On the first invalid option.
            CRSError: If ``crs`` is not a projected CRS.
        """
        Validators.assert_date_range(self.start_date, self.end_date)
        Validators.assert_date_range(*self.training_window)
        if self.period_granularity not in ("week", "month"):
            raise InputValidationError(
                f"period_granularity must be 'week' or 'month', got {self.period_granularity!r}."
            )
        for name in ("ensemble_size", "max_pixels", "min_training_samples", "max_workers",
                     "retry_attempts", "resolution_m", "smoothing_radius_px"):
            Validators.assert_positive(getattr(self, name), name)
        for name in ("wind_speed_threshold_kmh", "hand_threshold_m"):
            Validators.assert_positive(getattr(self, name), name)
        Validators.assert_fraction(self.split_ratio, "split_ratio")
        Validators.assert_fraction(self.smoothing_threshold, "smoothing_threshold")
        for name in ("cloud_cover_threshold_pct", "query_cloud_cover_threshold_pct"):
            value = getattr(self, name)
            if not 0.0 < value <= 100.0:
                raise InputValidationError(f"'{name}' must be in (0, 100], got {value!r}.")
        if self.retry_delay_s < 0:
            raise InputValidationError(f"'retry_delay_s' must be >= 0, got {self.retry_delay_s!r}.")
        if self.season_months is not None:
            if len(self.season_months) != 2 or not all(1 <= m <= 12 for m in self.season_months):
                raise InputValidationError(
                    f"season_months must be two months in 1..12, got {self.season_months!r}."
                )
        Validators.assert_projected_crs(self.crs)


def config_from_dict(raw: dict[str, Any]) -> PipelineConfig:
    """Build a :class:`PipelineConfig` from parsed JSON.

    Raises:
        InputValidationError: On unknown keys or malformed values.
    """
    known = {f.name for f in dataclasses.fields(PipelineConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise InputValidationError(f"Unknown configuration key(s): {', '.join(unknown)}")

    values = dict(raw)
    try:
        for name in _DATE_FIELDS:
            if values.get(name) is not None:
                values[name] = date.fromisoformat(str(values[name]))
        if values.get("season_months") is not None:
            values["season_months"] = tuple(int(m) for m in values["season_months"])
        if "mosaic_order" in values:
            values["mosaic_order"] = MosaicOrder(values["mosaic_order"])
        return PipelineConfig(**values)
    except (TypeError, ValueError) as exc:
        raise InputValidationError(f"Invalid configuration: {exc}") from exc


def load_config(config_path: Path) -> PipelineConfig:
    """Parse and validate a JSON configuration file.

    Raises:
        InputValidationError: If the file cannot be read, parsed, or validated.
    """
    try:
        raw: dict[str, Any] = json.loads(Path(config_path).read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        raise InputValidationError(
            f"Failed to read config file '{config_path}': {exc}"
        ) from exc

    config = config_from_dict(raw)
    config.validate()
    return config
