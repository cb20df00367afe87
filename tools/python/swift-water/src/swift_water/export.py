"""
SWIFT — Output Writers
=======================
Persist pipeline results: time-series CSV, latest-composite GeoTIFF,
and a time-series chart PNG.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

import matplotlib
matplotlib.use("Agg")                    # non-interactive backend
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import rasterio

from shared.python.exceptions import OutputWriteError
from shared.python.validators import Validators

from swift_water.raster import RasterImage
from swift_water.zonal import TimeSeries

logger = logging.getLogger("swift.export")

CSV_COLUMNS = ["region_id", "date", "area_m2", "image_count", "source_image_dates", "flag"]


def time_series_frame(series: TimeSeries | Mapping[str, TimeSeries]) -> pd.DataFrame:
    """Flatten one or many time series into the CSV layout."""
    if isinstance(series, TimeSeries):
        frames = [series.to_frame()]
    else:
        frames = [s.to_frame() for s in series.values()]
    frame = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=TimeSeries.COLUMNS)
    frame = frame.rename(columns={"period_start": "date", "water_area_m2": "area_m2"})
    return frame[CSV_COLUMNS]


def write_time_series(series: TimeSeries | Mapping[str, TimeSeries], path: Path) -> Path:
    """Write ``region_id, date, area_m2, …`` rows; null areas stay empty.

    Raises:
        OutputWriteError: If the file cannot be written.
    """
    path = Path(path)
    Validators.assert_output_dir_writable(path)
    try:
        time_series_frame(series).to_csv(path, index=False)
    except OSError as exc:
        raise OutputWriteError(str(path), str(exc)) from exc
    logger.info("Time series written → %s", path)
    return path


def write_composite(image: RasterImage, path: Path) -> Path:
    """Write every band of *image* as float32 with NaN no-data.

    Band descriptions carry the band names so :class:`LocalRasterService`
    can read the file back.

    Raises:
        OutputWriteError: If the file cannot be written.
    """
    path = Path(path)
    Validators.assert_output_dir_writable(path)
    profile = {
        "driver": "GTiff",
        "height": image.grid.height,
        "width": image.grid.width,
        "count": len(image.band_names),
        "dtype": "float32",
        "crs": image.grid.crs,
        "transform": image.grid.transform,
        "nodata": np.nan,
        "compress": "deflate",
    }
    try:
        with rasterio.open(path, "w", **profile) as dst:
            for index, name in enumerate(image.band_names, start=1):
                dst.write(image.bands[name].astype(np.float32).filled(np.nan), index)
                dst.set_band_description(index, name)
            dst.update_tags(acquired=image.date_str, source_id=image.source_id)
    except rasterio.errors.RasterioIOError as exc:
        raise OutputWriteError(str(path), str(exc)) from exc
    logger.info("Composite written → %s (%s)", path, ", ".join(image.band_names))
    return path


def plot_time_series(series: TimeSeries, path: Path) -> Path:
    """Line chart of water area per period; null periods are gaps."""
    path = Path(path)
    Validators.assert_output_dir_writable(path)
    frame = series.to_frame()
    dates = pd.to_datetime(frame["period_start"])
    area_ha = frame["water_area_m2"].astype(float) / 10_000.0

    fig, ax = plt.subplots(figsize=(10, 4))
    ax.plot(dates, area_ha, marker="o", color="tab:blue")
    ax.set_title(f"Surface water — {series.region_id}", fontsize=12, fontweight="bold")
    ax.set_xlabel("Period start")
    ax.set_ylabel("Water area (ha)")
    ax.grid(alpha=0.3)
    fig.autofmt_xdate()
    plt.tight_layout()
    fig.savefig(str(path), dpi=150, bbox_inches="tight")
    plt.close(fig)
    logger.info("Chart written → %s", path)
    return path
