"""
Tests for the Output Writers
=============================

Test classes:
    TestWriteTimeSeries   CSV layout and null areas.
    TestWriteComposite    GeoTIFF bands, descriptions, and no-data.
    TestPlotTimeSeries    Chart file creation.
"""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import rasterio

from swift_water.export import CSV_COLUMNS, plot_time_series, write_composite, write_time_series
from swift_water.raster import RasterGrid, RasterImage
from swift_water.zonal import AreaRecord, TimeSeries

GRID = RasterGrid.from_bounds(500000, 3800000, 500090, 3800060, 30, "EPSG:32612")


def _series(region_id: str = "Big Lake") -> TimeSeries:
    return TimeSeries(region_id, [
        AreaRecord(region_id, date(2021, 6, 1), 2700.0, 2, ("2021-06-02", "2021-06-05")),
        AreaRecord(region_id, date(2021, 6, 8), None, 0, flag="no_images"),
        AreaRecord(region_id, date(2021, 6, 15), 0.0, 1, ("2021-06-16",)),
    ])


class TestWriteTimeSeries:
    """write_time_series() CSV output."""

    def test_columns_and_rows(self, tmp_path: Path) -> None:
        path = write_time_series(_series(), tmp_path / "out" / "water_area.csv")
        frame = pd.read_csv(path)
        assert list(frame.columns) == CSV_COLUMNS
        assert len(frame) == 3
        assert frame.loc[0, "source_image_dates"] == "2021-06-02;2021-06-05"

    def test_null_area_stays_empty(self, tmp_path: Path) -> None:
        frame = pd.read_csv(write_time_series(_series(), tmp_path / "water_area.csv"))
        assert pd.isna(frame.loc[1, "area_m2"])
        assert frame.loc[1, "flag"] == "no_images"
        assert frame.loc[2, "area_m2"] == 0.0

    def test_many_regions_in_one_file(self, tmp_path: Path) -> None:
        path = write_time_series({"a": _series("a"), "b": _series("b")}, tmp_path / "all.csv")
        frame = pd.read_csv(path)
        assert sorted(frame["region_id"].unique()) == ["a", "b"]
        assert len(frame) == 6


class TestWriteComposite:
    """write_composite() GeoTIFF output."""

    def _image(self) -> RasterImage:
        classification = np.array([[1.0, 0.0, np.nan], [0.0, 1.0, 1.0]])
        return RasterImage(
            bands={"classification": classification, "red": np.full(GRID.shape, 0.05)},
            grid=GRID,
            acquired=datetime(2021, 6, 1),
            source_id="composite",
        )

    def test_bands_and_descriptions(self, tmp_path: Path) -> None:
        path = write_composite(self._image(), tmp_path / "latest.tif")
        with rasterio.open(path) as src:
            assert src.count == 2
            assert src.descriptions == ("classification", "red")
            assert src.crs == GRID.crs
            assert src.tags()["acquired"] == "2021-06-01"
            data = src.read(1)
        assert data[0, 0] == pytest.approx(1.0)
        assert np.isnan(data[0, 2])


class TestPlotTimeSeries:
    """plot_time_series() writes a PNG."""

    def test_png_created(self, tmp_path: Path) -> None:
        path = plot_time_series(_series(), tmp_path / "charts" / "water_area.png")
        assert path.exists()
        assert path.stat().st_size > 0
