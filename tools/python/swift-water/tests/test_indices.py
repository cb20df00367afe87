"""
Tests for the Band-Index Feature Extractor
===========================================
Formula checks use single-pixel inputs; image checks use small in-memory
rasters on a UTM grid.

Test classes:
    TestIndexStrategies      Formula correctness for each strategy.
    TestComputeIndexValues   Per-pixel evaluation and zero denominators.
    TestFeatureExtractor     Image extraction and predictor order.
"""

from __future__ import annotations

from datetime import datetime

import numpy as np
import numpy.typing as npt
import pytest

from swift_water.indices import (
    OPTICAL_PREDICTORS,
    RADAR_PREDICTORS,
    AWEIshStrategy,
    FeatureExtractor,
    MNDWIStrategy,
    NDVIStrategy,
    TCWStrategy,
    compute_index_values,
)
from swift_water.raster import RasterGrid, RasterImage
from shared.python.exceptions import BandNotFoundError, InputValidationError

PIXEL = {"blue": 0.05, "green": 0.08, "red": 0.06, "NIR": 0.04, "SWIR1": 0.02, "SWIR2": 0.01}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _grid(width: int = 3, height: int = 2) -> RasterGrid:
    return RasterGrid.from_bounds(0, 0, width * 30, height * 30, 30, "EPSG:32612")


def _image(bands: dict[str, npt.ArrayLike], grid: RasterGrid | None = None) -> RasterImage:
    """Build an image whose bands are constants or full arrays."""
    grid = grid or _grid()
    arrays = {
        name: np.full(grid.shape, value, dtype=np.float64) if np.isscalar(value) else np.asarray(value)
        for name, value in bands.items()
    }
    return RasterImage(bands=arrays, grid=grid, acquired=datetime(2021, 6, 3), source_id="LANDSAT_8")


# ---------------------------------------------------------------------------
# Strategy formula tests
# ---------------------------------------------------------------------------

class TestIndexStrategies:
    """Unit tests for each IndexStrategy formula using known scalar inputs."""

    def _as_dict(self, **kwargs: float) -> dict[str, np.ma.MaskedArray]:
        """Build a band dict of (1, 1) masked arrays."""
        return {k: np.ma.MaskedArray([[v]], dtype=np.float64) for k, v in kwargs.items()}

    def test_mndwi_open_water_positive(self) -> None:
        """MNDWI = (0.08 - 0.02) / (0.08 + 0.02) = 0.6."""
        result = MNDWIStrategy().compute(self._as_dict(green=0.08, SWIR1=0.02))
        assert result[0, 0] == pytest.approx(0.6, abs=1e-6)

    def test_mndwi_zero_denominator_is_masked(self) -> None:
        result = MNDWIStrategy().compute(self._as_dict(green=0.0, SWIR1=0.0))
        assert np.ma.is_masked(result[0, 0])

    def test_aweish_formula(self) -> None:
        bands = self._as_dict(**PIXEL)
        expected = 0.05 + 2.5 * 0.08 - 1.5 * (0.04 + 0.02) - 0.25 * 0.01
        assert AWEIshStrategy().compute(bands)[0, 0] == pytest.approx(expected, abs=1e-6)

    def test_tcw_formula(self) -> None:
        bands = self._as_dict(**PIXEL)
        expected = (
            0.1511 * 0.05 + 0.1973 * 0.08 + 0.3283 * 0.06
            + 0.3407 * 0.04 - 0.7117 * 0.02 - 0.4559 * 0.01
        )
        assert TCWStrategy().compute(bands)[0, 0] == pytest.approx(expected, abs=1e-6)

    def test_ndvi_vegetation_positive(self) -> None:
        """NDVI = (0.5 - 0.1) / (0.5 + 0.1) ≈ 0.6667."""
        result = NDVIStrategy().compute(self._as_dict(NIR=0.5, red=0.1))
        assert result[0, 0] == pytest.approx((0.5 - 0.1) / (0.5 + 0.1), abs=1e-6)

    def test_masked_input_stays_masked(self) -> None:
        bands = {
            "green": np.ma.MaskedArray([[0.08]], mask=[[True]]),
            "SWIR1": np.ma.MaskedArray([[0.02]]),
        }
        assert np.ma.is_masked(MNDWIStrategy().compute(bands)[0, 0])


# ---------------------------------------------------------------------------
# Per-pixel evaluation
# ---------------------------------------------------------------------------

class TestComputeIndexValues:
    """compute_index_values() on one harmonized pixel."""

    def test_all_four_indices_returned_in_order(self) -> None:
        values = compute_index_values(PIXEL)
        assert tuple(values) == OPTICAL_PREDICTORS

    def test_mndwi_example(self) -> None:
        assert compute_index_values(PIXEL)["MNDWI"] == pytest.approx(0.6, abs=1e-6)

    def test_ndvi_example(self) -> None:
        assert compute_index_values(PIXEL)["NDVI"] == pytest.approx(-0.2, abs=1e-6)

    def test_zero_denominator_gives_none(self) -> None:
        pixel = {**PIXEL, "green": 0.0, "SWIR1": 0.0}
        values = compute_index_values(pixel)
        assert values["MNDWI"] is None
        assert values["NDVI"] is not None

    def test_missing_band_raises(self) -> None:
        pixel = {k: v for k, v in PIXEL.items() if k != "SWIR2"}
        with pytest.raises(BandNotFoundError, match="SWIR2"):
            compute_index_values(pixel)


# ---------------------------------------------------------------------------
# Image extraction
# ---------------------------------------------------------------------------

class TestFeatureExtractor:
    """FeatureExtractor binds the predictor schema to a modality."""

    def test_optical_bands_are_the_predictors(self) -> None:
        features = FeatureExtractor("optical").extract(_image(PIXEL))
        assert features.band_names == OPTICAL_PREDICTORS
        assert features.band("MNDWI")[0, 0] == pytest.approx(0.6, abs=1e-6)

    def test_optical_timestamp_preserved(self) -> None:
        features = FeatureExtractor("optical").extract(_image(PIXEL))
        assert features.acquired == datetime(2021, 6, 3)

    def test_optical_missing_band_raises(self) -> None:
        bands = {k: v for k, v in PIXEL.items() if k != "blue"}
        with pytest.raises(BandNotFoundError, match="blue"):
            FeatureExtractor("optical").extract(_image(bands))

    def test_radar_channels_pass_through_unchanged(self) -> None:
        image = _image({"angle": 35.0, "VH": -25.0, "VV": -18.0, "extra": 1.0})
        features = FeatureExtractor("radar").extract(image)
        assert features.band_names == RADAR_PREDICTORS
        assert features.band("VV")[1, 2] == pytest.approx(-18.0)

    def test_predictors_by_modality(self) -> None:
        assert FeatureExtractor("optical").predictors == ("MNDWI", "AWEIsh", "TCW", "NDVI")
        assert FeatureExtractor("radar").predictors == ("VV", "VH", "angle")

    def test_unknown_modality_raises(self) -> None:
        with pytest.raises(InputValidationError, match="modality"):
            FeatureExtractor("thermal")  # type: ignore[arg-type]
