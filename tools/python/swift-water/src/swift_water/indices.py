"""
SWIFT — Band-Index Feature Extractor
=====================================
Derives the classifier's predictor bands from harmonized imagery.

Optical scenes yield four water/vegetation indices; radar scenes yield
their raw calibrated channels.  Each index is an :class:`IndexStrategy`
subclass (Strategy pattern), so the optical predictor set is simply an
ordered list of strategies.

Supported indices:
    - MNDWI   Modified Normalized Difference Water Index
    - AWEIsh  Automated Water Extraction Index (shadow)
    - TCW     Tasseled Cap Wetness
    - NDVI    Normalized Difference Vegetation Index

Classes:
    IndexStrategy     Abstract base for all index strategies.
    MNDWIStrategy     MNDWI = (Green - SWIR1) / (Green + SWIR1)
    AWEIshStrategy    AWEIsh = Blue + 2.5*Green - 1.5*(NIR + SWIR1) - 0.25*SWIR2
    TCWStrategy       TCW = 0.1511*B + 0.1973*G + 0.3283*R + 0.3407*NIR
                            - 0.7117*SWIR1 - 0.4559*SWIR2
    NDVIStrategy      NDVI = (NIR - Red) / (NIR + Red)
    FeatureExtractor  Modality-bound extractor used by training and inference.

Predictor order is part of the classifier schema::

    OPTICAL_PREDICTORS = ("MNDWI", "AWEIsh", "TCW", "NDVI")
    RADAR_PREDICTORS   = ("VV", "VH", "angle")

Usage::

    from swift_water.indices import FeatureExtractor

    features = FeatureExtractor("optical").extract(harmonized_image)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Literal, Mapping

import numpy as np

from shared.python.exceptions import InputValidationError
from shared.python.validators import Validators

from swift_water.raster import RasterImage

logger = logging.getLogger("swift.indices")

Modality = Literal["optical", "radar"]

OPTICAL_PREDICTORS: tuple[str, ...] = ("MNDWI", "AWEIsh", "TCW", "NDVI")
RADAR_PREDICTORS: tuple[str, ...] = ("VV", "VH", "angle")


def _normalized_difference(a: np.ma.MaskedArray, b: np.ma.MaskedArray) -> np.ma.MaskedArray:
    """``(a - b) / (a + b)``, masked where the denominator is zero."""
    denominator = a + b
    zero = np.ma.getmaskarray(denominator) | (denominator.filled(0.0) == 0.0)
    with np.errstate(invalid="ignore", divide="ignore"):
        ratio = (a.filled(0.0) - b.filled(0.0)) / np.where(zero, 1.0, denominator.filled(1.0))
    return np.ma.MaskedArray(ratio, mask=zero | np.ma.getmaskarray(a) | np.ma.getmaskarray(b))


# ---------------------------------------------------------------------------
# Index strategy ABC + concrete implementations
# ---------------------------------------------------------------------------


class IndexStrategy(ABC):
    """Abstract base for a single spectral index computation.

    Subclasses declare :attr:`required_bands` and implement :meth:`compute`
    on float64 masked arrays.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Band name of the index in the feature raster."""

    @property
    @abstractmethod
    def required_bands(self) -> list[str]:
        """Harmonized band names this index reads."""

    @abstractmethod
    def compute(self, bands: Mapping[str, np.ma.MaskedArray]) -> np.ma.MaskedArray:
        """Compute the index; masked pixels are "no data"."""


class MNDWIStrategy(IndexStrategy):
    """MNDWI — Modified Normalized Difference Water Index.

    Formula: ``MNDWI = (Green - SWIR1) / (Green + SWIR1)``

    Positive over open water; SWIR suppresses built-up and soil noise
    better than the NIR-based NDWI.
    """

    @property
    def name(self) -> str:
        return "MNDWI"

    @property
    def required_bands(self) -> list[str]:
        return ["green", "SWIR1"]

    def compute(self, bands: Mapping[str, np.ma.MaskedArray]) -> np.ma.MaskedArray:
        return _normalized_difference(bands["green"], bands["SWIR1"])


class AWEIshStrategy(IndexStrategy):
    """AWEIsh — Automated Water Extraction Index, shadow variant.

    Formula: ``AWEIsh = Blue + 2.5*Green - 1.5*(NIR + SWIR1) - 0.25*SWIR2``
    """

    @property
    def name(self) -> str:
        return "AWEIsh"

    @property
    def required_bands(self) -> list[str]:
        return ["blue", "green", "NIR", "SWIR1", "SWIR2"]

    def compute(self, bands: Mapping[str, np.ma.MaskedArray]) -> np.ma.MaskedArray:
        return (
            bands["blue"]
            + 2.5 * bands["green"]
            - 1.5 * (bands["NIR"] + bands["SWIR1"])
            - 0.25 * bands["SWIR2"]
        )


class TCWStrategy(IndexStrategy):
    """TCW — Tasseled Cap Wetness (Landsat 8 surface reflectance coefficients)."""

    COEFFICIENTS: dict[str, float] = {
        "blue": 0.1511,
        "green": 0.1973,
        "red": 0.3283,
        "NIR": 0.3407,
        "SWIR1": -0.7117,
        "SWIR2": -0.4559,
    }

    @property
    def name(self) -> str:
        return "TCW"

    @property
    def required_bands(self) -> list[str]:
        return list(self.COEFFICIENTS)

    def compute(self, bands: Mapping[str, np.ma.MaskedArray]) -> np.ma.MaskedArray:
        total = np.ma.zeros(bands["blue"].shape, dtype=np.float64)
        for band, weight in self.COEFFICIENTS.items():
            total = total + weight * bands[band]
        return total


class NDVIStrategy(IndexStrategy):
    """NDVI — Normalized Difference Vegetation Index.

    Formula: ``NDVI = (NIR - Red) / (NIR + Red)``
    """

    @property
    def name(self) -> str:
        return "NDVI"

    @property
    def required_bands(self) -> list[str]:
        return ["red", "NIR"]

    def compute(self, bands: Mapping[str, np.ma.MaskedArray]) -> np.ma.MaskedArray:
        return _normalized_difference(bands["NIR"], bands["red"])


OPTICAL_STRATEGIES: list[IndexStrategy] = [
    MNDWIStrategy(),
    AWEIshStrategy(),
    TCWStrategy(),
    NDVIStrategy(),
]


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract_optical_features(
    image: RasterImage,
    strategies: list[IndexStrategy] | None = None,
) -> RasterImage:
    """Compute the optical indices of a harmonized image.

    Returns:
        An image with exactly the index bands, in strategy order.

    Raises:
        BandNotFoundError: If a strategy's input band is missing.
    """
    strategies = strategies if strategies is not None else OPTICAL_STRATEGIES
    needed = [b for s in strategies for b in s.required_bands]
    Validators.assert_bands_present(needed, image.band_names)

    bands = {name: arr.astype(np.float64) for name, arr in image.bands.items()}
    return image.with_bands({s.name: s.compute(bands) for s in strategies}, replace=True)


def extract_radar_features(image: RasterImage) -> RasterImage:
    """Select the raw ``VV, VH, angle`` channels unchanged."""
    return image.select(RADAR_PREDICTORS)


def compute_index_values(pixel: Mapping[str, float]) -> dict[str, float | None]:
    """Evaluate the optical indices for one pixel.

    A ratio index whose denominator is zero is ``None``.

    Example::

        compute_index_values(
            {"blue": 0.05, "green": 0.08, "red": 0.06,
             "NIR": 0.04, "SWIR1": 0.02, "SWIR2": 0.01}
        )["MNDWI"]   # 0.6
    """
    bands = {k: np.ma.MaskedArray([[float(v)]]) for k, v in pixel.items()}
    Validators.assert_bands_present(
        [b for s in OPTICAL_STRATEGIES for b in s.required_bands], list(bands)
    )
    values: dict[str, float | None] = {}
    for strategy in OPTICAL_STRATEGIES:
        result = strategy.compute(bands)
        values[strategy.name] = None if np.ma.is_masked(result[0, 0]) else float(result[0, 0])
    return values


class FeatureExtractor:
    """Feature extraction bound to one modality.

    The same instance is used for training mosaics and query imagery, so
    the predictor schema cannot drift between fit and inference.

    Args:
        modality: ``"optical"`` or ``"radar"``.
    """

    def __init__(self, modality: Modality) -> None:
        if modality not in ("optical", "radar"):
            raise InputValidationError(
                f"Unknown modality {modality!r}; expected 'optical' or 'radar'."
            )
        self.modality: Modality = modality

    @property
    def predictors(self) -> tuple[str, ...]:
        return OPTICAL_PREDICTORS if self.modality == "optical" else RADAR_PREDICTORS

    def extract(self, image: RasterImage) -> RasterImage:
        if self.modality == "optical":
            return extract_optical_features(image)
        return extract_radar_features(image)

    def __repr__(self) -> str:
        return f"FeatureExtractor({self.modality!r})"
