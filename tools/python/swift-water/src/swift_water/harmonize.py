"""
SWIFT — Radiometric Harmonizer
===============================
Sentinel-2 → Landsat 8 band-pass adjustment.

Each band is mapped with ``y = gain * x + bias`` using the calibration
constants of Claverie et al. (2018), *Remote Sensing of Environment* 219.
Landsat 8 is the reference sensor and is never adjusted.
"""

from __future__ import annotations

from swift_water.raster import RasterImage

HARMONIZED_BANDS: tuple[str, ...] = ("blue", "green", "red", "NIR", "SWIR1", "SWIR2")

GAIN: tuple[float, ...] = (0.9778, 1.0053, 0.9765, 0.9983, 0.9987, 1.003)
BIAS: tuple[float, ...] = (-0.00411, -0.00093, 0.00094, -0.0001, -0.0015, -0.0012)

COEFFICIENTS: dict[str, tuple[float, float]] = {
    band: (gain, bias) for band, gain, bias in zip(HARMONIZED_BANDS, GAIN, BIAS)
}


def harmonize(image: RasterImage) -> RasterImage:
    """Return a Landsat-like copy of a Sentinel-2 reflectance image.

    The image must carry all six harmonized bands; other bands are dropped.
    The acquisition timestamp is preserved.

    Raises:
        BandNotFoundError: If one of the six bands is missing.
    """
    selected = image.select(HARMONIZED_BANDS)
    return selected.with_bands(
        {band: selected.bands[band] * gain + bias for band, (gain, bias) in COEFFICIENTS.items()}
    )


def unharmonize(image: RasterImage) -> RasterImage:
    """Invert :func:`harmonize`."""
    selected = image.select(HARMONIZED_BANDS)
    return selected.with_bands(
        {band: (selected.bands[band] - bias) / gain for band, (gain, bias) in COEFFICIENTS.items()}
    )


def harmonize_for_sensor(image: RasterImage, reference: bool) -> RasterImage:
    """Harmonize *image* unless it comes from the reference sensor."""
    return image if reference else harmonize(image)


def harmonize_values(values: dict[str, float]) -> dict[str, float]:
    """Apply the band-pass adjustment to one pixel's band values."""
    return {band: COEFFICIENTS[band][0] * values[band] + COEFFICIENTS[band][1] for band in HARMONIZED_BANDS}


def unharmonize_values(values: dict[str, float]) -> dict[str, float]:
    return {band: (values[band] - COEFFICIENTS[band][1]) / COEFFICIENTS[band][0] for band in HARMONIZED_BANDS}
