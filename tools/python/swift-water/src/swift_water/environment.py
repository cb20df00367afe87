"""
SWIFT — Environmental Mask Stage
=================================
Post-classification filters that suppress false-positive water.

Radar smoothing
    A normalized ``(2r+1) x (2r+1)`` box filter over the 0/1 radar
    classification, re-thresholded at ``> 0.97``.  Isolated speckle
    detections fall below the threshold; solid water bodies survive.

Wind mask (radar only)
    Wind roughens open water and lowers its backscatter contrast.  Speed
    is ``sqrt(u_max² + v_max²) * 3.6`` km/h from the per-period maxima of
    the u and v wind components; pixels at or above the threshold are
    excluded.

Drainage mask (all classified output)
    Pixels with Height Above Nearest Drainage at or above the threshold
    are excluded.  Pixels without HAND data are excluded too.

Masks are boolean arrays, ``True`` = keep, combined by logical AND.
"""

from __future__ import annotations

import logging
from typing import Iterable

import numpy as np
import numpy.typing as npt

from shared.python.validators import Validators

from swift_water.classifier import CLASSIFICATION_BAND
from swift_water.raster import RasterImage, combine_masks
from swift_water.service import RasterDataService, masked_box_mean

logger = logging.getLogger("swift.environment")

WIND_U_BAND = "u_component_of_wind"
WIND_V_BAND = "v_component_of_wind"
HAND_BAND = "hnd"

MS_TO_KMH = 3.6

__all__ = [
    "apply_mask",
    "combine_masks",
    "drainage_mask",
    "max_wind_components",
    "smooth_radar_classification",
    "wind_mask",
    "wind_speed_kmh",
]


# ---------------------------------------------------------------------------
# Radar smoothing
# ---------------------------------------------------------------------------


def smooth_radar_classification(
    image: RasterImage,
    radius: int = 5,
    threshold: float = 0.97,
    service: RasterDataService | None = None,
) -> RasterImage:
    """Box-filter a radar classification and re-threshold it.

    The filter averages valid neighbours only, so water next to no-data
    is not eroded.

    Args:
        image: Image with a 0/1 ``classification`` band.
        radius: Kernel radius in pixels.
        threshold: Smoothed values strictly above this become water.
        service: Backend to convolve with; :func:`masked_box_mean` when ``None``.

    Returns:
        A new image whose ``classification`` band is 0/1 again, with the
        input's no-data pixels still masked.
    """
    classification = image.select([CLASSIFICATION_BAND])
    if service is not None:
        smoothed = service.convolve(classification, radius).band(CLASSIFICATION_BAND)
    else:
        smoothed = masked_box_mean(classification.band(CLASSIFICATION_BAND), radius)

    relabeled = np.ma.MaskedArray(
        (smoothed.filled(0.0) > threshold).astype(np.float64),
        mask=np.ma.getmaskarray(smoothed),
    )
    return classification.with_bands({CLASSIFICATION_BAND: relabeled})


# ---------------------------------------------------------------------------
# Wind
# ---------------------------------------------------------------------------


def wind_speed_kmh(u: npt.ArrayLike, v: npt.ArrayLike) -> np.ma.MaskedArray:
    """``sqrt(u² + v²) * 3.6`` for wind components in m/s."""
    u = np.ma.asarray(u, dtype=np.float64)
    v = np.ma.asarray(v, dtype=np.float64)
    return np.ma.sqrt(u ** 2 + v ** 2) * MS_TO_KMH


def max_wind_components(
    images: Iterable[RasterImage],
) -> tuple[np.ma.MaskedArray, np.ma.MaskedArray] | None:
    """Per-pixel maxima of the u and v wind bands, or ``None`` if no images."""
    u_stack: list[np.ma.MaskedArray] = []
    v_stack: list[np.ma.MaskedArray] = []
    for image in images:
        u_stack.append(image.band(WIND_U_BAND))
        v_stack.append(image.band(WIND_V_BAND))
    if not u_stack:
        return None
    return np.ma.stack(u_stack).max(axis=0), np.ma.stack(v_stack).max(axis=0)


def wind_mask(
    u: npt.ArrayLike,
    v: npt.ArrayLike,
    threshold_kmh: float = 12.0,
) -> npt.NDArray[np.bool_]:
    """Keep pixels whose wind speed is below *threshold_kmh*.

    Pixels with no wind data are kept.
    """
    Validators.assert_positive(threshold_kmh, "wind_speed_threshold_kmh")
    speed = wind_speed_kmh(u, v)
    return ~(speed.filled(-np.inf) >= threshold_kmh)


# ---------------------------------------------------------------------------
# Drainage
# ---------------------------------------------------------------------------


def drainage_mask(hand: npt.ArrayLike, threshold_m: float = 10.0) -> npt.NDArray[np.bool_]:
    """Keep pixels whose HAND value is below *threshold_m*.

    Pixels without HAND data are dropped.
    """
    Validators.assert_positive(threshold_m, "hand_threshold_m")
    hand = np.ma.asarray(hand, dtype=np.float64)
    return (hand.filled(np.inf) < threshold_m) & ~np.ma.getmaskarray(hand)


def apply_mask(image: RasterImage, mask: npt.NDArray[np.bool_]) -> RasterImage:
    """Exclude every pixel where *mask* is ``False``."""
    return image.update_mask(mask)
