"""
SWIFT — Optical Quality Masks
==============================
Per-sensor cloud / cloud-shadow masking for optical scenes, plus the
sensor registry that maps each sensor's band names onto the common
``blue, green, red, NIR, SWIR1, SWIR2`` schema.

Landsat 8 (Collection 2 Level-2)
    ``QA_PIXEL`` bit 3 = cloud shadow, bit 5 = cloud.  Both must be 0.
    Surface-reflectance bands ``SR_B*`` are divided by the scale factor.

Sentinel-2 (L1C / L2A harmonized)
    ``QA60`` must be 0 (bits 10/11 flag opaque and cirrus cloud).
    Bands ``B*`` are divided by the scale factor.

Neither filter mutates its input; a missing QA band is an input error.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

import numpy as np

from shared.python.validators import Validators

from swift_water.harmonize import harmonize_for_sensor
from swift_water.raster import RasterImage

OPTICAL_BANDS: tuple[str, ...] = ("blue", "green", "red", "NIR", "SWIR1", "SWIR2")

REFLECTANCE_SCALE = 10000.0

_LANDSAT_CLOUD_SHADOW_BIT = 1 << 3
_LANDSAT_CLOUD_BIT = 1 << 5

_LANDSAT_SR_BAND = re.compile(r"^SR_B[0-9]+$")
_SENTINEL2_BAND = re.compile(r"^B[0-9]+A?$")


def _scale_bands(image: RasterImage, pattern: re.Pattern[str], scale_factor: float) -> RasterImage:
    return image.with_bands(
        {name: arr / scale_factor for name, arr in image.bands.items() if pattern.match(name)},
        replace=True,
    )


def mask_landsat_qa(image: RasterImage, scale_factor: float = REFLECTANCE_SCALE) -> RasterImage:
    """Mask cloud and cloud-shadow pixels of a Landsat 8 scene.

    Args:
        image: Scene with ``QA_PIXEL`` and ``SR_B*`` bands in raw DN.
        scale_factor: Divisor that converts DN to reflectance.

    Returns:
        A new image with only the ``SR_B*`` bands, scaled, cloud pixels masked.

    Raises:
        BandNotFoundError: If ``QA_PIXEL`` is absent.
    """
    qa = image.band("QA_PIXEL")
    bits = qa.filled(0).astype(np.int64)
    clear = ((bits & _LANDSAT_CLOUD_SHADOW_BIT) == 0) & ((bits & _LANDSAT_CLOUD_BIT) == 0)
    clear &= ~np.ma.getmaskarray(qa)
    return _scale_bands(image.update_mask(clear), _LANDSAT_SR_BAND, scale_factor)


def mask_sentinel2_qa(image: RasterImage, scale_factor: float = REFLECTANCE_SCALE) -> RasterImage:
    """Mask pixels flagged by the Sentinel-2 ``QA60`` band.

    Raises:
        BandNotFoundError: If ``QA60`` is absent.
    """
    qa = image.band("QA60")
    clear = (qa.filled(1.0) < 1) & ~np.ma.getmaskarray(qa)
    return _scale_bands(image.update_mask(clear), _SENTINEL2_BAND, scale_factor)


# ---------------------------------------------------------------------------
# Sensor registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OpticalSensor:
    """How to turn one optical sensor's scenes into harmonized reflectance.

    Attributes:
        source_id: Collection identifier served by the raster service.
        qa_filter: Cloud mask + reflectance scaling.
        band_map: Sensor band names in ``OPTICAL_BANDS`` order.
        cloud_property: Scene metadata key holding cloud-cover percent.
        reference: ``True`` for the sensor others are harmonized onto.
    """

    source_id: str
    qa_filter: Callable[[RasterImage], RasterImage]
    band_map: tuple[str, ...]
    cloud_property: str
    reference: bool = False

    def prepare(self, image: RasterImage) -> RasterImage:
        """QA-mask, rename to the common schema, and harmonize if needed.

        The sensor's cloud-cover property is copied to ``cloud_cover`` so
        downstream mosaics can rank scenes without knowing the sensor.
        """
        Validators.assert_bands_present(self.band_map, image.band_names)
        masked = self.qa_filter(image)
        renamed = masked.select(self.band_map, rename=OPTICAL_BANDS)
        prepared = harmonize_for_sensor(renamed, self.reference)
        cloud = image.properties.get(self.cloud_property, image.properties.get("cloud_cover"))
        return prepared.with_properties(cloud_cover=cloud) if cloud is not None else prepared

    def cloud_cover_below(self, threshold_pct: float) -> Callable[[dict], bool]:
        """Metadata predicate keeping scenes under *threshold_pct* cloud cover."""
        key = self.cloud_property

        def predicate(properties: dict) -> bool:
            value = properties.get(key, properties.get("cloud_cover"))
            return value is not None and float(value) < threshold_pct

        return predicate


LANDSAT_8 = OpticalSensor(
    source_id="LANDSAT_8",
    qa_filter=mask_landsat_qa,
    band_map=("SR_B2", "SR_B3", "SR_B4", "SR_B5", "SR_B6", "SR_B7"),
    cloud_property="CLOUD_COVER",
    reference=True,
)

SENTINEL_2 = OpticalSensor(
    source_id="SENTINEL_2",
    qa_filter=mask_sentinel2_qa,
    band_map=("B2", "B3", "B4", "B8", "B11", "B12"),
    cloud_property="CLOUD_COVERAGE_ASSESSMENT",
)

OPTICAL_SENSORS: dict[str, OpticalSensor] = {
    LANDSAT_8.source_id: LANDSAT_8,
    SENTINEL_2.source_id: SENTINEL_2,
}
