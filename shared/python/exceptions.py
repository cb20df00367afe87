"""
SWIFT — Custom Exception Hierarchy
===================================
Every SWIFT module raises exceptions from this module so callers can
catch them at the right level of granularity.

Hierarchy::

    SwiftError                           ← catch-all base
    ├── InputValidationError             ← bad inputs, fatal, never retried
    │   ├── ColumnNotFoundError          ← vector attribute column missing
    │   ├── BandNotFoundError            ← raster band required downstream is absent
    │   ├── ClassifierSchemaError        ← predictor order/length mismatch
    │   ├── InsufficientTrainingDataError← too few samples or an empty class
    │   └── CoverageError                ← region outside every source footprint
    ├── CRSError                         ← invalid / unsuitable CRS
    ├── RasterError                      ← numpy / rasterio raster issues
    ├── ResourceLimitError               ← pixel budget exceeded for one reduction
    ├── ExternalServiceError             ← raster service unavailable / timed out
    └── OutputWriteError                 ← cannot write to output path

    DataQualityWarning                   ← degraded input, processing continues

Usage::

    from shared.python.exceptions import BandNotFoundError

    raise BandNotFoundError("QA_PIXEL", image.band_names)
"""

from __future__ import annotations

from typing import Sequence


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


class SwiftError(Exception):
    """Base exception for all SWIFT errors.

    Args:
        message: Human-readable description of the error.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message: str = message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class InputValidationError(SwiftError):
    """Raised when inputs fail validation.

    Input errors are fatal: they surface immediately and are never retried.
    """


class ColumnNotFoundError(InputValidationError):
    """Raised when an expected attribute column is absent from a vector layer.

    Args:
        column: The name of the missing column.
        available: Column names that ARE present.

    Example::

        raise ColumnNotFoundError("ALLOTMENT_", gdf.columns.tolist())
    """

    def __init__(self, column: str, available: Sequence[str]) -> None:
        available_str = ", ".join(f"'{c}'" for c in available)
        super().__init__(
            f"Column '{column}' not found. Available columns: {available_str}"
        )
        self.column: str = column
        self.available: list[str] = list(available)


class BandNotFoundError(InputValidationError):
    """Raised when a raster band needed by a downstream stage does not exist.

    Args:
        band: Name of the requested band.
        available: Band names present on the image.
    """

    def __init__(self, band: str, available: Sequence[str]) -> None:
        super().__init__(
            f"Band '{band}' does not exist. "
            f"Image bands: {', '.join(available) or '(none)'}."
        )
        self.band: str = band
        self.available: list[str] = list(available)


class ClassifierSchemaError(InputValidationError):
    """Raised when features do not match a fitted classifier's schema.

    Args:
        expected: The predictor names the model was trained on, in order.
        received: The predictor names that were supplied.
    """

    def __init__(self, expected: Sequence[str], received: Sequence[str]) -> None:
        super().__init__(
            f"Feature schema mismatch: model expects {tuple(expected)} "
            f"but received {tuple(received)}."
        )
        self.expected: tuple[str, ...] = tuple(expected)
        self.received: tuple[str, ...] = tuple(received)


class InsufficientTrainingDataError(InputValidationError):
    """Raised when a training set is too small or is missing a class."""


class CoverageError(InputValidationError):
    """Raised when a region lies outside the footprint of every source."""


# ---------------------------------------------------------------------------
# CRS
# ---------------------------------------------------------------------------


class CRSError(SwiftError):
    """Raised when a CRS cannot be parsed or is unsuitable for the operation.

    Args:
        crs_string: The raw CRS string that caused the error.
        reason: Optional explanation appended to the message.
    """

    def __init__(self, crs_string: str, reason: str = "") -> None:
        detail = reason or (
            "Use an EPSG code (e.g. 'EPSG:32612') or a valid WKT/PROJ string."
        )
        super().__init__(f"Invalid or unsuitable CRS: '{crs_string}'. {detail}")
        self.crs_string: str = crs_string


# ---------------------------------------------------------------------------
# Raster / resources
# ---------------------------------------------------------------------------


class RasterError(SwiftError):
    """Raised for general raster processing failures (rasterio / numpy)."""


class ResourceLimitError(SwiftError):
    """Raised when a reduction would touch more pixels than its budget allows.

    Fatal for the one region/period being reduced; sibling computations
    carry on.

    Args:
        pixels: Number of pixels the reduction would cover.
        max_pixels: The configured budget.
    """

    def __init__(self, pixels: int, max_pixels: float) -> None:
        super().__init__(
            f"Reduction covers {pixels:,} pixels which exceeds the "
            f"budget of {max_pixels:,.0f} pixels."
        )
        self.pixels: int = pixels
        self.max_pixels: float = max_pixels


class ExternalServiceError(SwiftError):
    """Raised when the raster data service is unavailable or times out.

    Idempotent reads are retried by :func:`swift_water.service.call_with_retry`.
    """


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


class OutputWriteError(SwiftError):
    """Raised when output cannot be written to disk.

    Args:
        output_path: String representation of the path that failed.
        reason: Underlying OS or library error message.
    """

    def __init__(self, output_path: str, reason: str) -> None:
        super().__init__(
            f"Failed to write output to '{output_path}': {reason}"
        )
        self.output_path: str = output_path
        self.reason: str = reason


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------


class DataQualityWarning(UserWarning):
    """Issued for degraded but usable input.

    Examples: two labels at the same coordinate, a period with no
    contributing images.  Processing continues.
    """
