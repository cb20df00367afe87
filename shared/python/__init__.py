"""
SWIFT — Shared Python Package
==============================
Re-exports the shared base class, exception hierarchy, and validator
utilities so tool modules can import from a single location::

    from shared.python import GeoTool, Validators
    from shared.python.exceptions import ResourceLimitError
"""

from shared.python.base_tool import GeoTool, configure_logging
from shared.python.exceptions import (
    BandNotFoundError,
    ClassifierSchemaError,
    ColumnNotFoundError,
    CoverageError,
    CRSError,
    DataQualityWarning,
    ExternalServiceError,
    InputValidationError,
    InsufficientTrainingDataError,
    OutputWriteError,
    RasterError,
    ResourceLimitError,
    SwiftError,
)
from shared.python.validators import Validators

__all__ = [
    "GeoTool",
    "configure_logging",
    "Validators",
    "SwiftError",
    "InputValidationError",
    "ColumnNotFoundError",
    "BandNotFoundError",
    "ClassifierSchemaError",
    "InsufficientTrainingDataError",
    "CoverageError",
    "CRSError",
    "RasterError",
    "ResourceLimitError",
    "ExternalServiceError",
    "OutputWriteError",
    "DataQualityWarning",
]
