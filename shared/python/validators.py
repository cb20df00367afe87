"""
SWIFT — Shared Input Validators
================================
Static precondition checks used across the SWIFT modules.

All methods raise an exception from :mod:`shared.python.exceptions`
rather than returning booleans, so ``validate()`` implementations stay
short and readable::

    class PipelineConfig:
        def validate(self) -> None:
            Validators.assert_fraction(self.split_ratio, "split_ratio")
            Validators.assert_positive(self.ensemble_size, "ensemble_size")
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

# Lazy imports for heavy libraries:
#   pyproj → assert_projected_crs

from shared.python.exceptions import (
    BandNotFoundError,
    ColumnNotFoundError,
    CRSError,
    InputValidationError,
    OutputWriteError,
)


class Validators:
    """Collection of static precondition checks.

    All methods are ``@staticmethod`` — this class is never instantiated.
    """

    # ------------------------------------------------------------------
    # File-system checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_file_exists(path: Path) -> None:
        """Assert that *path* points to an existing regular file.

        Raises:
            InputValidationError: If *path* does not exist or is a directory.
        """
        path = Path(path)
        if not path.exists():
            raise InputValidationError(
                f"Input file not found: '{path}'. "
                "Check that the path is correct and the file exists."
            )
        if path.is_dir():
            raise InputValidationError(
                f"Expected a file but got a directory: '{path}'."
            )

    @staticmethod
    def assert_output_dir_writable(output_path: Path) -> None:
        """Create the parent directory of *output_path* if needed.

        Raises:
            OutputWriteError: If the parent directory cannot be created.
        """
        parent = Path(output_path).parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputWriteError(str(output_path), str(exc)) from exc

    @staticmethod
    def assert_supported_extension(path: Path, extensions: Sequence[str]) -> None:
        """Assert that *path* has one of the allowed file extensions.

        Example::

            Validators.assert_supported_extension(
                Path("data/allotments.gpkg"),
                [".shp", ".geojson", ".gpkg"],
            )
        """
        path = Path(path)
        suffix = path.suffix.lower()
        allowed = [ext.lower() for ext in extensions]
        if suffix not in allowed:
            raise InputValidationError(
                f"Unsupported file extension '{suffix}' for '{path.name}'. "
                f"Accepted extensions: {', '.join(allowed)}"
            )

    # ------------------------------------------------------------------
    # CRS / projection checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_projected_crs(crs: Any) -> None:
        """Assert that *crs* is a projected CRS with metre-like units.

        Pixel areas are derived from the grid transform, which is only
        meaningful in a projected CRS.

        Raises:
            CRSError: If the CRS is missing, unparseable, or geographic.
        """
        if crs is None:
            raise CRSError("None", "The analysis grid has no CRS.")
        try:
            from pyproj import CRS  # noqa: PLC0415

            parsed = CRS.from_user_input(crs.to_wkt() if hasattr(crs, "to_wkt") else crs)
        except Exception as exc:
            raise CRSError(str(crs)) from exc
        if not parsed.is_projected:
            raise CRSError(
                str(crs),
                "Area calculations need a projected CRS (e.g. a UTM zone).",
            )

    # ------------------------------------------------------------------
    # Tabular data checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_columns_exist(
        df: object,  # pandas / geopandas DataFrame, typed loosely
        required_columns: Sequence[str],
    ) -> None:
        """Assert that all *required_columns* are present in *df*.

        Raises:
            ColumnNotFoundError: On the first missing column found.
        """
        available = list(df.columns)  # type: ignore[attr-defined]
        for col in required_columns:
            if col not in available:
                raise ColumnNotFoundError(col, available)

    # ------------------------------------------------------------------
    # Raster checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_bands_present(required: Sequence[str], available: Sequence[str]) -> None:
        """Assert that every band in *required* is in *available*.

        Raises:
            BandNotFoundError: On the first missing band.
        """
        present = set(available)
        for band in required:
            if band not in present:
                raise BandNotFoundError(band, list(available))

    @staticmethod
    def assert_raster_shapes_match(
        shape_a: tuple[int, ...],
        shape_b: tuple[int, ...],
        label_a: str = "Band A",
        label_b: str = "Band B",
    ) -> None:
        """Assert that two raster arrays have identical (rows, cols) shapes.

        Raises:
            InputValidationError: If the shapes do not match.
        """
        if tuple(shape_a) != tuple(shape_b):
            raise InputValidationError(
                f"Raster shape mismatch: {label_a} is {tuple(shape_a)} but "
                f"{label_b} is {tuple(shape_b)}. "
                "All rasters must share the analysis grid."
            )

    # ------------------------------------------------------------------
    # Numeric parameter checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_positive(value: float, name: str) -> None:
        """Assert that *value* is strictly greater than zero."""
        if not value > 0:
            raise InputValidationError(f"'{name}' must be > 0, got {value!r}.")

    @staticmethod
    def assert_fraction(value: float, name: str) -> None:
        """Assert that *value* lies strictly between 0 and 1."""
        if not 0.0 < value < 1.0:
            raise InputValidationError(
                f"'{name}' must be between 0 and 1 (exclusive), got {value!r}."
            )

    @staticmethod
    def assert_date_range(start: Any, end: Any) -> None:
        """Assert that *start* is strictly before *end*."""
        if not start < end:
            raise InputValidationError(
                f"Date range is empty: start {start} is not before end {end}."
            )
