"""
SWIFT — Shared Base Tool
=========================
Abstract base class for file-driven SWIFT runs.

Design Pattern:
    Template Method — the public ``run()`` method defines a fixed
    pipeline (validate → process → report) that subclasses fill in
    by implementing ``validate_inputs`` and ``process``.

Usage::

    from shared.python.base_tool import GeoTool

    class MyTool(GeoTool):
        def validate_inputs(self) -> None:
            ...
        def process(self) -> None:
            ...
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path

# Each module gets its own child logger, e.g. ``swift.zonal``.
logger = logging.getLogger("swift")


def configure_logging(verbose: bool = False) -> None:
    """Attach a console handler to the ``swift`` logger once.

    Args:
        verbose: Use DEBUG level when ``True``, otherwise INFO.
    """
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            fmt="[%(asctime)s] %(levelname)-8s %(name)s — %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


class GeoTool(ABC):
    """Abstract base class for SWIFT tools driven by input/output paths.

    Attributes:
        input_path: Path to the primary input (usually a JSON config).
        output_path: Directory or file where results are written.
        verbose: Log DEBUG messages in addition to INFO/WARNING/ERROR.
        elapsed: Wall-clock seconds taken by the last :meth:`run`.
    """

    def __init__(
        self,
        input_path: Path,
        output_path: Path,
        *,
        verbose: bool = False,
    ) -> None:
        self.input_path: Path = Path(input_path)
        self.output_path: Path = Path(output_path)
        self.verbose: bool = verbose
        self.elapsed: float | None = None

        configure_logging(verbose)

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    @abstractmethod
    def validate_inputs(self) -> None:
        """Validate every input before processing begins.

        Raises:
            InputValidationError: If any precondition is not satisfied.
        """

    @abstractmethod
    def process(self) -> None:
        """Execute the core processing; called after validation succeeds."""

    # ------------------------------------------------------------------
    # Template method
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Run :meth:`validate_inputs`, then :meth:`process`, then report.

        Exceptions from either step propagate unchanged.
        """
        logger.info("Starting %s", self.__class__.__name__)
        start = time.perf_counter()

        self.validate_inputs()
        self.process()

        self.elapsed = time.perf_counter() - start
        self._report_success(self.elapsed)

    def _report_success(self, elapsed: float) -> None:
        logger.info(
            "%s completed in %.2fs → %s",
            self.__class__.__name__,
            elapsed,
            self.output_path,
        )

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"input_path={self.input_path!r}, "
            f"output_path={self.output_path!r})"
        )
