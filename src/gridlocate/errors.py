"""Exception hierarchy shared by the grid-location modules.

Per-record problems (bad fields, unparseable counts) are recoverable: the
document is reported as "bad" and the run continues. Invariant violations
signal programming or configuration bugs and are never caught by the core.
"""

from __future__ import annotations


class GridLocateError(Exception):
    """Base class for recoverable errors."""


class DocValidationError(GridLocateError):
    """A field of a training or test record is missing or malformed."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class CoordinateError(DocValidationError):
    """A coordinate could not be parsed or lies outside legal bounds."""


class LangModelCreationError(GridLocateError):
    """A word-count field could not be turned into a language model."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DegenerateDistributionError(GridLocateError):
    """Zero total mass or zero vocabulary where a distribution is required."""


class InvariantViolation(AssertionError):
    """Fatal: an internal invariant does not hold."""


class GridStateError(InvariantViolation):
    """A grid operation was called in the wrong lifecycle phase."""


__all__ = [
    "GridLocateError",
    "DocValidationError",
    "CoordinateError",
    "LangModelCreationError",
    "DegenerateDistributionError",
    "InvariantViolation",
    "GridStateError",
]
