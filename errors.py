"""
Error types shared by the analysis modules.

Components raise these; the AnalysisEngine catches them at its boundary and
turns them into an error value on the report for the affected mode.
"""

from enum import Enum


class ErrorKind(Enum):
    INVALID_INPUT = "invalid_input"
    RESOURCE_UNAVAILABLE = "resource_unavailable"


class InvalidInput(ValueError):
    """Source image or configuration cannot be analyzed."""
    kind = ErrorKind.INVALID_INPUT


class ResourceUnavailable(RuntimeError):
    """A result buffer could not be allocated."""
    kind = ErrorKind.RESOURCE_UNAVAILABLE
