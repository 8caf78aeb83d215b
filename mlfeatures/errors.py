"""
Error taxonomy for the feature engine.

Public detector, matcher and registry methods do not raise these errors;
they are raised internally (mostly by backends and image readers) and
converted into empty results plus a log message at the model boundary.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Categories of failures that can occur in the engine."""
    NOT_FOUND = "not_found"
    NOT_LOADED = "not_loaded"
    INVALID_INPUT = "invalid_input"
    BACKEND_FAILURE = "backend_failure"
    IO_FAILURE = "io_failure"


class MLFeaturesError(Exception):
    """
    Base exception carrying an error kind.

    Attributes:
        kind: Category of the failure
        message: Human-readable description
    """

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class BackendError(MLFeaturesError):
    """Failure raised by an inference backend while loading or running."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.BACKEND_FAILURE,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(kind, message)
        self.cause = cause


class ImageReadError(MLFeaturesError):
    """Failure to decode an image from disk."""

    def __init__(self, path: str, reason: str = "could not decode image"):
        super().__init__(ErrorKind.IO_FAILURE, f"{reason}: {path}")
        self.path = path
