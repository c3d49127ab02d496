"""Base exception for the streamer."""

from __future__ import annotations

from .error_codes import ErrorCode, get_error_mapping


class StreamerError(Exception):
    """Base class for all streamer errors.

    Attributes:
        error_code: Application error code (e.g., "CAPTURE_OPEN_FAILED")
        message: Human-readable error message
    """

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, *, error_code: ErrorCode | None = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"

    @property
    def exit_code(self) -> int:
        """Process exit code for this error."""
        return get_error_mapping(self.error_code.value).exit_code

    @property
    def category(self) -> str:
        return get_error_mapping(self.error_code.value).category.value

    @property
    def title(self) -> str:
        return get_error_mapping(self.error_code.value).title
