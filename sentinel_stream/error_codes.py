"""Error codes for the capture-to-RTP streamer.

Every failure the streamer can report maps to one code here. The mapping
decides the process exit code and the category used in log lines, so the
CLI, the pipeline and the tests agree on what each failure means.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Error category classification.

    Categories are used for:
    - Choosing the process exit code
    - Grouping related errors in logs
    """

    CONFIGURATION = "configuration"
    REGISTRATION = "registration"
    CAPTURE = "capture"
    ENCODER = "encoder"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    """Error codes raised by the streamer."""

    # Configuration
    CONFIG_MISSING_CREDENTIALS = "CONFIG_MISSING_CREDENTIALS"
    CONFIG_INVALID_VALUE = "CONFIG_INVALID_VALUE"

    # Registration (control plane)
    REGISTRATION_CONNECTION_FAILED = "REGISTRATION_CONNECTION_FAILED"
    REGISTRATION_REJECTED = "REGISTRATION_REJECTED"
    REGISTRATION_INVALID_RESPONSE = "REGISTRATION_INVALID_RESPONSE"

    # Capture
    CAPTURE_OPEN_FAILED = "CAPTURE_OPEN_FAILED"
    CAPTURE_READ_FAILED = "CAPTURE_READ_FAILED"

    # Encoder subprocess
    ENCODER_SPAWN_FAILED = "ENCODER_SPAWN_FAILED"
    ENCODER_WRITE_FAILED = "ENCODER_WRITE_FAILED"
    ENCODER_EXITED = "ENCODER_EXITED"

    INTERNAL_ERROR = "INTERNAL_ERROR"


# Process exit codes (0 is reserved for clean shutdown)
EXIT_OK = 0
EXIT_INTERNAL = 1
EXIT_CONFIGURATION = 2
EXIT_REGISTRATION = 3
EXIT_CAPTURE = 4
EXIT_ENCODER = 5


@dataclass(frozen=True)
class ErrorMapping:
    """Mapping from error code to exit code and log details."""

    exit_code: int
    category: ErrorCategory
    title: str


ERROR_MAPPINGS: dict[ErrorCode, ErrorMapping] = {
    # Configuration (2 codes)
    ErrorCode.CONFIG_MISSING_CREDENTIALS: ErrorMapping(
        EXIT_CONFIGURATION, ErrorCategory.CONFIGURATION, "Missing Credentials"
    ),
    ErrorCode.CONFIG_INVALID_VALUE: ErrorMapping(
        EXIT_CONFIGURATION, ErrorCategory.CONFIGURATION, "Invalid Configuration"
    ),
    # Registration (3 codes)
    ErrorCode.REGISTRATION_CONNECTION_FAILED: ErrorMapping(
        EXIT_REGISTRATION,
        ErrorCategory.REGISTRATION,
        "Control Plane Unreachable",
    ),
    ErrorCode.REGISTRATION_REJECTED: ErrorMapping(
        EXIT_REGISTRATION, ErrorCategory.REGISTRATION, "Registration Rejected"
    ),
    ErrorCode.REGISTRATION_INVALID_RESPONSE: ErrorMapping(
        EXIT_REGISTRATION,
        ErrorCategory.REGISTRATION,
        "Invalid Registration Response",
    ),
    # Capture (2 codes)
    ErrorCode.CAPTURE_OPEN_FAILED: ErrorMapping(
        EXIT_CAPTURE, ErrorCategory.CAPTURE, "Capture Device Open Failed"
    ),
    ErrorCode.CAPTURE_READ_FAILED: ErrorMapping(
        EXIT_CAPTURE, ErrorCategory.CAPTURE, "Capture Read Failed"
    ),
    # Encoder (3 codes)
    ErrorCode.ENCODER_SPAWN_FAILED: ErrorMapping(
        EXIT_ENCODER, ErrorCategory.ENCODER, "Encoder Spawn Failed"
    ),
    ErrorCode.ENCODER_WRITE_FAILED: ErrorMapping(
        EXIT_ENCODER, ErrorCategory.ENCODER, "Encoder Input Closed"
    ),
    ErrorCode.ENCODER_EXITED: ErrorMapping(
        EXIT_ENCODER, ErrorCategory.ENCODER, "Encoder Exited"
    ),
    ErrorCode.INTERNAL_ERROR: ErrorMapping(
        EXIT_INTERNAL, ErrorCategory.INTERNAL, "Internal Error"
    ),
}

# Default mapping for unknown error codes
_DEFAULT_MAPPING = ErrorMapping(EXIT_INTERNAL, ErrorCategory.INTERNAL, "Internal Error")


def get_error_mapping(error_code: str) -> ErrorMapping:
    """Get error mapping for a given error code string.

    Args:
        error_code: Error code string (e.g., "REGISTRATION_REJECTED")

    Returns:
        ErrorMapping with exit_code, category, and title.
        Returns the internal mapping for unknown codes.
    """
    try:
        code = ErrorCode(error_code)
        return ERROR_MAPPINGS.get(code, _DEFAULT_MAPPING)
    except ValueError:
        return _DEFAULT_MAPPING

