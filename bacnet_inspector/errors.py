"""
Exception types raised by the BACnet capture inspector.
"""

from typing import Optional


class AnalyzerError(Exception):
    """Base class for all inspector errors."""


class CaptureOpenError(AnalyzerError):
    """The capture file could not be opened or is not a capture container."""


class ToolUnavailable(AnalyzerError):
    """The external deep decoder could not be found or executed."""


class DeepDecodeError(AnalyzerError):
    """The deep decoder failed without producing any record."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class ResourceExhaustedError(AnalyzerError):
    """Memory ran out while staging, buffering or loading data."""

    def __init__(self, message: str, records_completed: int = 0):
        super().__init__(
            f"{message} ({records_completed} records completed before the failure). "
            "Try a smaller capture or save only BACnet packets."
        )
        self.records_completed = records_completed


class SnapshotError(AnalyzerError):
    """A snapshot file could not be written or read."""


class OperationCancelled(AnalyzerError):
    """The operation was cancelled by the caller."""

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)
