"""
Custom exception hierarchy for the takeout organizer.

Each exception carries the ErrorKind it is reported under, so the
pipeline can turn any failure into a per-file Failed outcome without
inspecting exception types.
"""
from .models import ErrorKind


class TakeoutOrganizerError(Exception):
    """Base exception for all takeout organizer errors."""
    kind: ErrorKind = ErrorKind.IO_FAILURE


class SidecarUnreadableError(TakeoutOrganizerError):
    """Raised when a sidecar exists but cannot be parsed. Never fatal."""
    kind = ErrorKind.SIDECAR_UNREADABLE


class UnsupportedFormatError(TakeoutOrganizerError):
    """Raised when an embedded container is corrupt or unsafe to write."""
    kind = ErrorKind.UNSUPPORTED_FORMAT


class NoTimestampAvailableError(TakeoutOrganizerError):
    """Raised when every candidate timestamp is absent or implausible."""
    kind = ErrorKind.NO_TIMESTAMP_AVAILABLE


class StorageError(TakeoutOrganizerError):
    """Raised when a read/write/move fails at the storage layer."""
    kind = ErrorKind.IO_FAILURE


class DestinationConflictError(TakeoutOrganizerError):
    """Raised when no free destination name could be found."""
    kind = ErrorKind.DESTINATION_CONFLICT
