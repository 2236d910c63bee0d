"""
Custom exception hierarchy for media cleanup.

Callers can catch MediaCleanupError broadly or the specific types below.
"""


class MediaCleanupError(Exception):
    """Base exception for all media cleanup errors."""
    pass


class DatabaseError(MediaCleanupError):
    """Raised when database operations fail."""
    pass


class SettingsError(MediaCleanupError):
    """Raised when operator settings fail validation."""
    pass


class ScanError(MediaCleanupError):
    """Raised when a scan cannot be controlled as requested."""
    pass


class InvalidScanTypesError(ScanError):
    """Raised when a scan is requested with unknown detector types."""
    pass


class InvalidQueryError(MediaCleanupError):
    """Raised when a results query has invalid parameters."""
    pass


class AttachmentNotFoundError(MediaCleanupError):
    """Raised when an attachment id does not exist."""
    pass


class ActionError(MediaCleanupError):
    """Raised when a bulk action cannot run."""
    pass


class ActionNotConfirmedError(ActionError):
    """Raised when a destructive action is requested without confirmation."""
    pass


class TaskError(MediaCleanupError):
    """Raised when a queued task references an unknown handler."""
    pass
