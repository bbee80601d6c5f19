"""
Exception hierarchy for roster-to-directory synchronisation.

Only setup errors abort a run. Everything else is raised at the point of a
single remote call and caught at the record or batch boundary.
"""

from typing import Optional


class RosterSyncError(Exception):
    """Base class for all rostersync errors."""
    pass


class SetupError(RosterSyncError):
    """Raised when the run cannot start (missing credentials, config or extracts)."""
    pass


class ConfigError(SetupError):
    """Raised when configuration values are missing or invalid."""
    pass


class SnapshotSchemaError(RosterSyncError):
    """Raised when a persisted snapshot does not match a supported schema."""
    pass


class DirectoryError(RosterSyncError):
    """
    Raised when a directory API call fails.

    Attributes:
        status_code: HTTP status code reported by the directory (0 for
            connection-level failures)
        message: Error message from the response body
        reason: Machine-readable reason, when the directory provides one
    """

    def __init__(self, status_code: int, message: str = "", reason: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.reason = reason
        super().__init__(f"{status_code}: {message}" if message else str(status_code))

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409
