"""
Exception types raised by the backup manager.

Fatal conditions (corrupt archive, failed extraction, rejected login, held
lock) are raised; recoverable per-item problems are returned as structured
outcomes instead.
"""


class BackupManagerError(Exception):
    """Base class for all backup manager errors."""


class ConfigError(BackupManagerError):
    """Configuration file or value is invalid."""


class LockError(BackupManagerError):
    """Another operation holds the operation lock."""


class ArchiveError(BackupManagerError):
    """Archive could not be created or read."""


class ExtractionError(ArchiveError):
    """Archive extraction failed; data integrity cannot be assumed."""


class ControlPlaneError(BackupManagerError):
    """A Portainer API call failed."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ControlPlaneError):
    """Portainer rejected the configured credentials."""


class OperationAborted(BackupManagerError):
    """Operation stopped before any destructive step (e.g. confirmation declined)."""
