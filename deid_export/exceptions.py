"""Error types raised by the export pipeline."""

from __future__ import annotations


class ExportError(Exception):
    """Base class for export pipeline failures."""


class ConfigurationError(ExportError):
    """A required setting (pseudonym secret, storage credentials) is missing."""


class StorageError(ExportError):
    """Object storage rejected an upload or signing request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidTransition(ExportError):
    """A job record status change that the lifecycle does not allow."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move export from {current!r} to {target!r}")
        self.current = current
        self.target = target


class JobNotFound(ExportError):
    """The export record named in a queue payload does not exist."""
