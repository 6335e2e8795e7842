from __future__ import annotations


class PortalError(RuntimeError):
    """Base class for failures while driving the Elevate portal."""


class LoginError(PortalError):
    """Raised when login keeps failing after the configured retries."""


class ReportError(PortalError):
    """Raised when the Net ACH report cannot be prepared or loaded."""


class ExportError(PortalError):
    """Raised when the export control is missing or the download never starts."""
