"""
Labdex Exception Hierarchy

Structured exceptions for clear error handling across the CLI, the
service facade, and MCP consumers.  Each exception type maps to a
specific failure mode so that callers can handle errors precisely
without parsing message strings.

Usage::

    from labdex.exceptions import LabdexError, ForgeError

    try:
        user = gitlab.get_current_user()
    except ForgeError as exc:
        print(f"GitLab unavailable: {exc}")
"""


class LabdexError(Exception):
    """Base exception for all Labdex errors."""


class ConfigError(LabdexError, ValueError):
    """Configuration is invalid or incomplete (e.g. malformed GitLab URL).

    Inherits from ``ValueError`` so callers that validate settings with
    plain ``except ValueError`` keep working.
    """


class ForgeError(LabdexError):
    """The remote forge could not be reached or returned an unusable reply."""


class TransportError(ForgeError):
    """Network failure or per-request timeout."""


class ForgeAPIError(ForgeError):
    """The forge answered with a non-success HTTP status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeError(ForgeError, ValueError):
    """A response body is not valid JSON or does not have the expected shape."""


class StoreError(LabdexError):
    """A cache write (statement or transaction) failed and was rolled back."""


class ActivationError(LabdexError):
    """An activation request named an unknown action."""
