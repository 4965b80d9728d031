from __future__ import annotations


class AttendanceError(RuntimeError):
    """Base class for failures that abort an attendance fetch."""


class AuthError(AttendanceError):
    """The upstream login handshake did not succeed."""


class FetchError(AttendanceError):
    """The authenticated listing request did not succeed."""
