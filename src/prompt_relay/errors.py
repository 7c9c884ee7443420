"""Error taxonomy shared by the relay components."""
from __future__ import annotations


class RelayError(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code: int = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidRequest(RelayError):
    """Caller input failed basic shape validation (no prompt, no messages)."""

    status_code = 400


class CredentialsMissing(RelayError):
    """The upstream endpoint is not configured with credentials."""

    status_code = 500


class UpstreamFailure(RelayError):
    """Connection, HTTP or payload error from the remote endpoint."""

    status_code = 500


class PersistenceFailure(RelayError):
    """A conversation record could not be written. Never sent to clients."""

    status_code = 500
