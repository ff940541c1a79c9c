from __future__ import annotations


class BackofficeError(RuntimeError):
    """Base error; rendered as JSON by the app factory with `status_code`."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(BackofficeError):
    status_code = 404


class ValidationError(BackofficeError, ValueError):
    status_code = 400


class RowParseError(ValidationError):
    """A row from the legacy operations database could not be normalized."""


class PermissionDenied(BackofficeError, PermissionError):
    status_code = 403


class TransientFetchError(BackofficeError):
    """Network/timeout failure talking to the legacy operations database. Retried by the next sweep."""

    status_code = 503
