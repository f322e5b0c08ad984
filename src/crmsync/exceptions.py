"""Custom exception hierarchy for crmsync."""

from __future__ import annotations


class CrmError(Exception):
    """Base exception for all crmsync errors."""


class CrmConfigError(CrmError):
    """Invalid or missing configuration."""


class CrmTransportError(CrmError):
    """Transport-level failure.

    Raised when a change-feed channel fails to open or is dropped, and for
    HTTP-level store failures (network, unexpected status, invalid JSON).
    Never retried inside crmsync.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class CrmWriteError(CrmError):
    """The store rejected a mutation (constraint violation, not found, ...).

    Always surfaced to the caller that issued the write.
    """

    def __init__(
        self,
        message: str,
        *,
        table: str = "",
        row_id: str = "",
        status_code: int | None = None,
    ) -> None:
        self.table = table
        self.row_id = row_id
        self.status_code = status_code
        super().__init__(message)


class CrmValidationError(CrmError):
    """A row or change payload failed its schema."""

    def __init__(self, message: str, *, table: str = "", row_id: str = "") -> None:
        self.table = table
        self.row_id = row_id
        super().__init__(message)
