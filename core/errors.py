# core/errors.py
from __future__ import annotations
from typing import Optional


class DashboardError(Exception):
    """Base class for every error the CLI reports to the user."""


class ValidationError(DashboardError, ValueError):
    """Bad amount or duplicate coin, rejected before state changes."""


class PersistenceParseError(DashboardError, ValueError):
    """Locally stored JSON could not be decoded into the expected shape."""


class NotFound(DashboardError, LookupError):
    pass


class FetchFailed(DashboardError, RuntimeError):
    """
    A market-data request failed. Carries the HTTP status when the server
    answered, otherwise the underlying exception as ``cause``.
    """

    def __init__(self, message: str, status: Optional[int] = None,
                 cause: Optional[BaseException] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.cause = cause
        self.url = url

    def __repr__(self) -> str:
        if self.status is not None:
            return f"FetchFailed(status={self.status})"
        return f"FetchFailed(cause={type(self.cause).__name__ if self.cause else None})"
