"""Store-level exceptions.

``TransientStoreError`` and its subclasses mean "try again later": the
reconciler retries them and parks the mutation when retries run out.
``RemoteRejectedError`` means the authority refused the write for good.
"""

from typing import Any


class RepositoryError(Exception):
    """Base exception for all store errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class TransientStoreError(RepositoryError):
    """A store call failed in a way worth retrying."""

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        details = {"error_type": type(original_error).__name__} if original_error else None
        super().__init__(message, details)
        self.original_error = original_error


class StoreConnectionError(TransientStoreError):
    """The store could not be reached."""

    def __init__(self, message: str, host: str | None = None, port: int | None = None) -> None:
        super().__init__(message)
        if host:
            self.details["host"] = host
        if port:
            self.details["port"] = port


class StoreTimeoutError(TransientStoreError):
    """A single store call exceeded its timeout."""


class RemoteRejectedError(RepositoryError):
    """The authority refused a write; never retried."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        details = {"status_code": status_code} if status_code is not None else None
        super().__init__(message, details)
        self.status_code = status_code


class StaleWriteError(RemoteRejectedError):
    """A write was based on records the store has since changed."""

    def __init__(self, message: str, acceptance_ids: list[str] | None = None) -> None:
        super().__init__(message, status_code=409)
        self.acceptance_ids = acceptance_ids or []
        if self.acceptance_ids:
            self.details["acceptance_ids"] = self.acceptance_ids


__all__ = [
    "RemoteRejectedError",
    "RepositoryError",
    "StaleWriteError",
    "StoreConnectionError",
    "StoreTimeoutError",
    "TransientStoreError",
]
