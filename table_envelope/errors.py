"""
Exception classes for table storage, encryption and batch operations.

Every failure raised by this library derives from StorageError, so callers can
catch a single type and inspect the subclass (or the retryable flag and the
HTTP details) to classify it.
"""

from __future__ import annotations

from typing import Optional


class StorageError(Exception):
    """Base exception for all table storage and encryption operations."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        http_status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        operation_index: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.http_status_code = http_status_code
        self.error_code = error_code
        self.operation_index = operation_index
        if retryable is not None:
            self.retryable = retryable


class ConfigError(StorageError):
    """Client or policy configuration does not allow the requested operation."""

    pass


class EntityShapeError(StorageError):
    """Entity or operation data cannot be processed as given."""

    pass


class CryptoError(StorageError):
    """Cryptographic primitive failed (bad key or IV size, padding)."""

    pass


class DecryptionError(StorageError):
    """Encryption metadata is invalid or the entity cannot be decrypted."""

    pass


class KeyMismatchError(DecryptionError):
    """Configured key id does not match the key id recorded on the entity."""

    pass


class KeyNotFoundError(StorageError):
    """Key not found in the key store."""

    pass


class BatchContractError(StorageError):
    """Batch violates a client-side limit and was never sent."""

    pass


class ServiceError(StorageError):
    """The table service rejected a request."""

    def __init__(
        self,
        message: str,
        *,
        http_status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        operation_index: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        if retryable is None:
            retryable = is_transient_status(http_status_code)
        super().__init__(
            message,
            http_status_code=http_status_code,
            error_code=error_code,
            operation_index=operation_index,
            retryable=retryable,
        )


class BatchOperationError(ServiceError):
    """One operation inside a batch failed, so the whole batch failed."""

    pass


def is_transient_status(status_code: Optional[int]) -> bool:
    """Return True for HTTP statuses worth retrying (timeouts and 5xx)."""
    if status_code is None:
        return True
    return status_code == 408 or (status_code >= 500 and status_code not in (501, 505))
