"""
Single point operations, and the per-operation encoding batches reuse.

This module provides:
- validate_operation: Encryption rules checked before anything is sent
- encode_operation: Method, path, headers and (encrypted) body of one operation
- read_result: TableResult from a response status, ETag and body
- execute_operation: Sends one operation as its own request
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
from urllib.parse import quote

import httpx

from .config import TableRequestOptions
from .encryption import RESERVED_PROPERTY_NAMES
from .errors import ConfigError, EntityShapeError, ServiceError
from .executor import CommandLocationMode, Executor, LocationMode, StorageCommand
from .models import TableOperation, TableOperationType, TableResult
from .wire import (
    ACCEPT_MINIMAL_METADATA,
    JSON_CONTENT_TYPE,
    deserialize_entity,
    entity_path,
    serialize_entity,
    timestamp_from_etag,
)

logger = logging.getLogger(__name__)

# Operations that send If-Match.
_CONDITIONAL = (
    TableOperationType.DELETE,
    TableOperationType.REPLACE,
    TableOperationType.MERGE,
)


@dataclass
class EncodedOperation:
    """One operation as an HTTP request relative to the service endpoint."""

    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None


def validate_operation(operation: TableOperation, options: TableRequestOptions) -> None:
    """
    Check the encryption options allow the operation.

    Raises:
        ConfigError: Merge with an encryption policy, or require_encryption
            without one
    """
    operation_type = operation.operation_type
    if options.encryption_policy is not None and operation_type.is_merge:
        raise ConfigError(
            f"{operation_type.value} is not supported when an encryption policy is set"
        )
    if options.require_encryption and options.encryption_policy is None:
        raise ConfigError(
            "Encryption policy is required when require_encryption is set "
            f"({operation_type.value} operation)"
        )


def expected_statuses(operation: TableOperation) -> Tuple[int, ...]:
    """Statuses that mean the operation succeeded (404 is a result for retrieve)."""
    operation_type = operation.operation_type
    if operation_type is TableOperationType.RETRIEVE:
        return (200, 404)
    if operation_type is TableOperationType.INSERT:
        return (201, 204)
    return (204,)


def operation_path(table_name: str, operation: TableOperation, options: TableRequestOptions) -> str:
    if operation.operation_type is TableOperationType.INSERT:
        return f"/{table_name}"

    path = entity_path(table_name, operation.partition_key, operation.row_key)
    if operation.operation_type is TableOperationType.RETRIEVE and operation.select_columns:
        columns = list(operation.select_columns)
        if options.encryption_policy is not None:
            # Decryption needs the metadata columns even when not selected.
            columns.extend(
                name for name in sorted(RESERVED_PROPERTY_NAMES) if name not in columns
            )
        path += "?$select=" + quote(",".join(columns), safe=",")
    return path


async def encode_operation(
    table_name: str,
    operation: TableOperation,
    options: TableRequestOptions,
) -> EncodedOperation:
    """
    Encode an operation, encrypting the entity body when a policy is set.

    A fresh content key is generated on every call.
    """
    operation_type = operation.operation_type
    encoded = EncodedOperation(
        method=operation_type.http_method,
        path=operation_path(table_name, operation, options),
        headers={"Accept": ACCEPT_MINIMAL_METADATA},
    )
    if operation_type is TableOperationType.RETRIEVE:
        return encoded

    entity = operation.entity
    if entity is None:
        raise EntityShapeError(f"{operation_type.value} requires an entity")

    if operation_type is TableOperationType.INSERT:
        encoded.headers["Prefer"] = (
            "return-content" if operation.echo_content else "return-no-content"
        )
    if operation_type in _CONDITIONAL and entity.etag is not None:
        encoded.headers["If-Match"] = entity.etag

    if operation_type is not TableOperationType.DELETE:
        properties = entity.properties
        policy = options.encryption_policy
        if policy is not None:
            properties = await policy.encrypt_entity(
                properties,
                entity.partition_key,
                entity.row_key,
                options.encryption_resolver,
            )
        encoded.body = serialize_entity(entity.partition_key, entity.row_key, properties)
        encoded.headers["Content-Type"] = JSON_CONTENT_TYPE

    return encoded


async def read_result(
    operation: TableOperation,
    status: int,
    etag: Optional[str],
    body: bytes,
    options: TableRequestOptions,
    operation_index: Optional[int] = None,
) -> TableResult:
    """
    Build the result of a successful operation.

    Returned entities are decrypted with the request's policy. The ETag (and
    the timestamp, when known) is copied onto the operation's entity.

    Raises:
        ServiceError: The response body is not a valid entity (not retryable)
        DecryptionError: The returned entity cannot be decrypted
    """
    if operation.operation_type is TableOperationType.RETRIEVE and status == 404:
        return TableResult(http_status_code=404)

    result = TableResult(http_status_code=status, etag=etag)

    if status in (200, 201) and body:
        try:
            returned = deserialize_entity(json.loads(body.decode("utf-8")))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ServiceError(
                f"Malformed entity in {status} response: {e}",
                http_status_code=status,
                operation_index=operation_index,
                retryable=False,
            ) from e

        returned.etag = etag or returned.etag
        policy = options.encryption_policy
        if policy is not None:
            returned.properties = await policy.decrypt_properties(
                returned.properties, require_encryption=bool(options.require_encryption)
            )
        result.result = returned
        if operation.entity is not None:
            operation.entity.etag = returned.etag
            operation.entity.timestamp = returned.timestamp
        return result

    entity = operation.entity
    if entity is not None:
        if etag is not None:
            entity.etag = etag
        if operation.operation_type is TableOperationType.INSERT:
            entity.timestamp = timestamp_from_etag(etag) or entity.timestamp
    result.result = entity
    return result


async def execute_operation(
    executor: Executor,
    table_name: str,
    operation: TableOperation,
    options: TableRequestOptions,
) -> TableResult:
    """
    Execute one operation as its own request.

    `options` must already be merged with the client defaults.

    Raises:
        ConfigError: Encryption options forbid the operation
        ServiceError: The service rejected the operation
        DecryptionError: A returned entity cannot be decrypted
    """
    validate_operation(operation, options)
    headers: Dict[str, str] = {}

    async def build_content(endpoint: str) -> bytes:
        encoded = await encode_operation(table_name, operation, options)
        # Re-encrypted on every attempt; the executor reads headers afterwards.
        headers.clear()
        headers.update(encoded.headers)
        return encoded.body or b""

    async def post_process(response: httpx.Response) -> TableResult:
        return await read_result(
            operation,
            response.status_code,
            response.headers.get("etag"),
            response.content,
            options,
        )

    command = StorageCommand(
        method=operation.operation_type.http_method,
        path=operation_path(table_name, operation, options),
        build_content=build_content,
        post_process=post_process,
        expected_statuses=expected_statuses(operation),
        headers=headers,
        location_mode=(
            CommandLocationMode.PRIMARY_ONLY
            if operation.operation_type.is_write
            else CommandLocationMode.PRIMARY_OR_SECONDARY
        ),
        timeout=options.timeout,
    )
    logger.debug(
        "Executing %s on %s (%s, %s)",
        operation.operation_type.value,
        table_name,
        operation.partition_key,
        operation.row_key,
    )
    return await executor.execute(command, options.location_mode or LocationMode.PRIMARY_ONLY)
