"""
Batch execution of table operations.

This module provides:
- TableBatchOperation: Ordered operations against a single partition
- execute_batch: Validates, encrypts, sends and demultiplexes one batch

A batch is one atomic unit: it is sent as a single `$batch` request, retried
(if at all) as a whole, and either yields one result per operation in
submission order or raises a single error with no partial results.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Dict, Iterator, List, Optional, overload

import httpx

from .config import TableRequestOptions
from .errors import BatchContractError, BatchOperationError, EntityShapeError
from .executor import CommandLocationMode, Executor, LocationMode, StorageCommand
from .models import TableEntity, TableOperation, TableResult
from .operation import encode_operation, expected_statuses, read_result, validate_operation
from .wire import (
    ACCEPT_MINIMAL_METADATA,
    BatchSubRequest,
    BatchSubResponse,
    build_batch_body,
    parse_batch_response,
    parse_error_body,
)

logger = logging.getLogger(__name__)

MAX_BATCH_OPERATIONS = 100

# "2:The specified entity already exists." names the failed operation.
_FAILED_INDEX = re.compile(r"^(\d+):")


# =============================================================================
# Batch
# =============================================================================


class TableBatchOperation(Sequence):
    """
    Ordered list of operations that all target one partition.

    Operations are added with `add()` or the factory methods named after the
    operation types; results come back in the same order.
    """

    def __init__(self, operations: Optional[List[TableOperation]] = None) -> None:
        self._operations: List[TableOperation] = []
        for operation in operations or []:
            self.add(operation)

    @property
    def partition_key(self) -> Optional[str]:
        return self._operations[0].partition_key if self._operations else None

    @property
    def contains_writes(self) -> bool:
        return any(op.operation_type.is_write for op in self._operations)

    def add(self, operation: TableOperation) -> None:
        """
        Append an operation.

        Raises:
            EntityShapeError: If the operation targets another partition
        """
        if self._operations and operation.partition_key != self.partition_key:
            raise EntityShapeError(
                "All operations in a batch must share one partition key: "
                f"{operation.partition_key!r} != {self.partition_key!r}"
            )
        self._operations.append(operation)

    def insert(self, entity: TableEntity, echo_content: bool = False) -> None:
        self.add(TableOperation.insert(entity, echo_content))

    def delete(self, entity: TableEntity) -> None:
        self.add(TableOperation.delete(entity))

    def replace(self, entity: TableEntity) -> None:
        self.add(TableOperation.replace(entity))

    def merge(self, entity: TableEntity) -> None:
        self.add(TableOperation.merge(entity))

    def insert_or_replace(self, entity: TableEntity) -> None:
        self.add(TableOperation.insert_or_replace(entity))

    def insert_or_merge(self, entity: TableEntity) -> None:
        self.add(TableOperation.insert_or_merge(entity))

    def retrieve(
        self,
        partition_key: str,
        row_key: str,
        select_columns: Optional[List[str]] = None,
    ) -> None:
        self.add(TableOperation.retrieve(partition_key, row_key, select_columns))

    @overload
    def __getitem__(self, index: int) -> TableOperation: ...

    @overload
    def __getitem__(self, index: slice) -> List[TableOperation]: ...

    def __getitem__(self, index):
        return self._operations[index]

    def __len__(self) -> int:
        return len(self._operations)

    def __iter__(self) -> Iterator[TableOperation]:
        return iter(self._operations)

    def __repr__(self) -> str:
        return f"TableBatchOperation(partition_key={self.partition_key!r}, operations={len(self)})"


# =============================================================================
# Execution
# =============================================================================


def validate_batch(batch: TableBatchOperation, options: TableRequestOptions) -> None:
    """
    Check client-side preconditions; nothing is sent when these fail.

    Raises:
        BatchContractError: If the batch is empty or too large
        ConfigError: If the encryption options forbid an operation
    """
    if len(batch) == 0:
        raise BatchContractError("Cannot execute an empty batch operation")
    if len(batch) > MAX_BATCH_OPERATIONS:
        raise BatchContractError(
            f"The batch operation exceeded maximum of {MAX_BATCH_OPERATIONS} operations "
            f"({len(batch)} given)"
        )

    for operation in batch:
        validate_operation(operation, options)


async def execute_batch(
    executor: Executor,
    table_name: str,
    batch: TableBatchOperation,
    options: TableRequestOptions,
) -> List[TableResult]:
    """
    Execute a batch and return one result per operation, in order.

    `options` must already be merged with the client defaults.

    Raises:
        BatchContractError: Batch is empty or has more than 100 operations
        ConfigError: Encryption options forbid an operation
        BatchOperationError: An operation inside the batch failed
        ServiceError: The batch request itself failed
    """
    validate_batch(batch, options)
    execution = _BatchExecution(table_name, list(batch), options)
    return await executor.execute(
        execution.command(),
        options.location_mode or LocationMode.PRIMARY_ONLY,
    )


class _BatchExecution:
    """State of one in-flight batch: its request builder and result buffer."""

    def __init__(
        self,
        table_name: str,
        operations: List[TableOperation],
        options: TableRequestOptions,
    ) -> None:
        self._table_name = table_name
        self._operations = operations
        self._options = options
        self._headers: Dict[str, str] = {"Accept": ACCEPT_MINIMAL_METADATA}
        self._results: List[TableResult] = []

    def command(self) -> StorageCommand[List[TableResult]]:
        has_writes = any(op.operation_type.is_write for op in self._operations)
        return StorageCommand(
            method="POST",
            path="/$batch",
            build_content=self._build_content,
            post_process=self._post_process,
            expected_statuses=(202,),
            headers=self._headers,
            location_mode=(
                CommandLocationMode.PRIMARY_ONLY
                if has_writes
                else CommandLocationMode.PRIMARY_OR_SECONDARY
            ),
            recovery_action=self._results.clear,
            timeout=self._options.timeout,
        )

    # -------------------------------------------------------------------------
    # Request
    # -------------------------------------------------------------------------

    async def _build_content(self, endpoint: str) -> bytes:
        sub_requests = [await self._sub_request(endpoint, op) for op in self._operations]
        body, content_type = build_batch_body(sub_requests)
        # The boundary changes with every build; the executor reads headers afterwards.
        self._headers["Content-Type"] = content_type
        logger.debug(
            "Built batch of %d operations for table %s (%d bytes)",
            len(sub_requests),
            self._table_name,
            len(body),
        )
        return body

    async def _sub_request(self, endpoint: str, operation: TableOperation) -> BatchSubRequest:
        encoded = await encode_operation(self._table_name, operation, self._options)
        return BatchSubRequest(
            operation, encoded.method, endpoint + encoded.path, encoded.headers, encoded.body
        )

    # -------------------------------------------------------------------------
    # Response
    # -------------------------------------------------------------------------

    async def _post_process(self, response: httpx.Response) -> List[TableResult]:
        try:
            sub_responses = parse_batch_response(
                response.content, response.headers.get("content-type", "")
            )
            if len(sub_responses) > len(self._operations):
                raise BatchOperationError(
                    f"Batch response has {len(sub_responses)} responses "
                    f"for {len(self._operations)} operations",
                    http_status_code=response.status_code,
                    retryable=False,
                )
            for index, operation in enumerate(self._operations):
                if index >= len(sub_responses):
                    # A failed changeset comes back as one error response.
                    if sub_responses and sub_responses[-1].status >= 400:
                        raise _operation_error(len(sub_responses) - 1, sub_responses[-1])
                    raise BatchOperationError(
                        f"Batch response has {len(sub_responses)} responses "
                        f"for {len(self._operations)} operations",
                        http_status_code=response.status_code,
                        operation_index=index,
                        retryable=False,
                    )
                result = await self._process_sub_response(index, operation, sub_responses[index])
                self._results.append(result)
            return list(self._results)
        except Exception:
            self._results.clear()
            raise

    async def _process_sub_response(
        self,
        index: int,
        operation: TableOperation,
        sub: BatchSubResponse,
    ) -> TableResult:
        if sub.status not in expected_statuses(operation):
            raise _operation_error(index, sub)
        return await read_result(
            operation, sub.status, sub.header("etag"), sub.body, self._options, index
        )


def _operation_error(index: int, sub: BatchSubResponse) -> BatchOperationError:
    error_code, message = parse_error_body(sub.body)
    failed_index = index
    if message:
        match = _FAILED_INDEX.match(message)
        if match:
            failed_index = int(match.group(1))

    return BatchOperationError(
        message or f"Operation {failed_index} failed: {sub.status} {sub.reason}",
        http_status_code=sub.status,
        error_code=error_code,
        operation_index=failed_index,
    )
