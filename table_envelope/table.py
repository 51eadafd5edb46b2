"""
Table reference: entry point for point operations, batches and key rotation.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional

from .batch import MAX_BATCH_OPERATIONS, TableBatchOperation, execute_batch
from .config import TableRequestOptions
from .encryption import TableEncryptionPolicy
from .executor import Executor, LocationMode
from .key_rotation import KeyRotationEntity, metadata_merge_operation, rewrap_content_key
from .keys import KeyEncryptionKey
from .models import TableOperation, TableResult
from .operation import execute_operation

logger = logging.getLogger(__name__)


class CloudTable:
    """A named table, bound to an executor and client-level default options."""

    def __init__(
        self,
        name: str,
        executor: Executor,
        default_options: Optional[TableRequestOptions] = None,
    ) -> None:
        self._name = name
        self._executor = executor
        self._default_options = default_options or TableRequestOptions()

    @property
    def name(self) -> str:
        return self._name

    @property
    def default_options(self) -> TableRequestOptions:
        return self._default_options

    async def execute(
        self,
        operation: TableOperation,
        options: Optional[TableRequestOptions] = None,
    ) -> TableResult:
        """
        Execute a single operation as its own request.

        Insert and replace bodies are encrypted and retrieved entities
        decrypted when the resolved options carry an encryption policy.

        Args:
            operation: Point operation against one entity
            options: Per-call options, merged over the table defaults
        """
        resolved = (options or TableRequestOptions()).merged_with(self._default_options)
        return await execute_operation(self._executor, self._name, operation, resolved)

    async def execute_batch(
        self,
        batch: TableBatchOperation,
        options: Optional[TableRequestOptions] = None,
    ) -> List[TableResult]:
        """
        Execute a batch; results are in operation order.

        Args:
            batch: Operations against one partition (1 to 100)
            options: Per-call options, merged over the table defaults
        """
        resolved = (options or TableRequestOptions()).merged_with(self._default_options)
        logger.debug("Executing batch of %d operations on %s", len(batch), self._name)
        return await execute_batch(self._executor, self._name, batch, resolved)

    @asynccontextmanager
    async def batch(
        self,
        options: Optional[TableRequestOptions] = None,
    ) -> AsyncIterator[TableBatchOperation]:
        """
        Collect operations in a block and execute them on exit.

        Nothing is sent if the block raises.

            async with table.batch() as batch:
                batch.insert(entity)
        """
        batch = TableBatchOperation()
        yield batch
        await self.execute_batch(batch, options)

    async def rotate_encryption_keys(
        self,
        entities: Iterable[KeyRotationEntity],
        policy: TableEncryptionPolicy,
        new_key: KeyEncryptionKey,
    ) -> int:
        """
        Re-wrap the content keys of encrypted entities with `new_key`.

        Only the metadata property of each entity is written back, with a
        merge conditional on the entity ETag. Merges are grouped by partition
        into batches of at most 100 and sent without an encryption policy.

        Args:
            entities: Snapshots from a scan that selected encrypted entities
            policy: Resolves the key each entity is currently wrapped with
            new_key: Key-encryption key to wrap with from now on

        Returns:
            Number of entities rotated
        """
        by_partition: Dict[str, List[KeyRotationEntity]] = {}
        for entity in entities:
            by_partition.setdefault(entity.partition_key, []).append(entity)

        options = TableRequestOptions(
            require_encryption=False,
            location_mode=LocationMode.PRIMARY_ONLY,
            timeout=self._default_options.timeout,
        )

        rotated = 0
        for partition_key, group in by_partition.items():
            for start in range(0, len(group), MAX_BATCH_OPERATIONS):
                chunk = group[start:start + MAX_BATCH_OPERATIONS]
                batch = TableBatchOperation()
                for entity in chunk:
                    metadata_json = await rewrap_content_key(entity, policy, new_key)
                    batch.add(metadata_merge_operation(entity, metadata_json))

                await execute_batch(self._executor, self._name, batch, options)
                rotated += len(chunk)
                logger.debug(
                    "Rotated %d entities in partition %s to key %s",
                    len(chunk),
                    partition_key,
                    new_key.kid,
                )

        logger.info("Rotated %d entities in %s to key %s", rotated, self._name, new_key.kid)
        return rotated
