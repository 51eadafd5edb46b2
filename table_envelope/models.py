"""
Table entity and operation data structures.

This module provides:
- EdmType: Property types understood by the table service
- EntityProperty: Typed property value with an encryption flag
- TableEntity: Partition key, row key, system fields and properties
- TableOperationType / TableOperation: Point operations
- TableResult: Outcome of one point operation
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from .errors import EntityShapeError


class EdmType(Enum):
    """Entity Data Model type of a property."""

    STRING = "Edm.String"
    BINARY = "Edm.Binary"
    BOOLEAN = "Edm.Boolean"
    INT32 = "Edm.Int32"
    INT64 = "Edm.Int64"
    DOUBLE = "Edm.Double"
    DATETIME = "Edm.DateTime"
    GUID = "Edm.Guid"

    def __str__(self) -> str:
        return self.value


_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


@dataclass
class EntityProperty:
    """
    A typed property value.

    `encrypt` marks the property for client-side encryption; only non-null
    string properties can be encrypted.
    """

    edm_type: EdmType
    value: Any
    encrypt: bool = False

    @property
    def is_null(self) -> bool:
        return self.value is None

    @classmethod
    def from_value(cls, value: Any, encrypt: bool = False) -> EntityProperty:
        """Infer the EDM type of a plain Python value."""
        if isinstance(value, EntityProperty):
            return value
        if isinstance(value, bool):
            edm_type = EdmType.BOOLEAN
        elif isinstance(value, int):
            edm_type = EdmType.INT32 if _INT32_MIN <= value <= _INT32_MAX else EdmType.INT64
        elif isinstance(value, float):
            edm_type = EdmType.DOUBLE
        elif isinstance(value, (bytes, bytearray)):
            edm_type = EdmType.BINARY
            value = bytes(value)
        elif isinstance(value, datetime):
            edm_type = EdmType.DATETIME
        elif isinstance(value, UUID):
            edm_type = EdmType.GUID
        elif value is None or isinstance(value, str):
            edm_type = EdmType.STRING
        else:
            raise EntityShapeError(f"Unsupported property value type: {type(value).__name__}")
        return cls(edm_type=edm_type, value=value, encrypt=encrypt)


@dataclass
class TableEntity:
    """A table entity: keys, system fields and named properties."""

    partition_key: str
    row_key: str
    properties: Dict[str, EntityProperty] = field(default_factory=dict)
    timestamp: Optional[datetime] = None
    etag: Optional[str] = None

    def __getitem__(self, name: str) -> EntityProperty:
        return self.properties[name]

    def __setitem__(self, name: str, value: Any) -> None:
        self.properties[name] = EntityProperty.from_value(value)

    def __contains__(self, name: object) -> bool:
        return name in self.properties


class TableOperationType(Enum):
    """Kind of point operation."""

    INSERT = "Insert"
    DELETE = "Delete"
    REPLACE = "Replace"
    MERGE = "Merge"
    INSERT_OR_REPLACE = "InsertOrReplace"
    INSERT_OR_MERGE = "InsertOrMerge"
    RETRIEVE = "Retrieve"

    @property
    def is_write(self) -> bool:
        return self is not TableOperationType.RETRIEVE

    @property
    def is_merge(self) -> bool:
        return self in (TableOperationType.MERGE, TableOperationType.INSERT_OR_MERGE)

    @property
    def http_method(self) -> str:
        return _HTTP_METHODS[self]


_HTTP_METHODS = {
    TableOperationType.INSERT: "POST",
    TableOperationType.DELETE: "DELETE",
    TableOperationType.REPLACE: "PUT",
    TableOperationType.MERGE: "MERGE",
    TableOperationType.INSERT_OR_REPLACE: "PUT",
    TableOperationType.INSERT_OR_MERGE: "MERGE",
    TableOperationType.RETRIEVE: "GET",
}

# Operations that send If-Match and therefore need the entity ETag.
_CONDITIONAL = (
    TableOperationType.DELETE,
    TableOperationType.REPLACE,
    TableOperationType.MERGE,
)


@dataclass
class TableOperation:
    """A single point operation against one entity."""

    operation_type: TableOperationType
    entity: Optional[TableEntity] = None
    retrieve_partition_key: Optional[str] = None
    retrieve_row_key: Optional[str] = None
    select_columns: Optional[List[str]] = None
    echo_content: bool = False

    def __post_init__(self) -> None:
        if self.operation_type is TableOperationType.RETRIEVE:
            if self.retrieve_partition_key is None or self.retrieve_row_key is None:
                raise EntityShapeError("Retrieve requires a partition key and a row key")
            return

        if self.entity is None:
            raise EntityShapeError(f"{self.operation_type.value} requires an entity")
        if self.operation_type in _CONDITIONAL and self.entity.etag is None:
            raise EntityShapeError(
                f"{self.operation_type.value} requires an ETag (which may be the '*' wildcard)"
            )

    @property
    def partition_key(self) -> str:
        if self.entity is not None:
            return self.entity.partition_key
        return self.retrieve_partition_key  # type: ignore[return-value]

    @property
    def row_key(self) -> str:
        if self.entity is not None:
            return self.entity.row_key
        return self.retrieve_row_key  # type: ignore[return-value]

    @classmethod
    def insert(cls, entity: TableEntity, echo_content: bool = False) -> TableOperation:
        return cls(TableOperationType.INSERT, entity, echo_content=echo_content)

    @classmethod
    def delete(cls, entity: TableEntity) -> TableOperation:
        return cls(TableOperationType.DELETE, entity)

    @classmethod
    def replace(cls, entity: TableEntity) -> TableOperation:
        return cls(TableOperationType.REPLACE, entity)

    @classmethod
    def merge(cls, entity: TableEntity) -> TableOperation:
        return cls(TableOperationType.MERGE, entity)

    @classmethod
    def insert_or_replace(cls, entity: TableEntity) -> TableOperation:
        return cls(TableOperationType.INSERT_OR_REPLACE, entity)

    @classmethod
    def insert_or_merge(cls, entity: TableEntity) -> TableOperation:
        return cls(TableOperationType.INSERT_OR_MERGE, entity)

    @classmethod
    def retrieve(
        cls,
        partition_key: str,
        row_key: str,
        select_columns: Optional[List[str]] = None,
    ) -> TableOperation:
        return cls(
            TableOperationType.RETRIEVE,
            retrieve_partition_key=partition_key,
            retrieve_row_key=row_key,
            select_columns=select_columns,
        )


@dataclass
class TableResult:
    """Outcome of one point operation."""

    http_status_code: int
    etag: Optional[str] = None
    result: Optional[TableEntity] = None
